"""HTTP endpoints for pipeline runs and stored graphs."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from api.middleware.rate_limiter import node_expansion_limiter, pipeline_run_limiter
from api.models import CancelResponse, ExpandResponse, RunRequest, RunResponse, RunStatusResponse
from api.orchestrators.pipeline_orchestrator import PipelineOrchestrator, get_orchestrator
from api.tools.subgraph import extract_subgraph
from libs.common.errors import PipelineError

logger = structlog.get_logger(__name__)
router = APIRouter()


def _http_error(error: PipelineError) -> HTTPException:
    return HTTPException(
        status_code=error.status_code,
        detail={"error_code": type(error).__name__, "message": error.message},
    )


@router.post("/v1/pipeline/runs", response_model=RunResponse, status_code=status.HTTP_202_ACCEPTED, tags=["Pipeline"])
async def start_run(
    request: Request,
    run_request: RunRequest,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> RunResponse:
    """Start generating a knowledge graph for a role.

    The run continues in the background; subscribe to
    ``/api/v1/progress/{sessionId}`` for progress.

    Raises:
        HTTPException: 409 if the session already has an active run, 429 for rate limits

    Example:
        ```bash
        curl -X POST http://localhost:8000/api/v1/pipeline/runs \\
          -H "Content-Type: application/json" \\
          -d '{"roleName": "Data Engineer", "industries": ["Finance"]}'
        ```
    """
    await pipeline_run_limiter.check_rate_limit(request)

    pipeline_request = run_request.to_pipeline_request()
    try:
        session = orchestrator.launch(pipeline_request)
    except PipelineError as e:
        raise _http_error(e)

    logger.info(
        "Pipeline run accepted",
        request_id=getattr(request.state, "request_id", "unknown"),
        session_id=session.session_id,
        role_name=pipeline_request.role_name[:100],
        industries=len(pipeline_request.industries),
        seed_terms=len(pipeline_request.seed_terms),
    )
    return RunResponse(
        session_id=session.session_id,
        status=session.state,
        progress_url=f"/api/v1/progress/{session.session_id}",
    )


@router.get("/v1/pipeline/runs/{session_id}", response_model=RunStatusResponse, tags=["Pipeline"])
async def get_run(session_id: str, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)) -> RunStatusResponse:
    session = orchestrator.registry.get(session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"error_code": "SessionNotFoundError", "message": f"No run for session {session_id}"})
    return RunStatusResponse.from_session(session)


@router.post("/v1/pipeline/runs/{session_id}/cancel", response_model=CancelResponse, tags=["Pipeline"])
async def cancel_run(session_id: str, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)) -> CancelResponse:
    """Request cooperative cancellation; the run stops at its next stage boundary."""
    requested = orchestrator.cancel(session_id)
    if not requested:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"error_code": "SessionNotFoundError", "message": f"No active run for session {session_id}"})
    return CancelResponse(session_id=session_id, cancel_requested=True)


@router.get("/v1/graphs/{session_id}", tags=["Graphs"])
async def get_graph(session_id: str, orchestrator: PipelineOrchestrator = Depends(get_orchestrator)) -> dict:
    try:
        graph = await orchestrator.store.get_graph(session_id)
    except PipelineError as e:
        raise _http_error(e)
    if graph is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"error_code": "GraphNotFound", "message": f"No graph stored for session {session_id}"})
    return {"sessionId": session_id, **graph.to_payload()}


@router.get("/v1/graphs/{session_id}/subgraph", tags=["Graphs"])
async def get_subgraph(
    session_id: str,
    center: str = Query(..., description="Node id to centre the neighbourhood on"),
    depth: int = Query(2, ge=0, le=5),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Neighbourhood of one node, for focused views of large graphs."""
    try:
        graph = await orchestrator.store.get_graph(session_id)
        if graph is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"error_code": "GraphNotFound", "message": f"No graph stored for session {session_id}"})
        subgraph = extract_subgraph(graph, center, max_depth=depth)
    except PipelineError as e:
        raise _http_error(e)
    return {"sessionId": session_id, "center": center, **subgraph.to_payload()}


@router.post("/v1/graphs/{session_id}/nodes/{node_id}/expand", response_model=ExpandResponse, tags=["Graphs"])
async def expand_node(
    request: Request,
    session_id: str,
    node_id: str,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> ExpandResponse:
    """Generate children for one node of a stored graph."""
    await node_expansion_limiter.check_rate_limit(request)

    try:
        before = await orchestrator.store.get_graph(session_id)
        graph, result = await orchestrator.expand_node(session_id, node_id)
    except PipelineError as e:
        raise _http_error(e)

    added = len(graph.nodes) - (len(before.nodes) if before else 0)
    logger.info("Node expanded", session_id=session_id, node_id=node_id, kind=result.kind.value, added=added)
    return ExpandResponse(
        session_id=session_id,
        node_id=node_id,
        kind=result.kind.value,
        added=added,
        graph=graph.to_payload(),
    )
