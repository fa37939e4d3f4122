"""Pipeline orchestrator built on LangGraph.

Runs one session's generation pipeline as an explicit state machine:

    01_domain_analysis -> 02_context_parallel -> 03_structuring
        -> 04_graph_assembly -> 05_reducing -> 06_persisting -> END

Every transition goes through a router that checks the session's
cancellation token; a set token routes to the ``cancelled`` node instead of
the next stage. In-flight generation calls are never interrupted, their
result is simply not used. Recoverable failures are absorbed by the stage
agents as fallbacks; only ``ConfigError`` and ``PersistenceError`` end a run
as failed.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, Optional, Set

import structlog
from langgraph.graph import END, StateGraph

from api.agents.base import StageContext
from api.agents.broad_context import BroadContextAgent
from api.agents.domain_analysis import DomainAnalysisAgent
from api.agents.graph_assembly import GraphAssemblyAgent
from api.agents.node_expansion import NodeExpansionAgent, apply_expansion, expansion_context
from api.agents.structuring import StructuringAgent
from api.agents.term_expansion import TermExpansionAgent
from api.llm.generation_client import TextGenerator, get_generation_client
from api.orchestrators.session_registry import SessionRegistry
from api.progress.channel import ProgressHub
from api.schemas.pipeline_state import (
    PipelineOutcome,
    PipelineRequest,
    PipelineRunState,
    PipelineState,
    ResultKind,
    Session,
    StageResult,
)
from api.schemas.progress import ProgressEvent, ProgressStatus
from api.tools.context_search import ContextSearchClient
from api.tools.graph_reducer import reduce_graph
from api.tools.graph_repair import repair_graph
from libs.caching.redis_client import get_redis_client
from libs.caching.stage_snapshots import StageSnapshotStore
from libs.common.errors import ConfigError, PersistenceError, SessionConflictError, SessionNotFoundError
from libs.common.settings import Settings, get_settings
from libs.models.graph import KnowledgeGraph
from libs.storage.graph_store import GraphStore, build_graph_store

logger = structlog.get_logger(__name__)

CANCELLED_NODE = "cancel_run"

# (entry percent, exit percent) per stage
STAGE_PERCENTS = {
    "domain_analysis": (10, 30),
    "term_expansion": (35, 55),
    "structuring": (60, 75),
    "graph_assembly": (80, 88),
    "reducing": (90, 90),
    "persisting": (95, 95),
}

STAGE_BY_STATE = {
    PipelineState.STAGE1_RUNNING: "domain_analysis",
    PipelineState.STAGE2_RUNNING: "term_expansion",
    PipelineState.STAGE3_RUNNING: "structuring",
    PipelineState.STAGE4_RUNNING: "graph_assembly",
    PipelineState.REDUCING: "reducing",
    PipelineState.PERSISTING: "persisting",
}


class PipelineOrchestrator:
    """Owns pipeline runs: sequencing, cancellation, progress and persistence."""

    def __init__(
        self,
        client: TextGenerator,
        store: GraphStore,
        hub: Optional[ProgressHub] = None,
        registry: Optional[SessionRegistry] = None,
        snapshots: Optional[StageSnapshotStore] = None,
        search: Optional[ContextSearchClient] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.hub = hub or ProgressHub(queue_size=self.settings.progress_queue_size)
        self.registry = registry or SessionRegistry()
        self.snapshots = snapshots
        self._snapshots_checked = snapshots is not None

        self.domain_agent = DomainAnalysisAgent(client)
        self.term_agent = TermExpansionAgent(client)
        self.context_agent = BroadContextAgent(client, search=search)
        self.structuring_agent = StructuringAgent(client)
        self.assembly_agent = GraphAssemblyAgent(
            client,
            key_concept_limit=self.settings.key_concept_limit,
            max_trend_nodes=self.settings.max_trend_nodes,
        )
        self.expansion_agent = NodeExpansionAgent(client)

        self._tasks: Set[asyncio.Task] = set()
        self.graph = self._build_graph()

    def _build_graph(self):
        """Build and compile the LangGraph state machine."""
        graph = StateGraph(PipelineRunState)

        graph.add_node("01_domain_analysis", self._domain_analysis_node)
        graph.add_node("02_context_parallel", self._context_parallel_node)
        graph.add_node("03_structuring", self._structuring_node)
        graph.add_node("04_graph_assembly", self._graph_assembly_node)
        graph.add_node("05_reducing", self._reducing_node)
        graph.add_node("06_persisting", self._persisting_node)
        graph.add_node(CANCELLED_NODE, self._cancelled_node)

        graph.set_conditional_entry_point(
            self._route_to("01_domain_analysis"),
            ["01_domain_analysis", CANCELLED_NODE],
        )
        for current, following in (
            ("01_domain_analysis", "02_context_parallel"),
            ("02_context_parallel", "03_structuring"),
            ("03_structuring", "04_graph_assembly"),
            ("04_graph_assembly", "05_reducing"),
            ("05_reducing", "06_persisting"),
        ):
            graph.add_conditional_edges(current, self._route_to(following), [following, CANCELLED_NODE])

        graph.add_edge("06_persisting", END)
        graph.add_edge(CANCELLED_NODE, END)

        compiled = graph.compile()
        logger.info("Pipeline graph compiled")
        return compiled

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start(self, request: PipelineRequest) -> Session:
        """Register a run and open its progress channel.

        Raises:
            SessionConflictError: the session already has an active run.
        """
        session = self.registry.start(request)
        self.hub.open(session.session_id, session.token)
        return session

    async def run(self, request: PipelineRequest) -> PipelineOutcome:
        """Run the whole pipeline for one request and return its terminal state."""
        return await self.execute(self.start(request))

    def launch(self, request: PipelineRequest) -> Session:
        """Start a run in the background and return its session immediately."""
        session = self.start(request)
        task = asyncio.create_task(self.execute(session))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return session

    def cancel(self, session_id: str) -> bool:
        """Request cooperative cancellation. False if no run is active."""
        if not self.registry.is_active(session_id):
            return False
        session = self.registry.get(session_id)
        session.token.cancel()
        logger.info("Cancellation requested", session_id=session_id, state=session.state.value)
        return True

    async def execute(self, session: Session) -> PipelineOutcome:
        start_time = time.time()
        session_id = session.session_id
        logger.info("Starting pipeline run", session_id=session_id, role_name=session.request.role_name)

        try:
            result = await self.graph.ainvoke(
                PipelineRunState(request=session.request),
                config={"metadata": {"session_id": session_id}},
            )
            values = result if isinstance(result, dict) else dict(result)
            session.stage_kinds.update(values.get("stage_kinds") or {})

            if values.get("cancelled"):
                return self._outcome(session)

            session.advance(PipelineState.COMPLETED)
            graph = values.get("graph")
            self._emit(session, "completed", 100, "Knowledge graph generated", ProgressStatus.COMPLETED)
            logger.info(
                "Pipeline run completed",
                session_id=session_id,
                nodes=len(graph.nodes) if graph else 0,
                stage_kinds=session.stage_kinds,
                duration_ms=round((time.time() - start_time) * 1000, 2),
            )
            return self._outcome(session, graph)

        except (ConfigError, PersistenceError) as e:
            return self._fail(session, e)
        except Exception as e:
            logger.error("Pipeline run crashed", session_id=session_id, error=str(e), exc_info=True)
            return self._fail(session, e)
        finally:
            self.registry.finish(session)
            self.hub.teardown(session_id)

    def _fail(self, session: Session, error: Exception) -> PipelineOutcome:
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        session.error = message
        stage = STAGE_BY_STATE.get(session.state, "pipeline")
        session.advance(PipelineState.FAILED)
        self._emit(session, stage, 0, "Knowledge graph generation failed", ProgressStatus.ERROR, error=message)
        logger.error("Pipeline run failed", session_id=session.session_id, stage=stage, error=message, error_type=type(error).__name__)
        return self._outcome(session)

    @staticmethod
    def _outcome(session: Session, graph: Optional[KnowledgeGraph] = None) -> PipelineOutcome:
        return PipelineOutcome(
            session_id=session.session_id,
            status=session.state,
            graph=graph,
            error=session.error,
            stage_kinds=dict(session.stage_kinds),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _session(self, state: PipelineRunState) -> Session:
        session = self.registry.get(state.request.session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {state.request.session_id} is not registered")
        return session

    def _route_to(self, following: str) -> Callable[[PipelineRunState], str]:
        def route(state: PipelineRunState) -> str:
            session = self.registry.get(state.request.session_id)
            if state.cancelled or (session is not None and session.token.cancelled):
                return CANCELLED_NODE
            return following

        route.__name__ = f"route_to_{following}"
        return route

    @staticmethod
    def _context(state: PipelineRunState) -> StageContext:
        return StageContext(
            request=state.request,
            domain_analysis=state.domain_analysis,
            term_expansion=state.term_expansion,
            broad_context=state.broad_context,
            structure=state.structure,
        )

    def _emit(
        self,
        session: Session,
        stage: str,
        percent: int,
        message: str,
        status: ProgressStatus = ProgressStatus.RUNNING,
        error: Optional[str] = None,
    ) -> None:
        self.hub.publish(
            ProgressEvent(
                session_id=session.session_id,
                stage=stage,
                percent=percent,
                status=status,
                message=message,
                error=error,
            )
        )

    async def _ensure_snapshots(self) -> Optional[StageSnapshotStore]:
        """Connect the snapshot store on first use; None when Redis is unavailable."""
        if not self._snapshots_checked:
            self._snapshots_checked = True
            client = await get_redis_client()
            if client is not None:
                self.snapshots = StageSnapshotStore(client, ttl_seconds=self.settings.snapshot_ttl_seconds)
        return self.snapshots

    async def _snapshot(self, session: Session, stage: str, result: StageResult) -> None:
        store = await self._ensure_snapshots()
        if store is None or result.value is None:
            return
        await store.save(session.session_id, stage, result.value.model_dump(mode="json"), kind=result.kind.value)

    @staticmethod
    def _completion_message(label: str, result: StageResult) -> str:
        if result.kind is ResultKind.FALLBACK:
            return f"{label} complete (fallback used)"
        return f"{label} complete"

    async def _run_stage(self, state: PipelineRunState, stage: str, pipeline_state: PipelineState, label: str, agent) -> Optional[StageResult]:
        """Shared body of the single-agent stage nodes; None when cancelled mid-flight."""
        session = self._session(state)
        session.advance(pipeline_state)
        entry, exit_ = STAGE_PERCENTS[stage]
        self._emit(session, stage, entry, f"{label} started")

        result = await agent.run(self._context(state))
        if session.token.cancelled:
            logger.info("Discarding stage result after cancellation", session_id=session.session_id, stage=stage)
            return None

        session.stage_kinds[stage] = result.kind.value
        await self._snapshot(session, stage, result)
        self._emit(session, stage, exit_, self._completion_message(label, result))
        return result

    # ------------------------------------------------------------------
    # Graph nodes
    # ------------------------------------------------------------------

    async def _domain_analysis_node(self, state: PipelineRunState) -> Dict[str, Any]:
        """01_domain_analysis: industries, trends and technologies for the role."""
        start_time = time.time()
        result = await self._run_stage(state, "domain_analysis", PipelineState.STAGE1_RUNNING, "Domain analysis", self.domain_agent)
        if result is None:
            return {"cancelled": True}
        return {
            "domain_analysis": result.value,
            "stage_kinds": {"domain_analysis": result.kind.value},
            "node_timings": {"01_domain_analysis": round((time.time() - start_time) * 1000, 2)},
        }

    async def _context_parallel_node(self, state: PipelineRunState) -> Dict[str, Any]:
        """02_context_parallel: term expansion and broad context, concurrently."""
        start_time = time.time()
        session = self._session(state)
        session.advance(PipelineState.STAGE2_RUNNING)
        entry, exit_ = STAGE_PERCENTS["term_expansion"]
        self._emit(session, "term_expansion", entry, "Keyword expansion started")

        context = self._context(state)
        terms, broad = await asyncio.gather(
            self.term_agent.run(context),
            self.context_agent.run(context),
            return_exceptions=True,
        )
        for outcome in (terms, broad):
            if isinstance(outcome, BaseException):
                raise outcome

        if session.token.cancelled:
            return {"cancelled": True}

        session.stage_kinds.update({"term_expansion": terms.kind.value, "broad_context": broad.kind.value})
        await self._snapshot(session, "term_expansion", terms)
        await self._snapshot(session, "broad_context", broad)
        self._emit(session, "term_expansion", exit_, self._completion_message("Keyword expansion", terms))

        return {
            "term_expansion": terms.value,
            "broad_context": broad.value,
            "stage_kinds": {"term_expansion": terms.kind.value, "broad_context": broad.kind.value},
            "node_timings": {"02_context_parallel": round((time.time() - start_time) * 1000, 2)},
        }

    async def _structuring_node(self, state: PipelineRunState) -> Dict[str, Any]:
        """03_structuring: category / subcategory / skill hierarchy."""
        start_time = time.time()
        result = await self._run_stage(state, "structuring", PipelineState.STAGE3_RUNNING, "Structuring", self.structuring_agent)
        if result is None:
            return {"cancelled": True}
        return {
            "structure": result.value,
            "stage_kinds": {"structuring": result.kind.value},
            "node_timings": {"03_structuring": round((time.time() - start_time) * 1000, 2)},
        }

    async def _graph_assembly_node(self, state: PipelineRunState) -> Dict[str, Any]:
        """04_graph_assembly: nodes, edges and cross-links."""
        start_time = time.time()
        result = await self._run_stage(state, "graph_assembly", PipelineState.STAGE4_RUNNING, "Graph assembly", self.assembly_agent)
        if result is None:
            return {"cancelled": True}
        return {
            "graph": result.value,
            "stage_kinds": {"graph_assembly": result.kind.value},
            "node_timings": {"04_graph_assembly": round((time.time() - start_time) * 1000, 2)},
        }

    async def _reducing_node(self, state: PipelineRunState) -> Dict[str, Any]:
        """05_reducing: repair structure, then bound the node count."""
        start_time = time.time()
        session = self._session(state)
        session.advance(PipelineState.REDUCING)
        self._emit(session, "reducing", STAGE_PERCENTS["reducing"][0], "Validating and reducing graph")

        graph = repair_graph(state.graph, root_name=state.request.role_name)
        graph = reduce_graph(
            graph,
            max_nodes=self.settings.max_graph_nodes,
            max_skills_per_parent=self.settings.max_skills_per_parent,
        )
        graph = repair_graph(graph, root_name=state.request.role_name)

        return {
            "graph": graph,
            "node_timings": {"05_reducing": round((time.time() - start_time) * 1000, 2)},
        }

    async def _persisting_node(self, state: PipelineRunState) -> Dict[str, Any]:
        """06_persisting: replace the session's stored graph."""
        start_time = time.time()
        session = self._session(state)
        session.advance(PipelineState.PERSISTING)
        self._emit(session, "persisting", STAGE_PERCENTS["persisting"][0], "Saving knowledge graph")

        await self.store.replace_graph(session.session_id, state.graph)
        return {"node_timings": {"06_persisting": round((time.time() - start_time) * 1000, 2)}}

    async def _cancelled_node(self, state: PipelineRunState) -> Dict[str, Any]:
        session = self._session(state)
        stage = STAGE_BY_STATE.get(session.state, "pipeline")
        session.advance(PipelineState.CANCELLED)
        self._emit(session, stage, 0, "Knowledge graph generation cancelled", ProgressStatus.CANCELLED)
        logger.info("Pipeline run cancelled", session_id=session.session_id, stage=stage)
        return {"cancelled": True}

    # ------------------------------------------------------------------
    # Node expansion on a stored graph
    # ------------------------------------------------------------------

    async def expand_node(self, session_id: str, node_id: str) -> tuple[KnowledgeGraph, StageResult]:
        """Expand one node of the stored graph and replace the stored graph.

        Raises:
            SessionConflictError: a pipeline run is active for the session.
            SessionNotFoundError: nothing is stored for the session.
            NodeNotFoundError: the node is not in the stored graph.
        """
        if self.registry.is_active(session_id):
            raise SessionConflictError(f"A pipeline run is active for session {session_id}")
        graph = await self.store.get_graph(session_id)
        if graph is None:
            raise SessionNotFoundError(f"No graph stored for session {session_id}")

        context = expansion_context(session_id, graph, node_id)
        result = await self.expansion_agent.run(context)
        root_name = graph.root.name if graph.root else context.role_name

        expanded = apply_expansion(graph, node_id, result.value)
        expanded = repair_graph(expanded, root_name=root_name)
        expanded = reduce_graph(
            expanded,
            max_nodes=self.settings.max_graph_nodes,
            max_skills_per_parent=self.settings.max_skills_per_parent,
        )
        expanded = repair_graph(expanded, root_name=root_name)
        await self.store.replace_graph(session_id, expanded)
        return expanded, result


# Global orchestrator instance
_orchestrator: Optional[PipelineOrchestrator] = None


def get_orchestrator() -> PipelineOrchestrator:
    """Get or create the global orchestrator instance."""
    global _orchestrator
    if _orchestrator is None:
        settings = get_settings()
        search = ContextSearchClient(settings.exa_api_key, num_results=settings.exa_num_results) if settings.exa_api_key else None
        _orchestrator = PipelineOrchestrator(
            client=get_generation_client(),
            store=build_graph_store(settings),
            search=search,
            settings=settings,
        )
    return _orchestrator


def reset_orchestrator() -> None:
    global _orchestrator
    _orchestrator = None
