"""WebSocket endpoint streaming a session's progress events.

A connection subscribes to exactly one session. Besides receiving progress
frames the client may send ``cancel`` (sets the run's cancellation flag) and
``ping``. The socket is closed by the server once the run is torn down.
"""

from __future__ import annotations

import asyncio

import structlog
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from api.orchestrators.pipeline_orchestrator import PipelineOrchestrator, get_orchestrator
from api.progress.channel import ProgressHub, iter_events
from api.progress.protocol import (
    ProtocolError,
    encode_error,
    encode_pong,
    encode_progress,
    encode_subscribed,
    parse_client_message,
)
from api.schemas.pipeline_state import PipelineState, Session
from api.schemas.progress import CancelRequest, ProgressEvent, ProgressStatus

logger = structlog.get_logger(__name__)
router = APIRouter()

_TERMINAL_STATUS = {
    PipelineState.COMPLETED: ProgressStatus.COMPLETED,
    PipelineState.FAILED: ProgressStatus.ERROR,
    PipelineState.CANCELLED: ProgressStatus.CANCELLED,
}


def terminal_event(session: Session) -> ProgressEvent:
    """Final event replayed to observers that connect after a run ended."""
    completed = session.state is PipelineState.COMPLETED
    return ProgressEvent(
        session_id=session.session_id,
        stage=session.state.value,
        percent=100 if completed else 0,
        status=_TERMINAL_STATUS[session.state],
        message=f"Run {session.state.value}",
        error=session.error,
    )


async def _forward_events(websocket: WebSocket, queue: asyncio.Queue) -> None:
    try:
        async for event in iter_events(queue):
            await websocket.send_text(encode_progress(event))
    except WebSocketDisconnect:
        return


async def _handle_client(websocket: WebSocket, session_id: str, hub: ProgressHub) -> None:
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = parse_client_message(raw, session_id=session_id)
            except ProtocolError as e:
                logger.info("Rejected progress client message", session_id=session_id, error=str(e))
                await websocket.send_text(encode_error(str(e)))
                continue

            if isinstance(message, CancelRequest):
                if not hub.request_cancel(message.session_id):
                    await websocket.send_text(encode_error(f"No active run for session {message.session_id}"))
            else:
                await websocket.send_text(encode_pong())
    except WebSocketDisconnect:
        return


@router.websocket("/v1/progress/{session_id}")
async def progress_stream(
    websocket: WebSocket,
    session_id: str,
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
) -> None:
    await websocket.accept()
    hub = orchestrator.hub
    queue = hub.subscribe(session_id)
    logger.info("Progress subscriber connected", session_id=session_id)

    try:
        await websocket.send_text(encode_subscribed(session_id))

        channel = hub.channel(session_id)
        if channel is not None and channel.last_event is not None:
            await websocket.send_text(encode_progress(channel.last_event))

        session = orchestrator.registry.get(session_id)
        if session is not None and session.state.is_terminal and not orchestrator.registry.is_active(session_id):
            await websocket.send_text(encode_progress(terminal_event(session)))
            await websocket.close()
            return

        sender = asyncio.create_task(_forward_events(websocket, queue))
        receiver = asyncio.create_task(_handle_client(websocket, session_id, hub))
        done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                logger.warning("Progress socket task failed", session_id=session_id, error=str(error), error_type=type(error).__name__)

        if sender in done and websocket.application_state is WebSocketState.CONNECTED:
            await websocket.close()
    except WebSocketDisconnect:
        pass
    finally:
        hub.unsubscribe(session_id, queue)
        logger.info("Progress subscriber disconnected", session_id=session_id)
