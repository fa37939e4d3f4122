"""JSON wire codec for the progress channel.

Client to server::

    {"sessionId": "...", "operation": "cancel"}
    {"operation": "ping"}

Server to client::

    {"type": "progress", "sessionId": ..., "stage": ..., "percent": ..., "status": ..., ...}
    {"type": "subscribed", "sessionId": ...}
    {"type": "pong"}
    {"type": "error", "message": ...}
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Union

import orjson

from api.schemas.progress import (
    CLIENT_MESSAGE_KINDS,
    CancelRequest,
    MessageKind,
    PingMessage,
    ProgressEvent,
)

ClientMessage = Union[CancelRequest, PingMessage]


class ProtocolError(ValueError):
    """A client message that does not belong to the protocol."""


def parse_client_message(raw: Union[str, bytes], session_id: Optional[str] = None) -> ClientMessage:
    """Decode one client frame.

    Args:
        raw: Frame text.
        session_id: Session the connection is bound to. A message naming a
            different session is rejected.

    Raises:
        ProtocolError: malformed JSON, unknown kind, or session mismatch.
    """
    try:
        data = orjson.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError("Message is not valid JSON") from e

    if not isinstance(data, dict):
        raise ProtocolError("Message must be a JSON object")

    kind_value = data.get("operation", data.get("type"))
    try:
        kind = MessageKind(kind_value)
    except ValueError:
        raise ProtocolError(f"Unknown message kind: {kind_value!r}") from None

    if kind not in CLIENT_MESSAGE_KINDS:
        raise ProtocolError(f"Message kind {kind.value!r} cannot be sent by clients")

    message_session = data.get("sessionId", data.get("session_id"))
    if message_session is not None and not isinstance(message_session, str):
        raise ProtocolError("sessionId must be a string")
    if session_id is not None and message_session is not None and message_session != session_id:
        raise ProtocolError("sessionId does not match this connection")

    if kind is MessageKind.CANCEL:
        target = message_session or session_id
        if not target:
            raise ProtocolError("Cancel requires a sessionId")
        return CancelRequest(session_id=target)
    return PingMessage(session_id=message_session or session_id)


def _frame(kind: MessageKind, body: Dict[str, Any]) -> str:
    return orjson.dumps({"type": kind.value, **body}).decode()


def encode_progress(event: ProgressEvent) -> str:
    return _frame(MessageKind.PROGRESS, event.model_dump(mode="json", by_alias=True))


def encode_subscribed(session_id: str) -> str:
    return _frame(MessageKind.SUBSCRIBED, {"sessionId": session_id})


def encode_pong() -> str:
    return _frame(MessageKind.PONG, {})


def encode_error(message: str) -> str:
    return _frame(MessageKind.ERROR, {"message": message})
