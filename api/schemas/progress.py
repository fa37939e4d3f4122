"""Progress channel messages.

Both ends of the channel share one closed enumeration of message kinds; any
other kind is a protocol error.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ProgressStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def resets_percent(self) -> bool:
        return self in (ProgressStatus.ERROR, ProgressStatus.CANCELLED)


class MessageKind(str, Enum):
    PROGRESS = "progress"
    CANCEL = "cancel"
    PING = "ping"
    PONG = "pong"
    ERROR = "error"
    SUBSCRIBED = "subscribed"


CLIENT_MESSAGE_KINDS = frozenset({MessageKind.CANCEL, MessageKind.PING})


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, frozen=True)


class ProgressEvent(_WireModel):
    """One progress update for a session."""

    session_id: str = Field(description="Session identifier")
    stage: str = Field(description="Stage name")
    percent: int = Field(ge=0, le=100, description="Overall progress percentage")
    status: ProgressStatus = Field(description="Run status at the time of the event")
    message: str = Field(default="", description="Human-readable progress message")
    error: Optional[str] = Field(default=None, description="Error detail for error events")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Event timestamp")

    @property
    def is_terminal(self) -> bool:
        return self.status is not ProgressStatus.RUNNING


class CancelRequest(_WireModel):
    session_id: str


class PingMessage(_WireModel):
    session_id: Optional[str] = None
