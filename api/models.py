"""Pydantic models for the RoleGraph HTTP API.

Request and response bodies for the pipeline, graph and health endpoints.
Bodies use camelCase on the wire and accept snake_case input as well.
"""

from __future__ import annotations

import time
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from api.schemas.pipeline_state import PipelineRequest, PipelineState, Session


class _ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RunRequest(_ApiModel):
    """Request body for starting a pipeline run."""

    role_name: str = Field(..., max_length=200, description="Role to map", examples=["Data Engineer"])
    description: str = Field("", max_length=4000, description="Free-text description of the role")
    industries: List[str] = Field(default_factory=list, max_length=20, description="Industries the role works in")
    seed_terms: List[str] = Field(default_factory=list, max_length=50, description="Keywords the graph should cover")
    session_id: Optional[str] = Field(None, max_length=128, description="Session to write the graph to")

    @field_validator("role_name")
    @classmethod
    def role_name_must_not_be_empty(cls, v: str) -> str:
        """Validate that the role name is not empty."""
        if not v.strip():
            raise ValueError("Role name must not be empty")
        return v

    def to_pipeline_request(self) -> PipelineRequest:
        data = self.model_dump(exclude_none=True)
        return PipelineRequest(**data)


class RunResponse(_ApiModel):
    """Accepted run; progress is streamed over the progress WebSocket."""

    session_id: str
    status: PipelineState
    progress_url: str


class RunStatusResponse(_ApiModel):
    session_id: str
    status: PipelineState
    stage_kinds: Dict[str, str] = Field(default_factory=dict)
    error: Optional[str] = None
    cancel_requested: bool = False
    updated_at: float

    @classmethod
    def from_session(cls, session: Session) -> "RunStatusResponse":
        return cls(
            session_id=session.session_id,
            status=session.state,
            stage_kinds=dict(session.stage_kinds),
            error=session.error,
            cancel_requested=session.token.cancelled,
            updated_at=session.updated_at.timestamp(),
        )


class CancelResponse(_ApiModel):
    session_id: str
    cancel_requested: bool


class ExpandResponse(_ApiModel):
    session_id: str
    node_id: str
    kind: str
    added: int
    graph: dict


class HealthResponse(BaseModel):
    """Response model for health check endpoints.

    Attributes:
        status: Health status (healthy/unhealthy/ready/not_ready)
        service: Service name
        version: Service version
        timestamp: Unix timestamp
        details: Optional additional details
    """

    status: Literal["healthy", "unhealthy", "ready", "not_ready"] = Field(
        description="Health status",
        examples=["healthy"],
    )
    service: str = Field(description="Service name", examples=["api"])
    version: str = Field(description="Service version", examples=["0.1.0"])
    timestamp: float = Field(default_factory=time.time, description="Unix timestamp")
    details: dict[str, str] | None = Field(
        default=None,
        description="Optional additional details",
        examples=[{"redis": "connected", "graph_store": "memory"}],
    )


class ErrorResponse(BaseModel):
    """Standard error response model."""

    error: str = Field(description="Error code", examples=["SESSION_CONFLICT"])
    message: str = Field(description="Human-readable error message")
    request_id: str | None = Field(default=None, description="Request identifier for tracking")
