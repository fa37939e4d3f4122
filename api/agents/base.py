"""Common shape of a pipeline stage.

A stage builds messages from the request and earlier stage outputs, makes one
generation call, recovers the response against its schema and post-processes
it. ``attempt`` reports Ok or Err; ``run`` turns Err into the stage's
deterministic fallback so the pipeline always has a value to continue with.
``ConfigError`` is the exception: it propagates and ends the run.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, ClassVar, Generic, List, Optional, Type, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from api.llm.generation_client import Message, TextGenerator
from api.llm.response_recovery import recover_json
from api.schemas.pipeline_state import (
    BroadContext,
    DomainAnalysis,
    PipelineRequest,
    ResultKind,
    StageResult,
    Structure,
    TermExpansion,
)
from libs.common.errors import GenerationError, ParseFailure

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class StageContext:
    """Immutable view of everything a stage may read."""

    request: PipelineRequest
    domain_analysis: Optional[DomainAnalysis] = None
    term_expansion: Optional[TermExpansion] = None
    broad_context: Optional[BroadContext] = None
    structure: Optional[Structure] = None

    @property
    def session_id(self) -> str:
        return self.request.session_id


class StageAgent(Generic[T]):
    """Base class for the generation stages."""

    name: ClassVar[str] = "stage"
    schema: ClassVar[Type[BaseModel]]
    temperature: ClassVar[float] = 0.7
    max_tokens: ClassVar[int] = 1500

    def __init__(self, client: TextGenerator):
        self.client = client

    def build_messages(self, context: StageContext) -> List[Message]:
        raise NotImplementedError

    def postprocess(self, parsed: Any, context: StageContext) -> T:
        return parsed

    def fallback(self, context: StageContext) -> T:
        raise NotImplementedError

    async def attempt(self, context: StageContext) -> StageResult[T]:
        """One generation call, recovered and post-processed. Never falls back."""
        try:
            text = await self.client.generate(
                self.build_messages(context),
                self.temperature,
                self.max_tokens,
                tag=self.name,
            )
        except GenerationError as e:
            logger.warning(f"{self.name} generation failed", session_id=context.session_id, error=str(e), error_type=type(e).__name__)
            return StageResult.err(e)

        recovered = recover_json(text, self.schema)
        if isinstance(recovered, ParseFailure):
            return StageResult.err(recovered)

        try:
            return StageResult.ok(self.postprocess(recovered, context))
        except (ValueError, ValidationError) as e:
            return StageResult.err(ParseFailure(f"post-processing failed: {e}"))

    async def run(self, context: StageContext) -> StageResult[T]:
        """Run the stage, substituting the fallback value for any recoverable failure."""
        start_time = time.time()
        result = await self.attempt(context)
        duration_ms = round((time.time() - start_time) * 1000, 2)

        if result.kind is ResultKind.ERR:
            logger.warning(
                f"{self.name} fell back",
                session_id=context.session_id,
                reason=result.reason,
                duration_ms=duration_ms,
            )
            return StageResult.fallback(self.fallback(context), result.reason or "unknown failure")

        logger.info(f"{self.name} completed", session_id=context.session_id, duration_ms=duration_ms)
        return result
