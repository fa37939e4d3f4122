"""
Logging callbacks for generation calls.

Attached to every chat-model invocation so each call produces a start and an
end (or error) log line with duration and token usage.
"""

import time
from typing import Any, Dict, List

import structlog
from langchain_core.callbacks import AsyncCallbackHandler
from langchain_core.messages import BaseMessage
from langchain_core.outputs import LLMResult

logger = structlog.get_logger(__name__)


class GenerationLoggingHandler(AsyncCallbackHandler):
    """Structured log lines for chat-model runs."""

    def __init__(self) -> None:
        super().__init__()
        self.start_times: Dict[str, float] = {}

    async def on_chat_model_start(
        self,
        serialized: Dict[str, Any],
        messages: List[List[BaseMessage]],
        **kwargs: Any,
    ) -> None:
        run_id = kwargs.get("run_id")
        if run_id:
            self.start_times[str(run_id)] = time.time()

        logger.info(
            "Generation call started",
            model=(serialized or {}).get("name", "unknown"),
            prompt_length=sum(len(str(m.content)) for batch in messages for m in batch),
            tags=kwargs.get("tags") or [],
            run_id=str(run_id) if run_id else None,
        )

    async def on_llm_end(self, response: LLMResult, **kwargs: Any) -> None:
        run_id = kwargs.get("run_id")
        started = self.start_times.pop(str(run_id), None) if run_id else None
        token_usage = response.llm_output.get("token_usage", {}) if response.llm_output else {}

        logger.info(
            "Generation call completed",
            duration_ms=int((time.time() - started) * 1000) if started else None,
            total_tokens=token_usage.get("total_tokens", 0),
            prompt_tokens=token_usage.get("prompt_tokens", 0),
            completion_tokens=token_usage.get("completion_tokens", 0),
            run_id=str(run_id) if run_id else None,
        )

    async def on_llm_error(self, error: BaseException, **kwargs: Any) -> None:
        run_id = kwargs.get("run_id")
        started = self.start_times.pop(str(run_id), None) if run_id else None

        logger.error(
            "Generation call failed",
            error=str(error),
            error_type=type(error).__name__,
            duration_ms=int((time.time() - started) * 1000) if started else None,
            run_id=str(run_id) if run_id else None,
        )
