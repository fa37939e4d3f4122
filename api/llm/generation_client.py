"""
Generation client: one call to the text-generation service per ``generate``.

Wraps a LangChain chat model (OpenAI or Azure OpenAI) and maps every failure
onto the pipeline's error taxonomy. Nothing is retried here;
each stage decides what a failed call means for it.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional, Protocol, Sequence

import openai
import structlog
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import AzureChatOpenAI, ChatOpenAI

from api.observability.tracing import GenerationLoggingHandler
from libs.common.errors import (
    AuthError,
    ConfigError,
    GenerationTimeout,
    RateLimited,
    UnknownGenerationError,
)
from libs.common.settings import Settings, get_settings

logger = structlog.get_logger(__name__)

Message = Dict[str, str]


class TextGenerator(Protocol):
    async def generate(
        self,
        messages: Sequence[Message],
        temperature: float = 0.7,
        max_tokens: int = 1500,
        *,
        tag: Optional[str] = None,
    ) -> str:
        ...


def to_langchain_messages(messages: Sequence[Message]) -> List[BaseMessage]:
    """Convert ``{role, content}`` dicts to LangChain messages."""
    converted: List[BaseMessage] = []
    for message in messages:
        role = message.get("role")
        content = message.get("content", "")
        if role == "system":
            converted.append(SystemMessage(content=content))
        elif role == "user":
            converted.append(HumanMessage(content=content))
        elif role == "assistant":
            converted.append(AIMessage(content=content))
        else:
            raise ValueError(f"Unsupported message role: {role!r}")
    return converted


class GenerationClient:
    """Async client for the generation service.

    The underlying chat model is created on first use so the service can start
    (and answer health checks) without credentials; the first ``generate`` call
    then fails with ``ConfigError``.
    """

    def __init__(self, settings: Optional[Settings] = None, model: Optional[BaseChatModel] = None):
        self.settings = settings or get_settings()
        self._model = model
        self._callbacks = [GenerationLoggingHandler()]

    def _build_model(self) -> BaseChatModel:
        s = self.settings
        if not s.generation_api_key:
            raise ConfigError("Generation service API key is not configured (ROLEGRAPH_GENERATION_API_KEY)")

        if s.generation_provider == "azure":
            if not s.azure_endpoint or not s.azure_deployment:
                raise ConfigError(
                    "Azure OpenAI endpoint and deployment must be configured "
                    "(ROLEGRAPH_AZURE_ENDPOINT, ROLEGRAPH_AZURE_DEPLOYMENT)"
                )
            return AzureChatOpenAI(
                api_key=s.generation_api_key,
                azure_endpoint=s.azure_endpoint,
                azure_deployment=s.azure_deployment,
                api_version=s.azure_api_version,
                timeout=s.generation_timeout_seconds,
                max_retries=0,
            )

        return ChatOpenAI(
            api_key=s.generation_api_key,
            model=s.generation_model,
            timeout=s.generation_timeout_seconds,
            max_retries=0,
        )

    @property
    def model(self) -> BaseChatModel:
        if self._model is None:
            self._model = self._build_model()
        return self._model

    async def generate(
        self,
        messages: Sequence[Message],
        temperature: float = 0.7,
        max_tokens: int = 1500,
        *,
        tag: Optional[str] = None,
    ) -> str:
        """Send one request and return the raw response text.

        Raises:
            ConfigError: credentials or endpoint missing.
            GenerationTimeout: transport failure or timeout.
            RateLimited: the service returned 429.
            AuthError: the service rejected the credentials.
            UnknownGenerationError: any other non-success response or unexpected
                failure inside the model call.
        """
        model = self.model
        lc_messages = to_langchain_messages(messages)
        start_time = time.time()
        config: Dict[str, Any] = {"callbacks": self._callbacks, "tags": [tag] if tag else []}

        try:
            response = await asyncio.wait_for(
                model.ainvoke(lc_messages, config=config, temperature=temperature, max_tokens=max_tokens),
                timeout=self.settings.generation_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise GenerationTimeout(f"Generation timed out after {self.settings.generation_timeout_seconds}s") from e
        except (openai.APITimeoutError, openai.APIConnectionError) as e:
            raise GenerationTimeout(f"Generation transport failure: {e}") from e
        except openai.RateLimitError as e:
            raise RateLimited("Generation service rate limit exceeded") from e
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise AuthError("Generation service rejected the credentials") from e
        except openai.APIStatusError as e:
            logger.warning("Generation service error", tag=tag, status_code=e.status_code, error=str(e))
            raise UnknownGenerationError(f"Generation service returned {e.status_code}", upstream_status=e.status_code) from e
        except openai.APIError as e:
            logger.warning("Generation service error", tag=tag, error=str(e), error_type=type(e).__name__)
            raise UnknownGenerationError(f"Generation service error: {e}") from e
        except Exception as e:
            logger.exception("Unexpected generation failure", tag=tag, error_type=type(e).__name__)
            raise UnknownGenerationError(f"Unexpected generation failure: {type(e).__name__}") from e

        text = response.content if isinstance(response.content, str) else ""
        if not text.strip():
            raise UnknownGenerationError("Generation service returned an empty response")

        logger.info(
            "Generation completed",
            tag=tag,
            duration_ms=round((time.time() - start_time) * 1000, 2),
            response_length=len(text),
        )
        return text


_client: Optional[GenerationClient] = None


def get_generation_client() -> GenerationClient:
    """Get or create the shared generation client."""
    global _client
    if _client is None:
        _client = GenerationClient()
    return _client
