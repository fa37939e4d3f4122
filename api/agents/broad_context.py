"""Stage 2 sub-task: broad context about the role, run alongside term expansion.

Uses web search when it is configured and the generation service otherwise
(or when search fails).
"""

from typing import List, Optional

import structlog

from api.agents.base import StageAgent, StageContext
from api.agents.prompts import BROAD_CONTEXT_TEMPLATE, join_or_none, render
from api.llm.generation_client import Message, TextGenerator
from api.schemas.pipeline_state import BroadContext, StageResult
from api.tools.context_search import ContextSearchClient
from libs.common.errors import SearchError

logger = structlog.get_logger(__name__)


class BroadContextAgent(StageAgent[BroadContext]):
    name = "broad_context"
    schema = BroadContext
    temperature = 0.5
    max_tokens = 800

    def __init__(self, client: TextGenerator, search: Optional[ContextSearchClient] = None):
        super().__init__(client)
        self.search = search

    def build_messages(self, context: StageContext) -> List[Message]:
        request = context.request
        return render(
            BROAD_CONTEXT_TEMPLATE,
            role_name=request.role_name,
            industries=join_or_none(request.industries),
        )

    @staticmethod
    def search_query(context: StageContext) -> str:
        request = context.request
        parts = [request.role_name, "role skills and responsibilities"]
        if request.industries:
            parts.append("in " + ", ".join(request.industries[:3]))
        return " ".join(parts)

    async def attempt(self, context: StageContext) -> StageResult[BroadContext]:
        if self.search is not None:
            try:
                sources = await self.search.search(self.search_query(context))
            except SearchError as e:
                logger.warning("Context search failed, using generation service", session_id=context.session_id, error=str(e))
            else:
                if sources:
                    summary = "\n".join(f"{i + 1}. {s.title}" for i, s in enumerate(sources[:5]) if s.title)
                    return StageResult.ok(
                        BroadContext(
                            summary=summary,
                            themes=[s.title for s in sources if s.title],
                            sources=sources,
                        )
                    )
        return await super().attempt(context)

    def fallback(self, context: StageContext) -> BroadContext:
        return BroadContext(summary="")
