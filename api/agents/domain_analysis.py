"""Stage 1: industries, trends and the wider domain of the role."""

from typing import List

from api.agents.base import StageAgent, StageContext
from api.agents.prompts import DOMAIN_ANALYSIS_TEMPLATE, join_or_none, render
from api.llm.generation_client import Message
from api.schemas.pipeline_state import DomainAnalysis, Industry
from libs.models.graph import normalize_name


class DomainAnalysisAgent(StageAgent[DomainAnalysis]):
    name = "domain_analysis"
    schema = DomainAnalysis
    temperature = 0.7
    max_tokens = 2000

    def build_messages(self, context: StageContext) -> List[Message]:
        request = context.request
        return render(
            DOMAIN_ANALYSIS_TEMPLATE,
            role_name=request.role_name,
            description=request.description or "not provided",
            industries=join_or_none(request.industries),
        )

    def postprocess(self, parsed: DomainAnalysis, context: StageContext) -> DomainAnalysis:
        """Make sure every requested industry is represented, once."""
        industries: List[Industry] = []
        seen = set()
        for industry in parsed.industries:
            key = normalize_name(industry.name)
            if key not in seen:
                seen.add(key)
                industries.append(industry)
        for name in context.request.industries:
            if normalize_name(name) not in seen:
                seen.add(normalize_name(name))
                industries.append(Industry(name=name))
        return parsed.model_copy(update={"industries": industries})

    def fallback(self, context: StageContext) -> DomainAnalysis:
        return DomainAnalysis(industries=[Industry(name=name) for name in context.request.industries])
