"""Stage 2: expand the seed terms into a relevance-scored keyword set."""

from typing import Dict, List

from api.agents.base import StageAgent, StageContext
from api.agents.prompts import TERM_EXPANSION_TEMPLATE, join_or_none, render
from api.llm.generation_client import Message
from api.schemas.pipeline_state import ExpandedTerm, TermExpansion, TermExpansionPayload
from libs.models.graph import normalize_name

SEED_RELEVANCE = 1.0
DEFAULT_RELEVANCE = 0.5


def _clamp(value: float) -> float:
    if value > 1.0:
        value = value / 10.0
    return min(max(value, 0.0), 1.0)


class TermExpansionAgent(StageAgent[TermExpansion]):
    name = "term_expansion"
    schema = TermExpansionPayload
    temperature = 0.7
    max_tokens = 1500

    def build_messages(self, context: StageContext) -> List[Message]:
        request = context.request
        analysis = context.domain_analysis
        return render(
            TERM_EXPANSION_TEMPLATE,
            role_name=request.role_name,
            seed_terms=join_or_none(request.seed_terms),
            industries=join_or_none(request.industries),
            technologies=join_or_none(analysis.technologies if analysis else []),
        )

    def postprocess(self, parsed: TermExpansionPayload, context: StageContext) -> TermExpansion:
        """Seeds first at full relevance, then generated terms, deduplicated by normalized name."""
        scores: Dict[str, float] = {normalize_name(k): v for k, v in parsed.relevance.items()}
        # Without any scores every term counts as fully relevant
        default = DEFAULT_RELEVANCE if scores else SEED_RELEVANCE
        terms: List[ExpandedTerm] = []
        seen = set()

        for seed in context.request.seed_terms:
            key = normalize_name(seed)
            if key not in seen:
                seen.add(key)
                terms.append(ExpandedTerm(term=seed, relevance=SEED_RELEVANCE))

        for term in parsed.expanded_terms:
            key = normalize_name(term)
            if not key or key in seen:
                continue
            seen.add(key)
            terms.append(ExpandedTerm(term=term, relevance=_clamp(scores.get(key, default))))

        return TermExpansion(terms=terms)

    def fallback(self, context: StageContext) -> TermExpansion:
        return TermExpansion(
            terms=[ExpandedTerm(term=seed, relevance=SEED_RELEVANCE) for seed in context.request.seed_terms]
        )
