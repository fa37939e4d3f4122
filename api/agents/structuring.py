"""Stage 3: organise the domain into categories, subcategories and skills."""

from typing import List

from api.agents.base import StageAgent, StageContext
from api.agents.prompts import STRUCTURING_TEMPLATE, join_or_none, render
from api.llm.generation_client import Message
from api.schemas.pipeline_state import CategoryItem, Structure, SubcategoryItem
from libs.models.graph import normalize_name

DEFAULT_CATEGORY = "Core Knowledge"


def _dedupe_by_name(items):
    seen = set()
    kept = []
    for item in items:
        key = normalize_name(item.name)
        if key and key not in seen:
            seen.add(key)
            kept.append(item)
    return kept


class StructuringAgent(StageAgent[Structure]):
    name = "structuring"
    schema = Structure
    temperature = 0.7
    max_tokens = 2500

    def build_messages(self, context: StageContext) -> List[Message]:
        request = context.request
        terms = [t.term for t in context.term_expansion.top(20)] if context.term_expansion else request.seed_terms
        summary = context.broad_context.summary if context.broad_context else ""
        return render(
            STRUCTURING_TEMPLATE,
            role_name=request.role_name,
            description=request.description or "not provided",
            industries=join_or_none(request.industries),
            terms=join_or_none(terms),
            context=summary[:1500] or "none",
        )

    def postprocess(self, parsed: Structure, context: StageContext) -> Structure:
        categories = []
        for category in _dedupe_by_name(parsed.categories):
            subcategories = [
                sub.model_copy(update={"skills": _dedupe_by_name(sub.skills)})
                for sub in _dedupe_by_name(category.subcategories)
            ]
            categories.append(category.model_copy(update={"subcategories": subcategories}))
        return Structure(categories=categories)

    def fallback(self, context: StageContext) -> Structure:
        """One category per requested industry, sub-industries as subcategories when known."""
        industries = context.request.industries
        if not industries:
            return Structure(categories=[CategoryItem(name=DEFAULT_CATEGORY)])

        known = {}
        if context.domain_analysis:
            known = {normalize_name(i.name): i for i in context.domain_analysis.industries}

        categories = []
        for name in industries:
            industry = known.get(normalize_name(name))
            subcategories = [SubcategoryItem(name=sub) for sub in industry.sub_industries] if industry else []
            categories.append(
                CategoryItem(
                    name=name,
                    description=industry.description if industry else "",
                    subcategories=_dedupe_by_name(subcategories),
                )
            )
        return Structure(categories=categories)
