"""
Prompt templates for the pipeline stages.

Every template asks for exactly one JSON object; response recovery tolerates
fences and prose around it. Literal braces are doubled for ChatPromptTemplate.
"""

from typing import Any, Dict, List

from langchain_core.prompts import ChatPromptTemplate

JSON_ONLY_SYSTEM = (
    "You are a workforce analyst who maps the knowledge domain of job roles. "
    "Respond with a single JSON object and nothing else."
)

DOMAIN_ANALYSIS_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", JSON_ONLY_SYSTEM),
    ("user", """Analyse the domain of the role "{role_name}".
Role description: {description}
Industries: {industries}

Return JSON with this shape:
{{"industries": [{{"name": "...", "description": "...", "subIndustries": ["..."]}}],
  "trends": ["..."], "challenges": ["..."], "opportunities": ["..."],
  "keyPlayers": ["..."], "technologies": ["..."]}}
Include every listed industry."""),
])

TERM_EXPANSION_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", JSON_ONLY_SYSTEM),
    ("user", """Expand these seed keywords for the role "{role_name}": {seed_terms}
Industries: {industries}
Domain technologies: {technologies}

Return 10 to 20 related keywords with a relevance between 0 and 1:
{{"expandedKeywords": ["..."], "relevance": {{"keyword": 0.9}}}}"""),
])

BROAD_CONTEXT_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", JSON_ONLY_SYSTEM),
    ("user", """Summarise the current landscape for the role "{role_name}" in {industries}.
Return JSON: {{"summary": "...", "themes": ["..."]}}"""),
])

STRUCTURING_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", JSON_ONLY_SYSTEM),
    ("user", """Organise the knowledge a "{role_name}" needs into a hierarchy.
Role description: {description}
Industries: {industries}
Relevant keywords: {terms}
Context: {context}

Return JSON with 4 to 7 categories, each with 2 to 4 subcategories of 2 to 5 skills:
{{"categories": [{{"name": "...", "description": "...",
  "subcategories": [{{"name": "...", "description": "...",
    "skills": [{{"name": "...", "description": "..."}}]}}]}}]}}"""),
])

CROSS_LINK_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", JSON_ONLY_SYSTEM),
    ("user", """For the role "{role_name}", these are the knowledge categories:
{categories}

Name the meaningful relationships between them, using the category names exactly.
Return JSON: {{"connections": [{{"source": "...", "target": "...", "label": "...", "strength": 0.7}}]}}"""),
])

NODE_EXPANSION_TEMPLATE = ChatPromptTemplate.from_messages([
    ("system", JSON_ONLY_SYSTEM),
    ("user", """In the knowledge graph of the role "{role_name}", expand the topic "{node_name}" ({node_description}).
Existing children: {existing}

Return 4 to 6 more specific sub-topics:
{{"children": [{{"name": "...", "description": "..."}}]}}"""),
])

_ROLE_BY_TYPE = {"system": "system", "human": "user", "ai": "assistant"}


def render(template: ChatPromptTemplate, **variables: Any) -> List[Dict[str, str]]:
    """Format a template into ``{role, content}`` messages."""
    return [
        {"role": _ROLE_BY_TYPE.get(message.type, "user"), "content": str(message.content)}
        for message in template.format_messages(**variables)
    ]


def join_or_none(items: List[str], limit: int = 30) -> str:
    items = [i for i in items if i][:limit]
    return ", ".join(items) if items else "none specified"
