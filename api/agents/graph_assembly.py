"""Stage 4: assemble the role graph.

The generation call only proposes cross-links between categories; everything
else is built deterministically from the earlier stage outputs:

- root (level 0) named after the role
- categories, subcategories and skills at their depth in the hierarchy
- keyword nodes under every skill whose name matches a term, one node per
  normalized term name however many skills match it
- industry and trend nodes from the domain analysis, directly under root
- ``key_concept`` edges from root to the most relevant terms
"""

from typing import List, Optional

import structlog

from api.agents.base import StageAgent, StageContext
from api.agents.prompts import CROSS_LINK_TEMPLATE, render
from api.agents.structuring import DEFAULT_CATEGORY
from api.llm.generation_client import Message, TextGenerator
from api.schemas.pipeline_state import CategoryItem, CrossLink, CrossLinks, Structure
from api.tools.graph_builder import GraphBuilder
from libs.models.graph import GraphNode, KnowledgeGraph, NodeType, normalize_name

logger = structlog.get_logger(__name__)

KEY_CONCEPT = "key_concept"
RELATED = "related"


def _term_matches(term: str, skill_name: str) -> bool:
    term_key = normalize_name(term)
    skill_key = normalize_name(skill_name)
    if not term_key or term_key == skill_key:
        return False
    return term_key in skill_key or skill_key in term_key


class GraphAssemblyAgent(StageAgent[KnowledgeGraph]):
    name = "graph_assembly"
    schema = CrossLinks
    temperature = 0.5
    max_tokens = 1200

    def __init__(self, client: TextGenerator, key_concept_limit: int = 5, max_trend_nodes: int = 5):
        super().__init__(client)
        self.key_concept_limit = key_concept_limit
        self.max_trend_nodes = max_trend_nodes

    @staticmethod
    def _structure(context: StageContext) -> Structure:
        return context.structure or Structure(categories=[CategoryItem(name=DEFAULT_CATEGORY)])

    def build_messages(self, context: StageContext) -> List[Message]:
        lines = []
        for category in self._structure(context).categories:
            subs = ", ".join(s.name for s in category.subcategories) or "no subcategories"
            lines.append(f"- {category.name}: {subs}")
        return render(CROSS_LINK_TEMPLATE, role_name=context.request.role_name, categories="\n".join(lines))

    def postprocess(self, parsed: CrossLinks, context: StageContext) -> KnowledgeGraph:
        return self.assemble(context, parsed.connections)

    def fallback(self, context: StageContext) -> KnowledgeGraph:
        return self.assemble(context, [])

    def assemble(self, context: StageContext, cross_links: List[CrossLink]) -> KnowledgeGraph:
        request = context.request
        builder = GraphBuilder()
        root = builder.add_root(request.role_name, request.description)

        skills: List[GraphNode] = []
        for category in self._structure(context).categories:
            category_node = builder.add_node(category.name, NodeType.CATEGORY, root, category.description)
            for sub in category.subcategories:
                sub_node = builder.add_node(sub.name, NodeType.SUBCATEGORY, category_node, sub.description)
                for skill in sub.skills:
                    skills.append(builder.add_node(skill.name, NodeType.SKILL, sub_node, skill.description))

        self._attach_keywords(builder, skills, context)
        self._attach_domain(builder, root, context)
        self._attach_key_concepts(builder, root, context)
        self._attach_cross_links(builder, root, cross_links)

        graph = builder.build()
        logger.info(
            "Graph assembled",
            session_id=context.session_id,
            nodes=len(graph.nodes),
            edges=len(graph.edges),
            cross_links=len(cross_links),
        )
        return graph

    def _attach_keywords(self, builder: GraphBuilder, skills: List[GraphNode], context: StageContext) -> None:
        if not context.term_expansion:
            return
        for skill in skills:
            for term in context.term_expansion.terms:
                if not _term_matches(term.term, skill.name):
                    continue
                existing = builder.find(term.term, (NodeType.KEYWORD,))
                if existing is not None:
                    builder.add_edge(skill.id, existing.id, RELATED, term.relevance)
                else:
                    builder.add_node(term.term, NodeType.KEYWORD, skill, strength=term.relevance)

    def _attach_domain(self, builder: GraphBuilder, root: GraphNode, context: StageContext) -> None:
        analysis = context.domain_analysis
        if not analysis:
            return
        for industry in analysis.industries:
            if builder.find(industry.name) is None:
                builder.add_node(industry.name, NodeType.INDUSTRY, root, industry.description, edge_label="industry")
        for trend in analysis.trends[: self.max_trend_nodes]:
            if builder.find(trend) is None:
                builder.add_node(trend, NodeType.TREND, root, edge_label="trend")

    def _attach_key_concepts(self, builder: GraphBuilder, root: GraphNode, context: StageContext) -> None:
        if not context.term_expansion or self.key_concept_limit <= 0:
            return
        for term in context.term_expansion.top(self.key_concept_limit):
            existing = builder.find(term.term)
            if existing is None:
                builder.add_node(term.term, NodeType.KEYWORD, root, edge_label=KEY_CONCEPT, strength=term.relevance)
            elif existing.id != root.id and not builder.has_edge(root.id, existing.id):
                builder.add_edge(root.id, existing.id, KEY_CONCEPT, term.relevance)

    def _attach_cross_links(self, builder: GraphBuilder, root: GraphNode, cross_links: List[CrossLink]) -> None:
        for link in cross_links:
            source = self._resolve_endpoint(builder, root, link.source)
            target = self._resolve_endpoint(builder, root, link.target)
            builder.add_edge(source.id, target.id, link.label, link.strength)

    @staticmethod
    def _resolve_endpoint(builder: GraphBuilder, root: GraphNode, name: str) -> GraphNode:
        """Existing node by name, else a new category under root so the link is kept."""
        node = builder.find(name)
        if node is None:
            logger.debug("Cross-link endpoint unknown, attaching to root", name=name)
            node = builder.add_node(name, NodeType.CATEGORY, root)
        return node
