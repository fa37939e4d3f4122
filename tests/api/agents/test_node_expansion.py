"""Tests for single-node expansion."""

import pytest

from api.agents.node_expansion import (
    NodeExpansionAgent,
    apply_expansion,
    expansion_context,
    template_children,
)
from api.schemas.pipeline_state import ExpansionChild, NodeExpansion, ResultKind
from api.tools.graph_builder import GraphBuilder
from libs.common.errors import NodeNotFoundError
from libs.models.graph import KnowledgeGraph, NodeType
from tests.helpers import ScriptedGenerator


@pytest.fixture
def graph() -> KnowledgeGraph:
    builder = GraphBuilder()
    root = builder.add_root("Product Manager")
    strategy = builder.add_node("Product Strategy", NodeType.CATEGORY, root)
    roadmap = builder.add_node("Roadmapping", NodeType.SUBCATEGORY, strategy)
    builder.add_node("Prioritisation", NodeType.SKILL, roadmap)
    return builder.build()


class TestTemplates:
    """Deterministic fallback children."""

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("Digital Channels", "Digital Transformation"),
            ("Big Data", "Data Visualization"),
            ("Go-to-market strategy", "Strategic Planning"),
        ],
    )
    def test_keyword_templates(self, name, expected):
        assert template_children(name)[0].name == expected

    def test_generic_template(self):
        names = [c.name for c in template_children("Negotiation")]

        assert names == [
            "Advanced Negotiation Approach",
            "Strategic Negotiation Methodology",
            "Modern Negotiation Framework",
            "Innovative Negotiation Practice",
        ]


class TestExpansionContext:
    def test_context_lists_existing_children(self, graph):
        strategy = graph.find_by_name("Product Strategy")

        context = expansion_context("s1", graph, strategy.id)

        assert context.role_name == "Product Manager"
        assert context.existing_children == ("Roadmapping",)

    def test_unknown_node(self, graph):
        with pytest.raises(NodeNotFoundError):
            expansion_context("s1", graph, "missing")


class TestApplyExpansion:
    def test_children_of_category_are_subcategories(self, graph):
        strategy = graph.find_by_name("Product Strategy")
        expansion = NodeExpansion(children=[ExpansionChild(name="Pricing"), ExpansionChild(name="roadmapping")])

        expanded = apply_expansion(graph, strategy.id, expansion)
        children = expanded.children_of(strategy.id)

        assert [c.name for c in children] == ["Roadmapping", "Pricing"]
        pricing = expanded.find_by_name("Pricing")
        assert pricing.type is NodeType.SUBCATEGORY
        assert pricing.level == 2
        assert (strategy.id, pricing.id) in {e.key for e in expanded.edges}

    def test_children_below_subcategory_are_skills(self, graph):
        roadmap = graph.find_by_name("Roadmapping")

        expanded = apply_expansion(graph, roadmap.id, NodeExpansion(children=[ExpansionChild(name="OKRs")]))

        okrs = expanded.find_by_name("OKRs")
        assert okrs.type is NodeType.SKILL
        assert okrs.level == 3


class TestNodeExpansionAgent:
    @pytest.mark.asyncio
    async def test_caps_children_at_six(self, graph):
        client = ScriptedGenerator({"node_expansion": {"subNodes": [f"Topic {i}" for i in range(9)]}})
        agent = NodeExpansionAgent(client)
        context = expansion_context("s1", graph, graph.find_by_name("Product Strategy").id)

        result = await agent.run(context)

        assert result.kind is ResultKind.OK
        assert len(result.value.children) == 6
        assert "Product Strategy" in client.messages["node_expansion"][1]["content"]

    @pytest.mark.asyncio
    async def test_falls_back_to_templates(self, graph):
        agent = NodeExpansionAgent(ScriptedGenerator({"node_expansion": {"children": []}}))
        context = expansion_context("s1", graph, graph.find_by_name("Product Strategy").id)

        result = await agent.run(context)

        assert result.kind is ResultKind.FALLBACK
        assert result.value.children[0].name == "Strategic Planning"
