"""
Tests for the pipeline stage agents.

Each agent is driven by a scripted generation client; these tests cover the
recovered happy path, post-processing rules and the deterministic fallbacks.
"""

from unittest.mock import AsyncMock

import pytest

from api.agents.base import StageContext
from api.agents.broad_context import BroadContextAgent
from api.agents.domain_analysis import DomainAnalysisAgent
from api.agents.graph_assembly import GraphAssemblyAgent
from api.agents.structuring import DEFAULT_CATEGORY, StructuringAgent
from api.agents.term_expansion import TermExpansionAgent
from api.schemas.pipeline_state import (
    ContextSource,
    DomainAnalysis,
    ExpandedTerm,
    Industry,
    PipelineRequest,
    ResultKind,
    Structure,
    TermExpansion,
)
from libs.common.errors import ConfigError, GenerationTimeout, ParseFailure, SearchError
from libs.models.graph import NodeType
from tests.helpers import DOMAIN_ANALYSIS_RESPONSE, ScriptedGenerator


@pytest.fixture
def context() -> StageContext:
    return StageContext(
        request=PipelineRequest(
            role_name="Data Engineer",
            industries=["Finance", "Healthcare"],
            seed_terms=["Python", "SQL"],
            session_id="agents",
        )
    )


class TestStageAgentBase:
    """Shared attempt/run behaviour, exercised through the domain agent."""

    @pytest.mark.asyncio
    async def test_generation_error_becomes_fallback(self, context):
        agent = DomainAnalysisAgent(ScriptedGenerator({"domain_analysis": GenerationTimeout("slow")}))

        result = await agent.run(context)

        assert result.kind is ResultKind.FALLBACK
        assert "slow" in result.reason
        assert [i.name for i in result.value.industries] == ["Finance", "Healthcare"]

    @pytest.mark.asyncio
    async def test_attempt_reports_schema_mismatch(self, context):
        agent = DomainAnalysisAgent(ScriptedGenerator({"domain_analysis": {"trends": ["AI"]}}))

        result = await agent.attempt(context)

        assert result.kind is ResultKind.ERR
        assert isinstance(result.error, ParseFailure)
        assert result.reason.startswith("schema mismatch")

    @pytest.mark.asyncio
    async def test_config_error_propagates(self, context):
        agent = DomainAnalysisAgent(ScriptedGenerator({"domain_analysis": ConfigError("no key")}))

        with pytest.raises(ConfigError):
            await agent.run(context)

    @pytest.mark.asyncio
    async def test_messages_carry_request(self, context):
        client = ScriptedGenerator({"domain_analysis": DOMAIN_ANALYSIS_RESPONSE})
        agent = DomainAnalysisAgent(client)

        await agent.run(context)

        system, user = client.messages["domain_analysis"]
        assert system["role"] == "system"
        assert "Data Engineer" in user["content"]
        assert "Finance, Healthcare" in user["content"]


class TestDomainAnalysisAgent:
    """Stage 1 post-processing."""

    @pytest.mark.asyncio
    async def test_adds_missing_requested_industries_once(self, context):
        response = {
            "industries": [{"name": "Finance"}, {"name": "finance"}, "Insurance"],
            "trends": ["Open banking"],
        }
        agent = DomainAnalysisAgent(ScriptedGenerator({"domain_analysis": response}))

        result = await agent.run(context)

        assert result.kind is ResultKind.OK
        assert [i.name for i in result.value.industries] == ["Finance", "Insurance", "Healthcare"]
        assert result.value.trends == ["Open banking"]

    @pytest.mark.asyncio
    async def test_accepts_prose_around_json(self, context):
        text = 'Sure! Here is the analysis: {"industries": ["Finance"], "keyPlayers": ["Stripe"]} Hope this helps.'
        agent = DomainAnalysisAgent(ScriptedGenerator({"domain_analysis": text}))

        result = await agent.run(context)

        assert result.kind is ResultKind.OK
        assert result.value.key_players == ["Stripe"]


    @pytest.mark.asyncio
    async def test_blank_industry_names_dropped(self, context):
        response = {"industries": ["Finance", "   ", {"name": "  Insurance "}, {"name": ""}]}
        agent = DomainAnalysisAgent(ScriptedGenerator({"domain_analysis": response}))

        result = await agent.run(context)

        assert result.kind is ResultKind.OK
        assert [i.name for i in result.value.industries] == ["Finance", "Insurance", "Healthcare"]


class TestTermExpansionAgent:
    """Stage 2 keyword scoring."""

    @pytest.mark.asyncio
    async def test_seeds_first_then_scored_terms(self, context):
        response = {"expandedKeywords": ["Spark", "python", "dbt"], "relevance": {"Spark": 8, "dbt": 0.4}}
        agent = TermExpansionAgent(ScriptedGenerator({"term_expansion": response}))

        result = await agent.run(context)
        terms = {t.term: t.relevance for t in result.value.terms}

        assert [t.term for t in result.value.terms] == ["Python", "SQL", "Spark", "dbt"]
        assert terms["Python"] == 1.0
        assert terms["Spark"] == pytest.approx(0.8)
        assert terms["dbt"] == pytest.approx(0.4)

    @pytest.mark.asyncio
    async def test_unscored_term_gets_default(self, context):
        response = {"keywords": ["Spark", "Kafka"], "relevance": {"Spark": 0.9}}
        agent = TermExpansionAgent(ScriptedGenerator({"term_expansion": response}))

        result = await agent.run(context)
        terms = {t.term: t.relevance for t in result.value.terms}

        assert terms["Kafka"] == 0.5

    @pytest.mark.asyncio
    async def test_no_scores_means_full_relevance(self, context):
        agent = TermExpansionAgent(ScriptedGenerator({"term_expansion": {"terms": ["Kafka"]}}))

        result = await agent.run(context)

        assert result.value.terms[-1] == ExpandedTerm(term="Kafka", relevance=1.0)

    @pytest.mark.asyncio
    async def test_fallback_is_seed_terms(self, context):
        agent = TermExpansionAgent(ScriptedGenerator())

        result = await agent.run(context)

        assert result.kind is ResultKind.FALLBACK
        assert [(t.term, t.relevance) for t in result.value.terms] == [("Python", 1.0), ("SQL", 1.0)]

    def test_top_orders_by_relevance(self):
        expansion = TermExpansion(
            terms=[ExpandedTerm(term="a", relevance=0.2), ExpandedTerm(term="b", relevance=0.9), ExpandedTerm(term="c", relevance=0.9)]
        )

        assert [t.term for t in expansion.top(2)] == ["b", "c"]


class TestBroadContextAgent:
    """Stage 2 context sub-task."""

    @pytest.mark.asyncio
    async def test_uses_search_results_when_available(self, context):
        search = AsyncMock()
        search.search.return_value = [ContextSource(title="Data engineering in 2025", url="https://example.com")]
        client = ScriptedGenerator()
        agent = BroadContextAgent(client, search=search)

        result = await agent.run(context)

        assert result.kind is ResultKind.OK
        assert result.value.themes == ["Data engineering in 2025"]
        assert result.value.sources[0].url == "https://example.com"
        assert client.calls == []
        query = search.search.await_args.args[0]
        assert "Data Engineer" in query

    @pytest.mark.asyncio
    async def test_search_failure_uses_generation(self, context):
        search = AsyncMock()
        search.search.side_effect = SearchError("down")
        client = ScriptedGenerator({"broad_context": {"overview": "Pipelines everywhere"}})
        agent = BroadContextAgent(client, search=search)

        result = await agent.run(context)

        assert result.kind is ResultKind.OK
        assert result.value.summary == "Pipelines everywhere"
        assert client.calls == ["broad_context"]

    @pytest.mark.asyncio
    async def test_fallback_is_empty_summary(self, context):
        agent = BroadContextAgent(ScriptedGenerator())

        result = await agent.run(context)

        assert result.kind is ResultKind.FALLBACK
        assert result.value.summary == ""


class TestStructuringAgent:
    """Stage 3 hierarchy recovery and fallback."""

    @pytest.mark.asyncio
    async def test_duplicates_removed(self, context):
        response = {
            "categories": [
                {"name": "Pipelines", "subcategories": [{"name": "Batch", "skills": ["Spark", "spark", "Hive"]}]},
                {"name": "pipelines"},
            ]
        }
        agent = StructuringAgent(ScriptedGenerator({"structuring": response}))

        result = await agent.run(context)

        assert [c.name for c in result.value.categories] == ["Pipelines"]
        assert [s.name for s in result.value.categories[0].subcategories[0].skills] == ["Spark", "Hive"]

    @pytest.mark.asyncio
    async def test_flat_node_list_is_folded(self, context):
        response = {
            "nodes": [
                {"id": "3", "name": "Spark", "level": 3, "parentId": "2"},
                {"id": "1", "name": "Pipelines", "level": 1},
                {"id": "2", "name": "Batch", "level": 2, "parentId": "1"},
            ]
        }
        agent = StructuringAgent(ScriptedGenerator({"structuring": response}))

        result = await agent.run(context)
        category = result.value.categories[0]

        assert category.name == "Pipelines"
        assert category.subcategories[0].name == "Batch"
        assert category.subcategories[0].skills[0].name == "Spark"

    @pytest.mark.asyncio
    async def test_empty_categories_fall_back_to_industries(self, context):
        analysis = DomainAnalysis(industries=[Industry(name="Finance", sub_industries=["Payments"])])
        ctx = StageContext(request=context.request, domain_analysis=analysis)
        agent = StructuringAgent(ScriptedGenerator({"structuring": {"categories": []}}))

        result = await agent.run(ctx)

        assert result.kind is ResultKind.FALLBACK
        assert [c.name for c in result.value.categories] == ["Finance", "Healthcare"]
        assert [s.name for s in result.value.categories[0].subcategories] == ["Payments"]
        assert result.value.categories[1].subcategories == []

    @pytest.mark.asyncio
    async def test_fallback_without_industries(self):
        ctx = StageContext(request=PipelineRequest(role_name="Chef"))
        agent = StructuringAgent(ScriptedGenerator())

        result = await agent.run(ctx)

        assert [c.name for c in result.value.categories] == [DEFAULT_CATEGORY]


class TestGraphAssemblyAgent:
    """Stage 4 assembly from earlier outputs."""

    @pytest.fixture
    def assembly_context(self, context) -> StageContext:
        return StageContext(
            request=context.request,
            domain_analysis=DomainAnalysis.model_validate({"industries": ["Finance", " "], "trends": ["   "]}),
            structure=Structure.model_validate(
                {"categories": [{"name": "Pipelines", "subcategories": [{"name": "  ", "skills": ["Spark"]}, {"name": "Batch", "skills": [" ", "Spark"]}]}]}
            ),
        )

    @pytest.mark.asyncio
    async def test_blank_names_never_become_nodes(self, assembly_context):
        response = {"connections": [{"source": " ", "target": "Pipelines"}, {"source": "Pipelines", "target": "Finance"}]}
        agent = GraphAssemblyAgent(ScriptedGenerator({"graph_assembly": response}))

        result = await agent.run(assembly_context)
        graph = result.value

        assert result.kind is ResultKind.OK
        assert all(node.name.strip() for node in graph.nodes)
        assert [n.name for n in graph.nodes if n.type is NodeType.INDUSTRY] == ["Finance"]
        assert [n.name for n in graph.nodes if n.type is NodeType.SUBCATEGORY] == ["Batch"]
        pipelines, finance = graph.find_by_name("Pipelines"), graph.find_by_name("Finance")
        assert (pipelines.id, finance.id) in {(e.source, e.target) for e in graph.edges}

    def test_fallback_builds_graph(self, assembly_context):
        graph = GraphAssemblyAgent(ScriptedGenerator()).fallback(assembly_context)

        assert graph.root.name == "Data Engineer"
        assert graph.find_by_name("Spark").type is NodeType.SKILL
