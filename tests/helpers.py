"""Test doubles and canned stage responses shared across the suite."""

import asyncio
import inspect
import json
from typing import Any, Dict, List, Optional

from api.progress.channel import CLOSED
from libs.common.errors import UnknownGenerationError


class ScriptedGenerator:
    """Generation client double answering by stage tag.

    A scripted answer may be a string, a dict (sent as JSON), an exception
    instance (raised), or a callable / coroutine function receiving the
    messages and returning one of those. Unscripted stages fail with
    ``UnknownGenerationError`` so they fall back.
    """

    def __init__(self, responses: Optional[Dict[str, Any]] = None):
        self.responses: Dict[str, Any] = dict(responses or {})
        self.calls: List[str] = []
        self.messages: Dict[str, List[Dict[str, str]]] = {}

    async def generate(self, messages, temperature=0.7, max_tokens=1500, *, tag=None):
        self.calls.append(tag)
        self.messages[tag] = list(messages)
        if tag not in self.responses:
            raise UnknownGenerationError(f"No scripted response for {tag}", upstream_status=500)

        response = self.responses[tag]
        if inspect.iscoroutinefunction(response):
            response = await response(messages)
        elif callable(response) and not isinstance(response, BaseException):
            response = response(messages)

        if isinstance(response, BaseException):
            raise response
        if isinstance(response, dict):
            return json.dumps(response)
        return response


DOMAIN_ANALYSIS_RESPONSE = {
    "industries": [{"name": "Finance", "description": "Banking and payments", "subIndustries": ["Retail Banking", "Payments"]}],
    "trends": ["Real-time analytics", "Data mesh"],
    "challenges": ["Legacy systems"],
    "keyPlayers": ["Snowflake"],
    "technologies": ["Spark", "dbt"],
}

TERM_EXPANSION_RESPONSE = {
    "expandedKeywords": ["SQL", "Data Modeling", "Airflow"],
    "relevance": {"SQL": 0.9, "Data Modeling": 0.8, "Airflow": 0.7},
}

BROAD_CONTEXT_RESPONSE = {"summary": "Data engineers build and run data pipelines.", "themes": ["Streaming"]}

STRUCTURING_RESPONSE = {
    "categories": [
        {
            "name": "Data Pipelines",
            "description": "Moving data",
            "subcategories": [
                {"name": "Orchestration", "skills": [{"name": "Airflow DAG design"}, {"name": "Workflow scheduling"}]},
                {"name": "Batch Processing", "skills": ["Spark jobs"]},
            ],
        },
        {
            "name": "Data Storage",
            "subcategories": [{"name": "Warehousing", "skills": ["SQL tuning", "Data Modeling basics"]}],
        },
    ]
}

CROSS_LINK_RESPONSE = {"connections": [{"source": "Data Pipelines", "target": "Data Storage", "label": "feeds", "strength": 8}]}


def full_script() -> Dict[str, Any]:
    """Canned successful answers for every stage."""
    return {
        "domain_analysis": DOMAIN_ANALYSIS_RESPONSE,
        "term_expansion": TERM_EXPANSION_RESPONSE,
        "broad_context": BROAD_CONTEXT_RESPONSE,
        "structuring": "Here is the hierarchy:\n```json\n" + json.dumps(STRUCTURING_RESPONSE) + "\n```",
        "graph_assembly": CROSS_LINK_RESPONSE,
    }


def drain(queue: asyncio.Queue) -> list:
    """Collect every event already delivered to a subscription, up to the close marker."""
    events = []
    while not queue.empty():
        item = queue.get_nowait()
        if item is CLOSED:
            break
        events.append(item)
    return events
