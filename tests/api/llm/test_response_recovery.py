"""Tests for recovering structured output from generated text."""

import pytest
from pydantic import BaseModel, Field

from api.llm.response_recovery import (
    extract_json_block,
    parse_json_object,
    recover_json,
    sanitize_json_text,
)
from api.schemas.pipeline_state import BroadContext, Structure
from libs.common.errors import ParseFailure


class Sample(BaseModel):
    name: str
    tags: list[str] = Field(default_factory=list)


class TestExtraction:
    """Finding the JSON span."""

    def test_fenced_block_preferred(self):
        text = 'Intro.\n```json\n{"name": "fenced"}\n```\nTrailing.'

        assert extract_json_block(text) == '{"name": "fenced"}'

    def test_bare_fence(self):
        text = '```\n{"name": "bare"}\n```'

        assert extract_json_block(text) == '{"name": "bare"}'

    def test_prose_around_object(self):
        text = 'Sure, here you go: {"name": "inline"} Let me know if you need more.'

        assert extract_json_block(text) == '{"name": "inline"}'

    def test_no_object(self):
        assert extract_json_block("nothing structured here") is None
        assert extract_json_block("") is None

    def test_object_followed_by_braced_prose(self):
        text = 'Here you go: {"name": "inline", "tags": [2]} -- note: {placeholder} omitted.'

        assert parse_json_object(text) == {"name": "inline", "tags": [2]}

    def test_braces_inside_strings_stay_in_the_object(self):
        text = '{draft} Final: {"name": "uses {curly} braces", "tags": ["}"]} see {notes}'

        assert recover_json(text, Sample) == Sample(name="uses {curly} braces", tags=["}"])


class TestSanitizing:
    def test_trailing_commas_and_smart_quotes(self):
        text = '{“name”: “x”, "tags": ["a", "b",],}'

        assert parse_json_object(text) == {"name": "x", "tags": ["a", "b"]}

    def test_control_characters_replaced(self):
        assert "\x07" not in sanitize_json_text('{"name": "a\x07b"}')

    def test_missing_comma_between_strings(self):
        text = '{"tags": ["a" "b"]}'

        assert parse_json_object(text) == {"tags": ["a", "b"]}


class TestRecoverJson:
    """End-to-end recovery against a schema."""

    def test_valid_object(self):
        result = recover_json('{"name": "ok", "tags": ["x"]}', Sample)

        assert result == Sample(name="ok", tags=["x"])

    def test_optional_arrays_default_to_empty(self):
        result = recover_json('{"name": "ok"}', Sample)

        assert result.tags == []

    def test_missing_required_key_is_parse_failure(self):
        result = recover_json('{"tags": []}', Sample)

        assert isinstance(result, ParseFailure)
        assert result.reason.startswith("schema mismatch")
        assert "name" in result.reason

    def test_unparseable_text_is_parse_failure(self):
        result = recover_json("{ this is not json at all", Sample)

        assert isinstance(result, ParseFailure)

    def test_array_without_object_rejected(self):
        result = recover_json('["x", "y"]', Sample)

        assert isinstance(result, ParseFailure)

    def test_key_variants_accepted(self):
        result = recover_json('{"overview": "Context text", "keyThemes": ["AI"]}', BroadContext)

        assert result.summary == "Context text"
        assert result.themes == ["AI"]

    def test_structure_requires_a_category(self):
        result = recover_json('{"categories": []}', Structure)

        assert isinstance(result, ParseFailure)

    @pytest.mark.parametrize(
        "text",
        [
            '{"name": "a"}',
            'Result:\n```json\n{"name": "a"}\n```',
            'The answer is {"name": "a"} as requested.',
            '```JSON\n{"name": "a",}\n```',
        ],
    )
    def test_wrappings_recover_same_value(self, text):
        assert recover_json(text, Sample) == Sample(name="a")

    def test_equal_failures_compare_by_reason(self):
        assert ParseFailure("x", "raw one") == ParseFailure("x", "raw two")
