"""
Response recovery: turn free-form generated text into a validated object.

Generated text is supposed to hold one JSON object but routinely arrives
wrapped in a fenced block, surrounded by prose, or with stray control
characters and quoting. Recovery goes:

1. take the interior of a fenced block, else the first ``{`` .. last ``}`` span,
   then each balanced ``{`` .. ``}`` object in turn (braces inside strings ignored)
2. parse it
3. on failure, sanitize and parse once more
4. validate against a pydantic schema (optional arrays default to empty)

Nothing here raises past the module boundary: failures come back as a
``ParseFailure`` value.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional, Type, TypeVar, Union

import structlog
from pydantic import BaseModel, ValidationError

from libs.common.errors import ParseFailure

logger = structlog.get_logger(__name__)

T = TypeVar("T", bound=BaseModel)

_FENCE_RE = re.compile(r"```[ \t]*(?:json|JSON)?[ \t]*\n?(.*?)```", re.DOTALL)
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_MISSING_COMMA_RE = re.compile(r'"\s+"')
_SMART_QUOTES = str.maketrans({"“": '"', "”": '"', "‘": "'", "’": "'"})
_MAX_BALANCED_SPANS = 20


def _brace_span(text: str) -> Optional[str]:
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        return None
    return text[start : end + 1]


def _balanced_span(text: str, start: int) -> Optional[str]:
    """The object opening at ``start`` up to its matching brace, or None."""
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : index + 1]
    return None


def _candidates(text: str) -> List[str]:
    """Spans worth parsing, most specific first."""
    found: List[str] = []
    for match in _FENCE_RE.finditer(text):
        interior = match.group(1).strip()
        span = _brace_span(interior)
        if span and span not in found:
            found.append(span)
    span = _brace_span(text)
    if span and span not in found:
        found.append(span)

    start = text.find("{")
    for _ in range(_MAX_BALANCED_SPANS):
        if start < 0:
            break
        span = _balanced_span(text, start)
        if span and span not in found:
            found.append(span)
        start = text.find("{", start + 1)
    return found


def extract_json_block(text: str) -> Optional[str]:
    """Return the span most likely to hold the JSON object, or None."""
    candidates = _candidates(text or "")
    return candidates[0] if candidates else None


def sanitize_json_text(text: str) -> str:
    """Repair the usual damage in generated JSON.

    Control characters become spaces, smart quotes become straight quotes,
    trailing commas are dropped and adjacent strings get their missing comma.
    """
    cleaned = _CONTROL_CHARS_RE.sub(" ", text)
    cleaned = cleaned.translate(_SMART_QUOTES)
    cleaned = _TRAILING_COMMA_RE.sub(r"\1", cleaned)
    cleaned = _MISSING_COMMA_RE.sub('","', cleaned)
    return cleaned


def _parse_span(span: str) -> Union[Dict[str, Any], ParseFailure]:
    try:
        value = json.loads(span)
    except json.JSONDecodeError:
        try:
            value = json.loads(sanitize_json_text(span))
        except json.JSONDecodeError as e:
            return ParseFailure(f"invalid JSON after sanitizing: {e.msg}", span)

    if not isinstance(value, dict):
        return ParseFailure(f"expected a JSON object, got {type(value).__name__}", span)
    return value


def parse_json_object(text: str) -> Union[Dict[str, Any], ParseFailure]:
    """Extract and parse the JSON object embedded in ``text``."""
    candidates = _candidates(text or "")
    if not candidates:
        return ParseFailure("no JSON object found in response", text or "")

    failure: Optional[ParseFailure] = None
    for span in candidates:
        result = _parse_span(span)
        if isinstance(result, dict):
            return result
        failure = failure or result
    return failure


def _describe_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors()[:5]:
        location = ".".join(str(p) for p in item.get("loc", ()))
        parts.append(f"{location or '<root>'}: {item.get('msg')}")
    return "; ".join(parts)


def recover_json(text: str, schema: Type[T]) -> Union[T, ParseFailure]:
    """Recover a ``schema`` instance from generated text.

    Args:
        text: Raw generated text.
        schema: Pydantic model describing required and optional keys.

    Returns:
        The validated model, or a ParseFailure describing what went wrong.
    """
    parsed = parse_json_object(text)
    if isinstance(parsed, ParseFailure):
        logger.warning("Response recovery failed", schema=schema.__name__, reason=parsed.reason)
        return parsed

    try:
        return schema.model_validate(parsed)
    except ValidationError as e:
        failure = ParseFailure(f"schema mismatch: {_describe_validation_error(e)}", text or "")
        logger.warning("Response recovery failed", schema=schema.__name__, reason=failure.reason)
        return failure
