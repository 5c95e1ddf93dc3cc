"""Parse untrusted model output into a validated AgentResponse.

Parsing runs in two phases. First the text is decoded into a loose
dict (extraction, ``json.loads`` and a fixed list of shape-recovery rules).
Then each field is normalized by its own function, which either returns the
normalized value or raises ParseError.
"""

import json
import logging
import re
from collections.abc import Callable
from typing import Any

from twofer.models import VERDICTS, AgentResponse, Section, Verdict

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```\w*\s*\n(.*?)\n\s*```", re.DOTALL)
_NON_LETTERS_RE = re.compile(r"[^a-z_]")

_APPROVE_SYNONYMS = {"accepted", "accept", "agree", "agreed", "lgtm", "approved"}
_REJECT_SYNONYMS = {"denied", "deny", "disagree", "rejected"}

# Keys some models wrap the real payload in.
_WRAPPER_KEYS = ("specification", "response", "result", "design", "spec", "proposal")

# Descriptive fields joined when a change request arrives as an object.
_CHANGE_REQUEST_FIELDS = ("title", "description", "change", "reason", "request", "content")


class ParseError(Exception):
    """Raised (or returned) when model output cannot be turned into a response."""


# --- Phase 1: structural decode ---

def extract_json(raw: str) -> str:
    """Pull the JSON payload out of free text.

    Prefers a fenced code block, then a top-level array that decodes on its
    own, then the span from the first ``{`` to the last ``}``, then the raw
    text unchanged.
    """
    fence = _FENCE_RE.search(raw)
    if fence:
        return fence.group(1).strip()

    start = raw.find("{")
    array_start = raw.find("[")
    array_end = raw.rfind("]")
    if array_start != -1 and (start == -1 or array_start < start) and array_end > array_start:
        candidate = raw[array_start:array_end + 1]
        try:
            json.loads(candidate)
            return candidate
        except json.JSONDecodeError:
            pass

    end = raw.rfind("}")
    if start != -1 and end > start:
        return raw[start:end + 1]

    return raw


def _looks_like_section_list(value: Any) -> bool:
    return (
        isinstance(value, list)
        and len(value) > 0
        and isinstance(value[0], dict)
        and bool(value[0].get("title"))
        and bool(value[0].get("content"))
    )


def _has_sections(obj: dict[str, Any]) -> bool:
    sections = obj.get("sections")
    return isinstance(sections, list) and len(sections) > 0


def _hoist_wrapper(obj: dict[str, Any]) -> dict[str, Any]:
    for key in _WRAPPER_KEYS:
        inner = obj.get(key)
        if isinstance(inner, dict) and _has_sections(inner):
            return {**obj, **inner}
    return obj


def _hoist_section_array(obj: dict[str, Any]) -> dict[str, Any]:
    for value in obj.values():
        if _looks_like_section_list(value):
            return {**obj, "sections": value}
    return obj


SHAPE_RULES: list[Callable[[dict[str, Any]], dict[str, Any]]] = [
    _hoist_wrapper,
    _hoist_section_array,
]


def recover_shape(obj: dict[str, Any]) -> dict[str, Any]:
    """Apply SHAPE_RULES in order until ``sections`` is a non-empty list."""
    for rule in SHAPE_RULES:
        if _has_sections(obj):
            break
        obj = rule(obj)
    return obj


def decode(raw: str) -> dict[str, Any]:
    """Extract, decode and reshape raw text into a loosely-typed dict.

    Raises:
        ParseError: If no JSON object can be decoded.
    """
    try:
        parsed = json.loads(extract_json(raw))
    except json.JSONDecodeError as exc:
        raise ParseError(f"Invalid JSON: {exc}") from exc

    if _looks_like_section_list(parsed):
        parsed = {"sections": parsed}
    if not isinstance(parsed, dict):
        raise ParseError(f"Expected a JSON object, got {type(parsed).__name__}")

    return recover_shape(parsed)


# --- Phase 2: field normalization ---

def normalize_verdict(value: Any) -> Verdict:
    """Map any verdict-like value onto approve / reject / suggest_changes.

    Unknown values fall back to suggest_changes, never to approve.
    """
    if not isinstance(value, str):
        return "suggest_changes"
    s = _NON_LETTERS_RE.sub("", value.strip().lower())
    if s.startswith("approve") or s in _APPROVE_SYNONYMS:
        return "approve"
    if s.startswith("reject") or s in _REJECT_SYNONYMS:
        return "reject"
    if s in VERDICTS:
        return s  # type: ignore[return-value]
    return "suggest_changes"


def coerce_change_request(item: Any) -> str:
    """Flatten one change request into a string."""
    if isinstance(item, str):
        return item
    if isinstance(item, dict):
        parts = [
            item[k] for k in _CHANGE_REQUEST_FIELDS
            if isinstance(item.get(k), str) and item[k]
        ]
        if parts:
            return ": ".join(parts)
        return json.dumps(item)
    if isinstance(item, list):
        return json.dumps(item)
    return str(item)


def _optional_str(obj: dict[str, Any], key: str) -> str:
    value = obj.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ParseError(f"{key}: expected string, got {type(value).__name__}")
    return value


def normalize_section(raw: Any, index: int) -> Section:
    if not isinstance(raw, dict):
        raise ParseError(f"sections.{index}: expected object, got {type(raw).__name__}")
    for key in ("title", "content"):
        if not isinstance(raw.get(key), str):
            raise ParseError(f"sections.{index}.{key}: required string")
    return Section(
        title=raw["title"],
        content=raw["content"],
        verdict=normalize_verdict(raw.get("verdict")),
        reasoning=_optional_str(raw, "reasoning"),
    )


def normalize_sections(obj: dict[str, Any]) -> list[Section]:
    raw_sections = obj.get("sections")
    if raw_sections is None:
        return []
    if not isinstance(raw_sections, list):
        raise ParseError("sections: expected array")
    return [normalize_section(s, i) for i, s in enumerate(raw_sections)]


def normalize_change_requests(obj: dict[str, Any]) -> list[str]:
    raw_requests = obj.get("change_requests")
    if raw_requests is None:
        return []
    if not isinstance(raw_requests, list):
        raise ParseError("change_requests: expected array")
    return [coerce_change_request(item) for item in raw_requests]


def normalize_response(obj: dict[str, Any]) -> AgentResponse:
    """Run every field normalizer and assemble the response.

    Raises:
        ParseError: If a field is malformed or there are no sections.
    """
    sections = normalize_sections(obj)
    if not sections:
        raise ParseError("No sections found in response")

    return AgentResponse(
        sections=sections,
        overall_verdict=normalize_verdict(obj.get("overall_verdict")),
        change_requests=normalize_change_requests(obj),
        summary=_optional_str(obj, "summary"),
        project_title=_optional_str(obj, "project_title"),
    )


def parse_agent_response(raw: str) -> AgentResponse | ParseError:
    """Parse raw model text into an AgentResponse.

    Never raises — returns ParseError on failure.
    """
    try:
        return normalize_response(decode(raw))
    except ParseError as exc:
        logger.debug("Parse failed: %s", exc)
        return exc
