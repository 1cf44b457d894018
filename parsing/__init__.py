# parsing/__init__.py
"""Extraction and validation of structured payloads from model output."""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from typing import Any, TypeVar

import structlog
from core.exceptions import IncompleteResponse, ParseError
from pydantic import BaseModel, ValidationError

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_THINK_BLOCK = re.compile(
    r"<\s*(think|thinking|reasoning)\s*>.*?<\s*/\s*\1\s*>",
    flags=re.DOTALL | re.IGNORECASE,
)
_SMART_QUOTES = str.maketrans(
    {"“": '"', "”": '"', "„": '"', "‘": "'", "’": "'"}
)
_SINGLE_QUOTED = re.compile(r"(?<=[{\[,:])(\s*)'((?:[^'\\\n]|\\.)*)'")
_BARE_KEY = re.compile(r"([{,]\s*)([A-Za-z_][A-Za-z0-9_]*)(\s*):")
_TRAILING_SEPARATOR = re.compile(r",(\s*[}\]])")
_CLOSING = {"{": "}", "[": "]"}

__all__ = [
    "ParseError",
    "IncompleteResponse",
    "extract_json_candidates",
    "repair_json",
    "parse_structured_response",
    "validate_payload",
]


def _scan_balanced(text: str, start: int) -> int | None:
    """Index just past the bracket group opening at ``start``, or None if unclosed."""
    stack = [_CLOSING[text[start]]]
    in_string = False
    escaped = False
    i = start + 1
    n = len(text)
    while i < n and stack:
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in _CLOSING:
            stack.append(_CLOSING[ch])
        elif ch == stack[-1]:
            stack.pop()
        i += 1
    return None if stack else i


def extract_json_candidates(text: str) -> list[str]:
    """Return every top-level balanced ``{...}`` / ``[...]`` substring in order.

    Brackets inside double-quoted strings are ignored. An opening bracket
    that is never closed does not hide later payloads: scanning resumes right
    after it, and the remainder from the first unclosed opener is appended as
    the last candidate so a truncated payload still reaches the repair pass.
    """
    candidates: list[str] = []
    unclosed_remainder: str | None = None
    i = 0
    n = len(text)
    while i < n:
        if text[i] not in _CLOSING:
            i += 1
            continue
        end = _scan_balanced(text, i)
        if end is None:
            if unclosed_remainder is None:
                unclosed_remainder = text[i:]
            i += 1
            continue
        candidates.append(text[i:end])
        i = end
    if unclosed_remainder is not None:
        candidates.append(unclosed_remainder)
    return candidates


def _outside_strings(text: str, fix: Callable[[str], str]) -> str:
    """Apply ``fix`` to every run of ``text`` that is not inside a double-quoted string."""
    parts: list[str] = []
    segment_start = 0
    i = 0
    n = len(text)
    while i < n:
        if text[i] != '"':
            i += 1
            continue
        parts.append(fix(text[segment_start:i]))
        string_start = i
        i += 1
        while i < n and text[i] != '"':
            i += 2 if text[i] == "\\" else 1
        i = min(i + 1, n)
        parts.append(text[string_start:i])
        segment_start = i
    parts.append(fix(text[segment_start:]))
    return "".join(parts)


def _requote_single(match: re.Match[str]) -> str:
    inner = match.group(2).replace("\\'", "'").replace('"', '\\"')
    return f'{match.group(1)}"{inner}"'


def _fix_structure(segment: str) -> str:
    segment = _BARE_KEY.sub(r'\1"\2"\3:', segment)
    return _TRAILING_SEPARATOR.sub(r"\1", segment)


def repair_json(candidate: str) -> str:
    """Best-effort fix of the usual model JSON mistakes.

    Only text between double-quoted strings is rewritten, so prose inside
    values such as ``"Good hook, Weakness: slow middle"`` is left alone.
    """
    repaired = candidate.translate(_SMART_QUOTES)
    repaired = _outside_strings(
        repaired, lambda segment: _SINGLE_QUOTED.sub(_requote_single, segment)
    )
    return _outside_strings(repaired, _fix_structure)


def parse_structured_response(text: str) -> Any:
    """Parse the first structured payload embedded in ``text``.

    Raises:
        ParseError: nothing parseable was found, even after one repair pass.
    """
    if not text or not text.strip():
        raise ParseError("Empty response from model")

    cleaned = _THINK_BLOCK.sub("", text).strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    candidates = extract_json_candidates(cleaned)
    if not candidates:
        raise ParseError(f"No JSON object found in response: {text[:200]!r}")

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue

    for candidate in candidates:
        try:
            data = json.loads(repair_json(candidate))
        except json.JSONDecodeError:
            continue
        logger.debug("Recovered model JSON via repair pass", preview=candidate[:80])
        return data

    logger.warning("All JSON parsing attempts failed", preview=text[:200])
    raise ParseError(f"Failed to parse model response as JSON: {text[:200]!r}")


def validate_payload(
    data: Any,
    response_model: type[ModelT],
    context: dict[str, Any] | None = None,
) -> ModelT:
    """Validate a parsed payload against its template's schema.

    Raises:
        IncompleteResponse: the payload is missing fields or holds invalid values.
    """
    if not isinstance(data, dict):
        raise IncompleteResponse(
            f"Expected a JSON object for {response_model.__name__}, got {type(data).__name__}"
        )
    try:
        return response_model.model_validate(data, context=context)
    except ValidationError as exc:
        missing = [
            ".".join(str(p) for p in err["loc"])
            for err in exc.errors()
            if err["type"] == "missing"
        ]
        detail = f"missing fields: {', '.join(missing)}" if missing else str(exc)
        raise IncompleteResponse(
            f"Incomplete {response_model.__name__} payload ({detail})"
        ) from exc
