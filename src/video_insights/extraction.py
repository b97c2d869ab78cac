from __future__ import annotations

import json
import logging
import re
from typing import Any

import json_repair

from .models import AnalysisContent

logger = logging.getLogger(__name__)

FIELDS = ("summary", "revelations", "takeaways")

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)```", flags=re.DOTALL | re.IGNORECASE)
_OBJECT_PATTERN = re.compile(r"\{.*\}", flags=re.DOTALL)
_QUOTED = r'"((?:[^"\\]|\\.)*)"'
_SUMMARY_PATTERN = re.compile(r'"summary"\s*:\s*' + _QUOTED, flags=re.DOTALL)
_ESCAPE_PATTERN = re.compile(r'\\(["\\nrt])')
_ESCAPES = {"n": "\n", "r": "\r", "t": "\t", '"': '"', "\\": "\\"}
_LABEL_PATTERN = re.compile(r'"(summary|revelations|takeaways)"\s*:\s*', flags=re.IGNORECASE)


def _array_pattern(name: str) -> re.Pattern[str]:
    # consecutive quoted items; tolerates a missing closing bracket
    return re.compile(
        rf'"{name}"\s*:\s*\[((?:\s*"(?:[^"\\]|\\.)*"\s*,?)*)',
        flags=re.DOTALL,
    )


_ARRAY_PATTERNS = {name: _array_pattern(name) for name in ("revelations", "takeaways")}


def unescape_json_string(value: str) -> str:
    if not value:
        return ""
    return _ESCAPE_PATTERN.sub(lambda match: _ESCAPES[match.group(1)], value)


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _to_content(payload: Any) -> AnalysisContent | None:
    if not isinstance(payload, dict) or not any(name in payload for name in FIELDS):
        return None
    summary = payload.get("summary")
    return AnalysisContent(
        summary=summary.strip() if isinstance(summary, str) else "",
        revelations=_string_list(payload.get("revelations")),
        takeaways=_string_list(payload.get("takeaways")),
    )


def _parse_strict(candidate: str) -> AnalysisContent | None:
    try:
        return _to_content(json.loads(candidate))
    except (ValueError, RecursionError):
        return None


def _parse_repaired(candidate: str) -> AnalysisContent | None:
    try:
        repaired = json_repair.loads(candidate)
    except Exception:
        return None
    return _to_content(repaired)


def _candidates(text: str) -> tuple[str | None, str | None]:
    fenced = _FENCE_PATTERN.search(text)
    structured = _OBJECT_PATTERN.search(text)
    return (
        fenced.group(1).strip() if fenced else None,
        structured.group(0).strip() if structured else None,
    )


def extract_fields_with_patterns(text: str) -> AnalysisContent:
    """Pull the labeled fields out of text that is not parseable as JSON."""

    summary_match = _SUMMARY_PATTERN.search(text)
    summary = unescape_json_string(summary_match.group(1)).strip() if summary_match else ""

    lists: dict[str, list[str]] = {}
    for name, pattern in _ARRAY_PATTERNS.items():
        match = pattern.search(text)
        items: list[str] = []
        if match:
            for raw_item in re.findall(_QUOTED, match.group(1), flags=re.DOTALL):
                item = unescape_json_string(raw_item).strip()
                if item:
                    items.append(item)
        lists[name] = items

    return AnalysisContent(summary=summary, revelations=lists["revelations"], takeaways=lists["takeaways"])


def clean_raw_text(text: str) -> str:
    """Strip JSON scaffolding from ``text`` so what remains can be shown as prose."""

    cleaned = re.sub(r"```json\s*", "", text, flags=re.IGNORECASE)
    cleaned = re.sub(r"```\s*", "", cleaned)
    cleaned = re.sub(r"^\s*\{\s*", "", cleaned)
    cleaned = re.sub(r"\s*\}\s*$", "", cleaned)
    cleaned = _LABEL_PATTERN.sub("\n", cleaned)
    cleaned = re.sub(r"[\[\]]", "", cleaned)
    cleaned = re.sub(r'",\s*"', "\n", cleaned)
    cleaned = cleaned.strip()
    cleaned = re.sub(r'\A"|"\Z', "", cleaned)
    cleaned = cleaned.replace("\\n", "\n").replace('\\"', '"')
    return cleaned.strip()


def clean_streaming_text(text: str) -> str:
    """Render partially streamed output for display while a run is in progress."""

    if not text or not text.strip():
        return ""

    cleaned = re.sub(r"```json\s*", "", text, flags=re.IGNORECASE)
    cleaned = re.sub(r"```\s*", "", cleaned)
    cleaned = re.sub(r"^\s*\{\s*", "", cleaned)
    cleaned = _LABEL_PATTERN.sub("\n", cleaned)
    cleaned = re.sub(r"\[\s*", "", cleaned)
    cleaned = re.sub(r"\s*\]", "", cleaned)
    cleaned = re.sub(r",\s*$", "", cleaned)
    cleaned = re.sub(r"\}\s*$", "", cleaned)
    cleaned = re.sub(_QUOTED, lambda match: match.group(1), cleaned)
    # the string still being streamed has no closing quote yet
    cleaned = re.sub(r'"([^"]*)\Z', lambda match: match.group(1), cleaned)
    cleaned = unescape_json_string(cleaned)
    cleaned = re.sub(r",\s*,", ",", cleaned)
    cleaned = re.sub(r"\n\s*,\s*", "\n", cleaned)
    cleaned = re.sub(r",\s*\n", "\n", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def extract_analysis(text: str) -> AnalysisContent:
    """Recover summary, revelations and takeaways from model output.

    Tries, in order: the whole text as JSON, a fenced ``json`` block, the
    widest ``{...}`` span, the same candidates through ``json_repair``,
    per-field pattern matching, and finally the cleaned raw text as the
    summary. Never raises.
    """

    text = text or ""
    fenced, structured = _candidates(text)

    for candidate in (text, fenced, structured):
        if candidate:
            content = _parse_strict(candidate)
            if content is not None:
                return content

    for candidate in (fenced, structured, text):
        if candidate:
            content = _parse_repaired(candidate)
            if content is not None:
                logger.debug("Recovered analysis payload with json_repair")
                return content

    content = extract_fields_with_patterns(text)
    if content.summary:
        return content

    logger.info("Model output had no structured summary; using cleaned text")
    return AnalysisContent(
        summary=clean_raw_text(text),
        revelations=content.revelations,
        takeaways=content.takeaways,
    )


__all__ = [
    "clean_raw_text",
    "clean_streaming_text",
    "extract_analysis",
    "extract_fields_with_patterns",
    "unescape_json_string",
]
