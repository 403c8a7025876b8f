"""Turn task API ``output`` envelopes into canonical text plus citations.

Upstream results come in several shapes: a plain string, a list of
segments, or an object whose ``content``/``text`` holds either of those.
``decode`` tags the shape once and ``render`` resolves it. Every function
here is total; unrecognized shapes degrade to a best-effort string.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Union

from .schemas import Citation, NormalizedResult


SEGMENT_TEXT_KEYS = ("text", "content", "value")
MAX_NESTED_DEPTH = 1


@dataclass(frozen=True)
class Text:
    value: str


@dataclass(frozen=True)
class Segments:
    items: List[Any]


@dataclass(frozen=True)
class Nested:
    fields: Dict[str, Any]


@dataclass(frozen=True)
class Unknown:
    value: Any


Content = Union[Text, Segments, Nested, Unknown]


def decode(value: Any) -> Content:
    if isinstance(value, str):
        return Text(value)
    if isinstance(value, list):
        return Segments(value)
    if isinstance(value, dict):
        return Nested(value)
    return Unknown(value)


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


def _segment_text(item: Any) -> str:
    if isinstance(item, str):
        return item
    if isinstance(item, dict):
        for key in SEGMENT_TEXT_KEYS:
            val = item.get(key)
            if isinstance(val, str):
                return val
    return _stringify(item)


def render(content: Content, depth: int = 0) -> str:
    if isinstance(content, Text):
        return content.value
    if isinstance(content, Segments):
        parts = [_segment_text(item) for item in content.items if item is not None]
        return "\n".join(part for part in parts if part)
    if isinstance(content, Nested):
        fields = content.fields
        inner = fields.get("content")
        if isinstance(inner, str):
            return inner
        text = fields.get("text")
        if isinstance(text, str):
            return text
        if isinstance(inner, (list, dict)) and depth < MAX_NESTED_DEPTH:
            return render(decode(inner), depth + 1)
        return _stringify(fields)
    return _stringify(content.value)


def render_text(output: Any) -> str:
    return render(decode(output))


def extract_citations(basis: Any) -> List[Citation]:
    """Collect ``{title?, url}`` pairs from ``basis[].citations[]``, first url wins."""
    if not isinstance(basis, list):
        return []
    seen: Set[str] = set()
    citations: List[Citation] = []
    for entry in basis:
        if not isinstance(entry, dict):
            continue
        items = entry.get("citations")
        if not isinstance(items, list):
            continue
        for item in items:
            if not isinstance(item, dict):
                continue
            url = item.get("url")
            if not isinstance(url, str) or not url.strip():
                continue
            url = url.strip()
            if url in seen:
                continue
            seen.add(url)
            title = item.get("title")
            citations.append(Citation(url=url, title=title if isinstance(title, str) and title else None))
    return citations


def _output_of(payload: Any) -> Any:
    if isinstance(payload, dict) and "output" in payload:
        return payload["output"]
    return payload


def _basis_of(payload: Any, output: Any) -> Optional[Any]:
    if isinstance(output, dict) and isinstance(output.get("basis"), list):
        return output["basis"]
    if isinstance(payload, dict) and isinstance(payload.get("basis"), list):
        return payload["basis"]
    return None


def normalize_result(payload: Any) -> NormalizedResult:
    """Normalize a result envelope (``{run, output}``) or a bare ``output`` value."""
    output = _output_of(payload)
    return NormalizedResult(
        text=render_text(output),
        citations=extract_citations(_basis_of(payload, output)),
    )
