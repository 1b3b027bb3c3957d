"""Classification of upstream stream lines into typed records.

The generation service has shipped several framings of the same events; all of
them are accepted here::

    {"type": "chunk", "value": {"value": "Hi"}}          # payload under "value"
    {"value": {"type": "chunk", "value": "Hi"}}          # whole record nested
    {"type": "chunk", "value": "Hi"}                     # flattened
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Union

from ..domain.errors import MalformedRecord


@dataclass(frozen=True)
class GenerationRecord:
    state: str
    label: str

    @property
    def is_start(self) -> bool:
        return self.state == "start"


@dataclass(frozen=True)
class ChunkRecord:
    value: str = ""


@dataclass(frozen=True)
class OutputsRecord:
    values: Dict[str, Any] = field(default_factory=dict)

    @property
    def output(self) -> Dict[str, Any]:
        out = self.values.get("output")
        return dict(out) if isinstance(out, Mapping) else {}


StreamRecord = Union[GenerationRecord, ChunkRecord, OutputsRecord]


def _unwrap(content: Mapping[str, Any]) -> tuple[str, Mapping[str, Any]]:
    kind = content.get("type")
    value = content.get("value")
    if kind is None and isinstance(value, Mapping) and isinstance(value.get("type"), str):
        return value["type"], value
    if not isinstance(kind, str):
        raise MalformedRecord("record has no type")
    if isinstance(value, Mapping):
        merged = dict(content)
        merged.update(value)
        return kind, merged
    return kind, content


def classify(line: str) -> StreamRecord:
    """Parse one stream line. Raises :class:`MalformedRecord` for anything unusable."""

    text = line.strip()
    if not text:
        raise MalformedRecord("empty line", line)
    try:
        content = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedRecord(f"invalid JSON: {exc.msg}", line) from exc
    if not isinstance(content, Mapping):
        raise MalformedRecord("record is not an object", line)

    try:
        kind, payload = _unwrap(content)
    except MalformedRecord as exc:
        raise MalformedRecord(str(exc), line) from exc

    if kind == "generation":
        state = payload.get("state")
        if state not in ("start", "end"):
            raise MalformedRecord(f"generation record with state {state!r}", line)
        return GenerationRecord(state=state, label=str(payload.get("label") or ""))
    if kind == "chunk":
        value = payload.get("value")
        return ChunkRecord(value=value if isinstance(value, str) else "")
    if kind == "outputs":
        values = payload.get("values")
        if not isinstance(values, Mapping):
            raise MalformedRecord("outputs record without values", line)
        return OutputsRecord(values=dict(values))
    raise MalformedRecord(f"unknown record type {kind!r}", line)
