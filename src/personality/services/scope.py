from __future__ import annotations

import logging
from collections import Counter
from enum import Enum

from .records import GenerationRecord, StreamRecord

LOG = logging.getLogger("personality.stream")

OUTPUT_LABEL = "output"


class ScopeState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"


class GenerationScopeTracker:
    """Track whether stream bytes belong to the final ``output`` generation.

    Only ``generation`` records labelled ``output`` move the scope. If the
    producer never sends an explicit start, the scope is forced open once
    ``fallback_after`` records have been observed while closed; that forced
    open is only undone by an explicit ``end``.
    """

    def __init__(self, fallback_after: int = 50) -> None:
        self.state = ScopeState.CLOSED
        self.fallback_after = fallback_after
        self.forced = False
        self.generations: Counter[str] = Counter()
        self._boundary_seen = False
        self._closed_records = 0

    @property
    def is_open(self) -> bool:
        return self.state is ScopeState.OPEN

    def observe(self, record: StreamRecord) -> ScopeState:
        if isinstance(record, GenerationRecord):
            self.generations[f"{record.label}:{record.state}"] += 1
            LOG.debug("generation_%s", record.state, extra={"label": record.label})
            if record.label == OUTPUT_LABEL:
                self._boundary_seen = True
                self.state = ScopeState.OPEN if record.is_start else ScopeState.CLOSED
                return self.state

        if self.state is ScopeState.CLOSED and not (self._boundary_seen or self.forced):
            self._closed_records += 1
            if self._closed_records >= self.fallback_after:
                self.state = ScopeState.OPEN
                self.forced = True
                LOG.warning("scope_forced_open", extra={"records_seen": self._closed_records})
        return self.state
