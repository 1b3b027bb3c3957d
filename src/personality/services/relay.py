from __future__ import annotations

from threading import Lock
from typing import List, Optional

from .records import ChunkRecord


class RelayClosed(Exception):
    """The caller-facing channel is gone; the read loop should stop."""


class OutputRelay:
    """Decide which chunk text reaches the caller and remember what did.

    The relay itself does not write anywhere: the supervisor yields whatever
    :meth:`on_chunk` returns, in arrival order.
    """

    def __init__(self) -> None:
        self._parts: List[str] = []
        self._closed = False
        self._lock = Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def on_chunk(self, record: ChunkRecord, scope_open: bool) -> Optional[str]:
        if self._closed:
            raise RelayClosed()
        if not scope_open:
            return None
        value = record.value or ""
        self._parts.append(value)
        return value

    def close(self) -> bool:
        """Close the channel. Returns True only for the call that actually closed it."""
        with self._lock:
            if self._closed:
                return False
            self._closed = True
            return True
