from __future__ import annotations

from typing import List, Optional


class LineReassembler:
    """Turn arbitrarily split byte chunks into complete newline-terminated lines.

    Raw bytes are buffered and only decoded once a full line is available, so
    a UTF-8 sequence or a JSON escape split across network chunks is decoded
    exactly once and intact. Lines are returned without their ``\\n``.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._encoding = encoding
        self._carry = bytearray()

    @property
    def pending(self) -> int:
        return len(self._carry)

    def feed(self, chunk: bytes) -> List[str]:
        if not chunk:
            return []
        self._carry.extend(chunk)
        if b"\n" not in chunk:
            return []
        *complete, tail = bytes(self._carry).split(b"\n")
        self._carry = bytearray(tail)
        return [self._decode(raw) for raw in complete]

    def flush(self) -> Optional[str]:
        """Return the unterminated tail at end of stream, or None when blank."""
        if not self._carry:
            return None
        tail = self._decode(bytes(self._carry))
        self._carry.clear()
        if not tail.strip():
            return None
        return tail

    def _decode(self, raw: bytes) -> str:
        return raw.decode(self._encoding, errors="replace")
