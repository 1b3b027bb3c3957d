from __future__ import annotations

"""Failure types raised by the analysis stream."""

from typing import Optional


class UserNotFound(Exception):
    def __init__(self, username: str) -> None:
        super().__init__(f"User not found: {username}")
        self.username = username


class UpstreamUnavailable(Exception):
    """The generation run could not be opened (connect failure or non-2xx)."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedRecord(ValueError):
    """A stream line that is not valid JSON or has no recognizable type."""

    def __init__(self, message: str, line: str = "") -> None:
        super().__init__(message)
        self.line = line


class PersistenceFailure(Exception):
    def __init__(self, username: str, reason: str) -> None:
        super().__init__(f"Failed to persist user {username}: {reason}")
        self.username = username
        self.reason = reason


class StreamTimeout(Exception):
    def __init__(self, deadline_seconds: float) -> None:
        super().__init__(f"Upstream stream exceeded {deadline_seconds:.0f}s deadline")
        self.deadline_seconds = deadline_seconds
