"""Environment-driven settings for the analysis stream.

Values are read from the process environment (optionally seeded from a
``.env`` file by the API entrypoint). A custom mapping can be supplied to
:meth:`StreamSettings.from_env` so tests never depend on the real
environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional


DEFAULT_BASE_URL = "https://app.wordware.ai"


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None:
        return default
    try:
        value = float(raw)
        return value if value > 0 else default
    except ValueError:
        return default


@dataclass(frozen=True)
class StreamSettings:
    """Settings consumed by the upstream client and the stream supervisor."""

    api_key: Optional[str] = None
    base_url: str = DEFAULT_BASE_URL
    roast_prompt_id: Optional[str] = None
    full_prompt_id: Optional[str] = None
    connect_timeout: float = 5.0
    read_timeout: float = 60.0
    stream_deadline_seconds: float = 300.0
    dedup_grace_seconds: float = 180.0
    scope_fallback_records: int = 50

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "StreamSettings":
        env = env if env is not None else os.environ
        base_url = (env.get("WORDWARE_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
        return cls(
            api_key=env.get("WORDWARE_API_KEY"),
            base_url=base_url,
            roast_prompt_id=env.get("WORDWARE_ROAST_PROMPT_ID"),
            full_prompt_id=env.get("WORDWARE_FULL_PROMPT_ID"),
            connect_timeout=_env_float(env, "PERSONALITY_UPSTREAM_CONNECT_TIMEOUT", 5.0),
            read_timeout=_env_float(env, "PERSONALITY_UPSTREAM_READ_TIMEOUT", 60.0),
            stream_deadline_seconds=_env_float(env, "PERSONALITY_STREAM_DEADLINE_SECONDS", 300.0),
            dedup_grace_seconds=_env_float(env, "PERSONALITY_DEDUP_GRACE_SECONDS", 180.0),
            scope_fallback_records=_env_int(env, "PERSONALITY_SCOPE_FALLBACK_RECORDS", 50),
        )
