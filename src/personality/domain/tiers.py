from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Dict, Optional

from .models import UserRecord

if TYPE_CHECKING:
    from ..config import StreamSettings


@dataclass(frozen=True)
class Tier:
    """Status fields and prompt selection for one analysis mode."""

    name: str
    started_field: str
    completed_field: str
    started_time_field: str
    prompt_setting: str

    def prompt_id(self, settings: StreamSettings) -> Optional[str]:
        return getattr(settings, self.prompt_setting, None)

    def is_started(self, user: UserRecord) -> bool:
        return bool(getattr(user, self.started_field))

    def is_completed(self, user: UserRecord) -> bool:
        return bool(getattr(user, self.completed_field))

    def started_update(self, now: datetime) -> Dict[str, Any]:
        return {self.started_field: True, self.started_time_field: now}

    def completed_update(self) -> Dict[str, Any]:
        return {self.started_field: True, self.completed_field: True}

    def rollback_update(self) -> Dict[str, Any]:
        return {self.started_field: False, self.completed_field: False}


FREE_TIER = Tier(
    name="free",
    started_field="wordware_started",
    completed_field="wordware_completed",
    started_time_field="wordware_started_time",
    prompt_setting="roast_prompt_id",
)

PAID_TIER = Tier(
    name="paid",
    started_field="paid_wordware_started",
    completed_field="paid_wordware_completed",
    started_time_field="paid_wordware_started_time",
    prompt_setting="full_prompt_id",
)


def tier_for(full: bool) -> Tier:
    return PAID_TIER if full else FREE_TIER


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def is_run_blocked(
    user: UserRecord,
    tier: Tier,
    *,
    grace_seconds: float = 180.0,
    now: Optional[datetime] = None,
) -> bool:
    """Return True when a run for ``tier`` must not start.

    A completed tier is never re-run. A started tier is blocked while the
    account is younger than the grace window; after that a stale ``started``
    flag is treated as an abandoned run.
    """

    if tier.is_completed(user):
        return True
    if not tier.is_started(user):
        return False
    now = now or datetime.now(UTC)
    elapsed = (now - _as_utc(user.created_at)).total_seconds()
    return elapsed < grace_seconds
