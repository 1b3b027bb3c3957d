"""End-to-end orchestration of one analysis run.

:func:`start_analysis` performs every check that must happen before network
I/O (user lookup, duplicate-run guard, optimistic ``started`` flag) and opens
the upstream run. The returned :class:`StreamSupervisor` then owns that run:
it reads the byte stream, routes each record, and on every exit path releases
the upstream response, closes the caller channel once and waits for pending
writes.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Optional, Union

import requests

from ..config import StreamSettings
from ..domain.errors import MalformedRecord, StreamTimeout, UpstreamUnavailable, UserNotFound
from ..domain.models import UserRecord
from ..domain.tiers import Tier, is_run_blocked, tier_for
from ..infrastructure.user_store import UserStore
from ..observability.metrics import STREAM_EXITS, STREAM_RECORDS, count
from .line_reassembler import LineReassembler
from .persistence import ResultPersister
from .records import ChunkRecord, GenerationRecord, OutputsRecord, classify
from .relay import OutputRelay, RelayClosed
from .scope import GenerationScopeTracker
from .tweet_format import build_inputs
from .wordware_client import WordwareClient

LOG = logging.getLogger("personality.stream")

ALREADY_STARTED_MESSAGE = "Wordware already started"


class StreamExit(str, Enum):
    COMPLETED = "completed"
    UPSTREAM_ERROR = "upstream_error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RequestContext:
    username: str
    tier: Tier
    prompt_id: str
    user: UserRecord


@dataclass(frozen=True)
class AlreadyInProgress:
    username: str
    tier: str
    message: str = ALREADY_STARTED_MESSAGE


@dataclass(frozen=True)
class AccumulatedResult:
    values: Optional[Dict[str, Any]]
    text: str


def start_analysis(
    username: str,
    full: bool,
    *,
    store: UserStore,
    client: WordwareClient,
    settings: StreamSettings,
    now: Optional[datetime] = None,
) -> Union[AlreadyInProgress, "StreamSupervisor"]:
    """Run the pre-flight checks and open the upstream stream.

    Raises
    ------
    UserNotFound
        No record for ``username``.
    UpstreamUnavailable
        No prompt configured for the tier, or the run could not be opened.
    """

    LOG.info("analysis_requested", extra={"username": username, "full": full})
    user = store.get(username)
    if user is None:
        LOG.error("user_not_found", extra={"username": username})
        raise UserNotFound(username)

    tier = tier_for(full)
    now = now or datetime.now(UTC)
    if is_run_blocked(user, tier, grace_seconds=settings.dedup_grace_seconds, now=now):
        LOG.warning("analysis_already_started", extra={"username": username, "tier": tier.name})
        return AlreadyInProgress(username=username, tier=tier.name)

    prompt_id = tier.prompt_id(settings)
    if not prompt_id:
        raise UpstreamUnavailable(f"no prompt configured for {tier.name} tier")
    inputs = build_inputs(user)
    LOG.info("analysis_prompt_selected", extra={"username": username, "tier": tier.name, "prompt_id": prompt_id})

    # Marked before the call so a crash mid-run still reads as "in progress".
    store.update(username, tier.started_update(now))

    response = client.open_run(prompt_id, inputs)
    ctx = RequestContext(username=username, tier=tier, prompt_id=prompt_id, user=user)
    return StreamSupervisor(ctx, response, store=store, client=client, settings=settings)


class StreamSupervisor:
    """Own one upstream stream from first byte to teardown."""

    def __init__(
        self,
        ctx: RequestContext,
        response: requests.Response,
        *,
        store: UserStore,
        client: WordwareClient,
        settings: StreamSettings,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ctx = ctx
        self._response = response
        self._client = client
        self._settings = settings
        self._clock = clock
        self.scope = GenerationScopeTracker(fallback_after=settings.scope_fallback_records)
        self.relay = OutputRelay()
        self.persister = ResultPersister(store, ctx.username, ctx.tier, ctx.user.analysis)
        self.exit_reason: Optional[StreamExit] = None
        self.records = 0
        self.malformed = 0
        self._first_byte_at: Optional[float] = None
        self._cancel_reason: Optional[StreamExit] = None
        self._lock = threading.Lock()
        self._released = False
        self._watchdog: Optional[threading.Timer] = None
        self._torn_down = False

    @property
    def result(self) -> AccumulatedResult:
        latest = self.persister.latest
        return AccumulatedResult(values=dict(latest.values) if latest else None, text=self.relay.text)

    def cancel(self, reason: StreamExit = StreamExit.CANCELLED) -> None:
        """Stop the run from any thread; unblocks a pending upstream read."""
        with self._lock:
            if self._cancel_reason is None:
                self._cancel_reason = reason
        self._close_channel()
        self._release_response()

    def close(self) -> None:
        """Abort a run still in flight, then tear it down if that has not happened yet."""
        if self.exit_reason is None:
            self.cancel()
        self._teardown()

    def stream(self) -> Iterator[str]:
        """Yield relayed output text in arrival order."""
        try:
            yield from self._pump()
        finally:
            self._teardown()

    def _pump(self) -> Iterator[str]:
        reassembler = LineReassembler()
        try:
            for chunk in self._client.iter_bytes(self._response):
                if self._first_byte_at is None:
                    self._first_byte_at = self._clock()
                    self._arm_watchdog()
                self._check_deadline()
                if self._cancel_reason is not None:
                    return
                for line in reassembler.feed(chunk):
                    piece = self._handle_line(line)
                    if piece:
                        yield piece
            if self._cancel_reason is not None:
                return
            tail = reassembler.flush()
            if tail is not None:
                piece = self._handle_line(tail)
                if piece:
                    yield piece
            self.exit_reason = StreamExit.COMPLETED
        except StreamTimeout as exc:
            LOG.warning("stream_timeout", extra={"username": self.ctx.username, "err": str(exc)})
            self.cancel(StreamExit.TIMEOUT)
        except RelayClosed:
            LOG.info("relay_closed_stop_reading", extra={"username": self.ctx.username})
        except requests.exceptions.RequestException as exc:
            if self._cancel_reason is None:
                self.exit_reason = StreamExit.UPSTREAM_ERROR
                LOG.error("upstream_read_failed", extra={"username": self.ctx.username, "err": str(exc)})
        except Exception:
            # Closing the response from another thread can surface as an arbitrary read error.
            if self._cancel_reason is None:
                raise

    def _handle_line(self, line: str) -> Optional[str]:
        if not line.strip():
            return None
        try:
            record = classify(line)
        except MalformedRecord as exc:
            self.malformed += 1
            count(STREAM_RECORDS, "malformed")
            LOG.warning("record_malformed", extra={"username": self.ctx.username, "err": str(exc), "line": line[:200]})
            return None

        self.records += 1
        self.scope.observe(record)
        if isinstance(record, ChunkRecord):
            count(STREAM_RECORDS, "chunk")
            return self.relay.on_chunk(record, self.scope.is_open)
        if isinstance(record, GenerationRecord):
            count(STREAM_RECORDS, "generation")
        elif isinstance(record, OutputsRecord):
            count(STREAM_RECORDS, "outputs")
            self.persister.on_outputs(record)
        return None

    def _check_deadline(self) -> None:
        if self._first_byte_at is None:
            return
        if self._clock() - self._first_byte_at > self._settings.stream_deadline_seconds:
            raise StreamTimeout(self._settings.stream_deadline_seconds)

    def _arm_watchdog(self) -> None:
        timer = threading.Timer(self._settings.stream_deadline_seconds, self._on_deadline)
        timer.daemon = True
        self._watchdog = timer
        timer.start()

    def _on_deadline(self) -> None:
        LOG.warning("stream_deadline_reached", extra={"username": self.ctx.username})
        self.cancel(StreamExit.TIMEOUT)

    def _release_response(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        try:
            self._client.abort(self._response)
        except Exception as exc:
            LOG.debug("upstream_close_failed", extra={"err": str(exc)})

    def _close_channel(self) -> None:
        if self.relay.close():
            LOG.debug("relay_closed", extra={"username": self.ctx.username})

    def _teardown(self) -> None:
        with self._lock:
            if self._torn_down:
                return
            self._torn_down = True
        if self._watchdog is not None:
            self._watchdog.cancel()
        self._release_response()
        if self.exit_reason is None:
            self.exit_reason = self._cancel_reason or StreamExit.CANCELLED
        try:
            if self.exit_reason is StreamExit.COMPLETED:
                self.persister.finalize()
            self.persister.drain()
        finally:
            self.persister.shutdown()
            self._close_channel()
        count(STREAM_EXITS, self.exit_reason.value)
        LOG.info(
            "stream_finished",
            extra={
                "username": self.ctx.username,
                "tier": self.ctx.tier.name,
                "reason": self.exit_reason.value,
                "records": self.records,
                "malformed": self.malformed,
                "generations": dict(self.scope.generations),
                "scope_forced": self.scope.forced,
                "persist_ok": self.persister.successes,
                "persist_failed": self.persister.failures,
            },
        )
