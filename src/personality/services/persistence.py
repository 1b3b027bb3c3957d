from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from threading import Lock
from typing import Any, Dict, List, Optional

from ..domain.tiers import Tier
from ..infrastructure.user_store import UserStore
from ..observability.metrics import PERSISTENCE, count
from .records import OutputsRecord

LOG = logging.getLogger("personality.stream")


class ResultPersister:
    """Write ``outputs`` payloads to the user store, one request at a time.

    Each ``outputs`` record is dispatched onto a single-worker executor, so
    writes for one request are serialized but never stall the read loop.
    A failed write is followed by exactly one compensating update that
    resets the tier's status flags and leaves the analysis blob alone.
    """

    def __init__(
        self,
        store: UserStore,
        username: str,
        tier: Tier,
        prior_analysis: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._store = store
        self._username = username
        self._tier = tier
        self._prior_analysis = dict(prior_analysis or {})
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"persist-{username}")
        self._futures: List[Future] = []
        self._lock = Lock()
        self._latest: Optional[OutputsRecord] = None
        self._latest_seq = 0
        self._confirmed_seq = 0
        self.successes = 0
        self.failures = 0
        self.rollbacks = 0

    @property
    def latest(self) -> Optional[OutputsRecord]:
        return self._latest

    @property
    def has_unconfirmed(self) -> bool:
        with self._lock:
            return self._latest is not None and self._confirmed_seq != self._latest_seq

    @property
    def outstanding(self) -> int:
        return sum(1 for f in self._futures if not f.done())

    def on_outputs(self, record: OutputsRecord) -> Future:
        with self._lock:
            self._latest_seq += 1
            seq = self._latest_seq
            self._latest = record
        LOG.info("outputs_received", extra={"username": self._username, "keys": sorted(record.output)})
        future = self._executor.submit(self._persist, seq, record)
        self._futures.append(future)
        return future

    def drain(self, timeout: Optional[float] = None) -> None:
        """Block until every dispatched write has finished."""
        if self._futures:
            wait(list(self._futures), timeout=timeout)

    def finalize(self) -> bool:
        """Drain, then retry the latest payload once if it was never confirmed.

        Returns True when that final pass ran and succeeded.
        """
        self.drain()
        if not self.has_unconfirmed:
            return False
        with self._lock:
            seq, record = self._latest_seq, self._latest
        LOG.info("analysis_final_pass", extra={"username": self._username})
        return self._persist(seq, record)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def merged_analysis(self, record: OutputsRecord) -> Dict[str, Any]:
        return {**self._prior_analysis, **record.output}

    def _persist(self, seq: int, record: OutputsRecord) -> bool:
        update: Dict[str, Any] = dict(self._tier.completed_update())
        update["analysis"] = self.merged_analysis(record)
        try:
            self._store.update(self._username, update)
        except Exception as exc:
            self.failures += 1
            count(PERSISTENCE, "failure")
            LOG.error(
                "analysis_save_failed",
                extra={"username": self._username, "tier": self._tier.name, "err": str(exc)},
            )
            self._rollback()
            return False
        with self._lock:
            if seq > self._confirmed_seq:
                self._confirmed_seq = seq
        self.successes += 1
        count(PERSISTENCE, "success")
        LOG.info("analysis_saved", extra={"username": self._username, "tier": self._tier.name})
        return True

    def _rollback(self) -> None:
        self.rollbacks += 1
        try:
            self._store.update(self._username, self._tier.rollback_update())
        except Exception as exc:
            count(PERSISTENCE, "rollback_failure")
            LOG.error("status_rollback_failed", extra={"username": self._username, "err": str(exc)})
            return
        count(PERSISTENCE, "rollback")
        LOG.warning("status_rollback", extra={"username": self._username, "tier": self._tier.name})
