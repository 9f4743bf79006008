"""Expiry of approvals nobody decided in time.

The sweep is one conditional bulk update, so it can run from any number of
workers at once: an approval flipped by one sweep is simply no longer
pending for the next.
"""
from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from ..audit.chainlog import AuditEntryInput, AuditSink
from ..core.types import utcnow
from ..errors import ApprovalInputError
from .store import ApprovalStore
from .types import (
    DEFAULT_EXPIRATION,
    ExpirationOptions,
    ExpirationResult,
    TimeRemaining,
)

logger = logging.getLogger(__name__)

WARNING_THRESHOLD = timedelta(minutes=30)


def default_expiration(risk_level: str, table: Optional[Dict[str, timedelta]] = None) -> timedelta:
    table = table or DEFAULT_EXPIRATION
    if risk_level not in table:
        raise ApprovalInputError(f"Unknown risk level: {risk_level!r}")
    return table[risk_level]


def is_expiration_warning(
    expires_at: datetime, now: Optional[datetime] = None, threshold: timedelta = WARNING_THRESHOLD
) -> bool:
    remaining = expires_at - (now or utcnow())
    return timedelta(0) < remaining < threshold


def time_until_expiration(expires_at: datetime, now: Optional[datetime] = None) -> TimeRemaining:
    remaining = expires_at - (now or utcnow())
    if remaining <= timedelta(0):
        return TimeRemaining(hours=0, minutes=0, is_expired=True)
    hours, rest = divmod(remaining, timedelta(hours=1))
    return TimeRemaining(hours=int(hours), minutes=int(rest // timedelta(minutes=1)), is_expired=False)


class ExpirationSweeper:
    def __init__(
        self,
        store: ApprovalStore,
        audit: Optional[AuditSink] = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        options: Optional[ExpirationOptions] = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.clock = clock
        self.options = options or ExpirationOptions()

    def expire_stale_approvals(self, options: Optional[ExpirationOptions] = None) -> ExpirationResult:
        return self._sweep(options or self.options, limit=None)

    def run_expiration_check(self) -> ExpirationResult:
        """Single pass with the configured options; the entry point for schedulers."""
        return self.expire_stale_approvals()

    def process_expirations_in_batches(
        self, batch_size: Optional[int] = None, delay: float = 0.1
    ) -> ExpirationResult:
        batch_size = self.options.batch_size if batch_size is None else batch_size
        if batch_size <= 0:
            raise ApprovalInputError(f"batch_size must be positive, got {batch_size}")

        total = 0
        ids: List[str] = []
        plan_ids: Dict[str, None] = {}
        passes = 0
        while True:
            result = self._sweep(self.options, limit=batch_size)
            passes += 1
            total += result.expired_count
            ids.extend(result.expired_ids)
            plan_ids.update(dict.fromkeys(result.affected_plan_ids))
            if result.expired_count < batch_size:
                break
            if delay > 0:
                time.sleep(delay)

        logger.info("Batched expiration done: %d approval(s) in %d pass(es)", total, passes)
        return ExpirationResult(expired_count=total, expired_ids=ids, affected_plan_ids=list(plan_ids))

    def get_approaching_expirations(self, user_id: str, warning_minutes: int = 30) -> List[str]:
        """Ids of the user's pending approvals expiring within ``warning_minutes``."""
        now = self.clock()
        horizon = now + timedelta(minutes=warning_minutes)
        return [a.id for a in self.store.get_expiring(user_id, now, horizon)]

    def _sweep(self, options: ExpirationOptions, limit: Optional[int]) -> ExpirationResult:
        started = time.monotonic()
        logger.debug("Starting expiration check")
        stale = self.store.expire_stale(self.clock(), limit=limit)
        if stale.count == 0:
            return ExpirationResult(expired_count=0)

        logger.info(
            "Expired stale approvals: %d (plans=%d, %.1f ms)",
            stale.count, len(stale.plan_ids), (time.monotonic() - started) * 1000,
        )
        if options.cancel_affected_plans and self.audit is not None:
            for plan_id in stale.plan_ids:
                self.audit.log_agent_action(AuditEntryInput(
                    user_id="system",
                    action_type="expire",
                    action_category="agent",
                    entity_type="plan",
                    entity_id=plan_id,
                    intent="Plan approval expired without user decision",
                ))
        return ExpirationResult(
            expired_count=stale.count, expired_ids=list(stale.ids), affected_plan_ids=list(stale.plan_ids)
        )


class ExpirationJob:
    """Runs ``sweeper.run_expiration_check`` every ``interval_seconds`` on a worker thread.

    The first run happens one interval after ``start()``. ``stop()`` cancels
    the next run; a sweep already in progress is allowed to finish.
    """

    def __init__(self, sweeper: ExpirationSweeper, interval_seconds: float = 60.0, max_runs: Optional[int] = None):
        if interval_seconds <= 0:
            raise ApprovalInputError(f"interval_seconds must be positive, got {interval_seconds}")
        self.sweeper = sweeper
        self.interval_seconds = interval_seconds
        self.max_runs = max_runs
        self.runs = 0
        self.last_result: Optional[ExpirationResult] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "ExpirationJob":
        if self.is_running:
            return self
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="agentgate-expiration", daemon=True)
        self._thread.start()
        logger.info("Started expiration job (interval=%ss)", self.interval_seconds)
        return self

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        logger.info("Stopped expiration job after %d run(s)", self.runs)

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.last_result = self.sweeper.run_expiration_check()
            except Exception:
                logger.exception("Expiration job failed")
            self.runs += 1
            if self.max_runs is not None and self.runs >= self.max_runs:
                break
