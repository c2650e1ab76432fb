"""Background scheduler that discovers disputes and evaluates them once.

Each tick re-indexes refund requests from a bounded window of recent
blocks, then walks every known dispute that is not finished:

- an arbiter entry already on the ledger → done, no evaluation (a record
  whose ruling write failed is finished from the record first);
- payer or receiver evidence still missing → keep waiting;
- both present → evaluate, done on success, back to ready on failure.

The in-memory evaluated set only saves ledger reads. Whether a dispute has
been ruled is always decided by the ledger's evidence list, which the
arbiter re-checks right before writing.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from datetime import datetime, timezone

from dispute_arbiter.arbiter import Arbiter
from dispute_arbiter.config import settings
from dispute_arbiter.errors import AlreadyRuledError, LedgerError
from dispute_arbiter.evidence import arbiter_evidence
from dispute_arbiter.ledger import Ledger
from dispute_arbiter.payment_cache import PaymentInfoCache, payment_cache
from dispute_arbiter.schemas import Dispute, DisputeState, DisputeStatus, SubmitterRole

logger = logging.getLogger(__name__)

_REQUIRED_ROLES = {SubmitterRole.PAYER, SubmitterRole.RECEIVER}


class DisputeScheduler:
    """Daemon thread driving automatic dispute evaluation."""

    def __init__(
        self,
        arbiter: Arbiter | None = None,
        ledger: Ledger | None = None,
        cache: PaymentInfoCache | None = None,
        interval: float | None = None,
        lookback_blocks: int | None = None,
        dispute_timeout: float | None = None,
        max_workers: int | None = None,
    ) -> None:
        self._arbiter = arbiter if arbiter is not None else Arbiter()
        self._ledger = ledger if ledger is not None else self._arbiter.ledger
        self._cache = cache if cache is not None else payment_cache
        self._interval = interval if interval is not None else settings.scheduler_interval_seconds
        self._lookback_blocks = (
            lookback_blocks if lookback_blocks is not None else settings.scheduler_lookback_blocks
        )
        self._dispute_timeout = (
            dispute_timeout
            if dispute_timeout is not None
            else settings.scheduler_dispute_timeout_seconds
        )
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers if max_workers is not None else settings.scheduler_max_workers,
            thread_name_prefix="arbiter-eval",
        )

        self._lock = threading.Lock()
        self._disputes: dict[str, Dispute] = {}
        self._states: dict[str, DisputeState] = {}
        self._evaluated: set[str] = set()

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_tick_at: datetime | None = None
        self._last_indexed_count: int = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def last_tick_at(self) -> datetime | None:
        return self._last_tick_at

    def start(self) -> None:
        """Start the scheduler background thread."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="dispute-scheduler")
        self._thread.start()
        logger.info(
            "Dispute scheduler started (interval=%.1fs, lookback=%d blocks, timeout=%.1fs)",
            self._interval,
            self._lookback_blocks,
            self._dispute_timeout,
        )

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the scheduler to stop and wait up to *timeout* seconds.

        Evaluations already handed to the pool run to completion.
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Dispute scheduler stopped")

    def status(self) -> dict:
        """Return a snapshot of the scheduler's state."""
        with self._lock:
            counts: dict[str, int] = {}
            for state in self._states.values():
                counts[state.value] = counts.get(state.value, 0) + 1
            evaluated = len(self._evaluated)
        return {
            "running": self.running,
            "interval_seconds": self._interval,
            "lookback_blocks": self._lookback_blocks,
            "dispute_timeout_seconds": self._dispute_timeout,
            "last_tick_at": self._last_tick_at.isoformat() if self._last_tick_at else None,
            "last_indexed_count": self._last_indexed_count,
            "evaluated_count": evaluated,
            "states": counts,
        }

    # ------------------------------------------------------------------
    # Per-dispute operations (also used by the API and webhook)
    # ------------------------------------------------------------------

    def track(self, dispute: Dispute) -> str:
        """Add *dispute* to the index if unseen. Returns its composite key."""
        key = dispute.composite_key
        with self._lock:
            if key not in self._disputes:
                self._disputes[key] = dispute
                self._states[key] = DisputeState.INDEXED
            elif dispute.payment_info is not None:
                self._disputes[key] = dispute
        return key

    def state(self, key: str) -> DisputeState | None:
        with self._lock:
            return self._states.get(key)

    def disputes(self) -> list[tuple[Dispute, DisputeState]]:
        with self._lock:
            return [(d, self._states[k]) for k, d in self._disputes.items()]

    def mark_done(self, key: str) -> None:
        with self._lock:
            if key in self._disputes:
                self._evaluated.add(key)
                self._states[key] = DisputeState.DONE

    def check_dispute(self, key: str) -> DisputeState:
        """Advance one indexed dispute as far as it can go right now.

        Ledger read failures propagate; the dispute keeps its state and is
        looked at again next tick.
        """
        with self._lock:
            dispute = self._disputes[key]
            state = self._states[key]
        if state in (DisputeState.DONE, DisputeState.EVALUATING):
            return state

        entries = self._ledger.get_all_evidence(dispute)
        if arbiter_evidence(entries):
            # A failed ruling write leaves the record behind with status pending
            if self._arbiter.resume(self._cache.attach(dispute)):
                logger.info("Dispute %s: ruling from published record submitted", key)
            else:
                logger.info("Dispute %s already ruled on ledger; skipping", key)
            self.mark_done(key)
            return DisputeState.DONE

        roles = {e.role for e in entries}
        if not _REQUIRED_ROLES <= roles:
            self._set_state(key, DisputeState.AWAITING_EVIDENCE)
            return DisputeState.AWAITING_EVIDENCE

        status = self._ledger.get_status(dispute)
        if status != DisputeStatus.PENDING:
            logger.info("Dispute %s is %s on ledger; nothing to evaluate", key, status.value)
            self.mark_done(key)
            return DisputeState.DONE

        with self._lock:
            if key in self._evaluated or self._states[key] == DisputeState.EVALUATING:
                return self._states[key]
            # Speculative: reverted in _settle if the evaluation fails.
            self._evaluated.add(key)
            self._states[key] = DisputeState.EVALUATING

        future = self._executor.submit(self._arbiter.evaluate, self._cache.attach(dispute))
        try:
            future.result(timeout=self._dispute_timeout)
        except FuturesTimeout:
            logger.warning(
                "Evaluation of dispute %s exceeded %.1fs; deferring to a later tick",
                key,
                self._dispute_timeout,
            )
            future.add_done_callback(lambda f: self._settle(key, f))
            return DisputeState.EVALUATING
        except Exception:
            pass  # reported by _settle
        return self._settle(key, future)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _set_state(self, key: str, state: DisputeState) -> None:
        with self._lock:
            self._states[key] = state

    def _settle(self, key: str, future: Future) -> DisputeState:
        exc = future.exception()
        if exc is None:
            new_state = DisputeState.DONE
        elif isinstance(exc, AlreadyRuledError):
            logger.info("Dispute %s was ruled by another caller", key)
            new_state = DisputeState.DONE
        else:
            logger.error(
                "Evaluation of dispute %s failed, will retry: %s",
                key,
                exc,
                exc_info=exc,
            )
            new_state = DisputeState.READY

        with self._lock:
            if new_state == DisputeState.READY:
                self._evaluated.discard(key)
            self._states[key] = new_state
        return new_state

    def _index(self) -> None:
        try:
            disputes = self._ledger.list_recent_disputes(self._lookback_blocks)
        except LedgerError as exc:
            logger.warning("Dispute indexing failed, using known disputes: %s", exc)
            return
        added = self._cache.remember(disputes)
        for dispute in disputes:
            self.track(dispute)
        self._last_indexed_count = len(disputes)
        if added:
            logger.info("Indexed %d disputes (%d new payment records)", len(disputes), added)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self._tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            self._stop_event.wait(timeout=self._interval)

    def _tick(self) -> None:
        self._index()
        self._last_tick_at = datetime.now(timezone.utc)

        with self._lock:
            pending = [
                key
                for key, state in self._states.items()
                if state not in (DisputeState.DONE, DisputeState.EVALUATING)
            ]

        for key in pending:
            if self._stop_event.is_set():
                break
            try:
                self.check_dispute(key)
            except LedgerError as exc:
                logger.warning("Ledger read failed for dispute %s, will retry: %s", key, exc)
