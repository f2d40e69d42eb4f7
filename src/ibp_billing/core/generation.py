"""Duplicate-run protection for monthly billing generation.

States per process: Idle, InProgress, Done(month), plus a set of pending
months whose run failed.

  Idle / Done(m < target) --try_begin--> InProgress
  pending(target)         --try_begin--> InProgress
  InProgress --finish(success)--> Done(max(last, target)), target leaves pending
  InProgress --finish(failure)--> previous Done state, target joins pending

A pending month is never considered done, even once a later month has
succeeded, so it can be regenerated until a run for it completes.

The lock guards only the flag flips; the report writing between try_begin()
and finish() happens outside it.
"""
from __future__ import annotations

import threading
from datetime import date

from ibp_billing.core.interfaces import IGenerationStateStore
from ibp_billing.core.models import GenerationState
from ibp_billing.observability import get_logger

logger = get_logger(__name__)


def _label(month: date) -> str:
    return month.strftime("%Y-%m")


class GenerationGuard:
    """Tracks the last generated month, failed months and whether a run is in flight.

    Args:
        state_store: Optional durable store; loaded once on construction and
            written after every finished run so dedup and retries survive
            restarts.
    """

    def __init__(self, state_store: IGenerationStateStore | None = None) -> None:
        self._lock = threading.Lock()
        self._state_store = state_store
        loaded = state_store.load() if state_store is not None else GenerationState()
        self._state = GenerationState(
            last_generated_month=loaded.last_generated_month,
            pending_months=sorted(set(loaded.pending_months)),
        )

    def snapshot(self) -> GenerationState:
        """Copy of the current state."""
        with self._lock:
            return self._copy()

    def pending_months(self) -> list[date]:
        """Failed months awaiting regeneration, earliest first."""
        with self._lock:
            return list(self._state.pending_months)

    def is_generated(self, month: date) -> bool:
        """True if month completed successfully, or a later month did and month is not pending."""
        with self._lock:
            return self._is_done(month)

    def try_begin(self, month: date) -> bool:
        """Claim the run for month.

        Returns:
            False when a run is already in progress or month is already done.
        """
        with self._lock:
            if self._state.in_progress:
                logger.info("monthly_generation_already_running", month=_label(month))
                return False
            if self._is_done(month):
                logger.info("monthly_generation_already_done", month=_label(month))
                return False
            self._state.in_progress = True
            return True

    def finish(self, month: date, success: bool) -> None:
        """Release the run; success advances the recorded month, failure marks it pending."""
        with self._lock:
            self._state.in_progress = False
            pending = set(self._state.pending_months)
            if success:
                pending.discard(month)
                last = self._state.last_generated_month
                if last is None or last < month:
                    self._state.last_generated_month = month
            else:
                pending.add(month)
            self._state.pending_months = sorted(pending)
            state = self._copy()

        if not success:
            logger.warning(
                "monthly_generation_pending_retry",
                month=_label(month),
                pending=[_label(m) for m in state.pending_months],
            )

        # Persisted outside the lock; a lost save means one extra rerun after restart.
        if self._state_store is not None:
            try:
                self._state_store.save(state)
            except OSError as exc:
                logger.error(
                    "monthly_generation_state_save_failed",
                    month=_label(month),
                    error=str(exc),
                )

    def _is_done(self, month: date) -> bool:
        if month in self._state.pending_months:
            return False
        last = self._state.last_generated_month
        return last is not None and last >= month

    def _copy(self) -> GenerationState:
        return GenerationState(
            last_generated_month=self._state.last_generated_month,
            in_progress=self._state.in_progress,
            pending_months=list(self._state.pending_months),
        )
