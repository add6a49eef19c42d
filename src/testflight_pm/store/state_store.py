from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Sequence, TypeVar

from testflight_pm.utils.datetime_utils import format_age, isoformat_utc, utcnow

from .base import PersistedState, StateBackend

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class StateStats:
    total_processed: int
    currently_cached: int
    last_processed_at: datetime | None
    cache_age: str
    action_run_id: str | None

    def to_dict(self) -> dict[str, object]:
        return {
            "total_processed": self.total_processed,
            "currently_cached": self.currently_cached,
            "last_processed_at": isoformat_utc(self.last_processed_at),
            "cache_age": self.cache_age,
            "action_run_id": self.action_run_id,
        }


class StateStore:
    """Bookkeeping of feedback ids that already produced an issue.

    The store is loaded once at construction and assumes a single writer per
    run. Ids are kept in insertion order; once more than ``max_retained_ids``
    are tracked the oldest are dropped. The whole document is discarded when
    it is older than ``cache_expiry_hours``.
    """

    def __init__(
        self,
        backend: StateBackend,
        *,
        max_retained_ids: int = 10000,
        cache_expiry_hours: float = 168.0,
        autosave: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if max_retained_ids < 1:
            raise ValueError("max_retained_ids must be >= 1")
        self.backend = backend
        self.max_retained_ids = max_retained_ids
        self.cache_expiry_hours = cache_expiry_hours
        self.autosave = autosave
        self._clock = clock
        self._state = self._load()
        self._ids: dict[str, None] = dict.fromkeys(self._state.processed_ids)
        self._dirty = False

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def expires_at(self) -> datetime:
        return self._state.created_at + timedelta(hours=self.cache_expiry_hours)

    def is_processed(self, feedback_id: str) -> bool:
        return feedback_id in self._ids

    def mark_as_processed(self, feedback_ids: Iterable[str], run_id: str | None = None) -> None:
        unique_ids = [item for item in dict.fromkeys(feedback_ids) if isinstance(item, str) and item]
        if not unique_ids:
            return

        for feedback_id in unique_ids:
            self._ids.pop(feedback_id, None)
            self._ids[feedback_id] = None

        self._state.total_processed += len(unique_ids)
        self._state.last_processed_at = self._clock()
        self._state.action_run_id = run_id
        self._evict_oldest()
        self._dirty = True

        if self.autosave:
            self.save_state()

    def filter_unprocessed(self, records: Sequence[T]) -> list[T]:
        unprocessed: list[T] = []
        for record in records:
            feedback_id = getattr(record, "id", None)
            if not isinstance(feedback_id, str) or not feedback_id.strip():
                logger.warning("Dropping feedback record without a usable id: %r", record)
                continue
            if feedback_id in self._ids:
                continue
            unprocessed.append(record)
        return unprocessed

    def get_stats(self) -> StateStats:
        return StateStats(
            total_processed=self._state.total_processed,
            currently_cached=len(self._ids),
            last_processed_at=self._state.last_processed_at,
            cache_age=format_age(self._clock() - self._state.created_at),
            action_run_id=self._state.action_run_id,
        )

    def save_state(self) -> None:
        self._state.processed_ids = list(self._ids)
        self.backend.save(self._state)
        self._dirty = False
        logger.info("State saved: %d processed ids tracked", len(self._ids))

    def clear_state(self) -> None:
        self.backend.clear()
        self._state = self._fresh_state()
        self._ids = {}
        self._dirty = False

    def _evict_oldest(self) -> None:
        excess = len(self._ids) - self.max_retained_ids
        if excess <= 0:
            return
        for feedback_id in list(self._ids)[:excess]:
            del self._ids[feedback_id]
        logger.info("Evicted %d oldest processed ids", excess)

    def _load(self) -> PersistedState:
        try:
            state = self.backend.load()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to load state (%s); starting fresh", exc)
            return self._fresh_state()

        if state is None:
            return self._fresh_state()

        if self._clock() > state.created_at + timedelta(hours=self.cache_expiry_hours):
            logger.info(
                "Processed-feedback state from %s expired after %sh; starting fresh",
                isoformat_utc(state.created_at),
                self.cache_expiry_hours,
            )
            return self._fresh_state()

        logger.debug("Loaded state with %d processed ids", len(state.processed_ids))
        return state

    def _fresh_state(self) -> PersistedState:
        return PersistedState(created_at=self._clock())
