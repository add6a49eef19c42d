from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from testflight_pm.utils.datetime_utils import isoformat_utc, parse_datetime_utc

STATE_VERSION = "1.0.0"


@dataclass(slots=True)
class PersistedState:
    created_at: datetime
    processed_ids: list[str] = field(default_factory=list)
    total_processed: int = 0
    last_processed_at: datetime | None = None
    action_run_id: str | None = None
    version: str = STATE_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "created_at": isoformat_utc(self.created_at),
            "processed_ids": list(self.processed_ids),
            "total_processed": self.total_processed,
            "last_processed_at": isoformat_utc(self.last_processed_at),
            "action_run_id": self.action_run_id,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> PersistedState | None:
        """Rebuild a state document, returning None when it is not usable."""
        if not isinstance(payload, dict):
            return None

        created_at = parse_datetime_utc(payload.get("created_at"))
        raw_ids = payload.get("processed_ids")
        if created_at is None or not isinstance(raw_ids, list):
            return None

        processed_ids = [item for item in raw_ids if isinstance(item, str) and item]
        total_raw = payload.get("total_processed", len(processed_ids))
        total_processed = total_raw if isinstance(total_raw, int) and not isinstance(total_raw, bool) else len(processed_ids)
        run_id = payload.get("action_run_id")

        return cls(
            created_at=created_at,
            processed_ids=processed_ids,
            total_processed=max(total_processed, 0),
            last_processed_at=parse_datetime_utc(payload.get("last_processed_at")),
            action_run_id=str(run_id) if run_id is not None else None,
            version=str(payload.get("version") or STATE_VERSION),
        )


class StateBackend(ABC):
    @abstractmethod
    def load(self) -> PersistedState | None:
        """Return the stored state, or None when it is missing or unreadable."""

    @abstractmethod
    def save(self, state: PersistedState) -> None:
        """Persist the state, replacing whatever was stored before."""

    @abstractmethod
    def clear(self) -> None:
        """Remove any stored state."""
