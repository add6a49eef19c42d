from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from testflight_pm.models import FeedbackRecord


class Source(ABC):
    def __init__(self, source_id: str) -> None:
        self.source_id = source_id

    @abstractmethod
    def fetch(self, since: datetime, until: datetime) -> list[FeedbackRecord]:
        """Fetch feedback submitted in ``[since, until)``, newest first."""
