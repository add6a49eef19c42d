from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path

from .base import PersistedState, StateBackend

logger = logging.getLogger(__name__)


class JsonFileStateBackend(StateBackend):
    """State kept in a single JSON document.

    Under GitHub Actions the containing directory is restored and saved with
    ``actions/cache`` so the document survives between workflow runs.
    """

    def __init__(self, path: str) -> None:
        self.path = Path(path)

    def load(self) -> PersistedState | None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("Could not read state file %s: %s", self.path, exc)
            return None

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("State file %s is not valid JSON: %s", self.path, exc)
            return None

        state = PersistedState.from_dict(payload)
        if state is None:
            logger.warning("State file %s has an unexpected layout; ignoring it", self.path)
        return state

    def save(self, state: PersistedState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".state-", suffix=".json", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(state.to_dict(), handle)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
