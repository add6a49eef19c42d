from __future__ import annotations

import logging
import sys

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class GitHubActionsFormatter(logging.Formatter):
    """Emit warnings and errors as workflow commands so they show up as annotations."""

    _COMMANDS = {logging.WARNING: "warning", logging.ERROR: "error", logging.CRITICAL: "error"}

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        command = self._COMMANDS.get(record.levelno)
        if command is None:
            return message
        escaped = message.replace("%", "%25").replace("\r", "%0D").replace("\n", "%0A")
        return f"::{command}::{escaped}"


def setup_logging(level: str = "INFO", *, github_actions: bool = False) -> None:
    handler = logging.StreamHandler(sys.stdout)
    if github_actions:
        handler.setFormatter(GitHubActionsFormatter("%(name)s: %(message)s"))
    else:
        handler.setFormatter(logging.Formatter(_FORMAT))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    logging.getLogger("urllib3").setLevel(logging.WARNING)
