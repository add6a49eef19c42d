"""Find source lines in the app's repository that relate to a feedback item.

Symbols are pulled out of the crash trace (Objective-C selectors, Swift and
Kotlin frames, exception names) or out of the tester's text (CamelCase
identifiers and common UI words) and looked up case-insensitively in the
workspace. The hits give the LLM something concrete to point at.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

from testflight_pm.config import CodebaseSettings
from testflight_pm.models import FeedbackRecord

logger = logging.getLogger(__name__)

# depth -> (files scanned, areas kept)
_DEPTH_LIMITS = {"light": (200, 5), "moderate": (1000, 10), "deep": (5000, 15)}

_SOURCE_SUFFIXES = {
    ".swift", ".m", ".mm", ".h", ".kt", ".java", ".dart",
    ".ts", ".tsx", ".js", ".jsx", ".py", ".rb", ".go", ".rs",
}
_IGNORED_DIRS = {
    ".git", ".build", ".venv", "__pycache__", "build", "dist", "coverage",
    "node_modules", "Pods", "Carthage", "DerivedData", "vendor",
}
_TEST_DIRS = {"test", "tests", "__tests__", "Tests", "UITests"}

_STACK_PATTERNS = (
    re.compile(r"[-+]\[(\w+) (\w+)"),
    re.compile(r"\b(\w+(?:ViewController|View|Manager|Service|Delegate|Activity|Fragment))\.(\w+)"),
    re.compile(r"\b(\w+)\.(?:swift|kt|java|m):\d+"),
    re.compile(r"\bat [\w.$]*?\.(\w+)\.(\w+)\("),
    re.compile(r"\b(\w+(?:Exception|Error))\b"),
)
_CAMEL_CASE = re.compile(r"\b[A-Z][a-z0-9]+(?:[A-Z][a-z0-9]+)+\b")
_WORD = re.compile(r"[a-z]+")
_UI_WORDS = {
    "button", "camera", "cart", "checkout", "keyboard", "login", "logout", "menu",
    "notification", "onboarding", "payment", "profile", "scroll", "search",
    "settings", "signup", "tab", "toolbar", "upload", "video",
}
# Too common in source to say anything about a specific bug.
_GENERIC_SYMBOLS = {
    "main", "init", "self", "view", "error", "exception", "thread", "closure", "runtimeerror",
    "swift", "java",
}
_MAX_PATTERNS = 25


@dataclass(frozen=True, slots=True)
class CodeArea:
    path: str
    line: int
    snippet: str
    pattern: str
    confidence: float


def extract_patterns(record: FeedbackRecord) -> list[str]:
    candidates: list[str] = []
    if record.crash_data is not None:
        crash = record.crash_data
        for text in (crash.trace, crash.exception_message or ""):
            for regex in _STACK_PATTERNS:
                for match in regex.finditer(text):
                    candidates.extend(group for group in match.groups() if group)
    text = record.feedback_text
    if text:
        candidates.extend(_CAMEL_CASE.findall(text))
        candidates.extend(word for word in _WORD.findall(text.lower()) if word in _UI_WORDS)

    patterns: list[str] = []
    seen: set[str] = set()
    for candidate in candidates:
        key = candidate.lower()
        if len(candidate) < 4 or key in _GENERIC_SYMBOLS or key in seen:
            continue
        seen.add(key)
        patterns.append(candidate)
    return patterns[:_MAX_PATTERNS]


class CodebaseContextScanner:
    def __init__(self, settings: CodebaseSettings) -> None:
        self.settings = settings
        self.root = Path(settings.root).expanduser()
        self.max_files, self.max_areas = _DEPTH_LIMITS.get(settings.depth, _DEPTH_LIMITS["moderate"])

    def find_relevant_areas(self, record: FeedbackRecord) -> list[CodeArea]:
        patterns = extract_patterns(record)
        if not patterns or not self.root.is_dir():
            return []

        lowered = [(pattern, pattern.lower()) for pattern in patterns]
        areas: list[CodeArea] = []
        for path in self._source_files():
            try:
                lines = path.read_text(encoding="utf-8", errors="ignore").splitlines()
            except OSError as exc:
                logger.debug("Skipping unreadable file %s: %s", path, exc)
                continue

            relative = path.relative_to(self.root).as_posix()
            found: set[str] = set()
            for number, line in enumerate(lines, start=1):
                haystack = line.lower()
                for pattern, needle in lowered:
                    if needle in found or needle not in haystack:
                        continue
                    found.add(needle)
                    areas.append(
                        CodeArea(
                            path=relative,
                            line=number,
                            snippet=line.strip()[:200],
                            pattern=pattern,
                            confidence=self._confidence(record, relative, len(lines)),
                        )
                    )

        areas.sort(key=lambda area: (-area.confidence, area.path, area.line))
        logger.debug("Codebase scan for %s matched %d area(s)", record.id, len(areas))
        return areas[: self.max_areas]

    def _source_files(self) -> list[Path]:
        files: list[Path] = []
        for directory, subdirs, names in os.walk(self.root):
            subdirs[:] = sorted(
                name
                for name in subdirs
                if name not in _IGNORED_DIRS and (self.settings.include_tests or name not in _TEST_DIRS)
            )
            for name in sorted(names):
                path = Path(directory, name)
                if path.suffix not in _SOURCE_SUFFIXES:
                    continue
                try:
                    if path.stat().st_size > self.settings.max_file_bytes:
                        continue
                except OSError:
                    continue
                files.append(path)
                if len(files) >= self.max_files:
                    return files
        return files

    def _confidence(self, record: FeedbackRecord, path: str, line_count: int) -> float:
        lowered = path.lower()
        confidence = 0.6
        if record.is_crash:
            if lowered.endswith((".swift", ".m", ".mm")):
                confidence += 0.1
            if "crash" in lowered or "error" in lowered:
                confidence += 0.2
        else:
            if "ui" in lowered or "component" in lowered:
                confidence += 0.1
            if "screen" in lowered or "view" in lowered:
                confidence += 0.1
        if "test" not in lowered and "spec" not in lowered:
            confidence += 0.05
        if line_count > 1000:
            confidence -= 0.1
        elif line_count < 200:
            confidence += 0.05
        return round(min(1.0, max(0.0, confidence)), 2)
