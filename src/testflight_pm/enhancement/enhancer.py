"""LLM rewrite of an issue before it is filed."""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from openai import APIError, RateLimitError

from testflight_pm.config import LLMSettings
from testflight_pm.models import FeedbackRecord, IssueContent
from testflight_pm.trackers.formatting import build_issue_body

from .codebase import CodeArea, CodebaseContextScanner
from .llm import ChatClient, estimate_cost

logger = logging.getLogger(__name__)

ENHANCEMENT_PROMPT = (
    "You are triaging TestFlight beta feedback for a mobile app team. "
    "Turn the report below into a clear, actionable issue.\n"
    "\n"
    "Report:\n"
    "{report}\n"
    "{code_context}"
    "\n"
    "Respond with valid JSON in this exact format:\n"
    "{{\n"
    '  "title": "Short, specific issue title",\n'
    '  "summary": "2-4 sentences: what happened, likely cause, where to look",\n'
    '  "reproduction_steps": ["step one", "step two"],\n'
    '  "labels": ["ui", "networking"]\n'
    "}}\n"
    "\n"
    "Rules:\n"
    "- title: at most 100 characters, no emoji, no build numbers\n"
    "- reproduction_steps: empty list when the report does not say\n"
    "- labels: 0-3 lowercase area labels; do not repeat: {labels}\n"
    "- only reference files from the code context when they are clearly related"
)

MAX_REPORT_LENGTH = 12000
MAX_TITLE_LENGTH = 256
MAX_EXTRA_LABELS = 3
_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


class EnhancementError(Exception):
    """The LLM could not produce a usable issue."""


class BudgetExceededError(EnhancementError):
    """The per-run LLM cost cap has been reached."""


@dataclass(slots=True)
class LLMUsage:
    requests: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_usd: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "requests": self.requests,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "cost_usd": round(self.cost_usd, 6),
        }


@dataclass(slots=True)
class EnhancedIssue:
    title: str
    summary: str
    reproduction_steps: list[str]
    labels: list[str]


def parse_enhancement(response_text: str) -> EnhancedIssue:
    """Parse the JSON reply from the LLM."""
    try:
        data = json.loads(_CODE_FENCE.sub("", response_text.strip()))
    except json.JSONDecodeError as exc:
        raise EnhancementError(f"Invalid JSON response: {exc}") from exc
    if not isinstance(data, dict):
        raise EnhancementError("LLM response is not a JSON object")

    title = data.get("title")
    if not isinstance(title, str) or not title.strip():
        raise EnhancementError("LLM response has no title")

    summary = data.get("summary")
    steps = data.get("reproduction_steps")
    labels = data.get("labels")
    return EnhancedIssue(
        title=" ".join(title.split())[:MAX_TITLE_LENGTH],
        summary=summary.strip() if isinstance(summary, str) else "",
        reproduction_steps=[str(step).strip() for step in steps if str(step).strip()] if isinstance(steps, list) else [],
        labels=[str(label).strip().lower() for label in labels if str(label).strip()] if isinstance(labels, list) else [],
    )


class IssueEnhancer:
    """Rewrites an issue's title, body and labels through an LLM.

    Usage is accumulated across calls; once the estimated cost reaches
    ``max_cost_per_run`` no further requests are made. The standard body is
    always kept below the LLM summary, so the ``TestFlight ID`` marker that
    duplicate detection relies on survives.
    """

    def __init__(
        self,
        settings: LLMSettings,
        client: ChatClient,
        *,
        scanner: CodebaseContextScanner | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.client = client
        self.scanner = scanner
        self._sleep = sleep
        self.usage = LLMUsage()

    @property
    def budget_remaining(self) -> float:
        return max(0.0, self.settings.max_cost_per_run - self.usage.cost_usd)

    def enhance(self, record: FeedbackRecord, labels: Sequence[str]) -> IssueContent:
        if self.budget_remaining <= 0:
            raise BudgetExceededError(f"LLM cost cap of ${self.settings.max_cost_per_run:.2f} reached for this run")

        standard_body = build_issue_body(record)
        areas = self._code_areas(record)
        report = standard_body
        if len(report) > MAX_REPORT_LENGTH:
            report = report[:MAX_REPORT_LENGTH] + "..."
        prompt = ENHANCEMENT_PROMPT.format(
            report=report,
            code_context=_render_code_context(areas),
            labels=", ".join(labels) or "none",
        )

        issue = parse_enhancement(self._complete(prompt))
        merged_labels = list(labels)
        for label in issue.labels:
            if len(merged_labels) - len(labels) >= MAX_EXTRA_LABELS:
                break
            if label not in merged_labels and len(label) <= 50:
                merged_labels.append(label)

        logger.info("Enhanced issue for %s: %s", record.id, issue.title)
        return IssueContent(
            title=issue.title,
            body=_render_body(issue, areas, standard_body),
            labels=tuple(merged_labels),
        )

    def get_statistics(self) -> dict[str, Any]:
        return {
            "model": self.client.model,
            "max_cost_per_run": self.settings.max_cost_per_run,
            "codebase_analysis": self.scanner is not None,
            "usage": self.usage.to_dict(),
        }

    def _complete(self, prompt: str) -> str:
        attempts = self.settings.max_retries + 1
        for attempt in range(attempts):
            try:
                reply = self.client.chat_completion(
                    prompt,
                    max_tokens=self.settings.max_tokens_per_issue,
                    temperature=self.settings.temperature,
                )
            except RateLimitError as exc:
                self.usage.requests += 1
                if attempt + 1 < attempts:
                    logger.warning("LLM rate limited, attempt %d/%d: %s", attempt + 1, attempts, exc)
                    self._sleep(2**attempt)
                    continue
                raise EnhancementError(f"Rate limited after {attempts} attempts") from exc
            except APIError as exc:
                self.usage.requests += 1
                logger.error("LLM API error: %s", exc)
                raise EnhancementError(f"API error: {exc}") from exc

            self.usage.requests += 1
            self.usage.prompt_tokens += reply.prompt_tokens
            self.usage.completion_tokens += reply.completion_tokens
            self.usage.cost_usd += estimate_cost(self.client.model, reply.prompt_tokens, reply.completion_tokens)
            return reply.text
        raise EnhancementError("LLM was never called")

    def _code_areas(self, record: FeedbackRecord) -> list[CodeArea]:
        if self.scanner is None:
            return []
        try:
            return self.scanner.find_relevant_areas(record)
        except OSError as exc:
            logger.warning("Codebase analysis failed for %s: %s", record.id, exc)
            return []


def _render_code_context(areas: Sequence[CodeArea]) -> str:
    if not areas:
        return ""
    lines = ["", "Possibly related code:"]
    lines.extend(f"- {area.path}:{area.line} `{area.snippet}`" for area in areas)
    return "\n".join(lines) + "\n"


def _render_body(issue: EnhancedIssue, areas: Sequence[CodeArea], standard_body: str) -> str:
    parts: list[str] = []
    if issue.summary:
        parts.extend(["## Summary", "", issue.summary, ""])
    if issue.reproduction_steps:
        parts.extend(["## Steps to Reproduce", ""])
        parts.extend(f"{index}. {step}" for index, step in enumerate(issue.reproduction_steps, start=1))
        parts.append("")
    if areas:
        parts.extend(["## Related Code", ""])
        parts.extend(f"- `{area.path}:{area.line}` ({area.pattern})" for area in areas)
        parts.append("")
    parts.extend(["---", "", standard_body])
    return "\n".join(parts)
