from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Callable

from testflight_pm.config import AppConfig, ConfigError, load_config
from testflight_pm.enhancement import CodebaseContextScanner, IssueEnhancer, OpenAIChatClient
from testflight_pm.filters import FeedbackFilter
from testflight_pm.idempotency import DuplicateDetector, IdempotentIssueCreator
from testflight_pm.logging_config import setup_logging
from testflight_pm.models import CreateIssueResult, FeedbackRecord
from testflight_pm.service import FeedbackProcessingService, RunStats
from testflight_pm.sources import TestFlightSource
from testflight_pm.store import JsonFileStateBackend, SQLiteStateBackend, StateBackend, StateStore
from testflight_pm.trackers import GitHubClient, LinearClient, build_labels, render_issue_preview
from testflight_pm.webhook import WebhookError, parse_webhook_event, verify_signature
from testflight_pm.window import FREQUENCIES, ProcessingWindowCalculator

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="testflight-pm",
        description="Turn TestFlight crash reports and feedback into GitHub and Linear issues.",
    )
    parser.add_argument(
        "-c",
        "--config",
        default=None,
        help="Path to an optional config YAML file; environment variables override it",
    )
    parser.add_argument(
        "--log-level",
        help="Override config log level (e.g. INFO, DEBUG)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    run = subparsers.add_parser("run", help="Fetch feedback once and create issues")
    dry_run = subparsers.add_parser("dry-run", help="Fetch feedback once and print the issues that would be created")
    for command in (run, dry_run):
        command.add_argument("--since", help="Explicit window start: ISO-8601 timestamp or 30m / 24h / 7d")
        command.add_argument("--frequency", choices=FREQUENCIES, help="Schedule frequency used to size the window")
        command.add_argument("--platform", choices=("github", "linear", "both"), help="Override the target platform")

    subparsers.add_parser("window", help="Print the processing window the next run would use")
    subparsers.add_parser("stats", help="Print processed-state statistics")

    clear = subparsers.add_parser("clear-state", help="Forget every processed feedback id")
    clear.add_argument(
        "--yes",
        action="store_true",
        help="Required safety flag for clearing state",
    )

    webhook = subparsers.add_parser("process-webhook", help="Create issues for a single App Store Connect webhook event")
    webhook.add_argument("--payload", default="-", help="Path to the JSON event body, or - for stdin (default)")
    webhook.add_argument("--signature", help="Value of the x-apple-signature header")
    webhook.add_argument("--platform", choices=("github", "linear", "both"), help="Override the target platform")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        app_config = load_config(args.config)
    except ConfigError as exc:
        print(f"Config error: {exc}", file=sys.stderr)
        return 2

    log_level = args.log_level or app_config.log_level
    setup_logging(log_level, github_actions=app_config.run.in_github_actions)

    if getattr(args, "platform", None):
        app_config.processing.platform = args.platform

    try:
        state_store = _build_state_store(app_config)

        if args.command == "window":
            calculator = _build_window_calculator(app_config, state_store)
            print(json.dumps(calculator.get_diagnostics(), indent=2))
            return 0

        if args.command == "stats":
            creator = _build_creator(app_config, state_store, github=None, linear=None)
            print(json.dumps(creator.get_statistics(), indent=2))
            return 0

        if args.command == "clear-state":
            if not args.yes:
                parser.error("clear-state requires --yes")
            if state_store is None:
                logger.info("State tracking is disabled; nothing to clear")
                return 0
            state_store.clear_state()
            logger.info("Cleared processed-feedback state at %s", app_config.state.path)
            return 0

        dry_run = args.command == "dry-run" or app_config.processing.dry_run
        if args.command == "process-webhook":
            return _process_webhook(args, app_config, state_store, dry_run)

        github, linear = _build_trackers(app_config, dry_run=dry_run)
        enhancer = _build_enhancer(app_config, dry_run=dry_run)
        creator = _build_creator(app_config, state_store, github=github, linear=linear, enhancer=enhancer)
        service = FeedbackProcessingService(
            source=TestFlightSource(app_config.app_store, app_config.http),
            window_calculator=_build_window_calculator(app_config, state_store),
            state_store=state_store,
            creator=creator,
            filter_engine=FeedbackFilter(app_config.processing),
            platform=app_config.processing.platform,
            dry_run=dry_run,
            run_id=app_config.run.run_id,
            explicit_since=args.since or app_config.processing.since,
            explicit_frequency=args.frequency or app_config.processing.frequency,
            max_issues_per_run=app_config.processing.max_issues_per_run,
            preview_callback=_issue_preview(app_config) if dry_run else None,
        )
    except ConfigError as exc:
        print(f"Config error: {exc}", file=sys.stderr)
        return 2

    stats = service.run_once()
    _log_run_complete(stats)
    _write_action_outputs(stats)
    return 0 if stats.ok else 1


def _process_webhook(
    args: argparse.Namespace,
    app_config: AppConfig,
    state_store: StateStore | None,
    dry_run: bool,
) -> int:
    try:
        payload = sys.stdin.buffer.read() if args.payload == "-" else Path(args.payload).read_bytes()
    except OSError as exc:
        logger.error("Could not read webhook payload %s: %s", args.payload, exc)
        return 1

    secret = app_config.webhook.secret
    if secret:
        if not verify_signature(secret, payload, args.signature):
            logger.error("Webhook signature verification failed")
            return 1
    else:
        logger.warning("No webhook secret configured; accepting the event without signature verification")

    try:
        record = parse_webhook_event(payload, app_config.app_store.bundle_id)
    except WebhookError as exc:
        logger.error("Rejected webhook event: %s", exc)
        return 1

    github, linear = _build_trackers(app_config, dry_run=dry_run)
    enhancer = _build_enhancer(app_config, dry_run=dry_run)
    creator = _build_creator(app_config, state_store, github=github, linear=linear, enhancer=enhancer)
    service = FeedbackProcessingService(
        source=None,
        window_calculator=None,
        state_store=state_store,
        creator=creator,
        filter_engine=FeedbackFilter(app_config.processing),
        platform=app_config.processing.platform,
        dry_run=dry_run,
        run_id=app_config.run.run_id,
        max_issues_per_run=app_config.processing.max_issues_per_run,
        preview_callback=_issue_preview(app_config) if dry_run else None,
    )
    stats = service.process_records([record])
    _log_run_complete(stats)
    _write_action_outputs(stats)
    return 0 if stats.ok else 1


def _build_state_store(app_config: AppConfig) -> StateStore | None:
    if not app_config.idempotency.enable_state_tracking:
        return None

    settings = app_config.state
    backend: StateBackend
    if settings.backend == "sqlite":
        sqlite_backend = SQLiteStateBackend(settings.path)
        sqlite_backend.init_db()
        backend = sqlite_backend
    elif settings.backend == "json":
        backend = JsonFileStateBackend(settings.path)
    else:
        raise ConfigError(f"Unsupported state backend: {settings.backend}")

    return StateStore(
        backend,
        max_retained_ids=settings.max_retained_ids,
        cache_expiry_hours=settings.cache_expiry_hours,
        autosave=settings.autosave,
    )


def _build_window_calculator(app_config: AppConfig, state_store: StateStore | None) -> ProcessingWindowCalculator:
    return ProcessingWindowCalculator(app_config.window, state_store=state_store, run_context=app_config.run)


def _build_trackers(app_config: AppConfig, *, dry_run: bool) -> tuple[GitHubClient | None, LinearClient | None]:
    """Clients for the configured platform.

    A dry run only searches for duplicates, so missing credentials there
    downgrade to a warning instead of a config error.
    """
    github = None
    linear = None
    try:
        if app_config.wants_github:
            github = GitHubClient(app_config.github, app_config.http)
    except ConfigError as exc:
        if not dry_run:
            raise
        logger.warning("%s; GitHub duplicate search skipped", exc)
    try:
        if app_config.wants_linear:
            linear = LinearClient(app_config.linear, app_config.http)
    except ConfigError as exc:
        if not dry_run:
            raise
        logger.warning("%s; Linear duplicate search skipped", exc)
    return github, linear


def _build_creator(
    app_config: AppConfig,
    state_store: StateStore | None,
    *,
    github: GitHubClient | None,
    linear: LinearClient | None,
    enhancer: IssueEnhancer | None = None,
) -> IdempotentIssueCreator:
    detector = DuplicateDetector(app_config.idempotency, state_store=state_store, github=github, linear=linear)
    return IdempotentIssueCreator(
        detector,
        app_config.idempotency,
        label_settings=app_config.labels,
        state_store=state_store,
        github=github,
        linear=linear,
        enhancer=enhancer,
    )


def _build_enhancer(app_config: AppConfig, *, dry_run: bool) -> IssueEnhancer | None:
    if not app_config.llm.enabled:
        return None
    if dry_run:
        logger.info("Dry run; LLM enhancement skipped")
        return None

    scanner = CodebaseContextScanner(app_config.codebase) if app_config.codebase.enabled else None
    return IssueEnhancer(app_config.llm, OpenAIChatClient(app_config.llm), scanner=scanner)


def _issue_preview(app_config: AppConfig) -> Callable[[FeedbackRecord, CreateIssueResult], None]:
    platform = app_config.processing.platform
    platforms = ["github", "linear"] if platform == "both" else [platform]

    def preview(record: FeedbackRecord, result: CreateIssueResult) -> None:
        print("[DRY RUN] WOULD CREATE:")
        print(render_issue_preview(record, build_labels(record, app_config.labels), platforms))
        for warning in result.warnings:
            if not warning.startswith("Dry run:"):
                print(f"note: {warning}")
        print("")

    return preview


def _log_run_complete(stats: RunStats) -> None:
    logger.info(
        "Run complete | fetched=%d new=%d filtered_out=%d created=%d partial=%d duplicates=%d "
        "failed=%d dry_run_previews=%d errors=%d",
        stats.fetched,
        stats.new,
        stats.filtered_out,
        stats.created,
        stats.partial,
        stats.duplicates,
        stats.failed,
        stats.dry_run_previews,
        len(stats.errors),
    )


def _write_action_outputs(stats: RunStats) -> None:
    output_path = os.getenv("GITHUB_OUTPUT", "").strip()
    if not output_path:
        return
    try:
        with open(output_path, "a", encoding="utf-8") as handle:
            for name, value in stats.action_outputs().items():
                handle.write(f"{name}={value}\n")
    except OSError as exc:
        logger.warning("Could not write action outputs to %s: %s", output_path, exc)


if __name__ == "__main__":
    raise SystemExit(main())
