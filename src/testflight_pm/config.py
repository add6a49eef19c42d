from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml


class ConfigError(ValueError):
    """Raised when configuration is invalid."""


@dataclass(slots=True)
class AppStoreSettings:
    issuer_id: str = ""
    key_id: str = ""
    private_key: str = ""
    app_id: str = ""
    bundle_id: str = ""
    api_url: str = "https://api.appstoreconnect.apple.com/v1"
    page_limit: int = 100


@dataclass(slots=True)
class GitHubSettings:
    token: str = ""
    owner: str = ""
    repo: str = ""
    api_url: str = "https://api.github.com"
    duplicate_detection_days: int = 7
    rate_limit_reserve: int = 100


@dataclass(slots=True)
class LinearSettings:
    api_token: str = ""
    team_id: str = ""
    api_url: str = "https://api.linear.app/graphql"
    default_priority: int = 3
    assignee_id: str = ""
    project_id: str = ""


@dataclass(slots=True)
class LabelSettings:
    default_labels: list[str] = field(default_factory=lambda: ["testflight", "testflight-pm"])
    crash_labels: list[str] = field(default_factory=lambda: ["bug", "crash"])
    feedback_labels: list[str] = field(default_factory=lambda: ["enhancement", "feedback"])
    additional_labels: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ProcessingSettings:
    platform: str = "github"
    dry_run: bool = False
    enable_crash_processing: bool = True
    enable_feedback_processing: bool = True
    min_feedback_length: int = 10
    since: str | None = None
    frequency: str | None = None
    max_issues_per_run: int = 50


@dataclass(slots=True)
class IdempotencySettings:
    enable_state_tracking: bool = True
    enable_github_duplicate_detection: bool = True
    enable_linear_duplicate_detection: bool = True
    retry_attempts: int = 3
    retry_delay_ms: int = 1000
    search_timeout_ms: int = 10000
    confidence_threshold: float = 0.7


@dataclass(slots=True)
class StateSettings:
    backend: str = "json"
    path: str = ".testflight-pm/processed-feedback-state.json"
    max_retained_ids: int = 10000
    cache_expiry_hours: float = 168.0
    autosave: bool = False


@dataclass(slots=True)
class WindowSettings:
    default_lookback_hours: float = 24.0
    buffer_minutes: float = 30.0
    max_lookback_hours: float = 168.0
    min_lookback_minutes: float = 15.0
    enable_adaptive_windows: bool = True
    overlap_prevention: bool = True


@dataclass(slots=True)
class HttpSettings:
    timeout_seconds: float = 30.0
    retries: int = 3
    retry_delay_ms: int = 1000


@dataclass(slots=True)
class LLMSettings:
    enabled: bool = False
    api_key: str = ""
    base_url: str = ""
    model: str = "gpt-4.1-mini"
    temperature: float = 0.3
    max_tokens_per_issue: int = 4000
    max_cost_per_run: float = 5.0
    max_retries: int = 2
    timeout_seconds: float = 60.0
    fallback_to_standard: bool = True


@dataclass(slots=True)
class CodebaseSettings:
    enabled: bool = True
    root: str = "."
    depth: str = "moderate"
    include_tests: bool = False
    max_file_bytes: int = 500_000


@dataclass(slots=True)
class WebhookSettings:
    secret: str = ""


@dataclass(slots=True)
class RunContext:
    in_github_actions: bool = False
    event_name: str | None = None
    workflow: str | None = None
    run_id: str | None = None


@dataclass(slots=True)
class AppConfig:
    app_store: AppStoreSettings = field(default_factory=AppStoreSettings)
    github: GitHubSettings = field(default_factory=GitHubSettings)
    linear: LinearSettings = field(default_factory=LinearSettings)
    labels: LabelSettings = field(default_factory=LabelSettings)
    processing: ProcessingSettings = field(default_factory=ProcessingSettings)
    idempotency: IdempotencySettings = field(default_factory=IdempotencySettings)
    state: StateSettings = field(default_factory=StateSettings)
    window: WindowSettings = field(default_factory=WindowSettings)
    http: HttpSettings = field(default_factory=HttpSettings)
    webhook: WebhookSettings = field(default_factory=WebhookSettings)
    llm: LLMSettings = field(default_factory=LLMSettings)
    codebase: CodebaseSettings = field(default_factory=CodebaseSettings)
    run: RunContext = field(default_factory=RunContext)
    log_level: str = "INFO"

    @property
    def wants_github(self) -> bool:
        return self.processing.platform in {"github", "both"}

    @property
    def wants_linear(self) -> bool:
        return self.processing.platform in {"linear", "both"}


_PLATFORMS = {"github", "linear", "both"}
_STATE_BACKENDS = {"json", "sqlite"}
_ANALYSIS_DEPTHS = {"light", "moderate", "deep"}


def _as_string_list(value: Any, *, field_name: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if not isinstance(value, list):
        raise ConfigError(f"{field_name} must be a list of strings, got: {type(value)!r}")
    return [str(item).strip() for item in value if str(item).strip()]


def _as_bool(value: Any, *, field_name: str) -> bool:
    if isinstance(value, bool):
        return value

    if isinstance(value, int) and value in {0, 1}:
        return bool(value)

    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "1", "yes", "on"}:
            return True
        if normalized in {"false", "0", "no", "off"}:
            return False

    raise ConfigError(f"{field_name} must be a boolean")


def _as_int(value: Any, *, field_name: str, minimum: int | None = None) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{field_name} must be an integer")

    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{field_name} must be an integer") from exc

    if minimum is not None and parsed < minimum:
        raise ConfigError(f"{field_name} must be >= {minimum}")
    return parsed


def _as_float(
    value: Any,
    *,
    field_name: str,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"{field_name} must be a number")

    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{field_name} must be a number") from exc

    if minimum is not None and parsed < minimum:
        raise ConfigError(f"{field_name} must be >= {minimum}")
    if maximum is not None and parsed > maximum:
        raise ConfigError(f"{field_name} must be <= {maximum}")
    return parsed


def _as_optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_str(value: Any) -> str:
    return _as_optional_str(value) or ""


class _Resolver:
    """Looks a setting up in the environment, then the YAML section, then the default."""

    def __init__(self, parsed: Mapping[str, Any], environ: Mapping[str, str]) -> None:
        self.parsed = parsed
        self.environ = environ
        self.in_github_actions = environ.get("GITHUB_ACTIONS", "").strip().lower() == "true"

    def section(self, name: str) -> Mapping[str, Any]:
        raw = self.parsed.get(name, {}) or {}
        if not isinstance(raw, dict):
            raise ConfigError(f"{name} must be a mapping")
        return raw

    def env(self, env_name: str | None, input_name: str | None = None) -> str | None:
        value = self.environ.get(env_name, "") if env_name else ""
        if not value.strip() and input_name and self.in_github_actions:
            input_key = f"INPUT_{input_name.upper().replace('-', '_')}"
            value = self.environ.get(input_key, "")
        return value.strip() or None

    def get(
        self,
        section: str,
        key: str,
        default: Any = None,
        *,
        env: str | None = None,
        action_input: str | None = None,
    ) -> Any:
        env_value = self.env(env, action_input)
        if env_value is not None:
            return env_value
        raw_section = self.section(section)
        if raw_section.get(key) is not None:
            return raw_section[key]
        return default


def _read_yaml(path: str | Path) -> dict[str, Any]:
    config_path = Path(path).expanduser().resolve()
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as handle:
        try:
            parsed = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Config file is not valid YAML: {exc}") from exc

    if not isinstance(parsed, dict):
        raise ConfigError("Config root must be a mapping")
    return parsed


def load_config(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    """Assemble the application config once.

    Precedence, lowest first: dataclass defaults, the optional YAML file,
    environment variables, then GitHub Action inputs (``INPUT_*``) for any
    variable left unset while running under GitHub Actions.
    """
    parsed = _read_yaml(path) if path is not None else {}
    resolver = _Resolver(parsed, os.environ if environ is None else environ)
    r = resolver.get

    app_store = AppStoreSettings(
        issuer_id=_as_str(r("app_store", "issuer_id", env="TESTFLIGHT_ISSUER_ID", action_input="testflight_issuer_id")),
        key_id=_as_str(r("app_store", "key_id", env="TESTFLIGHT_KEY_ID", action_input="testflight_key_id")),
        private_key=_as_str(
            r("app_store", "private_key", env="TESTFLIGHT_PRIVATE_KEY", action_input="testflight_private_key")
        ),
        app_id=_as_str(r("app_store", "app_id", env="TESTFLIGHT_APP_ID", action_input="app_id")),
        bundle_id=_as_str(r("app_store", "bundle_id", env="TESTFLIGHT_BUNDLE_ID", action_input="testflight_bundle_id")),
        api_url=_as_str(r("app_store", "api_url", "https://api.appstoreconnect.apple.com/v1")).rstrip("/"),
        page_limit=_as_int(r("app_store", "page_limit", 100), field_name="app_store.page_limit", minimum=1),
    )

    owner = _as_str(r("github", "owner", env="GITHUB_OWNER", action_input="github_owner"))
    repo = _as_str(r("github", "repo", env="GITHUB_REPO", action_input="github_repo"))
    repository = resolver.env("GITHUB_REPOSITORY")
    if repository and "/" in repository and not (owner and repo):
        default_owner, default_repo = repository.split("/", 1)
        owner = owner or default_owner
        repo = repo or default_repo

    github = GitHubSettings(
        token=_as_str(r("github", "token", env="GITHUB_TOKEN", action_input="github_token")),
        owner=owner,
        repo=repo,
        api_url=_as_str(r("github", "api_url", "https://api.github.com", env="GITHUB_API_URL")).rstrip("/"),
        duplicate_detection_days=_as_int(
            r("github", "duplicate_detection_days", 7, env="DUPLICATE_DETECTION_DAYS", action_input="duplicate_detection_days"),
            field_name="github.duplicate_detection_days",
            minimum=1,
        ),
        rate_limit_reserve=_as_int(
            r("github", "rate_limit_reserve", 100),
            field_name="github.rate_limit_reserve",
            minimum=0,
        ),
    )

    linear = LinearSettings(
        api_token=_as_str(r("linear", "api_token", env="LINEAR_API_TOKEN", action_input="linear_api_token")),
        team_id=_as_str(r("linear", "team_id", env="LINEAR_TEAM_ID", action_input="linear_team_id")),
        api_url=_as_str(r("linear", "api_url", "https://api.linear.app/graphql")),
        default_priority=_as_int(
            r("linear", "default_priority", 3),
            field_name="linear.default_priority",
            minimum=0,
        ),
        assignee_id=_as_str(r("linear", "assignee_id", env="LINEAR_ASSIGNEE_ID", action_input="linear_assignee_id")),
        project_id=_as_str(r("linear", "project_id", env="LINEAR_PROJECT_ID", action_input="linear_project_id")),
    )

    label_defaults = LabelSettings()
    labels = LabelSettings(
        default_labels=_as_string_list(
            r("labels", "default_labels", label_defaults.default_labels),
            field_name="labels.default_labels",
        ),
        crash_labels=_as_string_list(
            r("labels", "crash_labels", label_defaults.crash_labels, env="CRASH_LABELS", action_input="crash_labels"),
            field_name="labels.crash_labels",
        ),
        feedback_labels=_as_string_list(
            r(
                "labels",
                "feedback_labels",
                label_defaults.feedback_labels,
                env="FEEDBACK_LABELS",
                action_input="feedback_labels",
            ),
            field_name="labels.feedback_labels",
        ),
        additional_labels=_as_string_list(
            r("labels", "additional_labels", [], env="ADDITIONAL_LABELS", action_input="additional_labels"),
            field_name="labels.additional_labels",
        ),
    )

    platform = _as_str(r("processing", "platform", "github", env="TESTFLIGHT_PM_PLATFORM", action_input="platform")).lower()
    if platform not in _PLATFORMS:
        raise ConfigError(f"processing.platform must be one of: {', '.join(sorted(_PLATFORMS))}")

    processing = ProcessingSettings(
        platform=platform,
        dry_run=_as_bool(r("processing", "dry_run", False, env="DRY_RUN", action_input="dry_run"), field_name="processing.dry_run"),
        enable_crash_processing=_as_bool(
            r("processing", "enable_crash_processing", True, env="ENABLE_CRASH_PROCESSING", action_input="enable_crash_processing"),
            field_name="processing.enable_crash_processing",
        ),
        enable_feedback_processing=_as_bool(
            r(
                "processing",
                "enable_feedback_processing",
                True,
                env="ENABLE_FEEDBACK_PROCESSING",
                action_input="enable_feedback_processing",
            ),
            field_name="processing.enable_feedback_processing",
        ),
        min_feedback_length=_as_int(
            r("processing", "min_feedback_length", 10, env="MIN_FEEDBACK_LENGTH", action_input="min_feedback_length"),
            field_name="processing.min_feedback_length",
            minimum=0,
        ),
        since=_as_optional_str(r("processing", "since", env="TESTFLIGHT_PM_SINCE", action_input="since")),
        frequency=_as_optional_str(r("processing", "frequency", env="TESTFLIGHT_PM_FREQUENCY", action_input="schedule_frequency")),
        max_issues_per_run=_as_int(
            r("processing", "max_issues_per_run", 50, env="MAX_ISSUES_PER_RUN", action_input="max_issues_per_run"),
            field_name="processing.max_issues_per_run",
            minimum=1,
        ),
    )

    duplicate_detection = _as_bool(
        r("idempotency", "enable_duplicate_detection", True, env="ENABLE_DUPLICATE_DETECTION", action_input="enable_duplicate_detection"),
        field_name="idempotency.enable_duplicate_detection",
    )
    idempotency = IdempotencySettings(
        enable_state_tracking=_as_bool(
            r("idempotency", "enable_state_tracking", True, env="ENABLE_STATE_TRACKING"),
            field_name="idempotency.enable_state_tracking",
        ),
        enable_github_duplicate_detection=duplicate_detection
        and _as_bool(
            r("idempotency", "enable_github_duplicate_detection", True, env="ENABLE_GITHUB_DUPLICATE_DETECTION"),
            field_name="idempotency.enable_github_duplicate_detection",
        ),
        enable_linear_duplicate_detection=duplicate_detection
        and _as_bool(
            r("idempotency", "enable_linear_duplicate_detection", True, env="ENABLE_LINEAR_DUPLICATE_DETECTION"),
            field_name="idempotency.enable_linear_duplicate_detection",
        ),
        retry_attempts=_as_int(
            r("idempotency", "retry_attempts", 3, env="DUPLICATE_SEARCH_RETRY_ATTEMPTS"),
            field_name="idempotency.retry_attempts",
            minimum=0,
        ),
        retry_delay_ms=_as_int(
            r("idempotency", "retry_delay_ms", 1000, env="DUPLICATE_SEARCH_RETRY_DELAY_MS"),
            field_name="idempotency.retry_delay_ms",
            minimum=0,
        ),
        search_timeout_ms=_as_int(
            r("idempotency", "search_timeout_ms", 10000, env="DUPLICATE_SEARCH_TIMEOUT_MS"),
            field_name="idempotency.search_timeout_ms",
            minimum=1,
        ),
        confidence_threshold=_as_float(
            r("idempotency", "confidence_threshold", 0.7, env="DUPLICATE_CONFIDENCE_THRESHOLD"),
            field_name="idempotency.confidence_threshold",
            minimum=0.0,
            maximum=1.0,
        ),
    )

    backend = _as_str(r("state", "backend", "json", env="STATE_BACKEND")).lower()
    if backend not in _STATE_BACKENDS:
        raise ConfigError(f"state.backend must be one of: {', '.join(sorted(_STATE_BACKENDS))}")

    default_state_path = ".testflight-pm/processed-feedback-state.json" if backend == "json" else ".testflight-pm/state.sqlite"
    state = StateSettings(
        backend=backend,
        path=_as_str(r("state", "path", default_state_path, env="STATE_PATH", action_input="state_path")),
        max_retained_ids=_as_int(
            r("state", "max_retained_ids", 10000, env="STATE_MAX_RETAINED_IDS"),
            field_name="state.max_retained_ids",
            minimum=1,
        ),
        cache_expiry_hours=_as_float(
            r("state", "cache_expiry_hours", 168, env="STATE_CACHE_EXPIRY_HOURS"),
            field_name="state.cache_expiry_hours",
            minimum=0.0,
        ),
        autosave=_as_bool(r("state", "autosave", False, env="STATE_AUTOSAVE"), field_name="state.autosave"),
    )
    if path is not None and not Path(state.path).is_absolute():
        state.path = str((Path(path).expanduser().resolve().parent / state.path).resolve())

    window = WindowSettings(
        default_lookback_hours=_as_float(
            r("window", "default_lookback_hours", 24, env="PROCESSING_WINDOW_HOURS", action_input="processing_window_hours"),
            field_name="window.default_lookback_hours",
            minimum=0.0,
        ),
        buffer_minutes=_as_float(
            r("window", "buffer_minutes", 30, env="PROCESSING_WINDOW_BUFFER_MINUTES"),
            field_name="window.buffer_minutes",
            minimum=0.0,
        ),
        max_lookback_hours=_as_float(
            r("window", "max_lookback_hours", 168, env="PROCESSING_WINDOW_MAX_HOURS"),
            field_name="window.max_lookback_hours",
            minimum=0.0,
        ),
        min_lookback_minutes=_as_float(
            r("window", "min_lookback_minutes", 15, env="PROCESSING_WINDOW_MIN_MINUTES"),
            field_name="window.min_lookback_minutes",
            minimum=0.0,
        ),
        enable_adaptive_windows=_as_bool(
            r("window", "enable_adaptive_windows", True, env="ENABLE_ADAPTIVE_WINDOWS"),
            field_name="window.enable_adaptive_windows",
        ),
        overlap_prevention=_as_bool(
            r("window", "overlap_prevention", True, env="ENABLE_OVERLAP_PREVENTION"),
            field_name="window.overlap_prevention",
        ),
    )
    if window.min_lookback_minutes > window.max_lookback_hours * 60:
        raise ConfigError("window.min_lookback_minutes must not exceed window.max_lookback_hours")

    http = HttpSettings(
        timeout_seconds=_as_float(r("http", "timeout_seconds", 30, env="HTTP_TIMEOUT_SECONDS"), field_name="http.timeout_seconds", minimum=1.0),
        retries=_as_int(r("http", "retries", 3, env="HTTP_RETRIES"), field_name="http.retries", minimum=0),
        retry_delay_ms=_as_int(r("http", "retry_delay_ms", 1000, env="HTTP_RETRY_DELAY_MS"), field_name="http.retry_delay_ms", minimum=0),
    )

    webhook = WebhookSettings(
        secret=_as_str(r("webhook", "secret", env="TESTFLIGHT_WEBHOOK_SECRET", action_input="webhook_secret")),
    )

    llm = LLMSettings(
        enabled=_as_bool(
            r("llm", "enabled", False, env="ENABLE_LLM_ENHANCEMENT", action_input="enable_llm_enhancement"),
            field_name="llm.enabled",
        ),
        api_key=_as_str(r("llm", "api_key", env="OPENAI_API_KEY", action_input="openai_api_key")),
        base_url=_as_str(r("llm", "base_url", env="OPENAI_BASE_URL", action_input="openai_base_url")).rstrip("/"),
        model=_as_str(r("llm", "model", "gpt-4.1-mini", env="OPENAI_MODEL", action_input="openai_model")),
        temperature=_as_float(
            r("llm", "temperature", 0.3, env="LLM_TEMPERATURE"),
            field_name="llm.temperature",
            minimum=0.0,
            maximum=2.0,
        ),
        max_tokens_per_issue=_as_int(
            r("llm", "max_tokens_per_issue", 4000, env="MAX_TOKENS_PER_ISSUE", action_input="max_tokens_per_issue"),
            field_name="llm.max_tokens_per_issue",
            minimum=1,
        ),
        max_cost_per_run=_as_float(
            r("llm", "max_cost_per_run", 5.0, env="MAX_LLM_COST_PER_RUN", action_input="max_llm_cost_per_run"),
            field_name="llm.max_cost_per_run",
            minimum=0.0,
        ),
        max_retries=_as_int(r("llm", "max_retries", 2, env="LLM_MAX_RETRIES"), field_name="llm.max_retries", minimum=0),
        timeout_seconds=_as_float(
            r("llm", "timeout_seconds", 60, env="LLM_TIMEOUT_SECONDS"),
            field_name="llm.timeout_seconds",
            minimum=1.0,
        ),
        fallback_to_standard=_as_bool(
            r("llm", "fallback_to_standard", True, env="LLM_FALLBACK_TO_STANDARD"),
            field_name="llm.fallback_to_standard",
        ),
    )
    if not llm.model:
        raise ConfigError("llm.model must not be empty")

    depth = _as_str(
        r("codebase", "depth", "moderate", env="CODEBASE_ANALYSIS_DEPTH", action_input="codebase_analysis_depth")
    ).lower()
    if depth not in _ANALYSIS_DEPTHS:
        raise ConfigError(f"codebase.depth must be one of: {', '.join(sorted(_ANALYSIS_DEPTHS))}")
    codebase = CodebaseSettings(
        enabled=_as_bool(
            r("codebase", "enabled", True, env="ENABLE_CODEBASE_ANALYSIS", action_input="enable_codebase_analysis"),
            field_name="codebase.enabled",
        ),
        root=_as_str(r("codebase", "root", resolver.env("GITHUB_WORKSPACE") or ".", env="WORKSPACE_ROOT", action_input="workspace_root")),
        depth=depth,
        include_tests=_as_bool(
            r("codebase", "include_tests", False, env="CODEBASE_INCLUDE_TESTS"),
            field_name="codebase.include_tests",
        ),
        max_file_bytes=_as_int(
            r("codebase", "max_file_bytes", 500_000, env="CODEBASE_MAX_FILE_BYTES"),
            field_name="codebase.max_file_bytes",
            minimum=1,
        ),
    )

    run = RunContext(
        in_github_actions=resolver.in_github_actions,
        event_name=resolver.env("GITHUB_EVENT_NAME"),
        workflow=resolver.env("GITHUB_WORKFLOW"),
        run_id=resolver.env("GITHUB_RUN_ID"),
    )

    debug = _as_bool(resolver.env("DEBUG", "debug") or "false", field_name="debug")
    log_level = "DEBUG" if debug else str(r("logging", "level", parsed.get("log_level", "INFO"), env="LOG_LEVEL")).upper()

    return AppConfig(
        app_store=app_store,
        github=github,
        linear=linear,
        labels=labels,
        processing=processing,
        idempotency=idempotency,
        state=state,
        window=window,
        http=http,
        webhook=webhook,
        llm=llm,
        codebase=codebase,
        run=run,
        log_level=log_level,
    )
