"""Run configuration: packaged defaults, an optional YAML override and the environment."""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urljoin, urlsplit

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator, model_validator

from .exceptions import ConfigurationError

logger = structlog.get_logger(__name__)

DEFAULTS_PATH = Path(__file__).with_name("defaults.yaml")
DEFAULT_BASE_URL = "https://www.stellarspeak.online"

_TRUTHY = {"1", "true", "yes", "y", "on"}
_FALSY = {"0", "false", "no", "n", "off", ""}


class RunMode(str, Enum):
    QUICK = "quick"
    FULL = "full"
    POST_MIGRATION = "post-migration"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class Credentials(_Frozen):
    """Monitor account used by the credential-gated probes."""
    email: str
    password: SecretStr


class Timeouts(_Frozen):
    navigation_ms: int = Field(default=30_000, gt=0, description="Per-probe navigation timeout")
    action_ms: int = Field(default=10_000, gt=0, description="Locator and action timeout")
    global_ms: int = Field(default=600_000, gt=0, description="Wall-clock bound for the whole run")


class RouteSpec(_Frozen):
    name: str
    path: str
    critical: bool = True
    budget_ms: int = Field(default=8_000, gt=0)


class DeviceProfile(_Frozen):
    name: str
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    user_agent: str | None = None
    is_mobile: bool = False
    has_touch: bool = False
    critical: bool = False


class NavigationConfig(_Frozen):
    path: str = "/"
    link_texts: tuple[str, ...] = ()
    min_found: int = Field(default=1, ge=0)


class SeoConfig(_Frozen):
    paths: tuple[str, ...] = ("/",)
    min_title_length: int = 10
    min_meta_description_length: int = 50
    require_meta_description: bool = False
    critical: bool = False


class AuthConfig(_Frozen):
    login_path: str = "/login"
    post_login_paths: tuple[str, ...] = ("/dashboard", "/profile", "/")
    email_selectors: tuple[str, ...] = ('input[type="email"]',)
    password_selectors: tuple[str, ...] = ('input[type="password"]',)
    submit_selectors: tuple[str, ...] = ('button[type="submit"]',)
    logged_in_markers: tuple[str, ...] = ()
    error_markers: tuple[str, ...] = ()
    settle_ms: int = Field(default=500, ge=0)
    critical: bool = False
    invalid_email: str = "site-guardian-invalid@example.invalid"
    invalid_password: str = "not-the-right-password"
    guarded_path: str | None = None
    auth_path_fragments: tuple[str, ...] = ("login", "register")
    auth_message_markers: tuple[str, ...] = ()


class ProtectedContentConfig(_Frozen):
    routes: tuple[RouteSpec, ...] = ()
    content_selectors: tuple[str, ...] = ("h1", "main")


class ResponsiveConfig(_Frozen):
    path: str = "/"
    root_selectors: tuple[str, ...] = ("h1", "main")
    devices: tuple[DeviceProfile, ...] = ()


class PerformanceConfig(_Frozen):
    wait_until: str = "domcontentloaded"
    timeout_ms: int = Field(default=15_000, gt=0)
    routes: tuple[RouteSpec, ...] = ()

    @field_validator("wait_until")
    @classmethod
    def _known_readiness_signal(cls, value: str) -> str:
        if value not in {"load", "domcontentloaded", "networkidle", "commit"}:
            raise ValueError(f"unknown readiness signal: {value!r}")
        return value


class SecurityConfig(_Frozen):
    path: str = "/"
    headers: tuple[str, ...] = ()
    min_headers_present: int = Field(default=0, ge=0)
    sensitive_tokens: tuple[str, ...] = ()
    token_threshold: int = Field(default=5, ge=0)


class OnboardingConfig(_Frozen):
    start_selectors: tuple[str, ...] = ()
    register_selectors: tuple[str, ...] = ()
    login_selectors: tuple[str, ...] = ()
    signup_selectors: tuple[str, ...] = ()
    landing_markers: tuple[str, ...] = ()
    register_path: str = "/register"
    username_selectors: tuple[str, ...] = ()
    feedback_markers: tuple[str, ...] = ()
    allow_registration_submit: bool = False
    placement_paths: tuple[str, ...] = ()
    question_selectors: tuple[str, ...] = ()


class ReportConfig(_Frozen):
    reporters: tuple[str, ...] = ("list",)
    json_path: str = "test-results/results.json"
    html_path: str = "playwright-report/index.html"

    @field_validator("reporters")
    @classmethod
    def _known_reporters(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        unknown = sorted(set(value) - {"list", "json", "html"})
        if unknown:
            raise ValueError(f"unknown reporters: {unknown}")
        return value


class RunConfig(_Frozen):
    """Everything a run needs. Built once by :func:`resolve` and passed explicitly."""

    base_url: str = Field(default=DEFAULT_BASE_URL, description="Site under test")
    test_type: RunMode = Field(default=RunMode.QUICK, description="Selects which probe groups run")
    credentials: Credentials | None = Field(default=None, description="Monitor account, optional")
    timeouts: Timeouts = Field(default_factory=Timeouts)

    ci: bool = Field(default=False, description="Continuous-integration run")
    workers: int = Field(default=4, ge=1, description="Probe groups executed concurrently")
    retries: int = Field(default=0, ge=0, description="Re-executions of a failed probe")
    forbid_only: bool = Field(default=False, description="Reject --only probe filters")

    headless: bool = True
    screenshot_on_failure: bool = True
    trace_on_failure: bool = False
    artifacts_dir: str = "test-results/artifacts"
    user_agent: str | None = None

    title_pattern: str | None = None
    routes: tuple[RouteSpec, ...] = ()
    navigation: NavigationConfig = Field(default_factory=NavigationConfig)
    seo: SeoConfig = Field(default_factory=SeoConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    protected_content: ProtectedContentConfig = Field(default_factory=ProtectedContentConfig)
    responsive: ResponsiveConfig = Field(default_factory=ResponsiveConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    onboarding: OnboardingConfig = Field(default_factory=OnboardingConfig)
    reports: ReportConfig = Field(default_factory=ReportConfig)
    modes: dict[RunMode, tuple[str, ...]] = Field(
        default_factory=lambda: {mode: ("connectivity",) for mode in RunMode}
    )

    @field_validator("base_url")
    @classmethod
    def _well_formed_base_url(cls, value: str) -> str:
        cleaned = str(value or "").strip()
        parts = urlsplit(cleaned)
        if parts.scheme not in {"http", "https"} or not parts.hostname:
            raise ValueError(f"malformed base URL: {value!r}")
        return cleaned.rstrip("/")

    @model_validator(mode="after")
    def _every_mode_has_groups(self) -> "RunConfig":
        missing = [mode.value for mode in RunMode if mode not in self.modes]
        if missing:
            raise ValueError(f"modes table is missing run-modes: {missing}")
        return self

    @property
    def has_credentials(self) -> bool:
        return self.credentials is not None

    @property
    def groups(self) -> tuple[str, ...]:
        """Probe groups selected by the current run-mode, in declaration order."""
        return self.modes[self.test_type]

    def resolve_url(self, target: str) -> str:
        if urlsplit(target).scheme in {"http", "https"}:
            return target
        return urljoin(self.base_url + "/", target.lstrip("/"))

    def summary(self) -> dict[str, Any]:
        """Loggable view of the configuration; never includes the password."""
        return {
            "base_url": self.base_url,
            "test_type": self.test_type.value,
            "credentials": bool(self.credentials),
            "ci": self.ci,
            "workers": self.workers,
            "retries": self.retries,
            "groups": list(self.groups),
        }


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Config file is not valid YAML: {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file must contain a mapping: {path}")
    return data


def _deep_merge(base: dict[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_int(env: Mapping[str, str], name: str) -> int | None:
    raw = env.get(name)
    if raw is None or not str(raw).strip():
        return None
    try:
        return int(str(raw).strip())
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc


def _env_bool(env: Mapping[str, str], name: str) -> bool | None:
    raw = env.get(name)
    if raw is None:
        return None
    s = str(raw).strip().lower()
    if s in _TRUTHY:
        return True
    if s in _FALSY:
        return False
    raise ConfigurationError(f"{name} must be a boolean flag, got {raw!r}")


def _apply_env(data: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    data = dict(data)

    site_url = (env.get("SITE_URL") or "").strip()
    if site_url:
        data["base_url"] = site_url

    test_type = (env.get("TEST_TYPE") or "").strip().lower()
    if test_type:
        data["test_type"] = test_type

    email = (env.get("MONITOR_EMAIL") or "").strip()
    password = env.get("MONITOR_PASSWORD") or ""
    if email and password:
        data["credentials"] = {"email": email, "password": password}
    elif email or password:
        logger.warning("Incomplete monitor credentials; credential-gated probes will be skipped")

    ci = _env_bool(env, "CI")
    if ci is not None:
        data["ci"] = ci
    if data.get("ci"):
        data["workers"] = 1
        data["retries"] = 2
        data["forbid_only"] = True

    for env_name, key in (("WORKERS", "workers"), ("RETRIES", "retries")):
        value = _env_int(env, env_name)
        if value is not None:
            data[key] = value

    timeouts = dict(data.get("timeouts") or {})
    for env_name, key in (
        ("NAVIGATION_TIMEOUT_MS", "navigation_ms"),
        ("ACTION_TIMEOUT_MS", "action_ms"),
        ("GLOBAL_TIMEOUT_MS", "global_ms"),
    ):
        value = _env_int(env, env_name)
        if value is not None:
            timeouts[key] = value
    data["timeouts"] = timeouts

    headless = _env_bool(env, "BROWSER_HEADLESS")
    if headless is not None:
        data["headless"] = headless

    return data


def resolve(
    env: Mapping[str, str] | None = None,
    config_path: str | Path | None = None,
    **overrides: Any,
) -> RunConfig:
    """Build the immutable :class:`RunConfig` for this run.

    Precedence, lowest first: packaged ``defaults.yaml``, the YAML file named by
    ``config_path`` or ``SITE_GUARDIAN_CONFIG``, environment variables, then
    explicit keyword overrides (command line). Missing credentials are not an
    error; a malformed base URL or unknown run-mode raises ConfigurationError.
    """
    env = os.environ if env is None else env

    data = _load_yaml(DEFAULTS_PATH)
    path = config_path or (env.get("SITE_GUARDIAN_CONFIG") or "").strip() or None
    if path:
        data = _deep_merge(data, _load_yaml(Path(path)))
        logger.debug("Loaded config override", file=str(path))

    data = _apply_env(data, env)
    for key, value in overrides.items():
        if value is not None:
            data[key] = value

    mode = data.get("test_type")
    mode_value = mode.value if isinstance(mode, RunMode) else str(mode or "")
    if mode_value not in {m.value for m in RunMode}:
        raise ConfigurationError(
            f"Unknown run-mode {mode_value!r}; expected one of {[m.value for m in RunMode]}"
        )

    try:
        config = RunConfig(**data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc

    logger.info("Resolved run configuration", **config.summary())
    return config
