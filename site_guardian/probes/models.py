from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import structlog

from ..config import DeviceProfile, RunConfig
from ..exceptions import ErrorKind

if TYPE_CHECKING:
    from playwright.async_api import BrowserContext, Page, Response

    from ..browser import BrowserSession

logger = structlog.get_logger(__name__)


class Outcome(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    SKIPPED = "skipped"
    TIMEOUT = "timeout"


class ProbeState(str, Enum):
    PENDING = "pending"
    NAVIGATING = "navigating"
    EVALUATING = "evaluating"
    PASS = "pass"
    FAIL = "fail"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"


Expectation = Callable[["ProbeContext"], Awaitable[None]]


@dataclass(frozen=True)
class Probe:
    id: str
    group: str
    description: str
    critical: bool
    navigate: str | None
    expectation: Expectation
    timeout_ms: int
    wait_until: str = "load"
    requires_credentials: bool = False
    requires_session: bool = False
    device: DeviceProfile | None = None


@dataclass(frozen=True)
class ProbeGroup:
    name: str
    probes: tuple[Probe, ...]
    needs_auth_session: bool = False


@dataclass(frozen=True)
class ProbeError:
    kind: ErrorKind
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "message": self.message}


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one execution attempt of one probe."""

    probe_id: str
    group: str
    critical: bool
    outcome: Outcome
    elapsed_ms: float
    diagnostics: tuple[str, ...] = ()
    error: ProbeError | None = None
    attempt: int = 1
    screenshot_path: str | None = None
    trace_path: str | None = None

    @classmethod
    def skipped(cls, probe: Probe, kind: ErrorKind, message: str, attempt: int = 1) -> "ProbeResult":
        return cls(
            probe_id=probe.id,
            group=probe.group,
            critical=probe.critical,
            outcome=Outcome.SKIPPED,
            elapsed_ms=0.0,
            diagnostics=(message,),
            error=ProbeError(kind, message),
            attempt=attempt,
        )

    @property
    def failed(self) -> bool:
        return self.outcome in (Outcome.FAIL, Outcome.TIMEOUT)

    @property
    def breaks_run(self) -> bool:
        return self.critical and self.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "probe_id": self.probe_id,
            "group": self.group,
            "critical": self.critical,
            "outcome": self.outcome.value,
            "elapsed_ms": round(self.elapsed_ms, 3),
            "diagnostics": list(self.diagnostics),
            "error": self.error.to_dict() if self.error else None,
            "attempt": self.attempt,
            "screenshot_path": self.screenshot_path,
            "trace_path": self.trace_path,
        }


@dataclass
class ProbeContext:
    """Mutable state handed to an expectation while one probe executes."""

    probe: Probe
    config: RunConfig
    session: "BrowserSession"
    context: "BrowserContext"
    page: "Page"
    response: "Response | None" = None
    nav_elapsed_ms: float | None = None
    diagnostics: list[str] = field(default_factory=list)
    started: float = field(default_factory=time.perf_counter)

    @property
    def action_timeout_ms(self) -> int:
        return min(self.config.timeouts.action_ms, self.probe.timeout_ms)

    @property
    def status(self) -> int | None:
        return self.response.status if self.response is not None else None

    def url(self, target: str) -> str:
        return self.config.resolve_url(target)

    def log(self, message: str) -> None:
        self.diagnostics.append(message)
        logger.debug("Probe diagnostic", probe_id=self.probe.id, message=message)

    def warn(self, message: str) -> None:
        self.diagnostics.append(f"WARNING: {message}")
        logger.warning("Probe warning", probe_id=self.probe.id, message=message)
