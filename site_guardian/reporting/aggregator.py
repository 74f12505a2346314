"""Rolls per-attempt ProbeResults into a RunSummary."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

import structlog

from ..config import RunConfig
from ..probes.models import Outcome, ProbeResult

logger = structlog.get_logger(__name__)


@dataclass
class GroupCounts:
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    timeout: int = 0

    def add(self, outcome: Outcome) -> None:
        if outcome is Outcome.PASS:
            self.passed += 1
        elif outcome is Outcome.FAIL:
            self.failed += 1
        elif outcome is Outcome.SKIPPED:
            self.skipped += 1
        else:
            self.timeout += 1

    @property
    def total(self) -> int:
        return self.passed + self.failed + self.skipped + self.timeout

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "pass": self.passed,
            "fail": self.failed,
            "skipped": self.skipped,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class CriticalFailure:
    probe_id: str
    kind: str
    message: str

    def describe(self) -> str:
        return f"{self.probe_id}: [{self.kind}] {self.message}"


@dataclass
class RunSummary:
    """Verdicts (last attempt per probe), counts and the health decision."""

    results: tuple[ProbeResult, ...]
    verdicts: tuple[ProbeResult, ...]
    totals: GroupCounts
    groups: dict[str, GroupCounts]
    critical_failures: tuple[CriticalFailure, ...]
    flaky: tuple[str, ...]
    elapsed_ms: float
    base_url: str | None = None
    test_type: str | None = None
    generated_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def healthy(self) -> bool:
        return not self.critical_failures

    @property
    def exit_code(self) -> int:
        return 0 if self.healthy else 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "generated_at": self.generated_at,
            "base_url": self.base_url,
            "test_type": self.test_type,
            "healthy": self.healthy,
            "summary": {**self.totals.to_dict(), "attempts": len(self.results), "elapsed_ms": round(self.elapsed_ms, 3)},
            "groups": {name: counts.to_dict() for name, counts in self.groups.items()},
            "critical_failures": [
                {"probe_id": f.probe_id, "kind": f.kind, "message": f.message} for f in self.critical_failures
            ],
            "flaky": list(self.flaky),
            "probes": [verdict.to_dict() for verdict in self.verdicts],
            "attempts": [result.to_dict() for result in self.results],
        }


def record(results: Iterable[ProbeResult], config: RunConfig | None = None) -> RunSummary:
    """Summarize a run. A run is healthy iff no critical verdict is fail or timeout."""
    results = tuple(results)

    attempts: dict[str, list[ProbeResult]] = {}
    for result in results:
        attempts.setdefault(result.probe_id, []).append(result)

    verdicts: list[ProbeResult] = []
    flaky: list[str] = []
    for probe_id, history in attempts.items():
        history.sort(key=lambda r: r.attempt)
        verdict = history[-1]
        verdicts.append(verdict)
        if verdict.outcome is Outcome.PASS and any(r.failed for r in history[:-1]):
            flaky.append(probe_id)

    totals = GroupCounts()
    groups: dict[str, GroupCounts] = {}
    critical_failures: list[CriticalFailure] = []
    for verdict in verdicts:
        totals.add(verdict.outcome)
        groups.setdefault(verdict.group, GroupCounts()).add(verdict.outcome)
        if verdict.breaks_run:
            critical_failures.append(
                CriticalFailure(
                    probe_id=verdict.probe_id,
                    kind=verdict.error.kind.value if verdict.error else verdict.outcome.value,
                    message=verdict.error.message if verdict.error else "",
                )
            )

    summary = RunSummary(
        results=results,
        verdicts=tuple(verdicts),
        totals=totals,
        groups=groups,
        critical_failures=tuple(critical_failures),
        flaky=tuple(flaky),
        elapsed_ms=sum(r.elapsed_ms for r in results),
        base_url=config.base_url if config else None,
        test_type=config.test_type.value if config else None,
    )
    logger.info(
        "Recorded run",
        healthy=summary.healthy,
        probes=totals.total,
        passed=totals.passed,
        failed=totals.failed,
        skipped=totals.skipped,
        timeout=totals.timeout,
        flaky=len(flaky),
    )
    return summary
