"""Console, JSON and HTML renderings of a RunSummary."""

from __future__ import annotations

import json
from pathlib import Path

import structlog
from jinja2 import Environment, FileSystemLoader, select_autoescape

from ..config import RunConfig
from ..probes.models import Outcome
from .aggregator import RunSummary

logger = structlog.get_logger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"

_MARKS = {
    Outcome.PASS: "ok",
    Outcome.FAIL: "FAIL",
    Outcome.SKIPPED: "skip",
    Outcome.TIMEOUT: "timeout",
}


def console_lines(summary: RunSummary) -> list[str]:
    """List-reporter output: one line per attempt, then totals and itemized critical failures."""
    lines: list[str] = []
    for result in summary.results:
        retry = f" (retry #{result.attempt - 1})" if result.attempt > 1 else ""
        critical = " [critical]" if result.critical else ""
        line = f"  {_MARKS[result.outcome]:<7} {result.probe_id}{critical}{retry} ({result.elapsed_ms:.0f}ms)"
        if result.error is not None and result.outcome is not Outcome.PASS:
            line += f" - {result.error.kind.value}: {result.error.message}"
        lines.append(line)

    totals = summary.totals
    lines.append("")
    lines.append(
        f"  {totals.passed} passed, {totals.failed} failed, {totals.timeout} timed out, "
        f"{totals.skipped} skipped ({summary.elapsed_ms / 1000.0:.1f}s)"
    )
    if summary.flaky:
        lines.append(f"  flaky: {', '.join(summary.flaky)}")
    if summary.critical_failures:
        lines.append("  Critical failures:")
        for failure in summary.critical_failures:
            lines.append(f"    - {failure.describe()}")
    lines.append(f"  Run {'HEALTHY' if summary.healthy else 'UNHEALTHY'}")
    return lines


def write_json(summary: RunSummary, path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(summary.to_dict(), f, indent=2, ensure_ascii=False, default=str)
    logger.info("Wrote JSON report", path=str(path))
    return path


def write_html(summary: RunSummary, path: str | Path) -> Path:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=select_autoescape(["html", "j2"]),
    )
    template = env.get_template("report.html.j2")
    html = template.render(summary=summary, report=summary.to_dict())

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(html, encoding="utf-8")
    logger.info("Wrote HTML report", path=str(path))
    return path


def emit(summary: RunSummary, config: RunConfig, echo=print) -> None:
    """Render with every reporter enabled in the config."""
    reporters = config.reports.reporters
    if "list" in reporters:
        for line in console_lines(summary):
            echo(line)
    if "json" in reporters:
        write_json(summary, config.reports.json_path)
    if "html" in reporters:
        write_html(summary, config.reports.html_path)
