"""Command line entry point: ``site-guardian`` / ``python -m site_guardian``.

Exit codes: 0 when every critical probe passed or was skipped, 1 otherwise,
2 when the configuration is unusable.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from typing import Sequence

import structlog
from playwright.async_api import Error as PlaywrightError

from . import __version__
from .config import RunConfig, RunMode, resolve
from .exceptions import ConfigurationError
from .probes import catalog
from .reporting import emit, record
from .runner import run_all

logger = structlog.get_logger(__name__)

EXIT_HEALTHY = 0
EXIT_UNHEALTHY = 1
EXIT_CONFIG_ERROR = 2


def configure_logging(level: str = "INFO", json_output: bool = False) -> None:
    numeric = logging.getLevelName(str(level).upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="site-guardian",
        description="Run health checks and functional probes against a website.",
    )
    ap.add_argument("--url", help="Base URL of the site under test (default: SITE_URL)")
    ap.add_argument("--mode", choices=[m.value for m in RunMode], help="Run-mode (default: TEST_TYPE or quick)")
    ap.add_argument("--config", help="YAML file merged over the packaged defaults")
    ap.add_argument("--only", nargs="+", metavar="GLOB", help="Run only probes whose id matches a pattern")
    ap.add_argument("--workers", type=int, help="Probe groups run concurrently")
    ap.add_argument("--retries", type=int, help="Re-executions of a failed probe")
    ap.add_argument("--json", dest="json_path", help="Write the JSON report here")
    ap.add_argument("--html", dest="html_path", help="Write the HTML report here")
    ap.add_argument("--headed", action="store_true", help="Show the browser window")
    ap.add_argument("--list", action="store_true", help="List the selected probes and exit")
    ap.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR (default: LOG_LEVEL or INFO)")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return ap


def _with_report_paths(config: RunConfig, json_path: str | None, html_path: str | None) -> RunConfig:
    if not json_path and not html_path:
        return config
    update: dict = {}
    reporters = list(config.reports.reporters)
    if json_path:
        update["json_path"] = json_path
        if "json" not in reporters:
            reporters.append("json")
    if html_path:
        update["html_path"] = html_path
        if "html" not in reporters:
            reporters.append("html")
    update["reporters"] = tuple(reporters)
    return config.model_copy(update={"reports": config.reports.model_copy(update=update)})


async def amain(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    log_level = args.log_level or os.getenv("LOG_LEVEL") or "INFO"
    configure_logging(log_level)

    try:
        config = resolve(
            config_path=args.config,
            base_url=args.url,
            test_type=args.mode,
            workers=args.workers,
            retries=args.retries,
            headless=False if args.headed else None,
        )
        if config.ci:
            configure_logging(log_level, json_output=True)
        config = _with_report_paths(config, args.json_path, args.html_path)
        groups = catalog.build(config)
        if args.only:
            if config.forbid_only:
                raise ConfigurationError("--only is not allowed when forbid_only is set (CI runs)")
            groups = catalog.select(groups, args.only)
    except ConfigurationError as e:
        logger.error("Configuration error", error=str(e))
        return EXIT_CONFIG_ERROR

    if args.list:
        for group in groups:
            for probe in group.probes:
                flag = "critical" if probe.critical else "optional"
                print(f"{probe.id:<40} {flag:<9} {probe.description}")
        return EXIT_HEALTHY

    if not groups:
        logger.warning("No probes selected")
        return EXIT_HEALTHY

    try:
        results = await run_all(config, groups)
    except PlaywrightError as e:
        logger.error("Browser session failed", error=str(e))
        return EXIT_UNHEALTHY

    summary = record(results, config)
    emit(summary, config)
    return summary.exit_code


def main(argv: Sequence[str] | None = None) -> None:
    try:
        rc = asyncio.run(amain(argv))
    except KeyboardInterrupt:
        rc = 130
    sys.exit(int(rc))


if __name__ == "__main__":
    main()
