"""Runs one probe: Pending -> Navigating -> Evaluating -> Pass/Fail/Timeout/Skipped."""

from __future__ import annotations

import asyncio
import re
import time
from pathlib import Path

import structlog
from playwright.async_api import BrowserContext, Error as PlaywrightError, Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .browser import BrowserSession, is_browser_infra_error
from .config import RunConfig
from .exceptions import ErrorKind, ExpectationFailed
from .probes.auth import AuthSession
from .probes.models import Outcome, Probe, ProbeContext, ProbeError, ProbeResult, ProbeState

logger = structlog.get_logger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000.0


class ProbeExecutor:
    """Executes a single probe attempt and converts everything it raises into a ProbeResult.

    Stateless across attempts: retries belong to the runner.
    """

    def __init__(self, config: RunConfig):
        self.config = config
        self.artifacts_dir = Path(config.artifacts_dir)

    async def run(
        self,
        probe: Probe,
        session: BrowserSession,
        auth: AuthSession | None = None,
        attempt: int = 1,
    ) -> ProbeResult:
        log = logger.bind(probe_id=probe.id, attempt=attempt)
        log.debug("Probe state", state=ProbeState.PENDING.value)

        if probe.requires_credentials and not self.config.has_credentials:
            log.debug("Probe state", state=ProbeState.SKIPPED.value, reason=ErrorKind.CREDENTIALS_MISSING.value)
            return ProbeResult.skipped(
                probe, ErrorKind.CREDENTIALS_MISSING, "monitor credentials not configured", attempt
            )
        if probe.requires_session and auth is None:
            log.debug("Probe state", state=ProbeState.SKIPPED.value, reason=ErrorKind.SESSION_UNAVAILABLE.value)
            return ProbeResult.skipped(
                probe, ErrorKind.SESSION_UNAVAILABLE, "no authenticated session for this group", attempt
            )

        started = time.perf_counter()
        own_context = not (probe.requires_session and auth is not None)
        diagnostics: list[str] = []
        context: BrowserContext | None = None
        page: Page | None = None
        tracing = False
        screenshot_path: str | None = None
        trace_path: str | None = None

        try:
            context = await session.new_context(probe.device) if own_context else auth.context
            if own_context and self.config.trace_on_failure:
                try:
                    await context.tracing.start(screenshots=True, snapshots=True, sources=False)
                    tracing = True
                except PlaywrightError as e:
                    log.debug("Could not start tracing", error=str(e))
            page = await context.new_page()

            ctx = ProbeContext(
                probe=probe,
                config=self.config,
                session=session,
                context=context,
                page=page,
                diagnostics=diagnostics,
                started=started,
            )
            outcome, error = await self._execute(ctx, log)

            if outcome is not Outcome.PASS:
                screenshot_path = await self._screenshot(page, probe, attempt)
                if tracing:
                    trace_path = await self._export_trace(context, probe, attempt)
                    tracing = False
        except PlaywrightError as e:
            outcome, error = Outcome.FAIL, self._browser_error(e, diagnostics)
        except Exception as e:
            log.exception("Probe raised unexpectedly")
            message = f"{type(e).__name__}: {e}"
            diagnostics.append(message)
            outcome, error = Outcome.FAIL, ProbeError(ErrorKind.BROWSER_ERROR, message)
        finally:
            if tracing and context is not None:
                try:
                    await context.tracing.stop()
                except PlaywrightError:
                    pass
            await self._release(context, page, own_context)

        elapsed_ms = _elapsed_ms(started)
        result = ProbeResult(
            probe_id=probe.id,
            group=probe.group,
            critical=probe.critical,
            outcome=outcome,
            elapsed_ms=elapsed_ms,
            diagnostics=tuple(diagnostics),
            error=error,
            attempt=attempt,
            screenshot_path=screenshot_path,
            trace_path=trace_path,
        )
        log.debug("Probe state", state=outcome.value)
        log.info(
            "Probe finished",
            outcome=outcome.value,
            elapsed_ms=round(elapsed_ms, 1),
            error_kind=error.kind.value if error else None,
        )
        return result

    async def _execute(self, ctx: ProbeContext, log) -> tuple[Outcome, ProbeError | None]:
        probe = ctx.probe

        if probe.navigate is not None:
            log.debug("Probe state", state=ProbeState.NAVIGATING.value)
            url = ctx.url(probe.navigate)
            nav_started = time.perf_counter()
            try:
                ctx.response = await ctx.page.goto(url, wait_until=probe.wait_until, timeout=probe.timeout_ms)
            except PlaywrightTimeoutError:
                return self._timed_out(
                    ctx,
                    ErrorKind.NAVIGATION_TIMEOUT,
                    f"navigation to {url} did not reach '{probe.wait_until}' within "
                    f"{probe.timeout_ms}ms (elapsed {_elapsed_ms(nav_started):.0f}ms)",
                )
            ctx.nav_elapsed_ms = _elapsed_ms(nav_started)
            ctx.log(f"navigated to {ctx.page.url} in {ctx.nav_elapsed_ms:.0f}ms")

        log.debug("Probe state", state=ProbeState.EVALUATING.value)
        eval_started = time.perf_counter()
        try:
            await asyncio.wait_for(probe.expectation(ctx), timeout=probe.timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            return self._timed_out(
                ctx,
                ErrorKind.EVALUATION_TIMEOUT,
                f"expectation did not finish within {probe.timeout_ms}ms "
                f"(elapsed {_elapsed_ms(eval_started):.0f}ms)",
            )
        except ExpectationFailed as e:
            ctx.log(str(e))
            return Outcome.FAIL, ProbeError(e.kind, str(e))
        except PlaywrightError as e:
            return Outcome.FAIL, self._browser_error(e, ctx.diagnostics)

        return Outcome.PASS, None

    @staticmethod
    def _timed_out(ctx: ProbeContext, kind: ErrorKind, message: str) -> tuple[Outcome, ProbeError]:
        ctx.log(message)
        # Non-critical timeouts are reported but never flip the run.
        outcome = Outcome.FAIL if ctx.probe.critical else Outcome.TIMEOUT
        return outcome, ProbeError(kind, message)

    @staticmethod
    def _browser_error(exc: PlaywrightError, diagnostics: list[str]) -> ProbeError:
        message = f"{type(exc).__name__}: {exc}"
        diagnostics.append(message)
        if is_browser_infra_error(exc):
            diagnostics.append("browser infrastructure error, not a site failure")
        return ProbeError(ErrorKind.BROWSER_ERROR, message)

    def _artifact(self, probe: Probe, attempt: int, suffix: str) -> Path:
        self.artifacts_dir.mkdir(parents=True, exist_ok=True)
        name = _UNSAFE_CHARS.sub("_", probe.id)
        return self.artifacts_dir / f"{name}-attempt{attempt}{suffix}"

    async def _screenshot(self, page: Page, probe: Probe, attempt: int) -> str | None:
        if not self.config.screenshot_on_failure:
            return None
        try:
            path = self._artifact(probe, attempt, ".png")
            await page.screenshot(path=str(path), full_page=True)
        except (PlaywrightError, OSError) as e:
            logger.debug("Failure screenshot not captured", probe_id=probe.id, error=str(e))
            return None
        return str(path)

    async def _export_trace(self, context: BrowserContext, probe: Probe, attempt: int) -> str | None:
        try:
            path = self._artifact(probe, attempt, ".trace.zip")
            await context.tracing.stop(path=str(path))
        except (PlaywrightError, OSError) as e:
            logger.debug("Failure trace not exported", probe_id=probe.id, error=str(e))
            try:
                await context.tracing.stop()
            except PlaywrightError:
                pass
            return None
        return str(path)

    @staticmethod
    async def _release(context: BrowserContext | None, page: Page | None, own_context: bool) -> None:
        try:
            if own_context and context is not None:
                await context.close()
            elif page is not None:
                await page.close()
        except PlaywrightError as e:
            logger.debug("Probe browser resources already closed", error=str(e))
