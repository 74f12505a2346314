"""Schedules probe groups over a worker pool and applies the retry policy."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Sequence

import structlog

from .browser import BrowserSession
from .config import RunConfig
from .exceptions import ErrorKind
from .executor import ProbeExecutor
from .probes.auth import AuthSession
from .probes.models import Probe, ProbeGroup, ProbeResult

logger = structlog.get_logger(__name__)

AuthFactory = Callable[[BrowserSession, RunConfig], Awaitable["AuthSession | None"]]


class ProbeRunner:
    """Runs groups concurrently (bounded by ``workers``) and probes within a group in order.

    Every attempt yields its own ProbeResult. Once the global deadline passes,
    probes that have not started are recorded as skipped.
    """

    def __init__(
        self,
        config: RunConfig,
        session: BrowserSession,
        executor: ProbeExecutor | None = None,
        establish_auth: AuthFactory | None = None,
    ):
        self.config = config
        self.session = session
        self.executor = executor or ProbeExecutor(config)
        self.establish_auth = establish_auth or AuthSession.establish
        self._deadline: float | None = None

    async def run(self, groups: Sequence[ProbeGroup]) -> list[ProbeResult]:
        gated = [p.id for g in groups for p in g.probes if p.requires_credentials]
        if gated and not self.config.has_credentials:
            logger.warning(
                "Monitor credentials not configured; credential-gated probes will be skipped",
                kind=ErrorKind.CREDENTIALS_MISSING.value,
                probes=len(gated),
            )

        loop = asyncio.get_running_loop()
        self._deadline = loop.time() + self.config.timeouts.global_ms / 1000.0
        semaphore = asyncio.Semaphore(self.config.workers)

        logger.info(
            "Starting probe run",
            groups=len(groups),
            probes=sum(len(g.probes) for g in groups),
            workers=self.config.workers,
            retries=self.config.retries,
        )
        per_group = await asyncio.gather(*(self._run_group(group, semaphore) for group in groups))
        return [result for results in per_group for result in results]

    def _expired(self) -> bool:
        if self._deadline is None:
            return False
        return asyncio.get_running_loop().time() >= self._deadline

    async def _run_group(self, group: ProbeGroup, semaphore: asyncio.Semaphore) -> list[ProbeResult]:
        async with semaphore:
            log = logger.bind(group=group.name)
            results: list[ProbeResult] = []

            auth: AuthSession | None = None
            if group.needs_auth_session and self.config.has_credentials and not self._expired():
                try:
                    auth = await self.establish_auth(self.session, self.config)
                except Exception as e:
                    log.error("Authenticated session setup crashed", error=str(e), error_type=type(e).__name__)
                    auth = None
                if auth is None:
                    log.warning("Authenticated session unavailable; dependent probes will be skipped")

            try:
                for probe in group.probes:
                    if self._expired():
                        log.warning("Global run timeout reached", probe_id=probe.id)
                        results.append(
                            ProbeResult.skipped(
                                probe,
                                ErrorKind.RUN_TIMEOUT,
                                f"not started before the {self.config.timeouts.global_ms}ms run deadline",
                            )
                        )
                        continue
                    results.extend(await self._run_with_retries(probe, auth))
            finally:
                if auth is not None:
                    await auth.close()

            log.debug("Group finished", results=len(results))
            return results

    async def _run_with_retries(self, probe: Probe, auth: AuthSession | None) -> list[ProbeResult]:
        attempts: list[ProbeResult] = []
        for attempt in range(1, self.config.retries + 2):
            result = await self.executor.run(probe, self.session, auth, attempt=attempt)
            attempts.append(result)
            if not result.failed or attempt > self.config.retries or self._expired():
                break
            logger.info("Retrying probe", probe_id=probe.id, attempt=attempt + 1, outcome=result.outcome.value)
        return attempts


async def run_all(config: RunConfig, groups: Sequence[ProbeGroup]) -> list[ProbeResult]:
    """Open a browser session, run every group and close the session."""
    async with BrowserSession(config) as session:
        return await ProbeRunner(config, session).run(groups)
