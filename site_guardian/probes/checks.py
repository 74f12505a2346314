"""Declarative expectation builders.

Each builder returns an async callable taking a ProbeContext. An expectation
passes by returning and fails by raising ExpectationFailed (or a subclass);
anything worth knowing along the way goes into the context diagnostics.
"""

from __future__ import annotations

import re
from urllib.parse import urlsplit

import httpx

from ..config import SecurityConfig, SeoConfig
from ..exceptions import ElementNotFound, ExpectationFailed, UnexpectedHttpStatus
from .locators import LocatorStrategy, is_visible
from .models import Expectation, ProbeContext

HEADING_SELECTOR = "h1, h2, h3, h4, h5, h6"


def expect_all(*expectations: Expectation) -> Expectation:
    async def _check(ctx: ProbeContext) -> None:
        for expectation in expectations:
            await expectation(ctx)

    return _check


def status_below(limit: int = 400) -> Expectation:
    async def _check(ctx: ProbeContext) -> None:
        status = ctx.status
        if status is None:
            raise UnexpectedHttpStatus(f"status < {limit}", "no HTTP response")
        ctx.log(f"HTTP status {status}")
        if status >= limit:
            raise UnexpectedHttpStatus(f"status < {limit}", str(status))

    return _check


def title_present(pattern: str | None = None) -> Expectation:
    async def _check(ctx: ProbeContext) -> None:
        title = (await ctx.page.title() or "").strip()
        ctx.log(f"title {title!r}")
        if not title:
            raise ExpectationFailed("non-empty title", "empty title")
        if pattern and not re.search(pattern, title):
            raise ExpectationFailed(f"title matching /{pattern}/", repr(title))

    return _check


def heading_present(selector: str = HEADING_SELECTOR, min_count: int = 1) -> Expectation:
    async def _check(ctx: ProbeContext) -> None:
        count = await ctx.page.locator(selector).count()
        ctx.log(f"{count} element(s) match {selector!r}")
        if count < min_count:
            raise ElementNotFound(f"at least {min_count} element(s) matching {selector!r}", str(count))

    return _check


def loaded_within(budget_ms: int, warn_only: bool = False) -> Expectation:
    """Navigation start to readiness signal must stay under ``budget_ms``."""

    async def _check(ctx: ProbeContext) -> None:
        elapsed = ctx.nav_elapsed_ms
        if elapsed is None:
            raise ExpectationFailed("a timed navigation", "probe did not navigate")
        ctx.log(f"loaded in {elapsed:.0f}ms (budget {budget_ms}ms)")
        if elapsed < budget_ms:
            return
        if warn_only:
            ctx.warn(f"load time {elapsed:.0f}ms exceeds budget {budget_ms}ms")
            return
        raise ExpectationFailed(f"load time < {budget_ms}ms", f"{elapsed:.0f}ms")

    return _check


def element_visible(strategy: LocatorStrategy) -> Expectation:
    async def _check(ctx: ProbeContext) -> None:
        found = await strategy.resolve(ctx.page, ctx.action_timeout_ms)
        if found is None:
            raise ElementNotFound(
                f"visible {strategy.name} (any of {list(strategy.candidates)})", "none visible"
            )
        ctx.log(f"{strategy.name} visible via {found[0]!r}")

    return _check


def not_redirected_to(path_prefix: str) -> Expectation:
    async def _check(ctx: ProbeContext) -> None:
        path = urlsplit(ctx.page.url).path or "/"
        if path.startswith(path_prefix):
            raise ExpectationFailed(f"to stay off {path_prefix}", f"redirected to {path}")

    return _check


def navigation_links(texts: tuple[str, ...], min_found: int) -> Expectation:
    async def _check(ctx: ProbeContext) -> None:
        found: list[str] = []
        for text in texts:
            if await is_visible(ctx.page.locator(f'text="{text}"').first):
                ctx.log(f"found link: {text}")
                found.append(text)
            else:
                ctx.log(f"missing link: {text}")
        if len(found) < min_found:
            raise ElementNotFound(f"at least {min_found} navigation link(s)", f"{len(found)} of {len(texts)}")

    return _check


def seo_elements(seo: SeoConfig) -> Expectation:
    async def _check(ctx: ProbeContext) -> None:
        page = ctx.page
        title = (await page.title() or "").strip()
        ctx.log(f"title length {len(title)}")
        if len(title) <= seo.min_title_length:
            raise ExpectationFailed(
                f"title longer than {seo.min_title_length} characters", f"{len(title)} ({title!r})"
            )

        h1_count = await page.locator("h1").count()
        ctx.log(f"{h1_count} h1 element(s)")
        if h1_count < 1:
            raise ElementNotFound("at least one h1", "0")

        description = ""
        meta = page.locator('meta[name="description"]')
        if await meta.count() > 0:
            description = (await meta.first.get_attribute("content", timeout=ctx.action_timeout_ms) or "").strip()
        ctx.log(f"meta description length {len(description)}")
        if len(description) < seo.min_meta_description_length:
            if seo.require_meta_description:
                raise ExpectationFailed(
                    f"meta description of at least {seo.min_meta_description_length} characters",
                    f"{len(description)} characters",
                )
            ctx.log("meta description shorter than recommended")

    return _check


def security_headers(security: SecurityConfig) -> Expectation:
    """Informational: counts security headers, warns below the configured minimum."""

    async def _check(ctx: ProbeContext) -> None:
        url = ctx.url(security.path)
        if ctx.session.http is None:
            raise ExpectationFailed("an HTTP client", "browser session not started")
        try:
            response = await ctx.session.http.get(url, timeout=ctx.probe.timeout_ms / 1000.0)
        except httpx.RequestError as exc:
            raise ExpectationFailed(f"{url} reachable over HTTP", f"{type(exc).__name__}: {exc}") from exc

        present = [h for h in security.headers if h in response.headers]
        missing = [h for h in security.headers if h not in response.headers]
        ctx.log(f"security headers present {len(present)}/{len(security.headers)}: {', '.join(present) or '-'}")
        if missing:
            ctx.log(f"security headers missing: {', '.join(missing)}")
        if len(present) < security.min_headers_present:
            ctx.warn(f"only {len(present)} security header(s), expected at least {security.min_headers_present}")

    return _check


def content_exposure(security: SecurityConfig) -> Expectation:
    """Flags sensitive-looking tokens that repeat more than the threshold. Never fails."""

    async def _check(ctx: ProbeContext) -> None:
        html = (await ctx.page.content()).lower()
        counts = {token: html.count(token.lower()) for token in security.sensitive_tokens}
        ctx.log("token counts: " + ", ".join(f"{t}={c}" for t, c in counts.items()))
        flagged = {t: c for t, c in counts.items() if c > security.token_threshold}
        if flagged:
            ctx.warn(
                f"review item: tokens above {security.token_threshold} occurrences: "
                + ", ".join(f"{t}={c}" for t, c in flagged.items())
            )

    return _check
