"""Login form driver, the shared authenticated context and the auth expectations."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

import structlog
from playwright.async_api import BrowserContext, Error as PlaywrightError, Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..config import AuthConfig, RunConfig
from ..exceptions import ElementNotFound, ExpectationFailed
from .locators import LocatorStrategy, until_visible, wait_for_first
from .models import Expectation, ProbeContext

if TYPE_CHECKING:
    from ..browser import BrowserSession

logger = structlog.get_logger(__name__)


def _path(url: str) -> str:
    return (urlsplit(url).path or "/").rstrip("/") or "/"


def on_login_page(url: str, auth: AuthConfig) -> bool:
    login = auth.login_path.rstrip("/") or "/"
    path = _path(url)
    return path == login or path.startswith(login + "/")


def is_post_login_destination(url: str, auth: AuthConfig) -> bool:
    destinations = {p.rstrip("/") or "/" for p in auth.post_login_paths}
    return _path(url) in destinations


@dataclass(frozen=True)
class LoginAttempt:
    url: str
    signal: str | None
    marker_visible: bool
    error_visible: bool
    authenticated: bool
    rejected: bool

    def describe(self) -> str:
        return (
            f"url={self.url} signal={self.signal} "
            f"logged_in_marker={self.marker_visible} error_indicator={self.error_visible}"
        )


async def _require(page: Page, strategy: LocatorStrategy, timeout_ms: int):
    found = await strategy.resolve(page, timeout_ms)
    if found is None:
        raise ElementNotFound(f"visible {strategy.name} (any of {list(strategy.candidates)})", "none visible")
    return found[1]


async def submit_login(
    page: Page,
    config: RunConfig,
    email: str,
    password: str,
    *,
    navigate: bool = True,
    timeout_ms: int | None = None,
) -> LoginAttempt:
    """Fill and submit the login form, then wait for whichever outcome shows first.

    The wait races three explicit conditions (URL leaves the login page, a
    logged-in marker appears, an error indicator appears). The settle delay
    only runs after that race, so it bounds rather than replaces the wait.
    """
    auth = config.auth
    timeout_ms = timeout_ms or config.timeouts.action_ms

    if navigate:
        await page.goto(
            config.resolve_url(auth.login_path),
            wait_until="domcontentloaded",
            timeout=config.timeouts.navigation_ms,
        )

    email_field = await _require(page, LocatorStrategy.of("email field", auth.email_selectors), timeout_ms)
    password_field = await _require(page, LocatorStrategy.of("password field", auth.password_selectors), timeout_ms)
    submit = await _require(page, LocatorStrategy.of("submit control", auth.submit_selectors), timeout_ms)

    await email_field.fill(email)
    await password_field.fill(password)
    await submit.click()

    markers = LocatorStrategy.of("logged-in marker", auth.logged_in_markers)
    errors = LocatorStrategy.of("login error", auth.error_markers)
    conditions = {
        "navigated": page.wait_for_url(lambda url: not on_login_page(url, auth), timeout=timeout_ms),
    }
    if markers:
        conditions["logged_in_marker"] = until_visible(page, markers, timeout_ms)
    if errors:
        conditions["error_indicator"] = until_visible(page, errors, timeout_ms)

    signal = await wait_for_first(conditions, timeout_ms)
    if auth.settle_ms:
        await asyncio.sleep(auth.settle_ms / 1000.0)

    url = page.url
    marker_visible = await markers.is_visible(page) if markers else False
    error_visible = await errors.is_visible(page) if errors else False
    still_on_login = on_login_page(url, auth)

    attempt = LoginAttempt(
        url=url,
        signal=signal,
        marker_visible=marker_visible,
        error_visible=error_visible,
        authenticated=(not still_on_login) or is_post_login_destination(url, auth) or marker_visible,
        rejected=error_visible or still_on_login,
    )
    logger.debug("Login attempt finished", signal=signal, authenticated=attempt.authenticated)
    return attempt


async def _close_quietly(context: BrowserContext) -> None:
    try:
        await context.close()
    except PlaywrightError as e:
        logger.debug("Authenticated context already closed", error=str(e))


class AuthSession:
    """A logged-in browser context, owned by the group that created it."""

    def __init__(self, context: BrowserContext, landing_url: str):
        self.context = context
        self.landing_url = landing_url

    @classmethod
    async def establish(cls, session: "BrowserSession", config: RunConfig) -> "AuthSession | None":
        """Log in with the monitor account. ``None`` when there is no usable session."""
        if config.credentials is None:
            return None

        context: BrowserContext | None = None
        try:
            context = await session.new_context()
            page = await context.new_page()
            attempt = await submit_login(
                page,
                config,
                config.credentials.email,
                config.credentials.password.get_secret_value(),
            )
            await page.close()
        except (PlaywrightError, ExpectationFailed) as e:
            logger.warning("Could not establish authenticated session", error=str(e))
            if context is not None:
                await _close_quietly(context)
            return None

        if not attempt.authenticated:
            logger.warning("Monitor login was rejected", detail=attempt.describe())
            await _close_quietly(context)
            return None

        logger.info("Authenticated session established", url=attempt.url)
        return cls(context, attempt.url)

    async def close(self) -> None:
        await _close_quietly(self.context)


def login_succeeds(config: RunConfig) -> Expectation:
    async def _check(ctx: ProbeContext) -> None:
        credentials = config.credentials
        if credentials is None:
            raise ExpectationFailed("monitor credentials", "none configured")
        attempt = await submit_login(
            ctx.page,
            config,
            credentials.email,
            credentials.password.get_secret_value(),
            navigate=False,
            timeout_ms=ctx.action_timeout_ms,
        )
        ctx.log(f"login attempt: {attempt.describe()}")
        if not attempt.authenticated:
            raise ExpectationFailed(
                "an authenticated state (left login page, post-login URL or logged-in marker)",
                attempt.describe(),
            )

    return _check


def login_rejected(config: RunConfig) -> Expectation:
    async def _check(ctx: ProbeContext) -> None:
        attempt = await submit_login(
            ctx.page,
            config,
            config.auth.invalid_email,
            config.auth.invalid_password,
            navigate=False,
            timeout_ms=ctx.action_timeout_ms,
        )
        ctx.log(f"invalid login attempt: {attempt.describe()}")
        if attempt.authenticated or not attempt.rejected:
            raise ExpectationFailed(
                "rejection (error indicator or still on login page) without an authenticated state",
                attempt.describe(),
            )

    return _check


def unauthenticated_access_guarded(config: RunConfig) -> Expectation:
    """A protected URL visited without a session must not render for a stranger."""
    auth = config.auth

    async def _check(ctx: ProbeContext) -> None:
        url = ctx.url(auth.guarded_path or auth.login_path)
        try:
            response = await ctx.page.goto(url, wait_until="domcontentloaded", timeout=ctx.action_timeout_ms)
        except PlaywrightTimeoutError:
            ctx.log(f"{url} timed out without a session; treated as access denied")
            return

        status = response.status if response is not None else None
        current = ctx.page.url
        ctx.log(f"status {status}, landed on {current}")
        if status in (401, 403):
            return
        if any(fragment in _path(current) for fragment in auth.auth_path_fragments):
            ctx.log("redirected to an authentication page")
            return

        messages = LocatorStrategy.of("auth message", auth.auth_message_markers)
        found = await messages.resolve(ctx.page, ctx.action_timeout_ms) if messages else None
        if found is not None:
            ctx.log(f"auth message visible via {found[0]!r}")
            return
        raise ExpectationFailed(
            "redirect to login/register, an auth message, or 401/403",
            f"status={status} url={current}",
        )

    return _check
