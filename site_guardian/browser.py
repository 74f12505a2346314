"""Browser and HTTP client lifecycle for one run."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import httpx
import structlog
from playwright.async_api import Browser, BrowserContext, Playwright, async_playwright

from . import __version__
from .config import DeviceProfile, RunConfig

logger = structlog.get_logger(__name__)

DEFAULT_VIEWPORT = {"width": 1280, "height": 720}
HTTP_USER_AGENT = f"site-guardian/{__version__}"

_CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-gpu",
    "--disable-extensions",
    "--disable-background-networking",
    "--disable-sync",
    "--no-first-run",
    "--no-default-browser-check",
    # Avoid renderer crashes when /dev/shm is tiny.
    "--disable-dev-shm-usage",
]


def find_chromium_executable() -> str | None:
    """A system Chromium, if any; ``None`` lets Playwright use its bundled build."""
    env_path = os.getenv("CHROMIUM_PATH")
    if env_path and Path(env_path).exists():
        return env_path

    candidates = [
        "/usr/bin/chromium",
        "/usr/bin/chromium-browser",
        "/usr/bin/google-chrome",
        "/usr/bin/google-chrome-stable",
        "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    ]
    for path in candidates:
        if Path(path).exists():
            return path
    return None


def is_browser_infra_error(exc: BaseException) -> bool:
    """True when the failure is our browser dying, not the site misbehaving."""
    name = type(exc).__name__
    msg = str(exc or "").lower()

    if name == "TargetClosedError":
        return True
    markers = (
        "target page, context or browser has been closed",
        "browser has been closed",
        "page crashed",
        "target crashed",
        "connection closed while reading from the driver",
        "connection closed while writing to the driver",
        "pipe closed by peer",
    )
    return any(marker in msg for marker in markers)


class BrowserSession:
    """Owns the Playwright driver, one Chromium instance and an httpx client.

    Probes never share a context unless they belong to the group that owns an
    :class:`~site_guardian.probes.auth.AuthSession`.
    """

    def __init__(self, config: RunConfig):
        self.config = config
        self.playwright: Playwright | None = None
        self.browser: Browser | None = None
        self.http: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "BrowserSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def start(self) -> None:
        logger.info("Starting browser session", headless=self.config.headless)

        self.playwright = await async_playwright().start()
        executable_path = find_chromium_executable()
        self.browser = await self.playwright.chromium.launch(
            headless=self.config.headless,
            executable_path=executable_path,
            args=_CHROMIUM_ARGS,
        )
        self.http = httpx.AsyncClient(
            headers={"User-Agent": self.config.user_agent or HTTP_USER_AGENT},
            follow_redirects=True,
            timeout=self.config.timeouts.navigation_ms / 1000.0,
        )

    async def stop(self) -> None:
        logger.info("Stopping browser session")

        if self.http is not None:
            await self.http.aclose()
            self.http = None
        if self.browser is not None:
            await self.browser.close()
            self.browser = None
        if self.playwright is not None:
            await self.playwright.stop()
            self.playwright = None

    async def new_context(self, device: DeviceProfile | None = None) -> BrowserContext:
        if self.browser is None:
            raise RuntimeError("BrowserSession.start() has not been called")

        options: dict[str, Any] = {"viewport": dict(DEFAULT_VIEWPORT)}
        if self.config.user_agent:
            options["user_agent"] = self.config.user_agent
        if device is not None:
            options["viewport"] = {"width": device.width, "height": device.height}
            options["is_mobile"] = device.is_mobile
            options["has_touch"] = device.has_touch
            if device.user_agent:
                options["user_agent"] = device.user_agent

        context = await self.browser.new_context(**options)
        context.set_default_timeout(self.config.timeouts.action_ms)
        context.set_default_navigation_timeout(self.config.timeouts.navigation_ms)
        return context
