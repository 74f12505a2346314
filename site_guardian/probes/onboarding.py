"""Visitor onboarding flows: start-learning call to action, registration, placement test."""

from __future__ import annotations

import time

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..config import OnboardingConfig
from ..exceptions import ElementNotFound, ExpectationFailed
from .locators import LocatorStrategy, until_visible, wait_for_first
from .models import Expectation, ProbeContext


def start_learning_flow(onboarding: OnboardingConfig) -> Expectation:
    """Follow the first visible call to action and expect an onboarding screen."""

    async def _check(ctx: ProbeContext) -> None:
        page = ctx.page
        timeout_ms = ctx.action_timeout_ms

        start = LocatorStrategy.of("start learning button", onboarding.start_selectors)
        register = LocatorStrategy.of("register button", onboarding.register_selectors)
        login = LocatorStrategy.of("login button", onboarding.login_selectors)

        clicked = None
        for strategy in (start, register, login):
            found = await strategy.first_visible_now(page) if strategy else None
            if found is None:
                continue
            ctx.log(f"found {strategy.name} via {found[0]!r}")
            await found[1].click()
            clicked = strategy
            break
        if clicked is None:
            raise ElementNotFound("a start, register or login call to action", "none visible")

        if clicked is login:
            signup = LocatorStrategy.of("sign-up link", onboarding.signup_selectors)
            found = await signup.resolve(page, timeout_ms) if signup else None
            if found is not None:
                ctx.log("following sign-up link from the login page")
                await found[1].click()

        try:
            await page.wait_for_load_state("networkidle", timeout=timeout_ms)
        except PlaywrightTimeoutError:
            ctx.log("network did not go idle; evaluating current page")

        landing = LocatorStrategy.of("onboarding screen", onboarding.landing_markers)
        found = await landing.resolve(page, timeout_ms)
        if found is None:
            raise ElementNotFound(
                "registration form, placement test or welcome screen", f"none visible at {page.url}"
            )
        ctx.log(f"landed on onboarding screen via {found[0]!r}")

    return _check


def registration_form(onboarding: OnboardingConfig, auth_email_selectors: tuple[str, ...],
                      auth_password_selectors: tuple[str, ...]) -> Expectation:
    """Registration form renders; submits throwaway data only when allowed."""

    async def _check(ctx: ProbeContext) -> None:
        page = ctx.page
        timeout_ms = ctx.action_timeout_ms

        email = LocatorStrategy.of("email field", auth_email_selectors)
        password = LocatorStrategy.of("password field", auth_password_selectors)
        username = LocatorStrategy.of("username field", onboarding.username_selectors)

        email_found = await email.resolve(page, timeout_ms)
        password_found = await password.resolve(page, 0)
        if email_found is None or password_found is None:
            raise ElementNotFound(
                "registration email and password fields",
                f"email={email_found is not None} password={password_found is not None}",
            )
        ctx.log("registration form fields visible")

        if not onboarding.allow_registration_submit:
            ctx.log("registration submit disabled by configuration")
            return

        stamp = int(time.time() * 1000)
        username_found = await username.first_visible_now(page) if username else None
        if username_found is not None:
            await username_found[1].fill(f"SiteGuardian{stamp}")
        await email_found[1].fill(f"site-guardian+{stamp}@example.com")
        await password_found[1].fill("SiteGuardian-Probe-1!")

        submit = LocatorStrategy.of("submit control", ctx.config.auth.submit_selectors)
        submit_found = await submit.resolve(page, timeout_ms)
        if submit_found is None:
            raise ElementNotFound("registration submit control", "none visible")

        start_url = page.url
        await submit_found[1].click()

        feedback = LocatorStrategy.of("registration feedback", onboarding.feedback_markers)
        conditions = {"navigated": page.wait_for_url(lambda url: url != start_url, timeout=timeout_ms)}
        if feedback:
            conditions["feedback"] = until_visible(page, feedback, timeout_ms)
        signal = await wait_for_first(conditions, timeout_ms)
        ctx.log(f"registration submitted; signal={signal} url={page.url}")

        body_text = await page.evaluate("() => document.body?.innerText || ''")
        if not str(body_text or "").strip():
            raise ExpectationFailed("a rendered page after registration submit", "empty body")

    return _check


def placement_test_reachable(onboarding: OnboardingConfig) -> Expectation:
    """Tries candidate URLs in order; passes on the first one showing question controls."""

    async def _check(ctx: ProbeContext) -> None:
        page = ctx.page
        questions = LocatorStrategy.of("placement test question", onboarding.question_selectors)
        tried: list[str] = []
        for path in onboarding.placement_paths:
            url = ctx.url(path)
            tried.append(path)
            try:
                response = await page.goto(url, wait_until="domcontentloaded", timeout=ctx.action_timeout_ms)
            except PlaywrightTimeoutError:
                ctx.log(f"could not access {url}: timed out")
                continue

            status = response.status if response is not None else None
            if status == 404:
                ctx.log(f"{url} returned 404")
                continue
            ctx.log(f"found candidate placement test at {url} (status {status})")
            found = await questions.resolve(page, ctx.action_timeout_ms) if questions else None
            if found is not None:
                ctx.log(f"placement test interface found via {found[0]!r}")
                return

        raise ElementNotFound("a placement test page with question controls", f"none among {tried}")

    return _check
