"""The probe catalog: every check a run can execute, grouped by concern.

``build`` turns a RunConfig into the ordered groups selected by its run-mode.
All thresholds and selectors come from the config; nothing here is site
specific.
"""

from __future__ import annotations

from fnmatch import fnmatch
from typing import Callable, Iterable

import structlog

from ..config import RunConfig, RunMode
from ..exceptions import ConfigurationError
from . import auth, checks, onboarding
from .locators import LocatorStrategy
from .models import Probe, ProbeGroup

logger = structlog.get_logger(__name__)


def _slug(path: str) -> str:
    return path.strip("/").replace("/", "-") or "home"


def connectivity(config: RunConfig) -> ProbeGroup:
    nav = config.navigation
    probes = [
        Probe(
            id="connectivity.homepage",
            group="connectivity",
            description="Homepage answers below 400 with a non-empty title",
            critical=True,
            navigate="/",
            expectation=checks.expect_all(
                checks.status_below(400),
                checks.title_present(config.title_pattern),
            ),
            timeout_ms=config.timeouts.navigation_ms,
        )
    ]
    if nav.link_texts:
        probes.append(
            Probe(
                id="connectivity.navigation-links",
                group="connectivity",
                description="Main navigation links are visible",
        critical=False,
                navigate=nav.path,
                expectation=checks.navigation_links(nav.link_texts, nav.min_found),
                timeout_ms=config.timeouts.navigation_ms,
            )
        )
    return ProbeGroup(name="connectivity", probes=tuple(probes))


def public_pages(config: RunConfig) -> ProbeGroup:
    routes = config.routes
    if config.test_type is RunMode.QUICK:
        routes = tuple(r for r in routes if r.critical)
    probes = tuple(
        Probe(
            id=f"pages.{route.name}",
            group="public_pages",
            description=f"{route.path} loads under {route.budget_ms}ms with a heading",
            critical=route.critical,
            navigate=route.path,
            expectation=checks.expect_all(
                checks.status_below(400),
                checks.heading_present(),
                checks.loaded_within(route.budget_ms),
            ),
            timeout_ms=config.timeouts.navigation_ms,
        )
        for route in routes
    )
    return ProbeGroup(name="public_pages", probes=probes)


def seo(config: RunConfig) -> ProbeGroup:
    probes = tuple(
        Probe(
            id=f"seo.{_slug(path)}",
            group="seo",
            description=f"{path} has a descriptive title, an h1 and a meta description",
            critical=config.seo.critical,
            navigate=path,
            expectation=checks.seo_elements(config.seo),
            timeout_ms=config.timeouts.navigation_ms,
        )
        for path in config.seo.paths
    )
    return ProbeGroup(name="seo", probes=probes)


def authentication(config: RunConfig) -> ProbeGroup:
    login_path = config.auth.login_path
    probes = [
        Probe(
            id="auth.login-valid",
            group="authentication",
            description="Monitor account can log in",
            critical=config.auth.critical,
            navigate=login_path,
            expectation=auth.login_succeeds(config),
            timeout_ms=config.timeouts.navigation_ms,
            wait_until="domcontentloaded",
            requires_credentials=True,
        ),
        Probe(
            id="auth.login-invalid",
            group="authentication",
            description="Wrong credentials are rejected",
            critical=config.auth.critical,
            navigate=login_path,
            expectation=auth.login_rejected(config),
            timeout_ms=config.timeouts.navigation_ms,
            wait_until="domcontentloaded",
            requires_credentials=True,
        ),
    ]
    return ProbeGroup(name="authentication", probes=tuple(probes))


def access_control(config: RunConfig) -> ProbeGroup:
    """Anonymous visitors must not be served a protected lesson; needs no account."""
    if not config.auth.guarded_path:
        return ProbeGroup(name="access_control", probes=())
    probe = Probe(
        id="access.guarded-route",
        group="access_control",
        description=f"{config.auth.guarded_path} is not served to anonymous visitors",
        critical=False,
        navigate=None,
        expectation=auth.unauthenticated_access_guarded(config),
        timeout_ms=config.timeouts.navigation_ms,
    )
    return ProbeGroup(name="access_control", probes=(probe,))


def onboarding_flows(config: RunConfig) -> ProbeGroup:
    flows = config.onboarding
    probes = [
        Probe(
            id="onboarding.start-learning",
            group="onboarding",
            description="Start-learning call to action leads to an onboarding screen",
            critical=False,
            navigate="/",
            expectation=onboarding.start_learning_flow(flows),
            timeout_ms=config.timeouts.navigation_ms,
        ),
        Probe(
            id="onboarding.registration-form",
            group="onboarding",
            description="Registration form renders",
            critical=False,
            navigate=flows.register_path,
            expectation=onboarding.registration_form(
                flows, config.auth.email_selectors, config.auth.password_selectors
            ),
            timeout_ms=config.timeouts.navigation_ms,
        ),
    ]
    if flows.placement_paths:
        probes.append(
            Probe(
                id="onboarding.placement-test",
                group="onboarding",
                description="Placement test is reachable",
        critical=False,
        navigate=None,
                expectation=onboarding.placement_test_reachable(flows),
                timeout_ms=config.timeouts.navigation_ms,
            )
        )
    return ProbeGroup(name="onboarding", probes=tuple(probes))


def protected_content(config: RunConfig) -> ProbeGroup:
    content = LocatorStrategy.of("primary content", config.protected_content.content_selectors)
    probes = tuple(
        Probe(
            id=f"protected.{route.name}",
            group="protected_content",
            description=f"{route.path} renders for the logged-in monitor account",
            critical=route.critical,
            navigate=route.path,
            expectation=checks.expect_all(
                checks.status_below(400),
                checks.not_redirected_to(config.auth.login_path),
                checks.element_visible(content),
            ),
            timeout_ms=config.timeouts.navigation_ms,
            requires_credentials=True,
            requires_session=True,
        )
        for route in config.protected_content.routes
    )
    return ProbeGroup(name="protected_content", probes=probes, needs_auth_session=True)


def responsive(config: RunConfig) -> ProbeGroup:
    root = LocatorStrategy.of("root element", config.responsive.root_selectors)
    probes = tuple(
        Probe(
            id=f"responsive.{device.name}",
            group="responsive",
            description=f"Page renders at {device.width}x{device.height}",
            critical=device.critical,
            navigate=config.responsive.path,
            expectation=checks.element_visible(root),
            timeout_ms=config.timeouts.navigation_ms,
            device=device,
        )
        for device in config.responsive.devices
    )
    return ProbeGroup(name="responsive", probes=probes)


def performance(config: RunConfig) -> ProbeGroup:
    perf = config.performance
    probes = tuple(
        Probe(
            id=f"performance.{route.name}",
            group="performance",
            description=f"{route.path} reaches {perf.wait_until} within {route.budget_ms}ms",
            critical=route.critical,
            navigate=route.path,
            expectation=checks.loaded_within(route.budget_ms, warn_only=not route.critical),
            timeout_ms=perf.timeout_ms,
            wait_until=perf.wait_until,
        )
        for route in perf.routes
    )
    return ProbeGroup(name="performance", probes=probes)


def security(config: RunConfig) -> ProbeGroup:
    sec = config.security
    probes = []
    if sec.headers:
        probes.append(
            Probe(
                id="security.headers",
                group="security",
                description="Security headers on the homepage (informational)",
        critical=False,
        navigate=None,
                expectation=checks.security_headers(sec),
                timeout_ms=config.timeouts.navigation_ms,
            )
        )
    if sec.sensitive_tokens:
        probes.append(
            Probe(
                id="security.content-exposure",
                group="security",
                description="Page HTML does not repeat sensitive-looking tokens",
        critical=False,
                navigate=sec.path,
                expectation=checks.content_exposure(sec),
                timeout_ms=config.timeouts.navigation_ms,
            )
        )
    return ProbeGroup(name="security", probes=tuple(probes))


GROUP_BUILDERS: dict[str, Callable[[RunConfig], ProbeGroup]] = {
    "connectivity": connectivity,
    "public_pages": public_pages,
    "seo": seo,
    "authentication": authentication,
    "access_control": access_control,
    "onboarding": onboarding_flows,
    "protected_content": protected_content,
    "responsive": responsive,
    "performance": performance,
    "security": security,
}


def build(config: RunConfig) -> list[ProbeGroup]:
    """Ordered probe groups for the configured run-mode. Empty groups are dropped."""
    groups: list[ProbeGroup] = []
    for name in config.groups:
        builder = GROUP_BUILDERS.get(name)
        if builder is None:
            raise ConfigurationError(f"Unknown probe group {name!r} in modes.{config.test_type.value}")
        group = builder(config)
        if group.probes:
            groups.append(group)

    logger.info(
        "Built probe catalog",
        mode=config.test_type.value,
        groups=len(groups),
        probes=sum(len(g.probes) for g in groups),
    )
    return groups


def build_probes(config: RunConfig) -> list[Probe]:
    return [probe for group in build(config) for probe in group.probes]


def select(groups: Iterable[ProbeGroup], patterns: Iterable[str]) -> list[ProbeGroup]:
    """Keep probes whose id matches any glob pattern; drop groups left empty."""
    patterns = [p for p in patterns if p]
    if not patterns:
        return list(groups)
    selected: list[ProbeGroup] = []
    for group in groups:
        probes = tuple(p for p in group.probes if any(fnmatch(p.id, pat) for pat in patterns))
        if probes:
            selected.append(ProbeGroup(name=group.name, probes=probes, needs_auth_session=group.needs_auth_session))
    return selected
