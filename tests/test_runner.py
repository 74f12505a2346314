from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from playwright.async_api import Error as PlaywrightError

from site_guardian.exceptions import ErrorKind
from site_guardian.executor import ProbeExecutor
from site_guardian.probes import catalog
from site_guardian.probes.models import Outcome, Probe, ProbeContext, ProbeGroup, ProbeResult
from site_guardian.reporting import record
from site_guardian.runner import ProbeRunner, run_all


async def _noop(ctx: ProbeContext) -> None:
    return None


def _probe(probe_id: str, group: str = "g", **kwargs) -> Probe:
    return Probe(
        id=probe_id,
        group=group,
        description=probe_id,
        critical=kwargs.pop("critical", True),
        navigate="/",
        expectation=_noop,
        timeout_ms=1_000,
        **kwargs,
    )


class ScriptedExecutor:
    """Returns queued outcomes per probe id; PASS once the queue is empty."""

    def __init__(self, script: dict[str, list[Outcome]] | None = None, delay: float = 0.0) -> None:
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.delay = delay
        self.calls: list[tuple[str, int, object]] = []
        self.active = 0
        self.max_active = 0

    async def run(self, probe: Probe, session, auth=None, attempt: int = 1) -> ProbeResult:
        self.calls.append((probe.id, attempt, auth))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        queue = self.script.get(probe.id) or []
        outcome = queue.pop(0) if queue else Outcome.PASS
        return ProbeResult(
            probe_id=probe.id,
            group=probe.group,
            critical=probe.critical,
            outcome=outcome,
            elapsed_ms=1.0,
            attempt=attempt,
        )


class FakeAuth:
    def __init__(self) -> None:
        self.context = object()
        self.closed = False

    async def close(self) -> None:
        self.closed = True


@pytest.mark.asyncio
async def test_results_are_flattened_in_declaration_order(make_config) -> None:
    groups = [
        ProbeGroup("a", (_probe("a.1", "a"), _probe("a.2", "a"))),
        ProbeGroup("b", (_probe("b.1", "b"),)),
    ]
    executor = ScriptedExecutor(delay=0.01)

    results = await ProbeRunner(make_config(), session=None, executor=executor).run(groups)

    assert [r.probe_id for r in results] == ["a.1", "a.2", "b.1"]


@pytest.mark.asyncio
async def test_failed_probe_is_retried_and_every_attempt_recorded(make_config) -> None:
    config = make_config(env={"RETRIES": "2"})
    executor = ScriptedExecutor({"p": [Outcome.FAIL, Outcome.TIMEOUT, Outcome.PASS]})

    results = await ProbeRunner(config, None, executor=executor).run([ProbeGroup("g", (_probe("p"),))])

    assert [(r.attempt, r.outcome) for r in results] == [
        (1, Outcome.FAIL),
        (2, Outcome.TIMEOUT),
        (3, Outcome.PASS),
    ]
    summary = record(results)
    assert summary.healthy is True
    assert summary.flaky == ("p",)


@pytest.mark.asyncio
async def test_retries_stop_at_the_configured_limit(make_config) -> None:
    config = make_config(env={"RETRIES": "1"})
    executor = ScriptedExecutor({"p": [Outcome.FAIL] * 5})

    results = await ProbeRunner(config, None, executor=executor).run([ProbeGroup("g", (_probe("p"),))])

    assert [r.attempt for r in results] == [1, 2]
    assert record(results).healthy is False


@pytest.mark.asyncio
async def test_passing_and_skipped_probes_are_not_retried(make_config) -> None:
    config = make_config(env={"RETRIES": "2"})
    executor = ScriptedExecutor({"s": [Outcome.SKIPPED]})

    results = await ProbeRunner(config, None, executor=executor).run(
        [ProbeGroup("g", (_probe("p"), _probe("s")))]
    )

    assert [r.attempt for r in results] == [1, 1]


@pytest.mark.asyncio
async def test_worker_limit_bounds_concurrent_groups(make_config) -> None:
    groups = [ProbeGroup(name, (_probe(f"{name}.1", name), _probe(f"{name}.2", name))) for name in "abcd"]

    serial = ScriptedExecutor(delay=0.02)
    await ProbeRunner(make_config(env={"WORKERS": "1"}), None, executor=serial).run(groups)
    assert serial.max_active == 1

    parallel = ScriptedExecutor(delay=0.02)
    await ProbeRunner(make_config(env={"WORKERS": "2"}), None, executor=parallel).run(groups)
    assert parallel.max_active == 2


@pytest.mark.asyncio
async def test_global_deadline_skips_probes_not_yet_started(make_config) -> None:
    config = make_config(env={"GLOBAL_TIMEOUT_MS": "50"})
    executor = ScriptedExecutor(delay=0.1)
    group = ProbeGroup("g", (_probe("first"), _probe("second"), _probe("third")))

    results = await ProbeRunner(config, None, executor=executor).run([group])

    assert [r.probe_id for r in results] == ["first", "second", "third"]
    assert results[0].outcome is Outcome.PASS
    assert [r.outcome for r in results[1:]] == [Outcome.SKIPPED, Outcome.SKIPPED]
    assert all(r.error.kind is ErrorKind.RUN_TIMEOUT for r in results[1:])
    assert [c[0] for c in executor.calls] == ["first"]


@pytest.mark.asyncio
async def test_auth_session_is_shared_within_the_group_and_closed(make_config, monitor_env) -> None:
    config = make_config(env=monitor_env)
    auth = FakeAuth()
    established: list[str] = []

    async def establish(session, cfg):
        established.append(cfg.base_url)
        return auth

    protected = ProbeGroup(
        "protected_content",
        (
            _probe("protected.a", "protected_content", requires_credentials=True, requires_session=True),
            _probe("protected.b", "protected_content", requires_credentials=True, requires_session=True),
        ),
        needs_auth_session=True,
    )
    public = ProbeGroup("public", (_probe("public.a", "public"),))
    executor = ScriptedExecutor()

    await ProbeRunner(config, None, executor=executor, establish_auth=establish).run([public, protected])

    assert len(established) == 1
    passed_auth = {probe_id: a for probe_id, _, a in executor.calls}
    assert passed_auth["protected.a"] is auth
    assert passed_auth["protected.b"] is auth
    assert passed_auth["public.a"] is None
    assert auth.closed is True


@pytest.mark.asyncio
async def test_failed_login_skips_every_dependent_probe(make_config, monitor_env) -> None:
    config = make_config(env=monitor_env)

    async def establish(session, cfg):
        return None

    group = catalog.protected_content(config)
    results = await ProbeRunner(config, None, executor=ProbeExecutor(config), establish_auth=establish).run([group])

    assert results and all(r.outcome is Outcome.SKIPPED for r in results)
    assert all(r.error.kind is ErrorKind.SESSION_UNAVAILABLE for r in results)
    assert record(results).healthy is True


@pytest.mark.asyncio
async def test_missing_credentials_skip_without_logging_in(make_config) -> None:
    config = make_config()
    calls: list[object] = []

    async def establish(session, cfg):
        calls.append(cfg)
        return FakeAuth()

    groups = [catalog.authentication(config), catalog.protected_content(config)]
    results = await ProbeRunner(config, None, executor=ProbeExecutor(config), establish_auth=establish).run(
        [ProbeGroup(g.name, tuple(p for p in g.probes if p.requires_credentials), g.needs_auth_session) for g in groups]
    )

    assert calls == []
    assert {r.outcome for r in results} == {Outcome.SKIPPED}
    assert {r.error.kind for r in results} == {ErrorKind.CREDENTIALS_MISSING}


class ClosedBrowserSession:
    async def new_context(self, device=None):
        raise PlaywrightError("Target page, context or browser has been closed")


@pytest.mark.asyncio
async def test_auth_setup_crash_skips_dependent_probes_without_aborting(make_config, monitor_env) -> None:
    config = make_config(env=monitor_env)
    protected = catalog.protected_content(config)

    results = await ProbeRunner(config, ClosedBrowserSession(), executor=ProbeExecutor(config)).run([protected])

    assert [r.probe_id for r in results] == [p.id for p in protected.probes]
    assert all(r.outcome is Outcome.SKIPPED for r in results)
    assert all(r.error.kind is ErrorKind.SESSION_UNAVAILABLE for r in results)


@pytest.mark.asyncio
async def test_unexpected_auth_factory_error_is_contained(make_config, monitor_env) -> None:
    config = make_config(env=monitor_env)

    async def establish(session, cfg):
        raise RuntimeError("context factory exploded")

    protected = catalog.protected_content(config)
    public = ProbeGroup("public", (_probe("public.a", "public"),))
    executor = ScriptedExecutor()

    results = await ProbeRunner(config, None, executor=executor, establish_auth=establish).run([public, protected])

    assert [r.probe_id for r in results][0] == "public.a"
    assert len(results) == 1 + len(protected.probes)
    assert [auth for _, _, auth in executor.calls] == [None] * len(executor.calls)



# Scenarios against the local fake site with a real browser.


def _scenario_config(tmp_path: Path, make_config, env: dict[str, str], groups: str):
    override = tmp_path / "scenario.yaml"
    override.write_text(
        "reports:\n  reporters: [list]\n"
        "protected_content:\n  routes:\n    - {name: dashboard, path: /dashboard, critical: true}\n"
        f"modes:\n  quick: [{groups}]\n  full: [{groups}]\n",
        encoding="utf-8",
    )
    return make_config(env=env, config_path=override)


async def _run_or_skip(config) -> list[ProbeResult]:
    try:
        return await run_all(config, catalog.build(config))
    except PlaywrightError as e:
        pytest.skip(f"Chromium could not be launched: {e}")


@pytest.mark.asyncio
async def test_scenario_quick_mode_without_credentials(tmp_path, make_config, site_env) -> None:
    config = _scenario_config(
        tmp_path, make_config, {**site_env, "TEST_TYPE": "quick"}, "connectivity, authentication, access_control"
    )

    summary = record(await _run_or_skip(config), config)
    verdicts = {r.probe_id: r for r in summary.verdicts}
    auth_verdicts = [r for r in summary.verdicts if r.group == "authentication"]

    assert verdicts["connectivity.homepage"].outcome is Outcome.PASS
    assert [r.probe_id for r in auth_verdicts] == ["auth.login-valid", "auth.login-invalid"]
    assert all(r.outcome is Outcome.SKIPPED for r in auth_verdicts)
    assert all(r.error.kind is ErrorKind.CREDENTIALS_MISSING for r in auth_verdicts)
    assert verdicts["access.guarded-route"].outcome is Outcome.PASS, verdicts["access.guarded-route"].diagnostics
    assert summary.exit_code == 0


@pytest.mark.asyncio
async def test_scenario_full_mode_with_valid_credentials(tmp_path, make_config, site_env, monitor_env) -> None:
    config = _scenario_config(
        tmp_path,
        make_config,
        {**site_env, **monitor_env, "TEST_TYPE": "full"},
        "connectivity, authentication, protected_content",
    )

    summary = record(await _run_or_skip(config), config)
    verdicts = {r.probe_id: r for r in summary.verdicts}

    assert verdicts["auth.login-valid"].outcome is Outcome.PASS, verdicts["auth.login-valid"].diagnostics
    assert verdicts["protected.dashboard"].outcome is Outcome.PASS, verdicts["protected.dashboard"].diagnostics
    assert any("primary content visible" in line for line in verdicts["protected.dashboard"].diagnostics)
    assert summary.exit_code == 0


@pytest.mark.asyncio
async def test_scenario_full_mode_with_invalid_credentials(tmp_path, make_config, site_env) -> None:
    env = {**site_env, "TEST_TYPE": "full", "MONITOR_EMAIL": "monitor@example.com", "MONITOR_PASSWORD": "wrong"}
    config = _scenario_config(tmp_path, make_config, env, "connectivity, authentication, protected_content")

    summary = record(await _run_or_skip(config), config)
    verdicts = {r.probe_id: r for r in summary.verdicts}

    assert verdicts["auth.login-invalid"].outcome is Outcome.PASS
    assert verdicts["auth.login-valid"].outcome is Outcome.FAIL
    assert verdicts["protected.dashboard"].outcome is Outcome.SKIPPED
    assert verdicts["protected.dashboard"].error.kind is ErrorKind.SESSION_UNAVAILABLE
    assert summary.exit_code == 0


@pytest.mark.asyncio
async def test_scenario_slow_homepage_fails_the_run(tmp_path, make_config, fake_site) -> None:
    env = {"SITE_URL": f"{fake_site}/slow-site", "NAVIGATION_TIMEOUT_MS": "1000", "ACTION_TIMEOUT_MS": "1000"}
    config = _scenario_config(tmp_path, make_config, env, "connectivity")
    groups = catalog.select(catalog.build(config), ["connectivity.homepage"])

    try:
        results = await run_all(config, groups)
    except PlaywrightError as e:
        pytest.skip(f"Chromium could not be launched: {e}")
    summary = record(results, config)

    homepage = summary.verdicts[0]
    assert homepage.outcome is Outcome.FAIL
    assert homepage.error.kind is ErrorKind.NAVIGATION_TIMEOUT
    assert "1000ms" in homepage.error.message and "elapsed" in homepage.error.message
    assert summary.exit_code == 1
    assert summary.critical_failures[0].probe_id == "connectivity.homepage"