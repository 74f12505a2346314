from __future__ import annotations

import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs

import pytest
import pytest_asyncio
from playwright.async_api import Error as PlaywrightError

from site_guardian.browser import BrowserSession
from site_guardian.config import resolve

VALID_EMAIL = "monitor@example.com"
VALID_PASSWORD = "correct-horse-battery"

ENV_VARS = (
    "SITE_URL",
    "TEST_TYPE",
    "MONITOR_EMAIL",
    "MONITOR_PASSWORD",
    "CI",
    "WORKERS",
    "RETRIES",
    "NAVIGATION_TIMEOUT_MS",
    "ACTION_TIMEOUT_MS",
    "GLOBAL_TIMEOUT_MS",
    "BROWSER_HEADLESS",
    "LOG_LEVEL",
    "SITE_GUARDIAN_CONFIG",
)


def _page(title: str, body: str, head: str = "") -> bytes:
    return (
        '<!doctype html><html lang="ar"><head><meta charset="utf-8">'
        f"<title>{title}</title>{head}</head><body>{body}</body></html>"
    ).encode("utf-8")


HOME = _page(
    "StellarSpeak - تعلم الإنجليزية",
    '<nav><a href="/grammar">دليل القواعد</a> <a href="/vocabulary-guide">المفردات</a></nav>'
    '<main><h1>StellarSpeak</h1><p>Learn English online.</p>'
    '<a href="/register">ابدأ التعلم</a></main>',
    head='<meta name="description" content="StellarSpeak helps Arabic speakers learn English with guided lessons.">',
)

CONTENT = {
    "/grammar": "دليل القواعد",
    "/vocabulary-guide": "المفردات",
    "/reading": "مركز القراءة",
    "/blog": "المدونة",
    "/about": "About",
    "/contact": "Contact",
}

LOGIN_FORM = (
    '<main><h1>Login</h1>{alert}<form method="post" action="/login">'
    '<input type="email" name="email"><input type="password" name="password">'
    '<button type="submit">Login</button></form></main>'
)

REGISTER = _page(
    "Register - StellarSpeak",
    '<main><h1>إنشاء حساب</h1><form method="post" action="/register">'
    '<input name="username"><input type="email" name="email"><input type="password" name="password">'
    '<button type="submit">Create</button></form></main>',
)

PLACEMENT = _page(
    "Placement test - StellarSpeak",
    '<main><h1>اختبار تحديد المستوى</h1><p>سؤال 1</p>'
    '<label><input type="radio" name="q1" value="a"> a</label></main>',
)

DASHBOARD = _page(
    "Dashboard - StellarSpeak",
    '<main><h1>Dashboard</h1><a href="/logout">Logout</a></main>',
)


class FakeSiteHandler(BaseHTTPRequestHandler):
    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def _send(self, status: int, body: bytes = b"", headers: dict[str, str] | None = None) -> None:
        self.send_response(status)
        for k, v in (headers or {"Content-Type": "text/html; charset=utf-8"}).items():
            self.send_header(k, v)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _redirect(self, location: str, status: int = 302, cookie: str | None = None) -> None:
        headers = {"Location": location}
        if cookie:
            headers["Set-Cookie"] = cookie
        self._send(status, b"", headers)

    def _logged_in(self) -> bool:
        return "session=ok" in (self.headers.get("Cookie") or "")

    def do_GET(self) -> None:  # noqa: N802
        path = self.path.split("?", 1)[0]

        if path.startswith("/slow"):
            time.sleep(3)
            self._send(200, _page("Slow page title", "<h1>Slow</h1>"))
            return

        if path == "/":
            self._send(
                200,
                HOME,
                {
                    "Content-Type": "text/html; charset=utf-8",
                    "X-Frame-Options": "DENY",
                    "X-Content-Type-Options": "nosniff",
                    "Referrer-Policy": "same-origin",
                },
            )
            return

        if path in CONTENT:
            self._send(200, _page(f"{CONTENT[path]} - StellarSpeak", f"<main><h1>{CONTENT[path]}</h1></main>"))
            return

        if path == "/no-heading":
            self._send(200, _page("No heading here", "<p>plain text</p>"))
            return

        if path == "/leaky":
            self._send(200, _page("Leaky page title", "<p>" + "token " * 8 + "</p>"))
            return

        if path == "/login":
            self._send(200, _page("Login - StellarSpeak", LOGIN_FORM.format(alert="")))
            return

        if path == "/register":
            self._send(200, REGISTER)
            return

        if path == "/placement-test":
            self._send(200, PLACEMENT)
            return

        if path in ("/dashboard", "/lesson/A1-1"):
            if self._logged_in():
                self._send(200, DASHBOARD)
            else:
                self._redirect("/login")
            return

        self._send(404, _page("Not found", "<h1>404</h1>"))

    def do_POST(self) -> None:  # noqa: N802
        length = int(self.headers.get("Content-Length") or 0)
        form = parse_qs(self.rfile.read(length).decode("utf-8"))
        if self.path == "/login":
            email = (form.get("email") or [""])[0]
            password = (form.get("password") or [""])[0]
            if email == VALID_EMAIL and password == VALID_PASSWORD:
                self._redirect("/dashboard", status=303, cookie="session=ok; Path=/")
                return
            alert = '<div role="alert">Invalid credentials</div>'
            self._send(200, _page("Login - StellarSpeak", LOGIN_FORM.format(alert=alert)))
            return
        self._send(404, _page("Not found", "<h1>404</h1>"))


@pytest.fixture(scope="session")
def fake_site() -> str:
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), FakeSiteHandler)
    httpd.daemon_threads = True
    host, port = httpd.server_address
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://{host}:{port}"
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def make_config(tmp_path):
    """resolve() with an explicit env mapping and artifacts under tmp_path."""

    def _make(env: dict[str, str] | None = None, config_path=None, **overrides):
        overrides.setdefault("artifacts_dir", str(tmp_path / "artifacts"))
        return resolve(env=env or {}, config_path=config_path, **overrides)

    return _make


@pytest.fixture
def site_env(fake_site: str) -> dict[str, str]:
    return {
        "SITE_URL": fake_site,
        "NAVIGATION_TIMEOUT_MS": "10000",
        "ACTION_TIMEOUT_MS": "3000",
    }


@pytest.fixture
def monitor_env() -> dict[str, str]:
    return {"MONITOR_EMAIL": VALID_EMAIL, "MONITOR_PASSWORD": VALID_PASSWORD}


@pytest_asyncio.fixture
async def browser_session(make_config, site_env):
    session = BrowserSession(make_config(env=site_env))
    try:
        await session.start()
    except PlaywrightError as e:
        await session.stop()
        pytest.skip(f"Chromium could not be launched: {e}")
    try:
        yield session
    finally:
        await session.stop()
