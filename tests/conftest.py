import logging
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path

import pytest
from PIL import Image
from playwright.sync_api import Error as PWError

from pscreen.context import AppContext
from pscreen.network import FirewallStatus, IpInfo
from pscreen.store import SessionStore
from pscreen.timestamps import encode_session_id


def write_png(path: Path, size=(40, 30)) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, "white").save(path, "PNG")
    return path


def make_session(root: Path, domain: str, session_id: str, names=("full_page.png", "viewport_00.png")) -> Path:
    session_dir = root / domain / session_id
    session_dir.mkdir(parents=True, exist_ok=True)
    for name in names:
        write_png(session_dir / name)
    return session_dir


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)

# ---------- playwright fake ----------

class FakePage:
    def __init__(self, env, viewport):
        self.env = env
        self.viewport = viewport
        self.timeout = None
        self.scrolls = []
        self.shots = 0

    def set_default_timeout(self, ms):
        self.timeout = ms

    def goto(self, url, wait_until=None, timeout=None):
        self.env.visited.append((url, wait_until, timeout))
        if self.env.goto_error:
            raise PWError(self.env.goto_error)
        if any(host in url for host in self.env.fail_hosts):
            raise PWError("net::ERR_NAME_NOT_RESOLVED")

    def evaluate(self, script, arg=None):
        if "scrollHeight" in script:
            return self.env.content_height
        self.scrolls.append(arg)
        return None

    def wait_for_timeout(self, ms):
        self.env.waits.append(ms)

    def screenshot(self, path, full_page=False):
        self.shots += 1
        if self.env.fail_screenshot_at == self.shots:
            raise PWError("Target page, context or browser has been closed")
        height = self.env.content_height if full_page else self.viewport["height"]
        write_png(Path(path), (self.viewport["width"], height))


class FakeBrowser:
    def __init__(self, env):
        self.env = env
        self.closed = False
        self.pages = []

    def new_page(self, viewport=None):
        page = FakePage(self.env, viewport)
        self.pages.append(page)
        return page

    def close(self):
        self.closed = True


class FakeBrowserType:
    def __init__(self, env, name):
        self.env = env
        self.name = name

    def launch(self, headless=True, args=None):
        self.env.launches.append((self.name, headless, args))
        browser = FakeBrowser(self.env)
        self.env.browsers.append(browser)
        return browser


class FakePlaywright:
    """Stands in for sync_playwright(): callable, context manager and the `p` handle."""

    def __init__(self):
        self.content_height = 250
        self.goto_error = None
        self.fail_hosts = set()
        self.fail_screenshot_at = None
        self.launches = []
        self.browsers = []
        self.visited = []
        self.waits = []
        self.chromium = FakeBrowserType(self, "chromium")
        self.firefox = FakeBrowserType(self, "firefox")
        self.webkit = FakeBrowserType(self, "webkit")

    def __call__(self):
        return self

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


@pytest.fixture
def fake_playwright(monkeypatch):
    env = FakePlaywright()
    monkeypatch.setattr("pscreen.capture.sync_playwright", env)
    return env

# ---------- network fakes ----------

class FakeResolver:
    def __init__(self, ip="203.0.113.7"):
        self.ip = ip
        self.calls = 0

    def resolve(self, force=False):
        self.calls += 1
        return IpInfo(ip=self.ip, source="test", fetched_at=0.0)


class FakeFirewall:
    def __init__(self, status=None):
        self.status = status or FirewallStatus("disabled", "Firewall is disabled, port is reachable")
        self.checked = []

    def check_port(self, port):
        self.checked.append(port)
        return self.status

# ---------- fixtures ----------

@pytest.fixture(autouse=True)
def reset_pscreen_logger():
    yield
    logger = logging.getLogger("pscreen")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def results_dir(tmp_path):
    return tmp_path / "results"


@pytest.fixture
def store(results_dir):
    return SessionStore(results_dir)


@pytest.fixture
def ctx(results_dir):
    return AppContext(output_dir=str(results_dir), ip_resolver=FakeResolver(), firewall=FakeFirewall())


@pytest.fixture
def sample_session(results_dir):
    sid = encode_session_id(utc(2025, 8, 4, 21, 13, 23, 105000))
    make_session(results_dir, "example.com", sid,
                 names=("full_page.png", "viewport_00.png", "viewport_01.png"))
    return "example.com", sid


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """No config files or PSCREEN_* variables leak in from the machine running the tests."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(tmp_path)
    for var in list(os.environ):
        if var.startswith("PSCREEN_"):
            monkeypatch.delenv(var)
    return tmp_path


@pytest.fixture
def locked_domain(monkeypatch):
    """rmtree fails with EACCES for the "locked.example" domain directory and works for everything else."""
    real_rmtree = shutil.rmtree

    def rmtree(path, **kwargs):
        if Path(path).name != "locked.example":
            return real_rmtree(path, **kwargs)
        exc = PermissionError(13, "Permission denied", str(path))
        if "onexc" in kwargs:
            kwargs["onexc"](os.rmdir, str(path), exc)
        else:
            kwargs["onerror"](os.rmdir, str(path), (PermissionError, exc, None))

    monkeypatch.setattr(shutil, "rmtree", rmtree)
    return "locked.example"
