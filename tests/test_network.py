import socket
import subprocess

import pytest
import requests

from pscreen.errors import NoAvailablePortError
from pscreen.network import ExternalIpResolver, FirewallChecker, find_available_port, is_port_available


@pytest.fixture
def busy_port():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    yield sock.getsockname()[1]
    sock.close()


def test_busy_port_is_skipped(busy_port):
    assert not is_port_available(busy_port, "127.0.0.1")
    with pytest.raises(NoAvailablePortError):
        find_available_port(busy_port, busy_port, "127.0.0.1")


def test_free_port_is_found():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
    assert find_available_port(port, port, "127.0.0.1") == port

# ---------- external ip ----------

class FakeResponse:
    def __init__(self, data, status=200):
        self.data = data
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def json(self):
        if isinstance(self.data, Exception):
            raise self.data
        return self.data


class FakeSession:
    def __init__(self, answers):
        self.answers = answers
        self.calls = []

    def get(self, url, timeout=None):
        self.calls.append(url)
        answer = self.answers.get(url)
        if answer is None:
            raise requests.ConnectionError(f"cannot reach {url}")
        return answer


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


SERVICES = ["https://ip.one/json", "https://ip.two/json", "https://ip.three/json"]


def test_resolver_falls_through_services_and_caches():
    session = FakeSession({
        "https://ip.two/json": FakeResponse({"foo": "bar"}),
        "https://ip.three/json": FakeResponse({"origin": "198.51.100.4, 10.0.0.1"}),
    })
    clock = Clock()
    resolver = ExternalIpResolver(SERVICES, cache_ttl=300, session=session, clock=clock)

    info = resolver.resolve()
    assert (info.ip, info.source, info.warning) == ("198.51.100.4", "https://ip.three/json", None)
    assert session.calls == SERVICES

    clock.now += 299
    assert resolver.resolve() is info
    assert len(session.calls) == 3

    clock.now += 2
    resolver.resolve()
    assert len(session.calls) == 6


def test_force_bypasses_cache():
    session = FakeSession({"https://ip.one/json": FakeResponse({"ip": "203.0.113.9"})})
    resolver = ExternalIpResolver(SERVICES, session=session, clock=Clock())
    resolver.resolve()
    resolver.resolve(force=True)
    assert session.calls == ["https://ip.one/json", "https://ip.one/json"]


def test_fallback_when_every_service_fails():
    session = FakeSession({
        "https://ip.one/json": FakeResponse({}, status=503),
        "https://ip.two/json": FakeResponse(ValueError("not json")),
    })
    resolver = ExternalIpResolver(SERVICES, fallback_ip="192.0.2.1", session=session, clock=Clock())
    info = resolver.resolve()
    assert (info.ip, info.source) == ("192.0.2.1", "fallback")
    assert info.to_dict()["warning"] == "Using fallback IP"
    assert resolver.cached is None
    resolver.resolve()
    assert len(session.calls) == 6

# ---------- firewall ----------

ACTIVE_RANGE = """Status: active

To                         Action      From
--                         ------      ----
22/tcp                     ALLOW       Anywhere
9000:9010/tcp              ALLOW       Anywhere
"""

ACTIVE_SINGLE = """Status: active

To                         Action      From
--                         ------      ----
8080/tcp                   ALLOW       Anywhere
"""


def runner_for(output):
    calls = []

    def run(cmd):
        calls.append(list(cmd))
        return output
    run.calls = calls
    return run


def test_firewall_unknown_without_ufw():
    def missing(cmd):
        raise FileNotFoundError("ufw")
    status = FirewallChecker(runner=missing).check_port(9000)
    assert status.status == "unknown"
    assert not status.needs_action


def test_firewall_unknown_when_ufw_fails():
    def denied(cmd):
        raise subprocess.CalledProcessError(1, cmd)
    assert FirewallChecker(runner=denied).check_port(9000).status == "unknown"


def test_firewall_disabled():
    status = FirewallChecker(runner=runner_for("Status: inactive\n")).check_port(9000)
    assert status.status == "disabled"


@pytest.mark.parametrize("output, port, expected", [
    (ACTIVE_RANGE, 9005, "allowed"),
    (ACTIVE_RANGE, 9011, "blocked"),
    (ACTIVE_SINGLE, 8080, "allowed"),
    (ACTIVE_SINGLE, 80, "blocked"),
])
def test_firewall_rules(output, port, expected):
    run = runner_for(output)
    status = FirewallChecker("9000:9010", runner=run).check_port(port)
    assert status.status == expected
    assert run.calls[0] == ["ufw", "status"]
    if expected == "blocked":
        assert status.needs_action
        assert status.suggestion == f"sudo ufw allow {port}/tcp"
