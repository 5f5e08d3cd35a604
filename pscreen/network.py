"""Port discovery, external IP lookup and firewall checks for the gallery server."""

import logging
import re
import socket
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

import requests

from .errors import NoAvailablePortError

logger = logging.getLogger(__name__)

# ---------- ports ----------

def is_port_available(port: int, host: str = "0.0.0.0") -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True

def find_available_port(start: int, end: int, host: str = "0.0.0.0") -> int:
    for port in range(start, end + 1):
        if is_port_available(port, host):
            return port
    raise NoAvailablePortError(f"No available port found in {start}-{end}")

# ---------- external ip ----------

@dataclass
class IpInfo:
    ip: str
    source: str
    fetched_at: float = field(default_factory=time.time)
    warning: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"ip": self.ip, "source": self.source, "fetched_at": self.fetched_at}
        if self.warning:
            data["warning"] = self.warning
        return data


class ExternalIpResolver:
    """Looks up the public IP through a list of JSON services.

    The answer is cached on the instance for `cache_ttl` seconds; a failed
    lookup returns the fallback address and is not cached.
    """

    def __init__(self, services: Sequence[str], cache_ttl: float = 300.0,
                 fallback_ip: str = "127.0.0.1", timeout: float = 5.0,
                 session: Optional[requests.Session] = None,
                 clock: Callable[[], float] = time.time):
        self.services = list(services)
        self.cache_ttl = cache_ttl
        self.fallback_ip = fallback_ip
        self.timeout = timeout
        self.session = session or requests.Session()
        self.clock = clock
        self.cached: Optional[IpInfo] = None
        self.cached_at: float = 0.0
        self._lock = threading.Lock()

    def _cache_valid(self) -> bool:
        return self.cached is not None and (self.clock() - self.cached_at) < self.cache_ttl

    def _query(self, service: str) -> Optional[str]:
        resp = self.session.get(service, timeout=self.timeout)
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, dict):
            return None
        ip = data.get("ip") or data.get("origin")
        if isinstance(ip, str) and ip.strip():
            # httpbin may report "a, b" behind proxies
            return ip.split(",")[0].strip()
        return None

    def resolve(self, force: bool = False) -> IpInfo:
        with self._lock:
            if not force and self._cache_valid():
                return self.cached

            for service in self.services:
                try:
                    ip = self._query(service)
                except (requests.RequestException, ValueError) as e:
                    logger.warning("Failed to get IP from %s: %s", service, e)
                    continue
                if ip:
                    now = self.clock()
                    self.cached = IpInfo(ip=ip, source=service, fetched_at=now)
                    self.cached_at = now
                    return self.cached

            logger.warning("All IP services failed, using fallback %s", self.fallback_ip)
            return IpInfo(ip=self.fallback_ip, source="fallback", fetched_at=self.clock(),
                          warning="Using fallback IP")

# ---------- firewall ----------

@dataclass
class FirewallStatus:
    status: str          # disabled | allowed | blocked | unknown
    message: str
    needs_action: bool = False
    suggestion: Optional[str] = None


def _run(cmd: Sequence[str]) -> str:
    proc = subprocess.run(list(cmd), capture_output=True, text=True, timeout=10, check=True)
    return proc.stdout


class FirewallChecker:
    """Reads ufw rules to tell whether the gallery port is reachable.

    Only reports; rules are never changed.
    """

    def __init__(self, port_range: str = "9000:9010", runner: Callable[[Sequence[str]], str] = _run):
        self.port_range = port_range
        self.runner = runner

    def _status_output(self, *args: str) -> Optional[str]:
        try:
            return self.runner(["ufw", "status", *args])
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("ufw status failed: %s", e)
            return None

    def _in_range(self, port: int) -> bool:
        low, _, high = self.port_range.partition(":")
        try:
            return int(low) <= port <= int(high or low)
        except ValueError:
            return False

    def check_port(self, port: int) -> FirewallStatus:
        status = self._status_output()
        if status is None:
            return FirewallStatus("unknown", "Could not query ufw; firewall state unknown")
        if "Status: active" not in status:
            return FirewallStatus("disabled", "Firewall is disabled, port is reachable")

        rules = self._status_output("numbered") or status
        if (self._in_range(port) and re.search(rf"\b{re.escape(self.port_range)}/tcp", rules)) \
                or re.search(rf"\b{port}/tcp", rules):
            return FirewallStatus("allowed", f"Port {port} is allowed by the firewall")

        return FirewallStatus(
            "blocked",
            f"Port {port} is blocked by the firewall",
            needs_action=True,
            suggestion=f"sudo ufw allow {port}/tcp",
        )
