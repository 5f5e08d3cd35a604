"""
Single-URL capture: one full-page PNG plus viewport-height tiles.

- Validates the URL before any browser is launched
- Writes <output_dir>/<domain>/<session_id>/full_page.png and viewport_NN.png
- Closes the browser on every path; a failed capture leaves no session dir
"""

import logging
import math
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Literal, Optional
from urllib.parse import urlparse

from PIL import Image, UnidentifiedImageError
from playwright.sync_api import sync_playwright, Error as PWError
from pydantic import BaseModel, Field

from .config import ScreenshotSettings
from .errors import CaptureError, InvalidUrlError
from .store import FULL_PAGE_NAME, SessionStore, viewport_name

logger = logging.getLogger(__name__)

CAPTURE_STEPS = 5

# Better container compatibility for chromium
CHROMIUM_ARGS = ["--no-sandbox", "--disable-setuid-sandbox"]

ProgressFn = Callable[[int, int, str], None]

# ---------- options ----------

class CaptureOptions(BaseModel):
    output_dir: str = "results"
    width: int = Field(1280, ge=1, le=4000)
    height: int = Field(720, ge=1, le=4000)
    browser: Literal["chromium", "firefox", "webkit"] = "chromium"
    timeout_ms: int = Field(30000, ge=1000, le=120000)
    full_page: bool = True
    scroll_delay_ms: int = Field(500, ge=0, le=10000)
    wait_until: Literal["load", "domcontentloaded", "networkidle", "commit"] = "networkidle"

    @classmethod
    def from_settings(cls, settings: ScreenshotSettings, **overrides) -> "CaptureOptions":
        data = settings.model_dump()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(data)


@dataclass
class CaptureSet:
    url: str
    domain: str
    session_id: str
    directory: Path
    full_page: Path
    viewports: List[Path] = field(default_factory=list)
    duration: float = 0.0

    @property
    def files(self) -> List[Path]:
        return [self.full_page, *self.viewports]

    @property
    def view_path(self) -> str:
        return f"/view/{self.domain}/{self.session_id}"

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "domain": self.domain,
            "session_id": self.session_id,
            "directory": str(self.directory),
            "files": [str(p) for p in self.files],
            "view_path": self.view_path,
            "duration": round(self.duration, 3),
        }

# ---------- helpers ----------

def ensure_scheme(url: str) -> str:
    if not re.match(r"^[a-z][a-z0-9+.\-]*://", url, flags=re.I):
        return "https://" + url
    return url

def validate_url(url) -> str:
    """Normalise and check a capture URL; raises InvalidUrlError."""
    if not isinstance(url, str) or not url.strip():
        raise InvalidUrlError("Invalid URL: empty value")
    url = ensure_scheme(url.strip())
    if any(ch.isspace() for ch in url):
        raise InvalidUrlError(f"Invalid URL: {url!r} contains whitespace")
    parsed = urlparse(url)
    if parsed.scheme.lower() not in ("http", "https"):
        raise InvalidUrlError(f"Invalid URL: unsupported scheme {parsed.scheme!r}")
    try:
        host = parsed.hostname
        _ = parsed.port  # raises on a malformed port
    except ValueError as e:
        raise InvalidUrlError(f"Invalid URL: {e}") from e
    if not host or host.startswith(".") or ".." in host:
        raise InvalidUrlError(f"Invalid URL: no host in {url!r}")
    return url

def extract_domain(url: str) -> str:
    host = (urlparse(url).hostname or "").lower()
    host = re.sub(r"[^a-z0-9\.\-_]+", "_", host)
    if not host:
        raise InvalidUrlError(f"Invalid URL: no host in {url!r}")
    return host

def verify_png(path: Path) -> None:
    if not path.is_file() or path.stat().st_size == 0:
        raise CaptureError(str(path), "screenshot file is missing or empty")
    try:
        with Image.open(path) as img:
            if img.format != "PNG":
                raise CaptureError(str(path), f"expected PNG, got {img.format}")
            img.verify()
    except (OSError, UnidentifiedImageError) as e:
        raise CaptureError(str(path), f"unreadable image: {e}") from e

def page_height(page, fallback: int) -> int:
    h = page.evaluate(
        "() => Math.max(document.body ? document.body.scrollHeight : 0,"
        " document.documentElement ? document.documentElement.scrollHeight : 0)"
    )
    try:
        return int(h) if h else fallback
    except (TypeError, ValueError):
        return fallback

def tile_count(full_height: int, viewport_height: int) -> int:
    return max(1, math.ceil(full_height / viewport_height))

def take_viewport_screenshots(page, session_dir: Path, opts: CaptureOptions) -> List[Path]:
    count = tile_count(page_height(page, opts.height), opts.height)
    paths = []
    for i in range(count):
        page.evaluate("(y) => window.scrollTo(0, y)", i * opts.height)
        if opts.scroll_delay_ms:
            page.wait_for_timeout(opts.scroll_delay_ms)
        path = session_dir / viewport_name(i)
        page.screenshot(path=str(path))
        verify_png(path)
        paths.append(path)
    return paths

def _discard(session_dir: Optional[Path], store: SessionStore) -> None:
    if session_dir is None or not session_dir.exists():
        return
    result = store.delete_session(session_dir.parent.name, session_dir.name)
    if not result.success:
        logger.error("Could not remove incomplete session %s", session_dir)

# ---------- core capture ----------

def capture(url: str, options: Optional[CaptureOptions] = None,
            store: Optional[SessionStore] = None,
            progress: Optional[ProgressFn] = None) -> CaptureSet:
    url = validate_url(url)
    opts = options or CaptureOptions()
    store = store or SessionStore(Path(opts.output_dir))
    domain = extract_domain(url)

    def step(n: int, status: str):
        logger.debug("[%s] %s", url, status)
        if progress:
            progress(n, CAPTURE_STEPS, status)

    logger.info("Starting screenshot capture for %s", url)
    t0 = time.time()
    session_dir: Optional[Path] = None
    try:
        with sync_playwright() as p:
            step(1, "Launching browser...")
            browser = getattr(p, opts.browser).launch(
                headless=True,
                args=CHROMIUM_ARGS if opts.browser == "chromium" else None,
            )
            try:
                step(2, "Creating new page...")
                page = browser.new_page(viewport={"width": opts.width, "height": opts.height})
                page.set_default_timeout(opts.timeout_ms)

                step(3, "Navigating to page...")
                page.goto(url, wait_until=opts.wait_until, timeout=opts.timeout_ms)

                session_id, session_dir = store.create_session(domain)

                step(4, "Taking full page screenshot...")
                full_path = session_dir / FULL_PAGE_NAME
                page.screenshot(path=str(full_path), full_page=opts.full_page)
                verify_png(full_path)

                step(5, "Taking viewport screenshots...")
                viewports = take_viewport_screenshots(page, session_dir, opts)
            finally:
                browser.close()
    except PWError as e:
        _discard(session_dir, store)
        logger.error("Screenshot failed for %s: %s", url, e)
        raise CaptureError(url, str(e).splitlines()[0] if str(e) else type(e).__name__) from e
    except CaptureError as e:
        _discard(session_dir, store)
        logger.error("Screenshot failed for %s: %s", url, e.reason)
        raise CaptureError(url, e.reason) from e
    except OSError as e:
        _discard(session_dir, store)
        logger.error("Screenshot failed for %s: %s", url, e)
        raise CaptureError(url, str(e)) from e
    except BaseException:
        _discard(session_dir, store)
        raise

    result = CaptureSet(
        url=url,
        domain=domain,
        session_id=session_id,
        directory=session_dir,
        full_page=full_path,
        viewports=viewports,
        duration=time.time() - t0,
    )
    logger.info("Screenshot session %s/%s completed in %.1fs (%d files)",
                domain, session_id, result.duration, len(result.files))
    return result
