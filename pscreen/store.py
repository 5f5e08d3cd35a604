"""
The session store: <root>/<domain>/<session_id>/*.png

Captures write into it, the gallery and the cleanup command read from it.
A missing or unreadable root is treated as an empty store.
"""

import logging
import re
import shutil
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Tuple

from PIL import Image, UnidentifiedImageError

from .timestamps import encode_session_id, parse_session_id

logger = logging.getLogger(__name__)

FULL_PAGE_NAME = "full_page.png"
VIEWPORT_RE = re.compile(r"viewport_(\d+)\.png")

def viewport_name(index: int) -> str:
    return f"viewport_{index:02d}.png"

# ---------- records ----------

@dataclass
class ImageInfo:
    name: str
    path: Path
    size: int
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def size_kb(self) -> float:
        return self.size / 1024


@dataclass
class SessionInfo:
    domain: str
    session_id: str
    captured_at: Optional[datetime]
    images: List[str]
    total_bytes: int

    @property
    def count(self) -> int:
        return len(self.images)

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "session_id": self.session_id,
            "captured_at": self.captured_at.isoformat() if self.captured_at else None,
            "images": list(self.images),
            "count": self.count,
            "total_bytes": self.total_bytes,
        }


@dataclass
class SiteInfo:
    name: str
    sessions: List[SessionInfo]

    def to_dict(self) -> dict:
        return {"name": self.name, "sessions": [s.to_dict() for s in self.sessions]}


@dataclass
class StoreStats:
    domains: int = 0
    sessions: int = 0
    files: int = 0
    total_bytes: int = 0

    @property
    def total_mb(self) -> float:
        return self.total_bytes / (1024 * 1024)

    def to_dict(self) -> dict:
        return {
            "domains": self.domains,
            "sessions": self.sessions,
            "files": self.files,
            "total_bytes": self.total_bytes,
            "total_mb": round(self.total_mb, 2),
        }


@dataclass
class CleanupResult:
    deleted_sessions: int = 0
    deleted_files: int = 0
    deleted_bytes: int = 0
    failures: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failures

    @property
    def message(self) -> str:
        msg = (f"Deleted {self.deleted_files} files in {self.deleted_sessions} sessions "
               f"({self.deleted_bytes / (1024 * 1024):.1f} MB)")
        if self.failures:
            msg += f", {len(self.failures)} items could not be removed"
        return msg

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "deleted_sessions": self.deleted_sessions,
            "deleted_files": self.deleted_files,
            "deleted_bytes": self.deleted_bytes,
            "failures": [{"path": p, "error": e} for p, e in self.failures],
        }

# ---------- helpers ----------

def _check_segment(name: str, what: str) -> str:
    if not name or name in (".", "..") or "/" in name or "\\" in name or "\x00" in name:
        raise ValueError(f"Invalid {what}: {name!r}")
    return name

def _subdirs(path: Path) -> List[Path]:
    try:
        return sorted(p for p in path.iterdir() if p.is_dir())
    except OSError:
        return []

def _image_order(name: str):
    if name == FULL_PAGE_NAME:
        return (0, 0, name)
    m = VIEWPORT_RE.fullmatch(name)
    if m:
        return (1, int(m.group(1)), name)
    return (2, 0, name)

def completed_images(session_dir: Path) -> List[Path]:
    """Non-empty PNG files in a session directory, full page first."""
    found = []
    try:
        entries = list(session_dir.iterdir())
    except OSError:
        return []
    for p in entries:
        if p.suffix.lower() != ".png":
            continue
        try:
            if p.is_file() and p.stat().st_size > 0:
                found.append(p)
        except OSError:
            continue
    return sorted(found, key=lambda p: _image_order(p.name))

def image_dimensions(path: Path) -> Tuple[Optional[int], Optional[int]]:
    try:
        with Image.open(path) as img:
            return img.size
    except (OSError, UnidentifiedImageError):
        return None, None

def _dir_usage(path: Path) -> Tuple[int, int]:
    files = size = 0
    for p in path.rglob("*"):
        try:
            if p.is_file():
                files += 1
                size += p.stat().st_size
        except OSError:
            continue
    return files, size

def _rmtree(path: Path, errors: list) -> None:
    if sys.version_info >= (3, 12):
        shutil.rmtree(path, onexc=lambda func, failed, exc: errors.append((failed, exc)))
    else:
        shutil.rmtree(path, onerror=lambda func, failed, info: errors.append((failed, info[1])))

def _sort_key(session: SessionInfo):
    # undecodable ids sort after every dated session
    ts = session.captured_at or datetime.min.replace(tzinfo=timezone.utc)
    return (ts, session.session_id)

# ---------- store ----------

class SessionStore:
    def __init__(self, root):
        self.root = Path(root)

    def __repr__(self):
        return f"SessionStore({str(self.root)!r})"

    def session_path(self, domain: str, session_id: str) -> Path:
        return self.root / _check_segment(domain, "domain") / _check_segment(session_id, "session id")

    def create_session(self, domain: str, now: Optional[datetime] = None) -> Tuple[str, Path]:
        """Create a fresh session directory for `domain`.

        Two captures of the same host within one millisecond would collide,
        so on an existing directory we wait a millisecond and encode again.
        """
        domain_dir = self.root / _check_segment(domain, "domain")
        domain_dir.mkdir(parents=True, exist_ok=True)
        moment = now
        while True:
            session_id = encode_session_id(moment)
            path = domain_dir / session_id
            try:
                path.mkdir()
            except FileExistsError:
                time.sleep(0.001)
                moment = moment + timedelta(milliseconds=1) if moment else None
                continue
            logger.info("Created session directory: %s", path)
            return session_id, path

    # ---------- reading ----------

    def list_domains(self) -> List[str]:
        return [p.name for p in _subdirs(self.root)]

    def list_sessions(self, domain: str) -> List[SessionInfo]:
        sessions = []
        for session_dir in _subdirs(self.root / _check_segment(domain, "domain")):
            images = completed_images(session_dir)
            if not images:
                continue
            total = 0
            for p in images:
                try:
                    total += p.stat().st_size
                except OSError:
                    pass
            sessions.append(SessionInfo(
                domain=domain,
                session_id=session_dir.name,
                captured_at=parse_session_id(session_dir.name),
                images=[p.name for p in images],
                total_bytes=total,
            ))
        return sorted(sessions, key=_sort_key, reverse=True)

    def list_sites(self) -> List[SiteInfo]:
        sites = []
        for domain in self.list_domains():
            sessions = self.list_sessions(domain)
            if sessions:
                sites.append(SiteInfo(name=domain, sessions=sessions))
        return sites

    def session_images(self, domain: str, session_id: str) -> List[ImageInfo]:
        images = []
        for p in completed_images(self.session_path(domain, session_id)):
            width, height = image_dimensions(p)
            images.append(ImageInfo(name=p.name, path=p, size=p.stat().st_size,
                                    width=width, height=height))
        return images

    def latest_session(self) -> Optional[SessionInfo]:
        newest = [s for site in self.list_sites() for s in site.sessions[:1]]
        if not newest:
            return None
        return max(newest, key=_sort_key)

    def stats(self) -> StoreStats:
        stats = StoreStats()
        for domain_dir in _subdirs(self.root):
            stats.domains += 1
            for session_dir in _subdirs(domain_dir):
                stats.sessions += 1
                files, size = _dir_usage(session_dir)
                stats.files += files
                stats.total_bytes += size
        return stats

    # ---------- deleting ----------

    def _remove(self, path: Path, result: CleanupResult) -> bool:
        try:
            files, size = _dir_usage(path) if path.is_dir() else (1, path.lstat().st_size)
        except FileNotFoundError:
            logger.debug("Already gone: %s", path)
            return False
        except OSError as e:
            logger.warning("Failed to delete %s: %s", path, e)
            result.failures.append((str(path), str(e)))
            return False
        errors = []

        if path.is_dir() and not path.is_symlink():
            _rmtree(path, errors)
        else:
            try:
                path.unlink()
            except OSError as e:
                errors.append((str(path), e))

        # removed concurrently, not a failure
        errors = [(failed, exc) for failed, exc in errors if not isinstance(exc, FileNotFoundError)]
        for failed, exc in errors:
            logger.warning("Failed to delete %s: %s", failed, exc)
            result.failures.append((str(failed), str(exc)))
        if errors:
            return False
        result.deleted_files += files
        result.deleted_bytes += size
        return True

    def delete_session(self, domain: str, session_id: str) -> CleanupResult:
        result = CleanupResult()
        path = self.session_path(domain, session_id)
        if path.is_dir() and self._remove(path, result):
            result.deleted_sessions += 1
            logger.info("Deleted session: %s/%s", domain, session_id)
        return result

    def delete_all(self) -> CleanupResult:
        """Remove everything under the root, keeping the root itself."""
        result = CleanupResult()
        try:
            items = sorted(self.root.iterdir())
        except OSError:
            return result
        for item in items:
            sessions = len(_subdirs(item)) if item.is_dir() else 0
            if self._remove(item, result):
                result.deleted_sessions += sessions
        logger.info("Deleted all screenshots from %s: %s", self.root, result.message)
        return result

    def delete_older_than(self, days: float, now: Optional[datetime] = None) -> CleanupResult:
        if days < 0:
            raise ValueError("days must not be negative")
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        cutoff = now - timedelta(days=days)
        result = CleanupResult()

        for domain_dir in _subdirs(self.root):
            for session_dir in _subdirs(domain_dir):
                captured = parse_session_id(session_dir.name)
                if captured is None:
                    logger.debug("Skipping undated session %s", session_dir)
                    continue
                if captured < cutoff and self._remove(session_dir, result):
                    result.deleted_sessions += 1
                    logger.info("Deleted old session: %s/%s", domain_dir.name, session_dir.name)
            try:
                if not any(domain_dir.iterdir()):
                    domain_dir.rmdir()
            except OSError as e:
                logger.debug("Keeping domain directory %s: %s", domain_dir, e)
        return result
