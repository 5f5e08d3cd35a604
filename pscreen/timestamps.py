"""
Session identifiers: filesystem-safe encodings of UTC instants.

A session directory is named after the moment its capture started, e.g.
2025-08-04T21:13:23.105Z becomes "2025-08-04T21_13_23_105Z". Older result
trees also contain "2025_08_01T09_59_42Z" (underscored date, no millis), so
decoding goes through an ordered list of named formats.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

# ---------- encoding ----------

def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)

def encode_session_id(now: Optional[datetime] = None) -> str:
    moment = _as_utc(now or datetime.now(timezone.utc))
    iso = moment.strftime("%Y-%m-%dT%H:%M:%S") + f".{moment.microsecond // 1000:03d}Z"
    return iso.replace(":", "_").replace(".", "_")

# ---------- decoding ----------

_TIME = r"(?P<hour>\d{2})_(?P<minute>\d{2})_(?P<second>\d{2})"

@dataclass(frozen=True)
class SessionIdFormat:
    name: str
    pattern: re.Pattern

    def match(self, value: str) -> Optional[re.Match]:
        return self.pattern.fullmatch(value)

SESSION_ID_FORMATS: Tuple[SessionIdFormat, ...] = (
    SessionIdFormat("iso", re.compile(
        r"(?P<year>\d{4})-(?P<month>\d{2})-(?P<day>\d{2})"
        r"T(?P<hour>\d{2}):(?P<minute>\d{2}):(?P<second>\d{2})"
        r"(?:\.(?P<fraction>\d{1,6}))?(?P<tz>Z|[+-]\d{2}:?\d{2})?"
    )),
    SessionIdFormat("dashed-millis", re.compile(
        r"(?P<year>\d{4})-(?P<month>\d{2})-(?P<day>\d{2})T" + _TIME + r"_(?P<fraction>\d{3})(?P<tz>Z)"
    )),
    SessionIdFormat("dashed-seconds", re.compile(
        r"(?P<year>\d{4})-(?P<month>\d{2})-(?P<day>\d{2})T" + _TIME + r"(?P<tz>Z)"
    )),
    SessionIdFormat("underscored-millis", re.compile(
        r"(?P<year>\d{4})_(?P<month>\d{2})_(?P<day>\d{2})T" + _TIME + r"_(?P<fraction>\d{3})(?P<tz>Z)"
    )),
    SessionIdFormat("underscored-seconds", re.compile(
        r"(?P<year>\d{4})_(?P<month>\d{2})_(?P<day>\d{2})T" + _TIME + r"(?P<tz>Z)"
    )),
)

def _rebuild_iso(match: re.Match) -> str:
    """Standard ISO-8601 text with a six-digit fraction and a numeric offset."""
    g = match.groupdict()
    fraction = (g.get("fraction") or "").ljust(6, "0")
    tz = g.get("tz") or "Z"
    if tz == "Z":
        tz = "+00:00"
    elif ":" not in tz:
        tz = f"{tz[:3]}:{tz[3:]}"
    return (
        f"{g['year']}-{g['month']}-{g['day']}"
        f"T{g['hour']}:{g['minute']}:{g['second']}.{fraction}{tz}"
    )

def detect_format(value: str) -> Optional[SessionIdFormat]:
    for fmt in SESSION_ID_FORMATS:
        if fmt.match(value):
            return fmt
    return None

def parse_session_id(value: str) -> Optional[datetime]:
    """Strict decode: the UTC instant, or None if no known format applies."""
    if not isinstance(value, str):
        return None
    value = value.strip()
    for fmt in SESSION_ID_FORMATS:
        m = fmt.match(value)
        if not m:
            continue
        try:
            return datetime.fromisoformat(_rebuild_iso(m)).astimezone(timezone.utc)
        except ValueError:
            # month 13, hour 25 and friends
            return None
    return None

def decode_session_id(value: str, now: Optional[datetime] = None) -> datetime:
    """Best-effort decode that never raises; unknown values map to `now`."""
    parsed = parse_session_id(value)
    if parsed is not None:
        return parsed
    logger.warning("Failed to parse session id %r, using current time", value)
    return _as_utc(now or datetime.now(timezone.utc))

def format_session_id(value: str) -> str:
    parsed = parse_session_id(value)
    if parsed is None:
        return value
    return parsed.strftime("%Y-%m-%d %H:%M:%S UTC")
