"""
Batch mode: many URLs, bounded concurrency, retries with linear backoff.

The retry policy lives here, outside the capture primitive; each capture
still owns its own browser.
"""

import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .capture import CaptureOptions, CaptureSet, capture
from .errors import BatchAbortedError, InvalidUrlError, PScreenError

logger = logging.getLogger(__name__)

# ---------- inputs ----------

def read_url_list(path: Path) -> List[str]:
    raw = Path(path).read_text(encoding="utf-8", errors="ignore")
    raw = raw.replace("\r\n", "\n").replace("\r", "\n")
    out = []
    for line in raw.split("\n"):
        # "#" starts a comment at line start or after whitespace
        line = re.split(r"(?:^|\s)#", line, maxsplit=1)[0]
        out.extend(token for token in re.split(r"[\s,;|]+", line) if token)
    return out

# ---------- policy & report ----------

@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    continue_on_error: bool = False

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        return self.backoff_seconds * attempt


@dataclass
class BatchResult:
    url: str
    capture: CaptureSet
    attempts: int


@dataclass
class BatchFailure:
    url: str
    message: str
    attempts: int


@dataclass
class BatchReport:
    results: List[BatchResult] = field(default_factory=list)
    errors: List[BatchFailure] = field(default_factory=list)
    cancelled: List[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.results) + len(self.errors)

    @property
    def success(self) -> bool:
        return not self.errors and not self.cancelled

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "processed": self.processed,
            "successful": len(self.results),
            "failed": len(self.errors),
            "results": [dict(r.capture.to_dict(), attempts=r.attempts) for r in self.results],
            "errors": [{"url": e.url, "error": e.message, "attempts": e.attempts} for e in self.errors],
            "cancelled": list(self.cancelled),
        }

# ---------- driver ----------

EventFn = Callable[[str, str, dict], None]

def _capture_with_retries(url, options, policy, capture_fn, sleep, on_event, metrics):
    last_error: Optional[Exception] = None
    for attempt in range(1, policy.max_attempts + 1):
        if on_event:
            on_event("attempt", url, {"attempt": attempt, "max_attempts": policy.max_attempts})
        try:
            result = capture_fn(url, options)
        except InvalidUrlError as e:
            # retrying cannot fix the input
            if metrics:
                metrics.incr("captures_failed")
            return None, BatchFailure(url, str(e), attempt)
        except PScreenError as e:
            last_error = e
            logger.warning("Attempt %d/%d failed for %s: %s", attempt, policy.max_attempts, url, e)
            if attempt < policy.max_attempts:
                sleep(policy.delay_for(attempt))
            continue
        if metrics:
            metrics.incr("captures_total")
            metrics.observe_capture(result.duration)
        return BatchResult(url, result, attempt), None

    if metrics:
        metrics.incr("captures_failed")
    return None, BatchFailure(url, str(last_error), policy.max_attempts)

def run_batch(urls: Sequence[str], options: Optional[CaptureOptions] = None,
              policy: Optional[RetryPolicy] = None, parallel: int = 1,
              capture_fn: Callable[..., CaptureSet] = capture,
              sleep: Callable[[float], None] = time.sleep,
              on_event: Optional[EventFn] = None,
              metrics=None) -> BatchReport:
    options = options or CaptureOptions()
    policy = policy or RetryPolicy()
    if parallel < 1:
        raise ValueError("parallel must be at least 1")

    report = BatchReport()
    abort: List[BatchFailure] = []

    logger.info("Starting batch of %d URL(s), parallel=%d, attempts=%d",
                len(urls), parallel, policy.max_attempts)

    with ThreadPoolExecutor(max_workers=parallel) as executor:
        futures = {
            executor.submit(_capture_with_retries, url, options, policy, capture_fn,
                            sleep, on_event, metrics): url
            for url in urls
        }
        for future in as_completed(futures):
            url = futures[future]
            if future.cancelled():
                continue
            ok, failure = future.result()
            if ok:
                report.results.append(ok)
                if on_event:
                    on_event("success", url, {"capture": ok.capture, "attempts": ok.attempts})
                continue
            report.errors.append(failure)
            logger.error("Failed to capture %s: %s", url, failure.message)
            if on_event:
                on_event("failure", url, {"error": failure.message, "attempts": failure.attempts})
            if not policy.continue_on_error and not abort:
                abort.append(failure)
                for other in futures:
                    if other.cancel():
                        report.cancelled.append(futures[other])

    if abort:
        raise BatchAbortedError(abort[0].url, abort[0].message, report=report)
    return report
