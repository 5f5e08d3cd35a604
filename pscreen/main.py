#!/usr/bin/env python3
"""
pscreen: website screenshots with a browsable gallery

- take:    full-page + viewport-tiled PNGs into <out>/<domain>/<session_id>/
- serve:   HTML gallery over the results directory
- cleanup: wipe everything, drop sessions older than N days, or show stats
- details: files and links of the newest session
- config / debug: inspect the effective setup
"""

import argparse
import json
import os
import platform
import sys
import time
from functools import partial
from importlib import metadata
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from . import __version__
from .batch import RetryPolicy, read_url_list, run_batch
from .capture import CaptureOptions, capture, validate_url
from .config import (
    BROWSERS, CONFIG_FILENAME, default_config_paths, describe_validation_error, load_config,
    write_sample_config,
)
from .context import AppContext
from .errors import BatchAbortedError, ConfigError, PScreenError
from .server import prepare_server, serve
from .store import image_dimensions
from .timestamps import format_session_id

# ---------- utility formatting ----------

def _fmt_eta(seconds: Optional[float]) -> str:
    if seconds is None or seconds != seconds or seconds < 0:
        return "estimating…"
    seconds = int(round(seconds))
    h, r = divmod(seconds, 3600)
    m, s = divmod(r, 60)
    if h > 0:
        return f"{h:d}h {m:02d}m {s:02d}s"
    return f"{m:d}m {s:02d}s"

def _fmt_size(num: int) -> str:
    for unit in ("B", "KB", "MB"):
        if num < 1024:
            return f"{num:.0f} {unit}" if unit == "B" else f"{num:.1f} {unit}"
        num /= 1024
    return f"{num:.1f} GB"

def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))

def _build_context(args, output_dir: Optional[str] = None) -> AppContext:
    config = load_config(args.config)
    level = "DEBUG" if args.verbose else ("WARNING" if args.quiet or getattr(args, "json", False) else None)
    return AppContext(config, output_dir=output_dir, log_level=level)

def _print_server_banner(info) -> None:
    print(f"Web server: {info.base_url}")
    print(f"   port {info.port}, external IP {info.ip.ip} ({info.ip.source})")
    if info.firewall.needs_action:
        print(f"   ! {info.firewall.message}. Try: {info.firewall.suggestion}")
    print("Press Ctrl+C to stop.")

# ---------- take ----------

def _progress_printer(step: int, total: int, status: str) -> None:
    pct = int(step / max(total, 1) * 100)
    print(f"   [{step}/{total}] {pct:3d}%  {status}")

def cmd_take(args) -> int:
    urls: List[str] = list(args.urls)
    if args.batch:
        batch_file = Path(args.batch)
        if not batch_file.is_file():
            raise PScreenError(f"Batch file not found: {batch_file}")
        urls.extend(read_url_list(batch_file))
    if not urls:
        raise PScreenError("No URLs specified. Provide a URL or use --batch.")

    # fail fast, before any browser starts
    urls = [validate_url(u) for u in urls]

    ctx = _build_context(args, output_dir=args.out_dir)
    try:
        options = CaptureOptions.from_settings(
            ctx.config.screenshot,
            width=args.width,
            height=args.height,
            browser=args.browser,
            timeout_ms=args.timeout_ms,
            full_page=False if args.no_full_page else None,
        )
    except ValidationError as e:
        raise ConfigError(f"Invalid capture options: {describe_validation_error(e)}") from e
    auto = ctx.config.automation
    retries = args.retries if args.retries is not None else auto.retries
    parallel = args.parallel if args.parallel is not None else auto.parallel
    if retries < 1:
        raise ConfigError(f"--retries must be at least 1, got {retries}")
    if parallel < 1:
        raise ConfigError(f"--parallel must be at least 1, got {parallel}")
    policy = RetryPolicy(
        max_attempts=retries,
        backoff_seconds=auto.backoff_seconds,
        continue_on_error=args.continue_on_error or auto.continue_on_error,
    )
    chatty = not (args.json or args.quiet)

    if chatty:
        print(f"Capturing {len(urls)} URL(s) → {ctx.store.root}")
        print(f"   viewport {options.width}x{options.height}, {options.browser}, "
              f"timeout {options.timeout_ms}ms, full page: {options.full_page}")

    total = len(urls)
    t_batch_start = time.time()
    state = {"completed": 0}

    def on_event(kind: str, url: str, info: dict) -> None:
        if not chatty:
            return
        if kind == "attempt":
            done = state["completed"]
            eta = (time.time() - t_batch_start) / done * (total - done) if done else None
            suffix = f" (attempt {info['attempt']}/{info['max_attempts']})" if info["attempt"] > 1 else ""
            print(f"[{done + 1}/{total}] ETA {_fmt_eta(eta)}  {url}{suffix}")
        elif kind == "success":
            state["completed"] += 1
            cs = info["capture"]
            print(f"   ✓ {cs.domain}/{cs.session_id}: 1 full page + {len(cs.viewports)} viewport "
                  f"screenshots in {_fmt_eta(cs.duration)}")
        elif kind == "failure":
            state["completed"] += 1
            print(f"   ✗ {url}: {info['error']}")

    capture_fn = partial(
        capture, store=ctx.store,
        progress=_progress_printer if chatty and total == 1 and args.verbose else None,
    )
    aborted: Optional[BatchAbortedError] = None
    try:
        report = run_batch(urls, options, policy, parallel=parallel, capture_fn=capture_fn,
                           on_event=on_event, metrics=ctx.metrics)
    except BatchAbortedError as e:
        aborted, report = e, e.report

    if args.json:
        data = report.to_dict()
        if aborted:
            data["error"] = str(aborted)
        _print_json(data)
    elif chatty:
        print(f"Processed {report.processed} URL(s): {len(report.results)} successful, "
              f"{len(report.errors)} failed, in {_fmt_eta(time.time() - t_batch_start)}")
        if report.cancelled:
            print(f"   not attempted: {', '.join(report.cancelled)}")
        for r in report.results:
            print(f"   {r.capture.directory}  (gallery: {r.capture.view_path})")
            for p in r.capture.files:
                print(f"      {p.name} ({_fmt_size(p.stat().st_size)})")

    if aborted:
        if not args.json:
            print(f"Error: {aborted}", file=sys.stderr)
        return 1

    if args.server and report.results:
        info = prepare_server(ctx, host=args.host, port=args.port)
        if not args.json:
            _print_server_banner(info)
            for r in report.results:
                print(f"Direct link: {info.view_url(r.capture.domain, r.capture.session_id)}")
        serve(ctx, info=info)

    return 0 if not report.errors else 1

# ---------- serve ----------

def cmd_serve(args) -> int:
    ctx = _build_context(args, output_dir=args.out_dir)
    info = prepare_server(ctx, host=args.host, port=args.port)
    _print_server_banner(info)
    serve(ctx, info=info)
    return 0

# ---------- cleanup ----------

def cmd_cleanup(args) -> int:
    if args.older_than is not None and args.older_than < 0:
        raise ConfigError(f"--older-than must not be negative, got {args.older_than:g}")
    ctx = _build_context(args, output_dir=args.out_dir)
    store = ctx.store
    stats = store.stats()

    if args.stats or not (args.all or args.older_than is not None):
        if args.json:
            _print_json(dict(stats.to_dict(), results_dir=str(store.root)))
        else:
            print(f"Results directory: {store.root}")
            print(f"   domains:  {stats.domains}")
            print(f"   sessions: {stats.sessions}")
            print(f"   files:    {stats.files} ({stats.total_mb:.1f} MB)")
        return 0

    if args.all:
        if not args.yes:
            answer = input(f"Delete ALL {stats.files} files ({stats.total_mb:.1f} MB) in {store.root}? [y/N] ")
            if answer.strip().lower() not in ("y", "yes"):
                print("Aborted.")
                return 1
        result = store.delete_all()
    else:
        result = store.delete_older_than(args.older_than)

    if args.json:
        _print_json(result.to_dict())
    else:
        print(("✓ " if result.success else "! ") + result.message)
        for path, err in result.failures:
            print(f"   could not remove {path}: {err}")
    return 0 if result.success else 1

# ---------- details ----------

def cmd_details(args) -> int:
    ctx = _build_context(args, output_dir=args.out_dir)
    session = ctx.store.latest_session()
    if session is None:
        print(f"No sessions found in {ctx.store.root}")
        return 1

    directory = ctx.store.session_path(session.domain, session.session_id)
    base_url = args.base_url.rstrip("/") if args.base_url else None
    print(f"Session: {session.domain}/{session.session_id} ({format_session_id(session.session_id)})")
    print(f"   directory: {directory}")
    if base_url:
        print(f"   web: {base_url}/view/{session.domain}/{session.session_id}")
    print(f"{session.count} screenshots:")
    for name in session.images:
        path = directory / name
        width, height = image_dimensions(path)
        dims = f", {width}x{height}" if width else ""
        print(f"   ✓ {name} ({_fmt_size(path.stat().st_size)}{dims})")
        if base_url:
            print(f"      {base_url}/{session.domain}/{session.session_id}/{name}")
    return 0

# ---------- config & debug ----------

def cmd_config(args) -> int:
    if args.init:
        path = write_sample_config(Path(args.init))
        print(f"Sample configuration written to {path}")
        return 0
    config = load_config(args.config)
    if args.get:
        try:
            value = config.get(args.get)
        except KeyError:
            raise PScreenError(f"Unknown configuration key: {args.get}")
        if isinstance(value, (dict, list)):
            _print_json(value)
        else:
            print(value)
        return 0
    _print_json(config.model_dump())
    return 0

def cmd_debug(args) -> int:
    config = load_config(args.config)
    out_dir = Path(config.screenshot.output_dir)
    try:
        pw_version = metadata.version("playwright")
    except metadata.PackageNotFoundError:
        pw_version = "not installed"

    print(f"pscreen {__version__}")
    print(f"Python:      {sys.version.split()[0]} ({platform.platform()})")
    print(f"Playwright:  {pw_version}")
    print(f"Working dir: {os.getcwd()}")
    print(f"Output dir:  {out_dir.resolve()} ({'exists' if out_dir.is_dir() else 'missing'})")
    if out_dir.is_dir():
        print(f"   contains {sum(1 for _ in out_dir.iterdir())} items")
    print("Config files:")
    for p in default_config_paths():
        print(f"   {p}: {'found' if p.is_file() else '-'}")
    print(f"Server: {config.server.host}, ports {config.server.port or 'auto'} "
          f"({config.server.port_range_start}-{config.server.port_range_end})")
    print(f"Log level: {config.logging.level}")
    return 0

# ---------- CLI ----------

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="pscreen", description="Website screenshots with a browsable gallery.")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument("--config", default=None, help=f"Config file (default: search {CONFIG_FILENAME}).")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    ap.add_argument("-q", "--quiet", action="store_true", help="Only warnings and errors.")
    sub = ap.add_subparsers(dest="command", required=True)

    def out_dir_arg(p):
        p.add_argument("-o", "--out-dir", default=None, help="Results directory (default from config: ./results).")

    take = sub.add_parser("take", aliases=["screenshot"], help="Take screenshots of one or more websites.")
    take.add_argument("urls", nargs="*", help="URL(s) to capture (scheme optional).")
    out_dir_arg(take)
    take.add_argument("-w", "--width", type=int, default=None, help="Viewport width (default 1280).")
    take.add_argument("-H", "--height", type=int, default=None, help="Viewport height (default 720).")
    take.add_argument("-b", "--browser", choices=BROWSERS, default=None, help="Browser engine.")
    take.add_argument("-t", "--timeout-ms", type=int, default=None, help="Navigation timeout in ms (default 30000).")
    take.add_argument("--no-full-page", action="store_true", help="Capture only the first viewport as full_page.png.")
    take.add_argument("--batch", default=None, help="File with URLs (whitespace/comma separated, # comments).")
    take.add_argument("--parallel", type=int, default=None, help="Concurrent captures (default 1).")
    take.add_argument("--retries", type=int, default=None, help="Attempts per URL (default 3).")
    take.add_argument("--continue-on-error", action="store_true", help="Keep going after a URL fails.")
    take.add_argument("--json", action="store_true", help="Print the result as JSON.")
    take.add_argument("--server", action="store_true", help="Start the gallery server afterwards.")
    take.add_argument("--port", type=int, default=None, help="Gallery server port.")
    take.add_argument("--host", default=None, help="Gallery server host.")
    take.set_defaults(func=cmd_take)

    srv = sub.add_parser("serve", help="Start the gallery server.")
    srv.add_argument("-p", "--port", type=int, default=None, help="Server port (default: first free in 9000-9010).")
    srv.add_argument("--host", default=None, help="Server host (default 0.0.0.0).")
    out_dir_arg(srv)
    srv.set_defaults(func=cmd_serve)

    cln = sub.add_parser("cleanup", help="Delete screenshots or show storage statistics.")
    mode = cln.add_mutually_exclusive_group()
    mode.add_argument("--all", action="store_true", help="Delete every session.")
    mode.add_argument("--older-than", type=float, default=None, metavar="DAYS", help="Delete sessions older than DAYS.")
    mode.add_argument("--stats", action="store_true", help="Only show statistics (default).")
    cln.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation.")
    cln.add_argument("--json", action="store_true", help="Print the result as JSON.")
    out_dir_arg(cln)
    cln.set_defaults(func=cmd_cleanup)

    det = sub.add_parser("details", help="Show the newest session.")
    det.add_argument("--base-url", default=None, help="Gallery base URL for web links.")
    out_dir_arg(det)
    det.set_defaults(func=cmd_details)

    cfg = sub.add_parser("config", help="Show or initialise configuration.")
    grp = cfg.add_mutually_exclusive_group()
    grp.add_argument("--init", nargs="?", const=CONFIG_FILENAME, default=None, metavar="PATH",
                     help=f"Write a sample config (default ./{CONFIG_FILENAME}).")
    grp.add_argument("--show", action="store_true", help="Show the effective configuration (default).")
    grp.add_argument("--get", default=None, metavar="KEY", help="Print one value, e.g. screenshot.width.")
    cfg.set_defaults(func=cmd_config)

    dbg = sub.add_parser("debug", help="Show debugging information.")
    dbg.set_defaults(func=cmd_debug)
    return ap

def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except PScreenError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nStopped.", file=sys.stderr)
        return 130

if __name__ == "__main__":
    sys.exit(main())
