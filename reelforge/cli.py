"""
ReelForge CLI

Usage:
    python -m reelforge <command> [options]

Commands:
    worker                       run the worker pool until Ctrl+C
    scheduler [--once]           run the automation scheduler
    serve [--port N]             API server (workers in-process unless --no-workers)
    enqueue topic "space travel" [--user u1] [--aspect-ratio 9:16]
    enqueue url https://...      [--user u1]
    jobs list [--status failed] | jobs show <id> | jobs retry <id>
    sessions list | sessions clear <session_key>
    registry                     adapters per capability key
    token generate --user u1 | token list | token revoke --name laptop
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from typing import Any, List, Optional

from reelforge import __version__

_NO_COLOR = os.environ.get("NO_COLOR") or not sys.stdout.isatty()
_RESET = "" if _NO_COLOR else "\033[0m"
_BOLD = "" if _NO_COLOR else "\033[1m"
_DIM = "" if _NO_COLOR else "\033[2m"
_RED = "" if _NO_COLOR else "\033[31m"
_GREEN = "" if _NO_COLOR else "\033[32m"

LOG_FORMAT = "[%(asctime)s] %(name)s.%(levelname)s: %(message)s"


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------

def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _print_table(headers: List[str], rows: List[List[Any]]) -> None:
    widths = []
    for i, h in enumerate(headers):
        col_max = max([len(h)] + [len(str(r[i])) for r in rows if i < len(r)])
        widths.append(min(col_max + 2, 50))
    print("".join(f"{_BOLD}{h:<{widths[i]}}{_RESET}" for i, h in enumerate(headers)))
    print(_DIM + "-" * sum(widths) + _RESET)
    for row in rows:
        print("".join(f"{str(cell):<{widths[i]}}" for i, cell in enumerate(row) if i < len(widths)))


def _fail(msg: str) -> int:
    print(f"{_RED}error:{_RESET} {msg}", file=sys.stderr)
    return 1


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)


def _runtime():
    from reelforge.runtime import get_runtime
    return get_runtime()


async def _run_until_signal(start, stop) -> None:
    stopped = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stopped.set)
        except NotImplementedError:
            pass
    await start()
    try:
        await stopped.wait()
    finally:
        await stop()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _cmd_worker(args: argparse.Namespace) -> int:
    rt = _runtime()
    if args.concurrency:
        rt.workers.concurrency = args.concurrency
    asyncio.run(_run_until_signal(rt.workers.start, lambda: rt.workers.stop(timeout=args.drain_timeout)))
    return 0


def _cmd_scheduler(args: argparse.Namespace) -> int:
    rt = _runtime()
    if args.once:
        report = asyncio.run(rt.scheduler.run_cycle())
        _print_json(report.to_dict())
        return 0 if report.errors == 0 else 1
    print(f"Next cycle at {rt.scheduler.next_fire().isoformat()}")
    asyncio.run(_run_until_signal(rt.scheduler.start, rt.scheduler.stop))
    return 0


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from reelforge.api import create_app

    rt = _runtime()
    app = create_app(rt, start_workers=not args.no_workers, start_scheduler=args.scheduler)
    uvicorn.run(app, host=args.host, port=args.port or rt.settings.api_port, reload=False)
    return 0


def _cmd_enqueue(args: argparse.Namespace) -> int:
    from reelforge.errors import InvalidPayload

    rt = _runtime()
    try:
        if args.kind == "topic":
            params = {"aspectRatio": args.aspect_ratio} if args.aspect_ratio else None
            ack = asyncio.run(rt.trigger_topic(args.user, args.value, params))
        else:
            ack = asyncio.run(rt.trigger_url(args.user, args.value))
    except InvalidPayload as exc:
        return _fail(str(exc))
    _print_json(ack)
    return 0


def _cmd_jobs(args: argparse.Namespace) -> int:
    from reelforge.errors import JobError

    rt = _runtime()
    if args.action == "list":
        jobs = rt.queue.list_jobs(status=args.status, limit=args.limit)
        if args.json:
            _print_json([j.to_dict() for j in jobs])
            return 0
        _print_table(
            ["JOB", "TYPE", "STATUS", "ATTEMPTS", "USER", "CREATED", "LAST ERROR"],
            [[j.job_id[:8], j.job_type, j.status, f"{j.attempts}/{j.max_attempts}",
              j.user_id or "-", j.created_at[:19], (j.last_error or "")[:40]] for j in jobs],
        )
        print(f"\n{rt.queue.counts()}")
        return 0
    if not args.job_id:
        return _fail(f"jobs {args.action} needs a job id")
    if args.action == "show":
        job = rt.queue.get(args.job_id)
        if job is None:
            return _fail(f"no job '{args.job_id}'")
        _print_json(job.to_dict())
        return 0
    try:
        job = rt.queue.retry_failed(args.job_id)
    except JobError as exc:
        return _fail(str(exc))
    print(f"{_GREEN}requeued{_RESET} {job.job_id}")
    return 0


def _cmd_sessions(args: argparse.Namespace) -> int:
    rt = _runtime()
    store = rt.session_store
    if args.action == "list":
        rows = []
        for key in store.list_keys():
            record = store.load(key)
            cookies = len((record.auth_state or {}).get("cookies", [])) if record else 0
            rows.append([key, record.adapter_id if record else "-",
                         (record.saved_at or "-")[:19] if record else "-", cookies])
        _print_table(["SESSION", "ADAPTER", "SAVED", "COOKIES"], rows)
        return 0
    if not args.session_key:
        return _fail("sessions clear needs a session key")
    if store.delete(args.session_key):
        print(f"cleared {args.session_key}")
        return 0
    return _fail(f"no session '{args.session_key}'")


def _cmd_registry(args: argparse.Namespace) -> int:
    rows = _runtime().registry.describe()
    if args.json:
        _print_json(rows)
        return 0
    _print_table(
        ["CAPABILITY", "ADAPTER", "DEFAULT", "SESSION"],
        [[r["capability_key"], r["adapter_id"], "yes" if r["default"] else "", r["session_key"]] for r in rows],
    )
    return 0


def _cmd_token(args: argparse.Namespace) -> int:
    from reelforge.auth import TokenAuth
    from reelforge.config import get_settings

    auth = TokenAuth(get_settings().tokens_file)
    if args.action == "generate":
        if not args.user:
            return _fail("token generate needs --user")
        raw = auth.generate_token(args.user, name=args.name or "default", expires_days=args.expires_days)
        print()
        print("=== New API Token ===")
        print(f"  Name  : {args.name or 'default'}")
        print(f"  User  : {args.user}")
        print(f"  Token : {raw}")
        print()
        print("  (Save this token now, it will NOT be shown again.)")
        return 0
    if args.action == "list":
        _print_table(
            ["NAME", "USER", "HASH", "CREATED", "EXPIRES", "LAST USED"],
            [[t.name, t.user_id, t.token_hash, t.created_at[:19], t.expires_at or "never",
              t.last_used or "never"] for t in auth.list_tokens()],
        )
        return 0
    if not args.name and not args.token:
        return _fail("token revoke needs --name or --token")
    removed = auth.revoke_token(token=args.token, name=args.name)
    print(f"revoked {removed} token(s)")
    return 0 if removed else 1


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="reelforge", description="ReelForge content pipeline engine")
    parser.add_argument("--version", action="version", version=f"reelforge {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("worker", help="run the worker pool")
    p.add_argument("--concurrency", type=int, default=None)
    p.add_argument("--drain-timeout", type=float, default=60.0)
    p.set_defaults(func=_cmd_worker)

    p = sub.add_parser("scheduler", help="run the automation scheduler")
    p.add_argument("--once", action="store_true", help="run a single cycle and exit")
    p.set_defaults(func=_cmd_scheduler)

    p = sub.add_parser("serve", help="run the API server")
    p.add_argument("--host", default="0.0.0.0")
    p.add_argument("--port", type=int, default=None)
    p.add_argument("--no-workers", action="store_true", help="do not run workers in-process")
    p.add_argument("--scheduler", action="store_true", help="also run the automation scheduler")
    p.set_defaults(func=_cmd_serve)

    p = sub.add_parser("enqueue", help="enqueue a pipeline job")
    p.add_argument("kind", choices=["topic", "url"])
    p.add_argument("value")
    p.add_argument("--user", default=None)
    p.add_argument("--aspect-ratio", default=None)
    p.set_defaults(func=_cmd_enqueue)

    p = sub.add_parser("jobs", help="inspect the job queue")
    p.add_argument("action", choices=["list", "show", "retry"])
    p.add_argument("job_id", nargs="?")
    p.add_argument("--status", default=None)
    p.add_argument("--limit", type=int, default=50)
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=_cmd_jobs)

    p = sub.add_parser("sessions", help="stored browser sessions")
    p.add_argument("action", choices=["list", "clear"])
    p.add_argument("session_key", nargs="?")
    p.set_defaults(func=_cmd_sessions)

    p = sub.add_parser("registry", help="show registered adapters")
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=_cmd_registry)

    p = sub.add_parser("token", help="manage API tokens")
    p.add_argument("action", choices=["generate", "list", "revoke"])
    p.add_argument("--user", default=None)
    p.add_argument("--name", default=None)
    p.add_argument("--token", default=None)
    p.add_argument("--expires-days", type=int, default=None)
    p.set_defaults(func=_cmd_token)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Parse *argv* and dispatch; returns an exit code."""
    args = build_parser().parse_args(argv)
    _setup_logging(args.verbose)
    return args.func(args)
