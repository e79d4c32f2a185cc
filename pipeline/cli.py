"""
OTP Pipeline — CLI

Command surface for the batch workflows and the record store.

Usage:
    python -m pipeline.cli create 5
    python -m pipeline.cli create-with-emails 2 --emails a@x.com b@x.com
    python -m pipeline.cli send-otp
    python -m pipeline.cli check-otp
    python -m pipeline.cli check-retry
    python -m pipeline.cli auto-complete 3
    python -m pipeline.cli batch-login --file numbers.txt [--password PW]
    python -m pipeline.cli status
    python -m pipeline.cli list
    python -m pipeline.cli clear

    # Override config file / environment overlay
    python -m pipeline.cli --config pipeline_config.yaml --env prod status
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from core.config import Settings, load_settings
from core.exceptions import ValidationError
from core.logging import configure_logging
from core.phone import parse_phone_list
from pipeline.runtime import BatchOrchestrator, build_orchestrator
from pipeline.types import WorkflowSummary


def _banner(title: str):
    print(f"\n{'═' * 70}", file=sys.stderr)
    print(f"  {title}", file=sys.stderr)
    print(f"{'═' * 70}", file=sys.stderr, flush=True)


def _mask(password: str) -> str:
    return password[:3] + "***" if password else ""


def _print_summary(summary: WorkflowSummary):
    print(f"\n{'─' * 70}", file=sys.stderr)
    print(f"  {summary.workflow}: {summary.message}", file=sys.stderr)
    print(f"  total={summary.total}  success={summary.succeeded}  "
          f"failed={summary.failed}  skipped={summary.skipped}  expired={summary.expired}  "
          f"elapsed={summary.elapsed_seconds:.1f}s", file=sys.stderr)
    for r in summary.rounds:
        if "round" in r:
            print(f"    round {r['round']}: "
                  f"{r.get('succeeded', r.get('completed', 0))} ok, "
                  f"{r.get('failed', r.get('errors', 0))} failed", file=sys.stderr)
    for kind, path in summary.artifacts.items():
        print(f"  {kind} snapshot: {path}", file=sys.stderr)


def cmd_create(args, orch: BatchOrchestrator) -> int:
    _banner(f"CREATE {args.count} ACCOUNT(S)")
    summary = orch.create(args.count)
    _print_summary(summary)
    return 0


def cmd_create_with_emails(args, orch: BatchOrchestrator) -> int:
    _banner(f"CREATE {args.count} ACCOUNT(S) WITH EMAILS")
    summary = orch.create(args.count, emails=args.emails or [])
    _print_summary(summary)
    return 0


def cmd_send_otp(args, orch: BatchOrchestrator) -> int:
    _banner("SEND OTP")
    _print_summary(orch.send_otp())
    return 0


def cmd_check_otp(args, orch: BatchOrchestrator) -> int:
    _banner("CHECK OTP")
    _print_summary(orch.check_otp())
    return 0


def _print_completed(orch: BatchOrchestrator):
    rows = orch.completed_otps()
    if not rows:
        return
    print(f"\nCompleted ({len(rows)})")
    for row in rows:
        print(f"{row['phone']} = {row['otp']}")


def cmd_check_retry(args, orch: BatchOrchestrator) -> int:
    _banner("CHECK OTP WITH RETRY")
    _print_summary(orch.check_otp_retry())
    _print_completed(orch)
    return 0


def cmd_auto_complete(args, orch: BatchOrchestrator) -> int:
    _banner(f"AUTO-COMPLETE {args.count} ACCOUNT(S)")
    summary = orch.auto_complete(args.count, emails=args.emails)
    _print_summary(summary)
    _print_completed(orch)
    return 0


def _read_phone_text(args) -> str:
    if args.phones:
        return " ".join(args.phones)
    if args.file:
        return Path(args.file).read_text(encoding="utf-8")
    print("Paste phone numbers, end with DONE or EOF:", file=sys.stderr, flush=True)
    lines = []
    for line in sys.stdin:
        if line.strip().upper() in ("DONE", "/END"):
            break
        lines.append(line)
    return "".join(lines)


def cmd_batch_login(args, orch: BatchOrchestrator) -> int:
    parsed = parse_phone_list(_read_phone_text(args))
    for token in parsed.skipped:
        print(f"  skipped invalid number: {token}", file=sys.stderr)
    if parsed.duplicates:
        print(f"  ignored {len(parsed.duplicates)} duplicate(s)", file=sys.stderr)

    password = args.password or orch.settings.target.password
    label = "custom" if args.password else "default"
    _banner(f"BATCH LOGIN {len(parsed.phones)} NUMBER(S)")
    print(f"  password: {_mask(password)} ({label})", file=sys.stderr, flush=True)

    summary = orch.batch_login(parsed.phones, password=password)
    _print_summary(summary)
    print(f"\nResults ({summary.total})")
    for row in summary.results:
        print(f"{row['phone']} = {row['status']}")
    return 0


def cmd_status(args, orch: BatchOrchestrator) -> int:
    s = orch.status()
    if args.json:
        print(json.dumps(s, indent=2))
        return 0
    counts = s["counts"]
    print(f"\nRecords ({counts['total']})")
    print(f"{'─' * 70}")
    for key, value in counts.items():
        if key != "total":
            print(f"  {key:<10} {value}")
    if s["recent"]:
        print("\nRecent")
        for r in s["recent"]:
            print(f"  {r['timestamp']}  {r['status']:<10} {r['phone']}  {r['details']}")
    return 0


def cmd_list(args, orch: BatchOrchestrator) -> int:
    rows = orch.list_records()
    if args.json:
        print(json.dumps(rows, indent=2))
        return 0
    if not rows:
        print("No records.")
        return 0
    print(f"\nRecords ({len(rows)})")
    print(f"{'─' * 70}")
    for r in rows:
        print(f"  {r['id']}  {r['status']:<10} {r['phone']}")
        print(f"    order:   {r['orderId'] or '—'}")
        print(f"    email:   {r['email'] or '—'}")
        print(f"    details: {r['details'] or '—'}")
        print(f"    age:     {r['ageMinutes']} min")
    return 0


def cmd_clear(args, orch: BatchOrchestrator) -> int:
    path = orch.clear()
    print(f"  Store cleared. Backup: {path}", file=sys.stderr)
    return 0


COMMANDS = {
    "create": cmd_create,
    "create-with-emails": cmd_create_with_emails,
    "send-otp": cmd_send_otp,
    "check-otp": cmd_check_otp,
    "check-retry": cmd_check_retry,
    "auto-complete": cmd_auto_complete,
    "batch-login": cmd_batch_login,
    "status": cmd_status,
    "list": cmd_list,
    "clear": cmd_clear,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="otp-pipeline",
        description="OTP Pipeline — batch registration, OTP retrieval and login",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", default="", help="Base config YAML (default: pipeline_config.yaml)")
    parser.add_argument("--env", default="", help="Environment overlay name (config/<env>.yaml)")
    parser.add_argument("--quiet", "-q", action="store_true", help="Suppress progress lines")

    subs = parser.add_subparsers(dest="command", help="Command")

    create_p = subs.add_parser("create", help="Rent numbers and register accounts")
    create_p.add_argument("count", type=int)

    manual_p = subs.add_parser("create-with-emails", aliases=["create-manual"],
                               help="Register accounts with caller-supplied emails")
    manual_p.add_argument("count", type=int)
    manual_p.add_argument("--emails", "-e", nargs="+", required=True)

    subs.add_parser("send-otp", help="Log in pending accounts to trigger OTP delivery")
    subs.add_parser("check-otp", help="Fetch OTPs for waiting accounts once")
    subs.add_parser("check-retry", help="Fetch OTPs in rounds until none are waiting")

    auto_p = subs.add_parser("auto-complete", help="create → send-otp → check-retry")
    auto_p.add_argument("count", type=int)
    auto_p.add_argument("--emails", "-e", nargs="+")

    login_p = subs.add_parser("batch-login", aliases=["auto-login"],
                              help="Log in a list of numbers with retry rounds")
    login_p.add_argument("--phones", "-p", nargs="+", help="Numbers on the command line")
    login_p.add_argument("--file", "-f", help="Text file with numbers")
    login_p.add_argument("--password", default="", help="Shared password (default from config)")

    status_p = subs.add_parser("status", help="Counts per status and recent records")
    status_p.add_argument("--json", action="store_true")

    list_p = subs.add_parser("list", aliases=["logs"], help="All records, oldest first")
    list_p.add_argument("--json", action="store_true")

    subs.add_parser("clear", help="Back up and empty the record store")
    return parser


_ALIASES = {"create-manual": "create-with-emails", "auto-login": "batch-login", "logs": "list"}


def main(argv: list[str] | None = None, orchestrator: BatchOrchestrator | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1
    command = _ALIASES.get(args.command, args.command)

    if orchestrator is None:
        settings: Settings = load_settings(base_path=args.config, env=args.env)
        configure_logging(level=settings.runtime.log_level)
        orchestrator = build_orchestrator(settings, verbose=not args.quiet)

    try:
        return COMMANDS[command](args, orchestrator)
    except ValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
