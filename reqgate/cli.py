from __future__ import annotations
import argparse
import json
from dataclasses import asdict
from datetime import datetime, timezone

from .config import SETTINGS, PipelineConfig, load_profile
from .errors import GovernanceError
from .logging_conf import configure_logging
from .pipeline import build_pipeline


def _as_aware(dt):
    return dt if getattr(dt, "tzinfo", None) else dt.replace(tzinfo=timezone.utc)


def _pipeline(args):
    if getattr(args, "config", None):
        cfg = load_profile(args.config, getattr(args, "profile", None))
    else:
        cfg = PipelineConfig.from_settings()
    return build_pipeline(cfg)


def cmd_init_db(args):
    from .db.mongo import ensure_indices

    ensure_indices()
    print("Indices ensured.")


def cmd_block(args):
    if args.minutes <= 0:
        print("--minutes must be a positive number")
        return 2
    block = _pipeline(args).block_domain(args.domain, args.minutes, reason=args.reason)
    print(f"Domain '{block.domain}' blocked until {block.unblock_at:%Y-%m-%d %H:%M:%S} UTC")


def cmd_unblock(args):
    if _pipeline(args).unblock_domain(args.domain):
        print(f"Domain '{args.domain}' has been unblocked")
    else:
        print(f"Domain '{args.domain}' was not blocked")


def cmd_list_blocks(args):
    blocks = _pipeline(args).active_blocks()
    if not blocks:
        print("No domains are currently blocked")
        return
    now = datetime.now(timezone.utc)
    print("Currently blocked domains:")
    for b in blocks:
        remaining = max(0.0, (_as_aware(b.unblock_at) - now).total_seconds())
        print(
            f"  {b.domain:<40} blocked_at={_as_aware(b.blocked_at):%Y-%m-%d %H:%M:%S} "
            f"unblock_at={_as_aware(b.unblock_at):%Y-%m-%d %H:%M:%S} "
            f"remaining_min={int(remaining // 60)} reason={b.reason or '-'}"
        )


def cmd_clean_blocks(args):
    n = _pipeline(args).purge_expired_blocks()
    print(f"Removed {n} expired block(s)" if n else "No expired blocks found")


def cmd_clean_logs(args):
    from .audit import default_sink

    days = args.days if args.days is not None else SETTINGS.log_retention_days
    if days is None:
        print("Log retention is disabled")
        return
    n = default_sink().purge_older_than(days)
    print(f"Removed {n} old log(s)" if n else "No old logs found")


def cmd_circuit_status(args):
    print(json.dumps(_pipeline(args).circuit_status(args.domain), indent=2, default=str))


def cmd_circuit_reset(args):
    _pipeline(args).reset_circuit(args.domain)
    print(f"Circuit for '{args.domain}' reset to closed")


def cmd_clear_cache(args):
    n = _pipeline(args).clear_cache()
    print(f"Removed {n} cache entr{'y' if n == 1 else 'ies'}")


def _parse_headers(items):
    out = {}
    for item in items or []:
        name, sep, value = item.partition(":")
        if not sep:
            raise ValueError(f"Bad header '{item}', expected 'Name: value'")
        out[name.strip()] = value.strip()
    return out


def cmd_fetch(args):
    """Perform one governed request and print status + body."""
    try:
        headers = _parse_headers(args.header)
        data = json.loads(args.data) if args.data else None
    except ValueError as e:
        print(str(e))
        return 2
    p = _pipeline(args)
    if args.cache:
        p = p.with_cache()
    if args.wait:
        p = p.wait_on_rate_limit()
    try:
        r = p.request(args.method, args.url, data, headers)
    except GovernanceError as e:
        print(f"[{type(e).__name__}] {e}")
        return 1
    print(f"HTTP {r.status}{' (cached)' if r.from_cache else ''}")
    print(r.text)


def cmd_scheduler(args):
    from .scheduler.run_scheduler import main as scheduler_main

    scheduler_main(args.maintenance)


def cmd_settings(args):
    print("\n".join(f"{k} = {v}" for k, v in asdict(SETTINGS).items()))


def main(argv=None):
    p = argparse.ArgumentParser(prog="reqgate")
    p.add_argument("--config", help="YAML file with defaults/profiles")
    p.add_argument("--profile", help="profile name inside --config")
    sub = p.add_subparsers(dest="cmd")

    s = sub.add_parser("init-db")
    s.set_defaults(func=cmd_init_db)

    s = sub.add_parser("block")
    s.add_argument("domain")
    s.add_argument("--minutes", type=int, default=SETTINGS.default_block_time)
    s.add_argument("--reason")
    s.set_defaults(func=cmd_block)

    s = sub.add_parser("unblock")
    s.add_argument("domain")
    s.set_defaults(func=cmd_unblock)

    s = sub.add_parser("list-blocks")
    s.set_defaults(func=cmd_list_blocks)

    s = sub.add_parser("clean-blocks")
    s.set_defaults(func=cmd_clean_blocks)

    s = sub.add_parser("clean-logs")
    s.add_argument("--days", type=int)
    s.set_defaults(func=cmd_clean_logs)

    s = sub.add_parser("circuit-status")
    s.add_argument("domain")
    s.set_defaults(func=cmd_circuit_status)

    s = sub.add_parser("circuit-reset")
    s.add_argument("domain")
    s.set_defaults(func=cmd_circuit_reset)

    s = sub.add_parser("clear-cache")
    s.set_defaults(func=cmd_clear_cache)

    s = sub.add_parser("fetch")
    s.add_argument("url")
    s.add_argument("--method", default="GET")
    s.add_argument("--data", help="JSON payload")
    s.add_argument("--header", action="append", help="'Name: value', repeatable")
    s.add_argument("--cache", action="store_true")
    s.add_argument("--wait", action="store_true", help="sleep through a rate-limit block")
    s.set_defaults(func=cmd_fetch)

    s = sub.add_parser("scheduler")
    s.add_argument("--maintenance", default="maintenance.yaml")
    s.set_defaults(func=cmd_scheduler)

    s = sub.add_parser("settings")
    s.set_defaults(func=cmd_settings)

    args = p.parse_args(argv)
    if not hasattr(args, "func"):
        p.print_help()
        return 2
    configure_logging()
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
