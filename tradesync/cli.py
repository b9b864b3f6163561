"""tradesync.cli

Command line interface entry point for tradesync.

Design constraints:
- argparse-based.
- Lazy imports: do not import httpx, pydantic or sqlite at parse time.
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tradesync.core.config import Config


@dataclass(frozen=True)
class CliContext:
    repo_root: Path


def _repo_root_from_cwd() -> Path:
    return Path.cwd()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tradesync",
        description="Reconstruct broker fills into journal trades, idempotently.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit.",
    )
    parser.add_argument("--config", type=Path, default=None, help="YAML config file (default: config/user.yaml, then config/default.yaml).")

    sub = parser.add_subparsers(dest="command")

    p_sync = sub.add_parser("sync", help="Sync one broker account into the journal")
    p_sync.add_argument("--provider", required=True)
    p_sync.add_argument("--user", required=True, help="Journal user id.")
    p_sync.add_argument("--broker-account", required=True, help="Account id at the broker.")
    p_sync.add_argument("--account", default=None, help="Journal account id to file trades under.")
    p_sync.add_argument("--since", default=None, help="ISO-8601 lower bound for fetched activity.")
    p_sync.add_argument("--db", type=Path, default=None, help="Override store.db_path.")
    p_sync.add_argument("--json", action="store_true", help="Print the result as JSON.")

    p_prov = sub.add_parser("providers", help="List registered providers")
    p_prov.add_argument("--kind", choices=["broker", "ai"], default=None)

    p_status = sub.add_parser("status", help="Print config, store and circuit status")
    p_status.add_argument("--db", type=Path, default=None, help="Override store.db_path.")

    return parser


def _print_version() -> None:
    from tradesync import __version__

    print(f"tradesync v{__version__}")


def _load_config(ctx: CliContext, explicit: Path | None) -> Config:
    from tradesync.core.config import Config

    if explicit is not None:
        return Config.from_yaml(explicit)
    for name in ("user.yaml", "default.yaml"):
        p = ctx.repo_root / "config" / name
        if p.exists():
            return Config.from_yaml(p)
    return Config.load()


def _cmd_sync(ctx: CliContext, args: argparse.Namespace) -> int:
    import asyncio

    from tradesync.core.exceptions import TradeSyncError
    from tradesync.core.logging import configure_logging
    from tradesync.core.time import parse_dt
    from tradesync.core.types import BrokerConnection
    from tradesync.runtime import build_runtime
    from tradesync.sync import EnvCredentialVault, SyncService

    try:
        config = _load_config(ctx, args.config)
        since = parse_dt(args.since) if args.since else None
    except (TradeSyncError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    configure_logging(config.logging)

    async def _run() -> int:
        async with build_runtime(config, db_path=args.db) as rt:
            service = SyncService(rt.ctx, rt.merge, EnvCredentialVault(), sink=rt.sink)
            conn = BrokerConnection(
                user_id=args.user,
                provider=args.provider.lower(),
                broker_account_id=args.broker_account,
                account_id=args.account,
            )
            result = await service.sync_provider(conn, since)

        if args.json:
            print(
                json.dumps(
                    {
                        "provider": result.provider,
                        "broker_account_id": result.broker_account_id,
                        "created": result.created,
                        "updated": result.updated,
                        "skipped": result.skipped,
                        "errored": result.errored,
                        "errors": result.errors,
                        "anomalies": result.anomalies,
                        "duration_ms": result.duration_ms,
                        "success": result.success,
                    },
                    indent=2,
                )
            )
        else:
            print(f"tradesync sync {result.provider}/{result.broker_account_id}")
            print(f"- created: {result.created}")
            print(f"- updated: {result.updated}")
            print(f"- skipped: {result.skipped}")
            print(f"- errored: {result.errored}")
            print(f"- anomalies: {len(result.anomalies)}")
            for err in result.errors:
                print(f"- error: {err}")
        return 0 if result.success else 1

    return asyncio.run(_run())


def _cmd_providers(ctx: CliContext, args: argparse.Namespace) -> int:
    from tradesync.providers import get_provider, list_providers

    for name in list_providers(kind=args.kind):
        print(f"{name}\t{get_provider(name).kind}")
    return 0


def _cmd_status(ctx: CliContext, args: argparse.Namespace) -> int:
    from tradesync.core.exceptions import TradeSyncError
    from tradesync.journal.store import SqliteTradeStore
    from tradesync.providers import list_providers
    from tradesync.resilience.circuit_breaker import CircuitBreakerRegistry
    from tradesync.sync.health import health_report

    try:
        config = _load_config(ctx, args.config)
        config_status = "ok"
    except TradeSyncError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    db_path = args.db or config.store.db_path
    if Path(db_path).exists():
        store = SqliteTradeStore(db_path)
        try:
            db_status = f"present ({store.count_trades()} trades)"
        finally:
            store.close()
    else:
        db_status = "missing"

    print("tradesync status")
    print(f"- config: {config_status}")
    print(f"- db: {db_path} ({db_status})")
    print(f"- brokers: {', '.join(list_providers(kind='broker'))}")
    print(f"- ai: {config.ai.preferred_provider} -> {config.ai.fallback_provider or '-'}")
    print(f"- circuit breaker: {'enabled' if config.circuit_breaker.enabled else 'disabled'}")
    breakers = CircuitBreakerRegistry(config.circuit_breaker)
    for h in health_report(breakers, config.monitoring, providers=list_providers()):
        print(f"  - {h.provider}: {h.circuit_state} ({h.status}, {h.total_requests} requests)")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        _print_version()
        return 0

    if not args.command:
        parser.print_help()
        return 2

    ctx = CliContext(repo_root=_repo_root_from_cwd())

    dispatch: dict[str, Callable[[CliContext, argparse.Namespace], int]] = {
        "sync": _cmd_sync,
        "providers": _cmd_providers,
        "status": _cmd_status,
    }

    fn = dispatch.get(str(args.command))
    if fn is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 2

    return int(fn(ctx, args))


if __name__ == "__main__":
    raise SystemExit(main())
