"""Tote settlement engine - Entry Point

Usage:
    python -m tote [--config PATH] [--db PATH] [--log-level LEVEL] COMMAND

Commands:
    init-db   - Create the ledger schema
    settle    - Process one batch of due settlement jobs, then exit
    run       - Poll the settlement queue until SIGTERM/SIGINT
    preview   - Dry-run settlement of a game
    treasury  - Show treasury balance and recent entries
    queue     - List settlement queue items and counts
    enqueue   - Queue a game for settlement
    retry     - Reset a FAILED/SKIPPED queue item
    reap      - Requeue PROCESSING items with stale locks
    audit     - Report stuck games and queue items
    enqueue-orphans - Queue FINAL games that were never queued
    version   - Show version

Examples:
    python -m tote init-db
    python -m tote settle --max-items 10
    python -m tote --config config/production.toml run
    python -m tote preview 4242 --outcome HOME
"""

import argparse
import asyncio
import sys
from datetime import timedelta
from pathlib import Path

from tote import __version__


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="tote",
        description="Parimutuel settlement engine for sports prediction markets",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"tote {__version__}",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (TOML)",
    )

    parser.add_argument(
        "--db",
        default=None,
        help="SQLite database path (overrides database.path)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level",
    )

    parser.add_argument(
        "--json-logs",
        action="store_true",
        default=None,
        help="Emit JSON log lines",
    )

    parser.add_argument(
        "--worker-id",
        default=None,
        help="Queue lock owner identity",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("init-db", help="Create the ledger schema")

    settle = subparsers.add_parser("settle", help="Process one batch of due jobs")
    settle.add_argument("--max-items", type=int, default=None, help="Batch size limit")

    subparsers.add_parser("run", help="Poll the settlement queue")

    preview = subparsers.add_parser("preview", help="Dry-run settlement of a game")
    preview.add_argument("game_id", type=int)
    preview.add_argument("--outcome", default=None, help="Outcome to preview (HOME, AWAY, CANCELED...)")

    treasury = subparsers.add_parser("treasury", help="Show treasury balance")
    treasury.add_argument("--limit", type=int, default=50, help="Ledger entries to show")

    queue = subparsers.add_parser("queue", help="List settlement queue items")
    queue.add_argument(
        "--status",
        action="append",
        type=str.upper,
        choices=["QUEUED", "PROCESSING", "DONE", "FAILED", "SKIPPED"],
        default=None,
        help="Filter by status (repeatable)",
    )
    queue.add_argument("--league", default=None)
    queue.add_argument("--limit", type=int, default=100)

    enqueue = subparsers.add_parser("enqueue", help="Queue a game for settlement")
    enqueue.add_argument("game_id", type=int)
    enqueue.add_argument("--outcome", default=None, help="Declared outcome (default CANCELED)")
    enqueue.add_argument("--reason", default=None)
    enqueue.add_argument("--skip", action="store_true", help="Store as SKIPPED")

    retry = subparsers.add_parser("retry", help="Reset a FAILED/SKIPPED queue item")
    retry.add_argument("item_id")

    reap = subparsers.add_parser("reap", help="Requeue stale PROCESSING items")
    reap.add_argument("--older-than", type=int, required=True, help="Lock age in seconds")

    subparsers.add_parser("audit", help="Report stuck games and queue items")

    orphans = subparsers.add_parser("enqueue-orphans", help="Queue FINAL games that were never queued")
    orphans.add_argument("--limit", type=int, default=100, help="Games to scan")

    subparsers.add_parser("version", help="Show version")

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace):
    """Load config and apply command-line overrides."""
    from tote.core.config import ConfigManager

    config = ConfigManager.discover(args.config)
    if args.db:
        config.set("database.path", args.db)
    if args.log_level:
        config.set("logging.level", args.log_level)
    if args.json_logs:
        config.set("logging.json", True)
    return config


async def run_command(args: argparse.Namespace) -> int:
    """Run one command against a started app."""
    from tote.app import ToteApp
    from tote.core.errors import ToteError
    from tote.core.logging import get_logger
    from tote.domain.models import QueueStatus

    config = build_config(args)
    app = ToteApp(config, worker_id=args.worker_id)
    log = get_logger("cli")

    if args.command == "run":
        try:
            await app.run_forever()
            return 0
        except Exception as e:
            log.error("fatal_error", error=str(e))
            return 1

    async with app:
        try:
            if args.command == "init-db":
                print(f"Ledger schema ready at {app.store.db_path}")
                return 0

            if args.command == "settle":
                batch = await app.worker.process_all_settlements(max_items=args.max_items)
                print(f"Processed: {batch.processed}  succeeded: {batch.succeeded}  failed: {batch.failed}")
                for result in batch.results:
                    if result.success:
                        status = "ok"
                    else:
                        status = f"FAILED ({result.error})" + ("" if result.retryable else " [needs data fix]")
                    print(
                        f"  game {result.game_id}: {status}  markets={result.markets_settled}"
                        f"  payouts={result.payouts_created} ({result.total_payout_amount})"
                        f"  refunds={result.refunds_created} ({result.total_refund_amount})"
                        f"  fees={result.total_fee_amount}"
                    )
                return 0 if batch.failed == 0 else 1

            if args.command == "preview":
                preview = await app.treasury.preview_settlement(args.game_id, args.outcome)
                print(
                    f"Game {preview.game_id}  outcome={preview.outcome} ({preview.outcome_source})"
                    f"  fee_rate={preview.fee_rate}  already_settled={preview.already_settled}"
                )
                for m in preview.markets:
                    print(
                        f"  {m.market_id} [{m.market_status}] trades={m.trade_count} gross={m.gross_pool}"
                        f" winning={m.winning_pool} losing={m.losing_pool} fee={m.platform_fee}"
                        f" payouts={m.total_payouts} refunds={m.total_refunds}"
                    )
                    for p in m.payouts:
                        print(f"    {p.user_id}: stake={p.stake} payout={p.amount}")
                print(
                    f"Totals: gross={preview.total_gross} fees={preview.total_fees}"
                    f" payouts={preview.total_payouts} refunds={preview.total_refunds}"
                )
                return 0

            if args.command == "treasury":
                balance = await app.treasury.get_treasury_balance()
                print(f"Balance: {balance.current_balance}")
                print(f"  fees collected: {balance.total_fees_collected}")
                print(f"  deposits: {balance.total_deposits}")
                print(f"  withdrawn: {balance.total_withdrawn}")
                print(f"  adjustments: {balance.total_adjustments}")
                print(f"  entries: {balance.total_entries}")
                for entry in await app.treasury.get_treasury_ledger(limit=args.limit):
                    print(
                        f"  {entry.created_at.isoformat()} {entry.entry_type.value} {entry.amount}"
                        f" market={entry.market_id} game={entry.game_id}"
                    )
                return 0

            if args.command == "queue":
                statuses = [QueueStatus(s) for s in args.status] if args.status else None
                for item in await app.queue.list_items(statuses=statuses, league=args.league, limit=args.limit):
                    print(
                        f"  {item.id} game={item.game_id} {item.status.value} outcome={item.outcome}"
                        f" attempts={item.attempts} next={item.next_attempt_at.isoformat()}"
                        f" reason={item.reason or ''}"
                    )
                stats = await app.queue.get_stats()
                print("  ".join(f"{k}={v}" for k, v in stats.items()))
                return 0

            if args.command == "enqueue":
                game = await app.store.get_game(args.game_id)
                if game is None:
                    print(f"Game not found: {args.game_id}")
                    return 1
                added = await app.queue.enqueue_settlement(
                    game, args.outcome, reason=args.reason, skip=args.skip
                )
                print("Enqueued" if added else "Already enqueued")
                return 0

            if args.command == "retry":
                reset = await app.queue.retry_item(args.item_id)
                print("Requeued" if reset else "Not FAILED/SKIPPED (or not found)")
                return 0 if reset else 1

            if args.command == "reap":
                count = await app.queue.reclaim_stale_locks(timedelta(seconds=args.older_than))
                print(f"Reclaimed {count} stale lock(s)")
                return 0

            if args.command == "audit":
                audit = await app.queue.audit()
                print(f"Audit: {audit.status.value}  issues={audit.total_issues}")
                for check in audit.checks.values():
                    games = ", ".join(str(g) for g in check.game_ids)
                    print(f"  {check.name} [{check.status.value}] count={check.count}  {check.description}")
                    if games:
                        print(f"    games: {games}")
                return 0

            if args.command == "enqueue-orphans":
                count = await app.queue.enqueue_orphaned_final_games(limit=args.limit)
                print(f"Enqueued {count} orphaned game(s)")
                return 0

        except ToteError as e:
            log.error("command_failed", command=args.command, error=str(e))
            print(f"Error: {e}")
            return 1

    return 1


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    if args.command == "version":
        print(f"tote {__version__}")
        return 0

    if args.command is None:
        parse_args(["--help"])
        return 1

    return asyncio.run(run_command(args))


if __name__ == "__main__":
    sys.exit(main())
