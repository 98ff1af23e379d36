"""
main.py — Shardline Demo Entry Point

Connects every shard of the configured bot and prints lifecycle (DEBUG)
lines and selected dispatch events until interrupted.

Usage:
    python -m shardline                              # all shards, MESSAGE_CREATE
    python -m shardline --shards 4 --start 0 --end 2
    python -m shardline --event GUILD_CREATE --event MESSAGE_CREATE
    python -m shardline --log-level DEBUG --config path/to/config.yaml
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any, Optional, Sequence

from rich.console import Console

from shardline.config.settings import load_settings
from shardline.exceptions import ConfigError, GatewayInfoError
from shardline.gateway.events import DEBUG
from shardline.gateway.manager import ShardManager
from shardline.observability.logger import get_logger, setup_logging

console = Console()


def _shard_count(value: str) -> Any:
    if value == "auto":
        return value
    try:
        count = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected 'auto' or an integer, got '{value}'")
    if count < 1:
        raise argparse.ArgumentTypeError("shard count must be >= 1")
    return count


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="shardline",
        description="Shardline sharded gateway client demo",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $SHARDLINE_CONFIG or config/config.yaml).",
    )
    parser.add_argument(
        "--shards",
        type=_shard_count,
        default=None,
        help="Total shard count, or 'auto' to use the gateway's recommendation.",
    )
    parser.add_argument("--start", type=int, default=0, help="First shard index to start.")
    parser.add_argument("--end", type=int, default=None, help="Shard index to stop before.")
    parser.add_argument(
        "--event",
        action="append",
        dest="events",
        default=None,
        help="Dispatch type to print (repeatable, default: MESSAGE_CREATE).",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Do not print DEBUG lifecycle lines.",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override logging.level from config.",
    )
    return parser.parse_args(argv)


def _print_debug(shard_id: int, message: str) -> None:
    console.print(f"[dim]shard {shard_id}[/dim] {message}")


def _printer(event_type: str):
    def _print_event(shard_id: int, data: Any) -> None:
        console.print(f"[bold cyan]shard {shard_id}[/bold cyan] [green]{event_type}[/green]", data)
    return _print_event


async def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)

    settings = load_settings(args.config)
    if args.shards is not None:
        settings.gateway = settings.gateway.model_copy(
            update={"shard_count": args.shards}
        )
    log_level = args.log_level or settings.log_level
    setup_logging(
        level=log_level,
        log_dir=settings.log_dir,
        json_format=settings.logging.json_format,
        console_output=settings.logging.console_output,
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )
    log = get_logger("shardline.main")

    try:
        settings.validate_all()
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        return 2

    manager = ShardManager.from_settings(settings)
    if not args.quiet:
        manager.on(DEBUG, _print_debug)
    for event_type in args.events or ["MESSAGE_CREATE"]:
        manager.on(event_type, _printer(event_type))

    try:
        await manager.connect(args.start, args.end)
        log.info("main.connected", shards=len(manager.shards), total=manager.shard_count)
        await asyncio.Event().wait()
    except GatewayInfoError as e:
        console.print(f"[red]Could not look up the gateway: {e}[/red]")
        return 1
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        return 2
    except (KeyboardInterrupt, asyncio.CancelledError):
        log.info("main.interrupted")
    finally:
        await manager.close()
    return 0


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    run()
