"""Command line entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sqlite3
import sys
from pathlib import Path

from .app import BridgeApp
from .config import Credentials, load_config
from .errors import RegistrationError
from .models import ChannelBinding
from .store import CorrelationStore

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Relay messages between Discord and Zulip")
    parser.add_argument("--db-path", default="bridge.db", help="Path to the correlation database")
    parser.add_argument("--config", default="config.json", help="Path to the JSON config file")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    subparsers = parser.add_subparsers(dest="command")

    run = subparsers.add_parser("run", help="Start relaying (default)")
    run.add_argument("--zulip-realm", help="Zulip server URL, or ZULIP_REALM")
    run.add_argument("--zulip-username", help="Bot email, or ZULIP_USERNAME")
    run.add_argument("--zulip-api-key", help="Bot API key, or ZULIP_API_KEY")
    run.add_argument("--zulip-id", help="Bot user id, or ZULIP_ID")
    run.add_argument("--discord-token", help="Bot token, or DISCORD_TOKEN")
    run.add_argument("--discord-id", help="Application id, or DISCORD_ID")

    bind = subparsers.add_parser("bind", help="Bridge a Discord channel to a Zulip stream")
    bind.add_argument("discord_channel")
    bind.add_argument("stream_id", type=int)
    bind.add_argument("topic", nargs="?", help="Limit the binding to one topic")
    bind.add_argument(
        "--include-threads",
        action="store_true",
        help="Mirror new threads of the channel as topics",
    )

    unbind = subparsers.add_parser("unbind", help="Remove a channel binding")
    unbind.add_argument("discord_channel")

    subparsers.add_parser("bindings", help="List channel bindings")
    return parser


def _run(args: argparse.Namespace) -> int:
    overrides = {
        "ZULIP_REALM": getattr(args, "zulip_realm", None),
        "ZULIP_USERNAME": getattr(args, "zulip_username", None),
        "ZULIP_API_KEY": getattr(args, "zulip_api_key", None),
        "ZULIP_ID": getattr(args, "zulip_id", None),
        "DISCORD_TOKEN": getattr(args, "discord_token", None),
        "DISCORD_ID": getattr(args, "discord_id", None),
    }
    try:
        credentials = Credentials.from_env(overrides)
        config = load_config(Path(args.config))
    except ValueError as exc:
        logger.error("%s", exc)
        return 1

    app = BridgeApp(db_path=Path(args.db_path), credentials=credentials, config=config)
    try:
        asyncio.run(app.run())
    except RegistrationError as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        logger.info("Stopped by user")
    return 0


def _bind(store: CorrelationStore, args: argparse.Namespace) -> int:
    binding = ChannelBinding(
        discord_channel_id=args.discord_channel,
        zulip_stream_id=args.stream_id,
        zulip_topic=args.topic or None,
        include_threads=args.include_threads,
    )
    try:
        store.add_binding(binding)
    except sqlite3.IntegrityError as exc:
        print(f"Binding rejected: {exc}", file=sys.stderr)
        return 1
    print(f"Bound {binding.discord_channel_id} to {_describe(binding)}")
    return 0


def _unbind(store: CorrelationStore, args: argparse.Namespace) -> int:
    removed = store.delete_bindings(discord_channel_id=args.discord_channel)
    if not removed:
        print(f"No binding for {args.discord_channel}", file=sys.stderr)
        return 1
    for binding in removed:
        print(f"Unbound {binding.discord_channel_id} from {_describe(binding)}")
    return 0


def _list(store: CorrelationStore) -> int:
    for binding in store.list_bindings():
        threads = " (threads)" if binding.include_threads else ""
        print(f"{binding.discord_channel_id}\t{_describe(binding)}{threads}")
    return 0


def _describe(binding: ChannelBinding) -> str:
    if binding.zulip_topic is None:
        return f"stream {binding.zulip_stream_id}"
    return f"stream {binding.zulip_stream_id} > {binding.zulip_topic}"


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.command in {None, "run"}:
        return _run(args)

    store = CorrelationStore(Path(args.db_path))
    try:
        if args.command == "bind":
            return _bind(store, args)
        if args.command == "unbind":
            return _unbind(store, args)
        return _list(store)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
