"""CLI: chat-relay keys, history, ask, config validate."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from ..config import load_config, validate_config
from ..core.credential_pool import CredentialPool, JsonFileCredentialBackend, mask_credential
from ..storage.filesystem import FilesystemAttachmentStore, FilesystemTurnStore
from ..types import CredentialStoreError, StorageError


def _load(config_path: str | None = None):
    try:
        return load_config(config_path)
    except Exception as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)


def _get_pool(config_path: str | None = None):
    config = _load(config_path)
    pool = CredentialPool(JsonFileCredentialBackend(config.credentials.path))
    pool.load()
    return pool, config


def _get_stores(config_path: str | None = None):
    config = _load(config_path)
    turn_store = FilesystemTurnStore(
        root=config.storage.root,
        legacy_root=config.storage.legacy_root or None,
        default_track=config.default_track,
    )
    attachment_store = FilesystemAttachmentStore(
        root=config.storage.root,
        default_track=config.default_track,
    )
    return turn_store, attachment_store, config


def cmd_keys(args):
    """List, add, or remove API keys."""
    pool, config = _get_pool(args.config)
    service = getattr(args, "service", None) or config.credentials.service
    action = getattr(args, "keys_action", None) or "list"

    if action == "list":
        snapshot = pool.snapshot()
        if not snapshot:
            print("No API keys configured.")
            return
        for name, keys in sorted(snapshot.items()):
            print(f"{name} ({len(keys)} key{'s' if len(keys) != 1 else ''})")
            for i, key in enumerate(keys, 1):
                print(f"  {i}. {mask_credential(key)}")
        return

    try:
        if action == "add":
            if pool.add(service, args.key):
                print(f"Added API key to {service} ({pool.count(service)} total).")
            else:
                print(f"API key already exists for {service}.")
        elif action == "remove":
            if pool.remove(service, args.key):
                print(f"Removed API key from {service} ({pool.count(service)} left).")
            else:
                print(f"API key not found for {service}.", file=sys.stderr)
                sys.exit(1)
    except CredentialStoreError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def cmd_history(args):
    """Show or clear stored conversation history."""
    turn_store, attachment_store, config = _get_stores(args.config)
    track = args.track or config.default_track
    action = getattr(args, "history_action", None)

    if action == "show":
        limit = args.limit or config.tracks.get(track, config.tracks[config.default_track]).history_window
        turns = turn_store.tail(args.chat_id, track, limit)
        if not turns:
            print(f"No history for {args.chat_id} ({track}).")
            return
        for turn in turns:
            print(f"[{turn.timestamp.strftime('%Y-%m-%d %H:%M:%S')}] {turn.speaker}: {turn.content}")

    elif action == "clear":
        try:
            cleared = turn_store.clear(args.chat_id, track)
        except StorageError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        removed = attachment_store.clear(args.chat_id, track)
        if cleared or removed:
            print(f"Cleared {track} history for {args.chat_id} ({removed} attachment(s) removed).")
        else:
            print(f"No history for {args.chat_id} ({track}).")


def cmd_ask(args):
    """Send one message through the relay and print the reply."""
    from ..engine import ChatRelay
    from ..transports.console import ConsoleTransport
    from ..types import InboundMessage

    config = _load(args.config)
    errors = validate_config(config)
    if errors:
        print("Config validation errors:", file=sys.stderr)
        for err in errors:
            print(f"  - {err}", file=sys.stderr)
        sys.exit(1)

    transport = ConsoleTransport(output_dir=args.output_dir, show_status=not args.quiet)
    relay = ChatRelay(config=config, transport=transport)
    message = InboundMessage(
        chat_id=args.chat_id,
        sender=args.chat_id,
        text=" ".join(args.text),
        has_attachment=args.image is not None,
        raw=args.image,
    )
    outcome = asyncio.run(relay.handle(message, track=args.track))
    if not outcome.succeeded:
        sys.exit(1)


def cmd_config_validate(args):
    """Validate config file."""
    config = _load(args.config)

    errors = validate_config(config)
    if errors:
        print("Config validation errors:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)
    else:
        print("Config is valid.")
        print(f"  Provider: {config.upstream.provider}")
        print(f"  Default track: {config.default_track}")
        print(f"  Tracks: {', '.join(sorted(config.tracks))}")
        print(f"  Storage: {config.storage.backend} ({config.storage.root})")
        print(f"  Max retries: {config.orchestrator.max_retries}")


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(
        prog="chat-relay",
        description="Chat relay for Gemini with rotating API keys and per-user history",
    )
    parser.add_argument("--config", "-c", help="Path to config file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command")

    # keys
    keys_parser = subparsers.add_parser("keys", help="Manage API keys")
    keys_sub = keys_parser.add_subparsers(dest="keys_action")
    keys_sub.add_parser("list", help="Show configured keys (masked)")
    keys_add_parser = keys_sub.add_parser("add", help="Add an API key")
    keys_add_parser.add_argument("key", help="API key")
    keys_add_parser.add_argument("--service", "-s", help="Service name (default from config)")
    keys_remove_parser = keys_sub.add_parser("remove", help="Remove an API key")
    keys_remove_parser.add_argument("key", help="API key")
    keys_remove_parser.add_argument("--service", "-s", help="Service name (default from config)")

    # history
    history_parser = subparsers.add_parser("history", help="Inspect or clear conversation history")
    history_sub = history_parser.add_subparsers(dest="history_action")
    show_parser = history_sub.add_parser("show", help="Print recent turns")
    show_parser.add_argument("chat_id", help="Chat address")
    show_parser.add_argument("--track", "-t", help="Track name")
    show_parser.add_argument("--limit", "-n", type=int, help="Max turns")
    clear_parser = history_sub.add_parser("clear", help="Delete history and attachments")
    clear_parser.add_argument("chat_id", help="Chat address")
    clear_parser.add_argument("--track", "-t", help="Track name")

    # ask
    ask_parser = subparsers.add_parser("ask", help="Send one message and print the reply")
    ask_parser.add_argument("chat_id", help="Chat address the message comes from")
    ask_parser.add_argument("text", nargs="*", help="Message text")
    ask_parser.add_argument("--track", "-t", help="Track name")
    ask_parser.add_argument("--image", "-i", help="Path to an image to attach")
    ask_parser.add_argument("--output-dir", "-o", default=".", help="Where generated images are written")
    ask_parser.add_argument("--quiet", "-q", action="store_true", help="Hide status messages")

    # config validate
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "keys":
        cmd_keys(args)
    elif args.command == "history":
        if args.history_action in ("show", "clear"):
            cmd_history(args)
        else:
            print("Usage: chat-relay history {show,clear} CHAT_ID")
            sys.exit(1)
    elif args.command == "ask":
        cmd_ask(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        else:
            print("Usage: chat-relay config validate")
            sys.exit(1)


if __name__ == "__main__":
    main()
