"""Application entry point for the captionsync CLI."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from collections import Counter
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

from art import tprint

import settings
from adapters.report_formatting import (
    content_as_json,
    format_ingest,
    format_outcome,
    format_stats,
    format_sweep,
    format_sync_result,
)
from adapters.sqlite_storage import SQLiteStorage
from adapters.telegram_mapper import build_message, message_from_export
from core.caption_parser import CaptionParser
from core.errors import CaptionSyncError, ValidationError
from core.media_group_sync import MediaGroupSynchronizer
from core.processor import CaptionProcessor
from core.recovery import RecoverySweep, processing_stats
from core.retry import RetryExecutor
from core.states import ProcessingStateMachine

NAME = "CAPTIONSYNC"
FONT = "tarty-1"

LOGGER = logging.getLogger(__name__)


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        # Logs go to stderr so command output on stdout stays machine-readable.
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/captionsync.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        file_handler = RotatingFileHandler(
            path,
            maxBytes=int(file_cfg.get("max_bytes", 5 * 1024 * 1024)),
            backupCount=int(file_cfg.get("backup_count", 5)),
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)


@dataclass
class _Services:
    storage: SQLiteStorage
    synchronizer: MediaGroupSynchronizer
    processor: CaptionProcessor
    sweep: RecoverySweep


def _build_services() -> _Services:
    """Wire adapters into the core once per invocation."""

    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()

    retry = RetryExecutor(settings.RETRY)
    states = ProcessingStateMachine()
    synchronizer = MediaGroupSynchronizer(
        storage,
        audit_sink=storage,
        retry=retry,
        state_machine=states,
        config=settings.SYNC,
    )
    processor = CaptionProcessor(
        storage,
        synchronizer,
        parser=CaptionParser(settings.PARSER),
        retry=retry,
        state_machine=states,
        audit_sink=storage,
    )
    sweep = RecoverySweep(
        storage,
        synchronizer,
        processor=processor,
        config=settings.RECOVERY,
        state_machine=states,
        audit_sink=storage,
    )
    return _Services(storage=storage, synchronizer=synchronizer, processor=processor, sweep=sweep)


def _load_export(path: str) -> list[dict[str, Any]]:
    """Read a JSON array of Telethon message exports (``Message.to_dict()``)."""

    with open(path, "r", encoding="utf-8") as handle:
        payload = json.load(handle)
    if isinstance(payload, dict):
        payload = payload.get("messages", [])
    if not isinstance(payload, list):
        raise ValidationError(f"{path} must hold a JSON array of messages")
    return payload


async def _ingest_messages(services: _Services, exports: list[dict[str, Any]], process: bool) -> Counter:
    counts: Counter = Counter()
    added: list[str] = []
    edits: list[tuple[str, Optional[str]]] = []

    # Store every message first so group members exist before any sync runs.
    for raw in exports:
        if raw.get("_") != "Message":
            counts["ignored"] += 1
            continue
        message = build_message(message_from_export(raw))
        existing = await services.storage.get(message.id)
        if existing is None:
            await services.storage.insert(message)
            added.append(message.id)
        elif (existing.caption or "") != (message.caption or ""):
            edits.append((message.id, message.caption))
        else:
            counts["unchanged"] += 1
    counts["added"] = len(added)

    for message_id, caption in edits:
        try:
            await services.processor.edit_caption(message_id, caption)
            counts["edited"] += 1
        except CaptionSyncError as exc:
            LOGGER.error("Caption edit of %s failed (%s): %s", message_id, exc.kind.value, exc)
            counts["failed"] += 1

    if process:
        for message_id in added:
            try:
                outcome = await services.processor.handle(message_id)
            except CaptionSyncError as exc:
                LOGGER.error("Processing %s failed (%s): %s", message_id, exc.kind.value, exc)
                counts["failed"] += 1
                continue
            if outcome.skipped_reason is None:
                counts["processed"] += 1
    return counts


def _ingest(path: str, process: bool) -> None:
    exports = _load_export(path)
    services = _build_services()
    counts = asyncio.run(_ingest_messages(services, exports, process))
    print(format_ingest(counts))


def _parse(caption: str) -> None:
    content = CaptionParser(settings.PARSER).parse(caption)
    print(content_as_json(content))


def _process(message_id: str, force: bool) -> None:
    services = _build_services()
    outcome = asyncio.run(services.processor.handle(message_id, force=force))
    print(format_outcome(outcome))


def _edit(message_id: str, caption: str) -> None:
    services = _build_services()
    outcome = asyncio.run(services.processor.edit_caption(message_id, caption))
    print(format_outcome(outcome))


def _sync(group_id: str, source: Optional[str], force: bool, edit_history: bool) -> int:
    services = _build_services()
    result = asyncio.run(
        services.synchronizer.sync(
            group_id,
            explicit_source=source,
            force_sync=True if force else None,
            sync_edit_history=True if edit_history else None,
        )
    )
    print(format_sync_result(result))
    return 0 if result.success and not result.is_partial else 1


def _repair() -> None:
    services = _build_services()
    report = asyncio.run(services.sweep.run())
    print(format_sweep(report))


def _stats() -> None:
    services = _build_services()
    print(format_stats(asyncio.run(processing_stats(services.storage))))


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="captionsync")
    parser.add_argument("--no-banner", action="store_true", help="Skip the startup banner")
    subparsers = parser.add_subparsers(dest="command", required=True)

    parse_cmd = subparsers.add_parser("parse", help="Parse a caption and print the result as JSON")
    parse_cmd.add_argument("caption")

    ingest_cmd = subparsers.add_parser("ingest", help="Load exported Telegram messages into the store")
    ingest_cmd.add_argument("path", help="JSON array of Telethon Message.to_dict() exports")
    ingest_cmd.add_argument("--no-process", action="store_true", help="Store messages without parsing them")

    process_cmd = subparsers.add_parser("process", help="Analyze one stored message")
    process_cmd.add_argument("message_id")
    process_cmd.add_argument("--force", action="store_true", help="Reprocess even if completed")

    edit_cmd = subparsers.add_parser("edit", help="Replace a message caption and reprocess it")
    edit_cmd.add_argument("message_id")
    edit_cmd.add_argument("caption")

    sync_cmd = subparsers.add_parser("sync", help="Synchronize a media group")
    sync_cmd.add_argument("group_id")
    sync_cmd.add_argument("--source", help="Use this message as the canonical source")
    sync_cmd.add_argument("--force", action="store_true", help="Rewrite already converged siblings")
    sync_cmd.add_argument("--edit-history", action="store_true", help="Copy the source edit history")

    subparsers.add_parser("repair", help="Reset stalled and errored messages, reprocess them, re-sync groups")
    subparsers.add_parser("stats", help="Show processing statistics")

    args = parser.parse_args(argv)
    if not args.no_banner and args.command != "parse":
        _print_banner()
    _configure_logging()

    try:
        if args.command == "parse":
            _parse(args.caption)
        elif args.command == "ingest":
            _ingest(args.path, not args.no_process)
        elif args.command == "process":
            _process(args.message_id, args.force)
        elif args.command == "edit":
            _edit(args.message_id, args.caption)
        elif args.command == "sync":
            return _sync(args.group_id, args.source, args.force, args.edit_history)
        elif args.command == "repair":
            _repair()
        elif args.command == "stats":
            _stats()
    except CaptionSyncError as exc:
        LOGGER.error("%s failed (%s): %s", args.command, exc.kind.value, exc)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
