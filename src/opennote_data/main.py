#!/usr/bin/env python
"""Command line entry point for the OpenNote data layer."""
import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, List, Optional

import anyio

from opennote_data import __version__
from opennote_data.app import OpenNote
from opennote_data.config import config
from opennote_data.exceptions import OpenNoteError
from opennote_data.observability import configure_logging, metrics
from opennote_data.storage.document_store import DocumentStore
from opennote_data.storage.replication import SyncOptions
from opennote_data.storage.settings_store import SettingsStore

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="opennote-data", description="OpenNote data layer tools"
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument(
        "--database",
        help="Local database name or SQLite file path",
        type=str,
        default=os.environ.get("OPENNOTE_DATABASE_NAME"),
    )
    parser.add_argument(
        "--settings-path",
        help="Settings store SQLite file",
        type=str,
        default=os.environ.get("OPENNOTE_SETTINGS_PATH"),
    )
    parser.add_argument(
        "--log-dir",
        help="Directory for log files (console only when omitted)",
        type=str,
        default=os.environ.get("OPENNOTE_LOG_DIR"),
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("OPENNOTE_LOG_LEVEL", "WARNING"),
    )

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init", help="Create the database and its index")
    commands.add_parser("info", help="Show database statistics")
    commands.add_parser("clean-orphans", help="Remove documents whose parent is gone")

    delete_folder = commands.add_parser(
        "delete-folder", help="Delete a folder and everything below it"
    )
    delete_folder.add_argument("folder_id")

    tags = commands.add_parser("tags", help="List tags, or the notes carrying one")
    tags.add_argument("tag", nargs="?")

    export = commands.add_parser("export", help="Write every document to a JSON file")
    export.add_argument("path")

    import_ = commands.add_parser("import", help="Load documents from a JSON backup")
    import_.add_argument("path")

    sync = commands.add_parser("sync", help="Replicate with the saved remote")
    sync.add_argument(
        "--live", action="store_true", help="Keep replicating until interrupted"
    )

    remote = commands.add_parser("remote", help="Show or change the remote URL")
    remote_commands = remote.add_subparsers(dest="remote_command", required=True)
    remote_commands.add_parser("show")
    remote_set = remote_commands.add_parser("set")
    remote_set.add_argument("url")
    remote_commands.add_parser("clear")

    commands.add_parser("destroy", help="Delete all local data and the remote setting")

    return parser.parse_args(argv)


def update_config(args: argparse.Namespace) -> None:
    """Update the global config with command line arguments."""
    if args.database:
        config.database_name = args.database
    if args.settings_path:
        config.settings_path = Path(args.settings_path)


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


async def run_command(args: argparse.Namespace) -> int:
    """Execute one CLI command; returns the process exit code."""
    sync_options = SyncOptions.from_config()
    if args.command == "sync":
        sync_options.live = args.live

    app = OpenNote(
        store=DocumentStore(config.database_name),
        settings=SettingsStore(),
        sync_options=sync_options,
    )
    async with app:
        await app.init(start_sync=False)

        if args.command == "init":
            _print(await app.store.info())
        elif args.command == "info":
            _print(
                {
                    "database": await app.store.info(),
                    "remote": app.sync.get_remote_url(),
                    "metrics": metrics.get_summary(),
                }
            )
        elif args.command == "clean-orphans":
            _print({"removed": await app.clean_orphans()})
        elif args.command == "delete-folder":
            deleted = await app.delete_folder({"_id": args.folder_id})
            _print({"deleted": deleted, "folder_id": args.folder_id})
            return 0 if deleted else 1
        elif args.command == "tags":
            if args.tag:
                _print({args.tag: await app.tags.find_note_ids(args.tag)})
            else:
                _print({tag: len(ids) for tag, ids in (await app.tags.get_tags()).items()})
        elif args.command == "export":
            count = await app.storage.export_to_file(args.path)
            _print({"exported": count, "path": args.path})
        elif args.command == "import":
            outcomes = await app.storage.import_file(args.path)
            failed = [o.to_dict() for o in outcomes if not o.succeeded]
            _print({"imported": len(outcomes) - len(failed), "failed": failed})
            return 1 if failed else 0
        elif args.command == "sync":
            session = await app.sync.init()
            if session is None:
                print("No remote configured; use 'remote set <url>' first", file=sys.stderr)
                return 1
            await session.wait()
            _print(session.get_status())
        elif args.command == "remote":
            if args.remote_command == "set":
                await app.sync.set_remote_url(args.url)
            elif args.remote_command == "clear":
                await app.sync.clear_remote_url()
            _print({"remote": app.sync.get_remote_url()})
        elif args.command == "destroy":
            await app.destroy_database()
            _print(await app.store.info())
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Run the OpenNote command line."""
    args = parse_args(argv)
    update_config(args)

    log_level = getattr(logging, args.log_level.upper(), logging.WARNING)
    if args.log_dir:
        try:
            configure_logging(log_dir=args.log_dir, level=log_level, console=True)
        except OSError as e:
            logging.basicConfig(level=log_level)
            logger.warning(f"Failed to configure file logging: {e}")
    else:
        logging.basicConfig(level=log_level)

    try:
        return anyio.run(run_command, args)
    except OpenNoteError as e:
        logger.debug(f"{args.command} failed", exc_info=True)
        print(f"Error [{e.code.name}]: {e.message}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
