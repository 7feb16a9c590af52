"""
Reset import state so the next start begins a fresh partitioned import.

    tasksync-reset                  # clear sync state for tasks, keep cached tasks
    tasksync-reset --clear-tasks    # also delete every cached row
    tasksync-reset --resource projects --db-path ./tasksync.sqlite

Run it while the sync service is stopped: it talks to the database directly.
"""

import argparse
import logging
import sys
from typing import List, Optional

from .config import settings
from .coordinator import reset_resource
from .db import init_db, sqlite_url
from .errors import StorageWriteError
from .merge import RecordStore
from .models import RESOURCES, ResetReport
from .state import SyncStateStore

logger = logging.getLogger(__name__)


def reset(session_factory, resource: str, clear_records: bool) -> ResetReport:
    return reset_resource(SyncStateStore(session_factory), RecordStore(session_factory), resource, clear_records)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tasksync-reset", description="Reset import state to start fresh")
    parser.add_argument("--resource", choices=RESOURCES, default="tasks")
    parser.add_argument("--db-path", default=None, help=f"SQLite database (default: {settings.DB_PATH})")
    parser.add_argument("--clear-tasks", action="store_true",
                        help="also delete all cached records of the resource")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.WARNING, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    db_path = args.db_path or settings.DB_PATH
    print(f"Opening database: {db_path}")
    session_factory = init_db(sqlite_url(db_path))

    try:
        report = reset(session_factory, args.resource, args.clear_tasks)
    except StorageWriteError as e:
        logger.error(f"Reset failed: {e}")
        return 1

    print("Clearing sync state keys...")
    for key, was_present in report.cleared_keys.items():
        print(f"  {'cleared' if was_present else 'absent '}  {key}")

    if args.clear_tasks:
        print(f"\nDeleted {report.records_deleted} cached {args.resource}")
    print(f"\n{args.resource} in database: {report.record_count}")
    print("\nImport state reset complete. Restart the service to begin a fresh import.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
