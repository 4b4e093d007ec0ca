"""Command line entrypoint.

    python -m carscout.main run [--page N] [--max-pages N] [--max-results N]
                                [--batch-size N] [--input FILE] [--no-forward]
    python -m carscout.main cursor show
    python -m carscout.main cursor reset [--page N]
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from carscout.config import RunConfig, settings
from carscout.db.kv_store import create_kv_store
from carscout.errors import RunLockedError
from carscout.ingest.pagination import Cursor, CursorStore
from carscout.logging_config import setup_logging
from carscout.worker.tasks import TaskRunner

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_LOCKED = 2


def build_run_config(args: argparse.Namespace) -> RunConfig:
    """Input file values, overridden by any flags given on the command line."""
    data = {}
    if args.input:
        data = json.loads(Path(args.input).read_text(encoding="utf-8"))

    overrides = {
        "page": args.page,
        "max_pages": args.max_pages,
        "max_results": args.max_results,
        "batch_size": args.batch_size,
    }
    data.update({k: v for k, v in overrides.items() if v is not None})
    if args.no_forward:
        data["forward_enabled"] = False
    return RunConfig.model_validate(data)


async def _run(run_config: RunConfig) -> int:
    try:
        summary = await TaskRunner().run_entrypoint(run_config)
    except RunLockedError as e:
        logger.warning(f"Skipping run: {e}")
        return EXIT_LOCKED
    except Exception:
        return EXIT_ABORTED

    if summary.exhausted:
        logger.info("Catalog exhausted, nothing to do")
    return EXIT_OK


async def _cursor_show() -> int:
    store = CursorStore(create_kv_store(), settings.state_key)
    cursor = await store.load()
    print(json.dumps(cursor.to_dict(), indent=2))
    return EXIT_OK


async def _cursor_reset(page: int) -> int:
    store = CursorStore(create_kv_store(), settings.state_key)
    cursor = Cursor(next_page=page, last_page=page - 1)
    await store.save(cursor)
    logger.info(f"Cursor reset: next run will scrape page {page}")
    print(json.dumps(cursor.to_dict(), indent=2))
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="carscout",
        description="Incremental, resumable car listing extraction",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Process the next batch of results pages")
    run.add_argument("--page", type=int, default=None, help="Start at this page (not persisted)")
    run.add_argument("--max-pages", type=int, default=None, help="Last page of the catalog")
    run.add_argument("--max-results", type=int, default=None, help="Detail pages to visit per page")
    run.add_argument("--batch-size", type=int, default=None, help="Pages to process this run")
    run.add_argument("--input", default=None, help="JSON file with run input")
    run.add_argument("--no-forward", action="store_true", help="Do not forward records downstream")

    cursor = commands.add_parser("cursor", help="Inspect or reset the stored cursor")
    cursor_commands = cursor.add_subparsers(dest="cursor_command", required=True)
    cursor_commands.add_parser("show", help="Print the stored cursor")
    reset = cursor_commands.add_parser("reset", help="Restart pagination")
    reset.add_argument("--page", type=int, default=1, help="Next page to scrape (default: 1)")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging()

    if args.command == "run":
        try:
            run_config = build_run_config(args)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            parser.error(f"invalid run input: {e}")
        return asyncio.run(_run(run_config))

    if args.cursor_command == "show":
        return asyncio.run(_cursor_show())
    if args.page < 1:
        parser.error("--page must be >= 1")
    return asyncio.run(_cursor_reset(args.page))


if __name__ == "__main__":
    sys.exit(main())
