#!/usr/bin/env python3
"""
Diagnose run lock and cursor state and suggest how to recover.
"""

import argparse
import asyncio
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from carscout.config import settings
from carscout.db.kv_store import create_kv_store
from carscout.ingest.pagination import CursorStore
from carscout.worker.run_lock import LOCK_KEY, RunLockManager


async def diagnose(force_unlock: bool = False) -> None:
    lock_manager = RunLockManager()
    try:
        lock_info = await lock_manager.get_lock_info()

        print("Run Lock Diagnosis")
        print("==================")
        print(f"LOCK_KEY: {LOCK_KEY}")
        print(f"run_lock_enabled: {settings.run_lock_enabled}")
        print("")

        if not lock_info:
            print("Lock: none")
        else:
            print("Lock: present")
            print(f"  run_id: {lock_info.get('run_id')}")
            print(f"  started_at: {lock_info.get('started_at')}")
            print(f"  ttl_seconds: {lock_info.get('ttl_seconds')}")

        cursor = await CursorStore(create_kv_store(), settings.state_key).load()
        print("")
        print(f"Cursor ({settings.state_backend}): next_page={cursor.next_page} "
              f"last_page={cursor.last_page} last_run_at={cursor.last_run_at}")

        print("")
        print("Recommendations")
        print("----------------")
        if lock_info and force_unlock:
            await lock_manager.force_unlock()
            print("- Lock force-cleared. The next run repeats the batch from next_page.")
        elif lock_info and lock_info.get("ttl_seconds") is None:
            print("- Lock has no TTL. It will never expire; rerun with --force-unlock.")
        elif lock_info:
            print("- A run is in progress or crashed recently. Wait for the TTL or use --force-unlock.")
        else:
            print("- No issues detected.")
    finally:
        await lock_manager.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Diagnose the carscout run lock")
    parser.add_argument(
        "--force-unlock",
        action="store_true",
        help="Clear the lock without token verification",
    )
    args = parser.parse_args()

    asyncio.run(diagnose(force_unlock=args.force_unlock))
