"""Harmonization Loop Orchestrator.

Commands:
  - once: run one harmonization cycle for every active user (or --user)
  - start: repeat the cycle every --interval seconds

Cycles are independent per user and run in a thread pool. The 24h guard is
enforced per user, so running this more often than daily is harmless.

Usage:
  python scripts/harmonization_loop.py once --workers 4
  python scripts/harmonization_loop.py start --interval 3600
"""

import argparse
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed

from resonance_loop.errors import ResonanceError
from resonance_loop.personalization.models import create_session
from resonance_loop.services.resonance_service import ResonanceService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def run_cycle(service: ResonanceService, users=None, force: bool = False, workers: int = 4) -> dict:
    """Harmonize each user once.

    Returns:
        dict: user_id -> report dict, or {"status": "failed", "error": ...}
    """
    users = list(users) if users else service.event_log.active_users()
    results = {}
    if not users:
        logger.info("No active users to harmonize")
        return results

    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        futures = {pool.submit(service.run_harmonization_cycle, user, force): user for user in users}
        for future in as_completed(futures):
            user = futures[future]
            try:
                results[user] = future.result()
            except ResonanceError as e:
                logger.error(f"Harmonization failed for {user}: {e}")
                results[user] = {"status": "failed", "error": str(e)}

    completed = sum(1 for r in results.values() if r.get("status") == "completed")
    logger.info(f"Harmonization pass: {completed} completed, {len(results) - completed} skipped or failed")
    return results


def main():
    p = argparse.ArgumentParser()
    p.add_argument("command", choices=["once", "start"], help="Run one pass or loop")
    p.add_argument("--user", action="append", help="Limit to these user ids (repeatable)")
    p.add_argument("--force", action="store_true", help="Ignore the per-user guard interval")
    p.add_argument("--workers", type=int, default=4)
    p.add_argument("--db-url", default=None)
    p.add_argument("--interval", type=int, default=3600, help="Seconds between passes when running start")
    args = p.parse_args()

    service = ResonanceService(session_factory=create_session(args.db_url))

    if args.command == "once":
        run_cycle(service, args.user, args.force, args.workers)
        print("✅ Harmonization pass completed")
        return

    if args.command == "start":
        print("▶️ Starting harmonization loop. Press Ctrl+C to stop.")
        try:
            while True:
                run_cycle(service, args.user, args.force, args.workers)
                time.sleep(args.interval)
        except KeyboardInterrupt:
            print("⏹️ Harmonization loop stopped by user")


if __name__ == "__main__":
    main()
