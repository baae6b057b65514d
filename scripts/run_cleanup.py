from __future__ import annotations

import argparse
import json
import sys
from datetime import timedelta

from backend.app.ledger import LedgerStore
from backend.app.observability import configure_logging
from backend.app.persistence import Database
from backend.app.services.cleanup import CleanupSweeper
from backend.app.settings import load_settings
from backend.app.store import CampaignStateStore


def main() -> int:
    settings = load_settings()
    parser = argparse.ArgumentParser(
        description="Refund unused minutes for completed campaigns past the grace period."
    )
    parser.add_argument("--campaign-id", default=None)
    parser.add_argument("--database-url", default=settings.database_url)
    parser.add_argument("--grace-hours", type=int, default=settings.cleanup_grace_hours)
    parser.add_argument(
        "--minutes-per-call", type=int, default=settings.minutes_per_recipient
    )
    args = parser.parse_args()

    configure_logging()
    database = Database(args.database_url)
    try:
        sweeper = CleanupSweeper(
            CampaignStateStore(database),
            LedgerStore(database),
            grace=timedelta(hours=args.grace_hours),
            minutes_per_call=args.minutes_per_call,
        )
        report = sweeper.sweep(campaign_id=args.campaign_id)
    finally:
        database.dispose()
    print(json.dumps(report.model_dump(mode="json"), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
