"""Pull subscriptions from Stripe and mirror them onto local records.

Use after an outage, or when a user's record looks out of sync:
    docker compose exec backend python -m scripts.reconcile_subscriptions USER_ID [USER_ID ...]

Also drains the outbox and expires lapsed subscriptions once.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add backend to path so imports work when run as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from app.billing.context import build_context
from app.billing.errors import BillingError
from app.config import Settings

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


async def main(user_ids: list[str]) -> int:
    context = build_context(Settings())
    failures = 0
    try:
        for user_id in user_ids:
            try:
                record = await context.engine.reconcile_from_provider(user_id)
                print(f"{user_id}: plan={record.plan} status={record.status} active={record.is_active} end={record.end_date}")
            except BillingError as e:
                failures += 1
                print(f"{user_id}: FAILED {e.message}")

        expired = await context.engine.expire_lapsed()
        report = await context.outbox.sweep()
        print(f"Expired {expired} lapsed subscriptions")
        print(f"Outbox: delivered={report.delivered} failed={report.failed} dropped={report.dropped}")
    finally:
        await context.aclose()
    return 1 if failures else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("user_ids", nargs="*")
    sys.exit(asyncio.run(main(parser.parse_args().user_ids)))
