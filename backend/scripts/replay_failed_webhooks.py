"""Re-run Stripe webhook events whose processing failed.

Failed events keep their raw payload in ``webhook_events``. Replaying is
safe: every transition is idempotent and stale events are skipped.

Run inside Docker:
    docker compose exec backend python -m scripts.replay_failed_webhooks [--limit 100]
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add backend to path so imports work when run as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from app.billing.context import build_context
from app.config import Settings

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


async def main(limit: int) -> None:
    context = build_context(Settings())
    try:
        outcomes = await context.ingress.replay_failed(limit=limit)
    finally:
        await context.aclose()

    if not outcomes:
        print("No failed webhook events to replay.")
        return
    for outcome in outcomes:
        print(f"{outcome.event_id} {outcome.event_type}: {outcome.status.value} {outcome.reason or ''}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--limit", type=int, default=100)
    asyncio.run(main(parser.parse_args().limit))
