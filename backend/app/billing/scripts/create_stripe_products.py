"""Create the Stripe product and prices in test mode.

Run once inside the backend container:
    python -m app.billing.scripts.create_stripe_products

Outputs price IDs to set in .env:
    STRIPE_PRICE_MONTHLY_ID=price_xxx
    STRIPE_PRICE_ANNUAL_ID=price_xxx
"""

import asyncio

import stripe
from stripe import StripeClient

from app.billing.plans import build_plan_catalog, format_amount
from app.config import Settings
from app.models.subscription import Plan

_INTERVALS = {Plan.MONTHLY.value: "month", Plan.ANNUAL.value: "year"}


async def main() -> None:
    settings = Settings()
    if not settings.stripe_secret_key:
        print("ERROR: STRIPE_SECRET_KEY is not set in .env")
        return

    client = StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(),
    )
    catalog = build_plan_catalog(settings)

    product = await client.v1.products.create_async(
        params={
            "name": f"{settings.app_name} Premium",
            "description": "Premium access, billed monthly or annually",
        }
    )
    print(f"Created product: {product.name} ({product.id})")

    env_lines = []
    for plan_name, interval in _INTERVALS.items():
        plan = catalog.get(plan_name)
        price = await client.v1.prices.create_async(
            params={
                "product": product.id,
                "unit_amount": plan.price_cents,
                "currency": catalog.currency,
                "recurring": {"interval": interval},
                "metadata": {"plan": plan_name},
            }
        )
        print(f"  {plan.display_name}: {format_amount(plan.price_cents, catalog.currency)}/{interval} ({price.id})")
        env_lines.append(f"STRIPE_PRICE_{plan_name.upper()}_ID={price.id}")

    print("\n--- Add these to your .env ---")
    for line in env_lines:
        print(line)


if __name__ == "__main__":
    asyncio.run(main())
