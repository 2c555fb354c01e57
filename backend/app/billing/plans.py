"""Plan catalog: Stripe price ids, plan prices and billing intervals."""

from dataclasses import dataclass
from datetime import datetime

from dateutil.relativedelta import relativedelta

from app.config import Settings
from app.models.subscription import Plan


@dataclass(frozen=True)
class PlanDefinition:
    """Pricing and billing interval of a plan."""

    name: str
    display_name: str
    interval_months: int  # 0 for the free tier
    price_cents: int  # in minor units (e.g., 999 = 9.99)
    stripe_price_id: str | None  # None for free tier
    purchasable: bool  # can be bought through checkout


@dataclass(frozen=True)
class ProrationEstimate:
    """Approximate plan-change cost for display. Stripe's invoice is authoritative."""

    credit: int
    charge: int
    amount_due: int
    currency: str


@dataclass(frozen=True)
class PlanCatalog:
    plans: dict[str, PlanDefinition]
    currency: str

    def get(self, plan_name: str | None) -> PlanDefinition:
        """Get plan by name. Defaults to free if unknown."""
        return self.plans.get(plan_name or "", self.plans[Plan.FREE.value])

    def plan_for_price(self, price_id: str | None) -> str:
        """Reverse lookup: Stripe price ID -> plan name.

        A subscription without a price is on the free tier; a paid price
        that is not configured here is treated as the legacy premium plan.
        """
        if not price_id:
            return Plan.FREE.value
        for plan in self.plans.values():
            if plan.stripe_price_id and plan.stripe_price_id == price_id:
                return plan.name
        return Plan.PREMIUM.value

    def price_id_for(self, plan_name: str) -> str | None:
        return self.get(plan_name).stripe_price_id

    @property
    def purchasable_names(self) -> list[str]:
        return [p.name for p in self.plans.values() if p.purchasable]

    def period_end_after(
        self, plan_name: str, start: datetime | None, now: datetime
    ) -> datetime | None:
        """End of the billing period containing ``now`` for a plan started at ``start``.

        Periods are whole calendar months/years counted from ``start`` so an
        annual plan started 2024-01-01 renews on 2025-01-01, never 2024-12-31.
        """
        interval = self.get(plan_name).interval_months
        if interval <= 0 or start is None:
            return None
        count = 1
        end = start + relativedelta(months=interval)
        while end <= now:
            count += 1
            end = start + relativedelta(months=interval * count)
        return end

    def current_period(
        self,
        plan_name: str,
        start: datetime | None,
        end: datetime | None,
        now: datetime,
    ) -> tuple[datetime | None, datetime | None]:
        """Bounds of the billing period ending at ``end`` (or the one containing ``now``)."""
        interval = self.get(plan_name).interval_months
        if interval <= 0:
            return None, None
        if end is None:
            end = self.period_end_after(plan_name, start, now)
        if end is None:
            return None, None
        return end - relativedelta(months=interval), end

    def estimate_proration(
        self,
        old_plan: str,
        new_plan: str,
        period_start: datetime | None,
        period_end: datetime | None,
        now: datetime,
    ) -> ProrationEstimate:
        old = self.get(old_plan)
        new = self.get(new_plan)

        remaining = 1.0
        if period_start and period_end and period_end > period_start:
            total = (period_end - period_start).total_seconds()
            left = (period_end - now).total_seconds()
            remaining = min(max(left / total, 0.0), 1.0)

        credit = int(round(old.price_cents * remaining))
        if old.interval_months == new.interval_months:
            charge = int(round(new.price_cents * remaining))
        else:
            # Different interval: Stripe starts a fresh period at the new price
            charge = new.price_cents
        return ProrationEstimate(
            credit=credit,
            charge=charge,
            amount_due=charge - credit,
            currency=self.currency,
        )


def build_plan_catalog(settings: Settings) -> PlanCatalog:
    plans = {
        Plan.FREE.value: PlanDefinition(
            name=Plan.FREE.value,
            display_name="Free",
            interval_months=0,
            price_cents=0,
            stripe_price_id=None,
            purchasable=False,
        ),
        Plan.MONTHLY.value: PlanDefinition(
            name=Plan.MONTHLY.value,
            display_name="Monthly",
            interval_months=1,
            price_cents=settings.price_monthly_cents,
            stripe_price_id=settings.stripe_price_monthly_id or None,
            purchasable=True,
        ),
        Plan.ANNUAL.value: PlanDefinition(
            name=Plan.ANNUAL.value,
            display_name="Annual",
            interval_months=12,
            price_cents=settings.price_annual_cents,
            stripe_price_id=settings.stripe_price_annual_id or None,
            purchasable=True,
        ),
        Plan.PREMIUM.value: PlanDefinition(
            name=Plan.PREMIUM.value,
            display_name="Premium",
            interval_months=1,
            price_cents=settings.price_premium_cents,
            stripe_price_id=settings.stripe_price_premium_id or None,
            purchasable=False,
        ),
    }
    return PlanCatalog(plans=plans, currency=settings.currency.lower())


_ZERO_DECIMAL_CURRENCIES = {"jpy", "krw"}
_CURRENCY_SYMBOLS = {"eur": "€", "usd": "$", "gbp": "£", "jpy": "¥", "krw": "₩"}
_SYMBOL_AFTER = {"eur", "krw"}


def format_amount(amount_minor: int, currency: str) -> str:
    """Render a minor-unit amount for display, e.g. ``999, "eur"`` -> ``"9.99 €"``."""
    code = currency.lower()
    decimals = 0 if code in _ZERO_DECIMAL_CURRENCIES else 2
    symbol = _CURRENCY_SYMBOLS.get(code, code.upper())
    value = f"{amount_minor / 10**decimals:.{decimals}f}"
    if code in _SYMBOL_AFTER:
        return f"{value} {symbol}"
    return f"{symbol}{value}"
