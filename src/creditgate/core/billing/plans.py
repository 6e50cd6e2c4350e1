"""Price catalog lookups and plan derivation."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Literal

from creditgate.configs.system import PriceConfig

PlanType = Literal["free", "credits", "subscription"]

PRICE_KIND_CREDITS = "credits"
PRICE_KIND_SUBSCRIPTION = "subscription"

SUBSCRIPTION_ACTIVE = "active"
SUBSCRIPTION_CANCELED = "canceled"


class PriceCatalog:
    """Maps provider price ids to the credits they grant."""

    def __init__(self, prices: Mapping[str, PriceConfig]) -> None:
        self._prices = dict(prices)

    def get(self, price_id: str) -> PriceConfig | None:
        return self._prices.get(price_id)

    def credits_for(self, price_id: str, kind: str) -> PriceConfig | None:
        """Return the price when it exists and is of *kind*."""
        price = self._prices.get(price_id)
        if price is None or price.kind != kind:
            return None
        return price


def derive_plan_type(credits: int, subscription_status: str | None) -> PlanType:
    """Credits win over a subscription; neither means free."""
    if credits > 0:
        return "credits"
    if subscription_status == SUBSCRIPTION_ACTIVE:
        return "subscription"
    return "free"
