"""Order pricing: volume discount tiers, tax and shipping.

All amounts are Decimal and rounded half-up to cents.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

CENT = Decimal("0.01")

TAX_RATE = Decimal(os.getenv("TAX_RATE", "0.08"))

# (threshold, tier, rate), ascending. The tier applies from its threshold
# up to the next one.
DISCOUNT_TIERS = (
    (Decimal("1000"), "CONTRACTOR", Decimal("0.10")),
    (Decimal("2500"), "PROFESSIONAL", Decimal("0.15")),
    (Decimal("5000"), "COMMERCIAL", Decimal("0.20")),
)

SHIPPING_METHODS = ("STANDARD", "EXPEDITED", "EXPRESS", "OVERNIGHT", "PICKUP")
SHIPPING_BASE = {
    "STANDARD": Decimal("15"),
    "EXPEDITED": Decimal("25"),
    "EXPRESS": Decimal("25"),
    "OVERNIGHT": Decimal("45"),
    "PICKUP": Decimal("0"),
}
SHIPPING_PER_KG = Decimal("0.5")


def money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class Discount:
    tier: str | None
    rate: Decimal

    def amount(self, subtotal: Decimal) -> Decimal:
        return money(subtotal * self.rate)


@dataclass
class PriceBreakdown:
    subtotal: Decimal
    discount_tier: str | None
    discount_rate: Decimal
    discount_amount: Decimal
    tax: Decimal
    shipping_cost: Decimal
    total: Decimal

    def as_dict(self) -> dict:
        return {
            "subtotal": float(self.subtotal),
            "discount_tier": self.discount_tier,
            "discount_rate": float(self.discount_rate),
            "discount_amount": float(self.discount_amount),
            "tax": float(self.tax),
            "shipping_cost": float(self.shipping_cost),
            "total": float(self.total),
        }


def discount_for(subtotal) -> Discount:
    subtotal = Decimal(str(subtotal))
    found = Discount(tier=None, rate=Decimal("0"))
    for threshold, tier, rate in DISCOUNT_TIERS:
        if subtotal >= threshold:
            found = Discount(tier=tier, rate=rate)
    return found


def tax_for(taxable, rate: Decimal = TAX_RATE) -> Decimal:
    return money(Decimal(str(taxable)) * rate)


def shipping_for(method: str, weight_kg=0) -> Decimal:
    if method not in SHIPPING_BASE:
        raise ValueError(f"Unknown shipping method: {method}")
    if method == "PICKUP":
        return money(0)
    return money(SHIPPING_BASE[method] + SHIPPING_PER_KG * Decimal(str(weight_kg or 0)))


def price_lines(lines: Iterable[tuple[int, Decimal, Decimal]], method: str) -> PriceBreakdown:
    """Price (quantity, unit_price, unit_weight_kg) lines for a shipping method."""
    subtotal = Decimal("0")
    weight = Decimal("0")
    for qty, unit_price, unit_weight in lines:
        subtotal += money(Decimal(str(unit_price)) * qty)
        weight += Decimal(str(unit_weight or 0)) * qty
    subtotal = money(subtotal)

    discount = discount_for(subtotal)
    discount_amount = discount.amount(subtotal)
    tax = tax_for(subtotal - discount_amount)
    shipping = shipping_for(method, weight)
    return PriceBreakdown(
        subtotal=subtotal,
        discount_tier=discount.tier,
        discount_rate=discount.rate,
        discount_amount=discount_amount,
        tax=tax,
        shipping_cost=shipping,
        total=money(subtotal - discount_amount + tax + shipping),
    )
