from decimal import Decimal

import pytest

from services.orders import pricing


@pytest.mark.parametrize("subtotal,tier,rate", [
    ("999.99", None, "0"),
    ("1000", "CONTRACTOR", "0.10"),
    ("2499.99", "CONTRACTOR", "0.10"),
    ("2500", "PROFESSIONAL", "0.15"),
    ("5000", "COMMERCIAL", "0.20"),
    ("25000", "COMMERCIAL", "0.20"),
])
def test_discount_tiers_step_at_thresholds(subtotal, tier, rate):
    d = pricing.discount_for(Decimal(subtotal))
    assert d.tier == tier
    assert d.rate == Decimal(rate)


def test_shipping_is_base_plus_weight():
    assert pricing.shipping_for("STANDARD", Decimal("10")) == Decimal("20.00")
    assert pricing.shipping_for("OVERNIGHT", 0) == Decimal("45.00")
    assert pricing.shipping_for("PICKUP", Decimal("100")) == Decimal("0.00")
    with pytest.raises(ValueError):
        pricing.shipping_for("DRONE")


def test_price_lines_full_breakdown():
    # 8 x 149.00 = 1192.00 -> CONTRACTOR 10%
    b = pricing.price_lines([(8, Decimal("149.00"), Decimal("1.2"))], "STANDARD")
    assert b.subtotal == Decimal("1192.00")
    assert b.discount_tier == "CONTRACTOR"
    assert b.discount_amount == Decimal("119.20")
    assert b.tax == Decimal("85.82")
    # 15 + 0.5 * 9.6 kg
    assert b.shipping_cost == Decimal("19.80")
    assert b.total == Decimal("1178.42")
    assert b.as_dict()["total"] == 1178.42


def test_money_rounds_half_up():
    assert pricing.money("2.345") == Decimal("2.35")
    assert pricing.money(None) == Decimal("0.00")
