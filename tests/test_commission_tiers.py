import importlib
from decimal import Decimal

import pytest


tiers = importlib.import_module("src.referral.tiers")


@pytest.mark.parametrize(
    ("plan_level", "expected"),
    [(1, "50"), (4, "50"), (5, "55"), (8, "55"), (9, "60"), (16, "60")],
)
def test_commission_rate_follows_tier_table(plan_level, expected):
    assert tiers.commission_rate(plan_level) == Decimal(expected)


@pytest.mark.parametrize("plan_level", [0, 17, -1])
def test_commission_rate_rejects_levels_outside_table(plan_level):
    with pytest.raises(ValueError):
        tiers.commission_rate(plan_level)


def test_explicit_rate_overrides_tier_table():
    assert tiers.commission_rate(1, "12.5") == Decimal("12.5")

    with pytest.raises(ValueError):
        tiers.commission_rate(1, "150")
    with pytest.raises(ValueError):
        tiers.commission_rate(1, "lots")


def test_compute_commission_floors_minor_units():
    assert tiers.compute_commission(5_000_000, Decimal("55")) == 2_750_000
    assert tiers.compute_commission(3, Decimal("55")) == 1
    assert tiers.compute_commission(10**30 + 1, Decimal("50")) == 5 * 10**29


def test_compute_commission_rejects_negative_amount():
    with pytest.raises(ValueError):
        tiers.compute_commission(-1, Decimal("50"))
