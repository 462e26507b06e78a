"""
Unit Tests for the rate model

Tests cover:
1. Base rate per level
2. Network multiplier bounds
3. Referral and activity bonuses
4. Combined rate quantization
"""

import pytest
from decimal import Decimal

from accrual.rates import (
    activity_bonus,
    base_rate,
    compute_rate,
    network_multiplier,
    referral_bonus,
)


class TestBaseRate:
    """Tests for the per-level base rate."""

    def test_level_one_is_base(self):
        """Level 1 earns the plain base rate."""
        assert base_rate(1) == Decimal("0.05")

    def test_rate_monotonic_in_level(self):
        """Higher levels never earn less, all else equal."""
        rates = [compute_rate(level, 900, 0, 0) for level in range(1, 30)]
        assert rates == sorted(rates)
        assert len(set(rates)) == len(rates)

    def test_invalid_level_rejected(self):
        """Levels below 1 are rejected."""
        with pytest.raises(ValueError):
            base_rate(0)


class TestNetworkMultiplier:
    """Tests for the network-size multiplier."""

    def test_small_network_capped_at_two(self):
        assert network_multiplier(0) == Decimal("2.0")
        assert network_multiplier(400) == Decimal("2")

    def test_large_network_floors_at_one(self):
        assert network_multiplier(900) == Decimal("1")
        assert network_multiplier(50_000) == Decimal("1.0")

    def test_decays_between_bounds(self):
        """Between the bounds the multiplier shrinks as the network grows."""
        assert network_multiplier(600) < network_multiplier(500)
        assert Decimal("1") < network_multiplier(600) < Decimal("2")

    def test_negative_count_rejected(self):
        with pytest.raises(ValueError):
            network_multiplier(-1)


class TestBonuses:
    """Tests for referral and activity bonuses."""

    def test_referral_bonus_per_referral(self):
        assert referral_bonus(0) == Decimal("0")
        assert referral_bonus(3) == Decimal("0.3")

    def test_referral_bonus_capped(self):
        """Referral bonus never exceeds 50%."""
        assert referral_bonus(5) == Decimal("0.5")
        assert referral_bonus(40) == Decimal("0.5")

    def test_activity_bonus_threshold(self):
        assert activity_bonus(4) == Decimal("0")
        assert activity_bonus(5) == Decimal("0.2")
        assert activity_bonus(12) == Decimal("0.2")


class TestComputeRate:
    """Tests for the combined rate."""

    def test_neutral_inputs_give_base_rate(self):
        """Level 1, no referrals, no activity, 900 active sessions -> base rate."""
        assert compute_rate(1, 900, 0, 0) == Decimal("0.05000000")

    def test_all_factors_combined(self):
        """0.05 x 2.0 x 1.5 x 1.2 = 0.18"""
        assert compute_rate(1, 0, 7, 5) == Decimal("0.18000000")

    def test_quantized_to_eight_places(self):
        rate = compute_rate(3, 650, 1, 0)
        assert rate.as_tuple().exponent == -8

    def test_deterministic(self):
        """Same inputs always yield the same rate."""
        assert compute_rate(4, 123, 2, 6) == compute_rate(4, 123, 2, 6)
