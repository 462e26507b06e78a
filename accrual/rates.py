"""
Effective accrual rate.

rate = base(level) x network multiplier x (1 + referral bonus) x (1 + activity bonus)

- base(level): BASE_RATE compounded by LEVEL_MULTIPLIER for every level above 1.
- network multiplier: NUMERATOR / (active + OFFSET), clamped to [1.0, 2.0].
  Small networks earn up to 2x; from 900 concurrently active sessions on
  the multiplier is 1.0.
- referral bonus: 10% per referral, at most 50%.
- activity bonus: 20% when the user completed at least ACTIVITY_MIN_SESSIONS
  sessions in the last 7 days.

All arithmetic is Decimal; the result is rounded to the ledger's 8 fractional
digits so the same inputs always give the same rate.
"""

from decimal import Decimal

from . import config
from .models import quantize_amount


def base_rate(level: int) -> Decimal:
    if level < 1:
        raise ValueError(f"level must be >= 1, got {level}")
    return config.BASE_RATE * config.LEVEL_MULTIPLIER ** (level - 1)


def network_multiplier(active_count: int) -> Decimal:
    if active_count < 0:
        raise ValueError(f"active session count must be >= 0, got {active_count}")
    raw = config.NETWORK_BONUS_NUMERATOR / (Decimal(active_count) + config.NETWORK_BONUS_OFFSET)
    return min(config.MAX_NETWORK_MULTIPLIER, max(config.MIN_NETWORK_MULTIPLIER, raw))


def referral_bonus(referral_count: int) -> Decimal:
    if referral_count < 0:
        raise ValueError(f"referral count must be >= 0, got {referral_count}")
    return min(config.MAX_REFERRAL_BONUS, referral_count * config.REFERRAL_BONUS_PER_REFERRAL)


def activity_bonus(recent_activity_count: int) -> Decimal:
    if recent_activity_count >= config.ACTIVITY_MIN_SESSIONS:
        return config.ACTIVITY_BONUS
    return Decimal("0")


def compute_rate(level: int, network_active_count: int, referral_count: int,
                 recent_activity_count: int) -> Decimal:
    rate = base_rate(level)
    rate *= network_multiplier(network_active_count)
    rate *= 1 + referral_bonus(referral_count)
    rate *= 1 + activity_bonus(recent_activity_count)
    return quantize_amount(rate)

