"""
Accrual Session Engine

This package provides:
- Time-bounded accrual sessions with a rate fixed at start
- Hourly checkpoint claims with an explicit claimed-checkpoint counter
- Settlement of accrued amounts as claimable units on an external ledger
- Reconciliation of failed and unresolved settlements
- Level progression driven by cumulative settled amounts
"""

from .models import (
    AccrualSession,
    SettlementKind,
    SettlementRecord,
    SettlementStatus,
    User,
)
from .rates import compute_rate
from .service import AccrualEngine, SessionManager, build_engine

__all__ = [
    "AccrualSession",
    "SettlementKind",
    "SettlementRecord",
    "SettlementStatus",
    "User",
    "compute_rate",
    "AccrualEngine",
    "SessionManager",
    "build_engine",
]
