import os
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field


# Rate model
BASE_RATE = Decimal("0.05")  # units per hour at level 1
LEVEL_MULTIPLIER = Decimal("1.1")
NETWORK_BONUS_NUMERATOR = Decimal("1000")
NETWORK_BONUS_OFFSET = Decimal("100")
MAX_NETWORK_MULTIPLIER = Decimal("2.0")
MIN_NETWORK_MULTIPLIER = Decimal("1.0")
REFERRAL_BONUS_PER_REFERRAL = Decimal("0.1")
MAX_REFERRAL_BONUS = Decimal("0.5")
ACTIVITY_BONUS = Decimal("0.2")
ACTIVITY_MIN_SESSIONS = 5
ACTIVITY_WINDOW = timedelta(days=7)

# Amounts are kept at the ledger's granularity
AMOUNT_PLACES = 8
AMOUNT_QUANTUM = Decimal(1).scaleb(-AMOUNT_PLACES)

# Session lifecycle
MAX_SESSION_DURATION = timedelta(hours=24)
CHECKPOINT_INTERVAL = timedelta(hours=1)
MIN_COOLDOWN = timedelta(minutes=30)

# Level progression
LEVEL_THRESHOLD = Decimal("10")
LEVEL_UP_BONUS = Decimal("2")

_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"


def load_env() -> None:
    from dotenv import load_dotenv
    load_dotenv(_ENV_PATH)


def _env(name: str, default: str) -> str:
    return (os.getenv(name) or default).strip()


class Settings(BaseModel):
    asset_code: str = Field(default="DOPE", description="Code of the issued asset")
    asset_issuer: str = Field(default="", description="Ledger account issuing the asset")
    account_reserve: Decimal = Field(default=Decimal("1.0"), description="Starting balance for new accounts")
    ledger_url: Optional[str] = None
    ledger_timeout_sec: float = 10.0
    propagation_delay_sec: float = 2.0
    reference_lookup_delay_sec: float = 1.0
    stats_interval_sec: float = 300.0
    reconcile_interval_sec: float = 60.0
    reconcile_max_attempts: int = 5

    @classmethod
    def from_env(cls) -> "Settings":
        load_env()
        return cls(
            asset_code=_env("ACCRUAL_ASSET_CODE", "DOPE"),
            asset_issuer=_env("ACCRUAL_ASSET_ISSUER", ""),
            account_reserve=Decimal(_env("ACCRUAL_ACCOUNT_RESERVE", "1.0")),
            ledger_url=_env("LEDGER_URL", "") or None,
            ledger_timeout_sec=float(_env("LEDGER_TIMEOUT_SEC", "10")),
            propagation_delay_sec=float(_env("PROPAGATION_DELAY_SEC", "2")),
            reference_lookup_delay_sec=float(_env("REFERENCE_LOOKUP_DELAY_SEC", "1")),
            stats_interval_sec=float(_env("STATS_INTERVAL_SEC", "300")),
            reconcile_interval_sec=float(_env("RECONCILE_INTERVAL_SEC", "60")),
            reconcile_max_attempts=int(_env("RECONCILE_MAX_ATTEMPTS", "5")),
        )
