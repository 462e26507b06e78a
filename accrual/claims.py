from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import UUID

from .config import CHECKPOINT_INTERVAL, MAX_SESSION_DURATION
from .errors import NoActiveSession, NothingToClaim
from .levels import LevelProgression
from .locks import UserLocks
from .log import get_logger
from .models import (
    AccrualSession,
    ClaimResponse,
    SettlementKind,
    SettlementStatus,
    quantize_amount,
    utcnow,
)
from .settlement import SettlementClient, settle_reserved
from .storage import Storage

logger = get_logger(__name__)


def elapsed_for(session: AccrualSession, now: datetime) -> timedelta:
    elapsed = now - session.start_time
    return max(timedelta(0), min(elapsed, MAX_SESSION_DURATION))


def checkpoints_reached(elapsed: timedelta, interval: timedelta = CHECKPOINT_INTERVAL) -> int:
    return int(elapsed // interval)


class ClaimAccountant:
    def __init__(
        self,
        storage: Storage,
        settlement: SettlementClient,
        levels: LevelProgression,
        locks: Optional[UserLocks] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.settlement = settlement
        self.levels = levels
        self.locks = locks or UserLocks()
        self.clock = clock

    def claim(self, user_id: UUID) -> ClaimResponse:
        with self.locks.hold(user_id):
            session = self.storage.get_active_session(user_id)
            if not session:
                raise NoActiveSession(user_id)

            possible = checkpoints_reached(elapsed_for(session, self.clock()))
            unclaimed = possible - session.checkpoints_claimed
            if unclaimed <= 0:
                raise NothingToClaim(user_id)

            amount = quantize_amount(unclaimed * session.rate)
            session = self.storage.update_session(session.id, {
                "total_earned": session.total_earned + amount,
                "checkpoints_claimed": possible,
            })

        logger.info(
            "checkpoints_claimed",
            user_id=str(user_id),
            session_id=str(session.id),
            checkpoints=unclaimed,
            amount=str(amount),
        )
        record = settle_reserved(
            self.settlement, self.levels, user_id, amount, session.id, SettlementKind.CHECKPOINT_CLAIM
        )
        settled = record is not None and record.status != SettlementStatus.FAILED
        return ClaimResponse(
            session_id=session.id,
            amount=amount,
            total_earned=session.total_earned,
            checkpoints_claimed=session.checkpoints_claimed,
            settled=settled,
            settlement=record,
            message="Reward claimed successfully" if settled else "Reward recorded; settlement will be retried",
        )
