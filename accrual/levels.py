from decimal import Decimal, ROUND_FLOOR
from typing import Optional
from uuid import UUID

from .config import LEVEL_THRESHOLD, LEVEL_UP_BONUS
from .log import get_logger
from .storage import Storage

logger = get_logger(__name__)


def level_for_total(cumulative_total: Decimal) -> int:
    return int((Decimal(cumulative_total) / LEVEL_THRESHOLD).to_integral_value(rounding=ROUND_FLOOR)) + 1


class LevelProgression:
    def __init__(self, storage: Storage):
        self.storage = storage

    def on_settlement(self, user_id: UUID, cumulative_total: Decimal) -> Optional[int]:
        """Raise the user's level if the cumulative total crossed a threshold.

        Returns the new level when one was reached, else None. Errors are
        logged and never raised; a failed level-up must not block settlement.
        """
        try:
            user = self.storage.get_user(user_id)
            if not user:
                return None

            new_level = level_for_total(cumulative_total)
            if new_level <= user.level:
                return None

            gained = new_level - user.level
            self.storage.update_user_level(user_id, new_level)
            bonus = LEVEL_UP_BONUS * gained
            self.storage.credit_bonus(user_id, bonus)
            logger.info(
                "level_up",
                user_id=str(user_id),
                level=new_level,
                levels_gained=gained,
                bonus=str(bonus),
            )
            return new_level
        except Exception as e:
            logger.error("level_progression_failed", user_id=str(user_id), error=str(e))
            return None
