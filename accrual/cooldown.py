from datetime import datetime, timedelta
from typing import Callable
from uuid import UUID

from .config import MIN_COOLDOWN
from .errors import CooldownActive
from .log import get_logger
from .models import utcnow
from .storage import Storage

logger = get_logger(__name__)


class CooldownGuard:
    def __init__(self, storage: Storage, cooldown: timedelta = MIN_COOLDOWN,
                 clock: Callable[[], datetime] = utcnow):
        self.storage = storage
        self.cooldown = cooldown
        self.clock = clock

    def assert_can_start(self, user_id: UUID) -> None:
        # A failed lookup does not block starting a session.
        try:
            recent = self.storage.get_recent_completed_sessions(user_id, 1)
        except Exception as e:
            logger.warning("cooldown_lookup_failed", user_id=str(user_id), error=str(e))
            return

        if not recent or recent[0].end_time is None:
            return

        since_last = self.clock() - recent[0].end_time
        if since_last < self.cooldown:
            remaining = (self.cooldown - since_last).total_seconds()
            logger.info("cooldown_active", user_id=str(user_id), remaining_sec=remaining)
            raise CooldownActive(remaining)
