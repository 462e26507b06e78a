import math
from typing import Optional
from uuid import UUID

from .models import AccrualSession


class AccrualError(Exception):
    pass


class UserNotFound(AccrualError):
    def __init__(self, user_id: UUID):
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class SessionAlreadyActive(AccrualError):
    def __init__(self, session: AccrualSession):
        super().__init__(f"User {session.user_id} already has active session {session.id}")
        self.session = session


class NoActiveSession(AccrualError):
    def __init__(self, user_id: UUID):
        super().__init__("No active accrual session found")
        self.user_id = user_id


class CooldownActive(AccrualError):
    def __init__(self, remaining_seconds: float):
        self.remaining_minutes = max(1, math.ceil(remaining_seconds / 60))
        self.remaining_seconds = self.remaining_minutes * 60
        super().__init__(
            f"Cooldown active. Please wait {self.remaining_minutes} minutes before starting a new session."
        )


class NothingToClaim(AccrualError):
    def __init__(self, user_id: UUID):
        super().__init__("No rewards available to claim")
        self.user_id = user_id


class SettlementUnavailable(AccrualError):
    def __init__(self, message: str, record_id: Optional[UUID] = None):
        super().__init__(message)
        self.record_id = record_id
