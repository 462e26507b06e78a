import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

from .background import NetworkStatsRefresher, SettlementReconciler
from .claims import ClaimAccountant, checkpoints_reached, elapsed_for
from .config import (
    ACTIVITY_MIN_SESSIONS,
    ACTIVITY_WINDOW,
    CHECKPOINT_INTERVAL,
    MAX_SESSION_DURATION,
    Settings,
)
from .cooldown import CooldownGuard
from .errors import NoActiveSession, SessionAlreadyActive, UserNotFound
from .gateway import HttpLedgerGateway, InMemoryLedger, LedgerGateway
from .levels import LevelProgression
from .locks import UserLocks
from .log import get_logger
from .models import (
    AccrualSession,
    SessionResponse,
    SettlementKind,
    StatusResponse,
    quantize_amount,
    utcnow,
)
from .rates import compute_rate
from .settlement import SettlementClient, settle_reserved
from .storage import InMemoryStorage, Storage

logger = get_logger(__name__)

SECONDS_PER_HOUR = Decimal(3600)


def earned_for(session: AccrualSession, now: datetime) -> Decimal:
    hours = Decimal(str(elapsed_for(session, now).total_seconds())) / SECONDS_PER_HOUR
    return quantize_amount(hours * session.rate)


class SessionManager:
    def __init__(
        self,
        storage: Storage,
        settlement: SettlementClient,
        levels: LevelProgression,
        locks: Optional[UserLocks] = None,
        cooldown: Optional[CooldownGuard] = None,
        stats_refresher: Optional[NetworkStatsRefresher] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.settlement = settlement
        self.levels = levels
        self.locks = locks or UserLocks()
        self.cooldown = cooldown or CooldownGuard(storage, clock=clock)
        self.stats_refresher = stats_refresher
        self.clock = clock

    def start(self, user_id: UUID) -> SessionResponse:
        user = self.storage.get_user(user_id)
        if not user:
            raise UserNotFound(user_id)

        with self.locks.hold(user_id):
            existing = self.storage.get_active_session(user_id)
            if existing:
                return self._already_active(existing)

            self.cooldown.assert_can_start(user_id)

            rate = compute_rate(
                user.level,
                self._count("active_sessions", self.storage.count_active_sessions, default=0),
                self._count("referrals", lambda: self.storage.count_referrals(user_id), default=0),
                self._count("recent_activity", lambda: self._recent_activity(user_id), default=0),
            )
            try:
                session = self.storage.create_session(user_id, self.clock(), rate)
            except SessionAlreadyActive as e:
                return self._already_active(e.session)

        logger.info("session_started", user_id=str(user_id), session_id=str(session.id), rate=str(rate))
        if self.stats_refresher:
            self.stats_refresher.request_refresh()
        return SessionResponse(session=session, created=True, message="Session started successfully")

    def stop(self, user_id: UUID) -> SessionResponse:
        with self.locks.hold(user_id):
            session = self.storage.get_active_session(user_id)
            if not session:
                raise NoActiveSession(user_id)

            now = self.clock()
            earned = earned_for(session, now)
            owed = max(Decimal("0"), earned - session.total_earned)
            session = self.storage.update_session(session.id, {
                "end_time": now,
                "is_active": False,
                "total_earned": earned,
                "progress": 100,
            })

        logger.info(
            "session_stopped",
            user_id=str(user_id),
            session_id=str(session.id),
            total_earned=str(earned),
            owed=str(owed),
        )
        record = None
        if owed > 0:
            record = settle_reserved(
                self.settlement, self.levels, user_id, owed, session.id, SettlementKind.SESSION_CLOSE
            )
        if self.stats_refresher:
            self.stats_refresher.request_refresh()
        return SessionResponse(
            session=session, settlement=record, message="Session stopped successfully"
        )

    def status(self, user_id: UUID) -> StatusResponse:
        session = self.storage.get_active_session(user_id)
        if not session:
            return StatusResponse(is_active=False)

        now = self.clock()
        if now - session.start_time >= MAX_SESSION_DURATION:
            return self._finalize_expired(user_id)

        elapsed = elapsed_for(session, now)
        progress = min(100, int(elapsed / MAX_SESSION_DURATION * 100))
        interval = CHECKPOINT_INTERVAL.total_seconds()
        next_reward_in = math.ceil(interval - (elapsed.total_seconds() % interval))
        return StatusResponse(
            is_active=True,
            session=session,
            progress=progress,
            current_earned=earned_for(session, now),
            rate=session.rate,
            next_reward_in=next_reward_in,
            claimable_checkpoints=max(0, checkpoints_reached(elapsed) - session.checkpoints_claimed),
        )

    def _finalize_expired(self, user_id: UUID) -> StatusResponse:
        try:
            response = self.stop(user_id)
        except NoActiveSession:
            return StatusResponse(is_active=False)
        return StatusResponse(
            is_active=False,
            session=response.session,
            progress=100,
            current_earned=response.session.total_earned,
            rate=response.session.rate,
        )

    def _already_active(self, session: AccrualSession) -> SessionResponse:
        return SessionResponse(
            session=session, created=False,
            message="Session already active (idempotent return)",
        )

    def _recent_activity(self, user_id: UUID) -> int:
        cutoff = self.clock() - ACTIVITY_WINDOW
        recent = self.storage.get_recent_completed_sessions(user_id, ACTIVITY_MIN_SESSIONS)
        return sum(1 for s in recent if s.end_time and s.end_time >= cutoff)

    def _count(self, name: str, fn: Callable[[], int], default: int) -> int:
        # Rate inputs fall back to their neutral value when a lookup fails.
        try:
            return fn()
        except Exception as e:
            logger.warning("rate_input_unavailable", input=name, error=str(e))
            return default


@dataclass
class AccrualEngine:
    storage: Storage
    gateway: LedgerGateway
    settings: Settings
    sessions: SessionManager
    claims: ClaimAccountant
    settlement: SettlementClient
    levels: LevelProgression
    stats_refresher: NetworkStatsRefresher
    reconciler: SettlementReconciler

    def start_background(self) -> None:
        self.stats_refresher.start()
        self.reconciler.start()

    def stop_background(self) -> None:
        self.stats_refresher.stop()
        self.reconciler.stop()


def build_engine(
    storage: Optional[Storage] = None,
    gateway: Optional[LedgerGateway] = None,
    settings: Optional[Settings] = None,
    clock: Callable[[], datetime] = utcnow,
    sleep: Optional[Callable[[float], None]] = None,
) -> AccrualEngine:
    settings = settings or Settings.from_env()
    storage = storage or InMemoryStorage()
    if gateway is None:
        if settings.ledger_url:
            gateway = HttpLedgerGateway(settings.ledger_url, timeout=settings.ledger_timeout_sec)
        else:
            gateway = InMemoryLedger()

    settlement_kwargs = {"sleep": sleep} if sleep else {}
    settlement = SettlementClient(storage, gateway, settings, clock=clock, **settlement_kwargs)
    levels = LevelProgression(storage)
    locks = UserLocks()
    stats_refresher = NetworkStatsRefresher(storage, settings.stats_interval_sec, clock=clock)
    reconciler = SettlementReconciler(
        storage, settlement, levels,
        interval_sec=settings.reconcile_interval_sec,
        max_attempts=settings.reconcile_max_attempts,
    )
    sessions = SessionManager(
        storage, settlement, levels,
        locks=locks,
        cooldown=CooldownGuard(storage, clock=clock),
        stats_refresher=stats_refresher,
        clock=clock,
    )
    claims = ClaimAccountant(storage, settlement, levels, locks=locks, clock=clock)
    return AccrualEngine(
        storage=storage,
        gateway=gateway,
        settings=settings,
        sessions=sessions,
        claims=claims,
        settlement=settlement,
        levels=levels,
        stats_refresher=stats_refresher,
        reconciler=reconciler,
    )
