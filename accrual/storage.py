import threading
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Protocol
from uuid import UUID, uuid4

from .errors import SessionAlreadyActive, UserNotFound
from .models import (
    AccrualSession,
    NetworkStats,
    SettlementRecord,
    SettlementStatus,
    User,
    Wallet,
    utcnow,
)


class Storage(Protocol):
    def get_user(self, user_id: UUID) -> Optional[User]: ...
    def create_user(self, username: str, address: Optional[str] = None,
                    referred_by: Optional[UUID] = None, level: int = 1) -> User: ...
    def update_user_level(self, user_id: UUID, level: int) -> User: ...
    def credit_bonus(self, user_id: UUID, amount: Decimal) -> User: ...
    def count_referrals(self, user_id: UUID) -> int: ...

    def get_active_session(self, user_id: UUID) -> Optional[AccrualSession]: ...
    def create_session(self, user_id: UUID, start_time: datetime, rate: Decimal) -> AccrualSession: ...
    def update_session(self, session_id: UUID, patch: dict[str, Any]) -> AccrualSession: ...
    def get_recent_completed_sessions(self, user_id: UUID, limit: int) -> list[AccrualSession]: ...
    def count_active_sessions(self) -> int: ...

    def create_settlement(self, record: SettlementRecord) -> SettlementRecord: ...
    def update_settlement(self, record_id: UUID, patch: dict[str, Any]) -> SettlementRecord: ...
    def get_settlement(self, record_id: UUID) -> Optional[SettlementRecord]: ...
    def find_settlement_by_reference(self, reference: str) -> Optional[SettlementRecord]: ...
    def list_settlements(self, user_id: UUID, limit: int = 50, offset: int = 0) -> list[SettlementRecord]: ...
    def count_settlements(self, user_id: UUID) -> int: ...
    def list_settlements_by_status(self, status: SettlementStatus) -> list[SettlementRecord]: ...
    def sum_settled_for_user(self, user_id: UUID) -> Decimal: ...

    def get_wallet(self, user_id: UUID) -> Optional[Wallet]: ...
    def update_wallet(self, user_id: UUID, asset_code: str, balance: Decimal) -> Wallet: ...
    def sum_all_wallet_balances(self) -> Decimal: ...

    def get_network_stats(self) -> Optional[NetworkStats]: ...
    def update_network_stats(self, stats: NetworkStats) -> NetworkStats: ...


class InMemoryStorage:
    def __init__(self, seed: bool = True):
        self.users: dict[UUID, dict] = {}
        self.sessions: dict[UUID, dict] = {}
        self.settlements: dict[UUID, dict] = {}
        self.wallets: dict[UUID, dict] = {}
        self.network_stats: Optional[dict] = None
        self._lock = threading.RLock()
        if seed:
            self._seed_data()

    def _seed_data(self):
        referrer_id = UUID("550e8400-e29b-41d4-a716-446655440000")
        referred_id = UUID("660e8400-e29b-41d4-a716-446655440001")

        self.users[referrer_id] = {
            "id": referrer_id, "username": "referrer",
            "address": "GREFERRER4ACCRUAL4DEMO4ACCOUNT4000000000000000000000001",
            "level": 1, "referred_by": None, "bonus_balance": Decimal("0"),
            "created_at": utcnow(),
        }
        self.users[referred_id] = {
            "id": referred_id, "username": "referred",
            "address": "GREFERRED4ACCRUAL4DEMO4ACCOUNT4000000000000000000000002",
            "level": 1, "referred_by": referrer_id, "bonus_balance": Decimal("0"),
            "created_at": utcnow(),
        }

    # users

    def get_user(self, user_id: UUID) -> Optional[User]:
        data = self.users.get(user_id)
        return User(**data) if data else None

    def create_user(self, username: str, address: Optional[str] = None,
                    referred_by: Optional[UUID] = None, level: int = 1) -> User:
        user_id = uuid4()
        data = {
            "id": user_id, "username": username, "address": address,
            "level": level, "referred_by": referred_by,
            "bonus_balance": Decimal("0"), "created_at": utcnow(),
        }
        with self._lock:
            self.users[user_id] = data
        return User(**data)

    def update_user_level(self, user_id: UUID, level: int) -> User:
        with self._lock:
            data = self._require_user(user_id)
            data["level"] = level
            return User(**data)

    def credit_bonus(self, user_id: UUID, amount: Decimal) -> User:
        with self._lock:
            data = self._require_user(user_id)
            data["bonus_balance"] = data["bonus_balance"] + amount
            return User(**data)

    def count_referrals(self, user_id: UUID) -> int:
        with self._lock:
            return sum(1 for u in self.users.values() if u["referred_by"] == user_id)

    def _require_user(self, user_id: UUID) -> dict:
        data = self.users.get(user_id)
        if not data:
            raise UserNotFound(user_id)
        return data

    # sessions

    def get_active_session(self, user_id: UUID) -> Optional[AccrualSession]:
        with self._lock:
            for data in self.sessions.values():
                if data["user_id"] == user_id and data["is_active"]:
                    return AccrualSession(**data)
        return None

    def create_session(self, user_id: UUID, start_time: datetime, rate: Decimal) -> AccrualSession:
        with self._lock:
            existing = self.get_active_session(user_id)
            if existing:
                raise SessionAlreadyActive(existing)
            session_id = uuid4()
            data = {
                "id": session_id,
                "user_id": user_id,
                "start_time": start_time,
                "end_time": None,
                "rate": rate,
                "is_active": True,
                "total_earned": Decimal("0"),
                "checkpoints_claimed": 0,
                "progress": 0,
            }
            self.sessions[session_id] = data
            return AccrualSession(**data)

    def update_session(self, session_id: UUID, patch: dict[str, Any]) -> AccrualSession:
        with self._lock:
            data = self.sessions.get(session_id)
            if not data:
                raise KeyError(f"Session {session_id} not found")
            data.update(patch)
            return AccrualSession(**data)

    def get_recent_completed_sessions(self, user_id: UUID, limit: int) -> list[AccrualSession]:
        with self._lock:
            completed = [
                AccrualSession(**s) for s in self.sessions.values()
                if s["user_id"] == user_id and not s["is_active"] and s["end_time"] is not None
            ]
        completed.sort(key=lambda s: s.end_time, reverse=True)
        return completed[:limit]

    def count_active_sessions(self) -> int:
        with self._lock:
            return sum(1 for s in self.sessions.values() if s["is_active"])

    # settlements

    def create_settlement(self, record: SettlementRecord) -> SettlementRecord:
        with self._lock:
            self.settlements[record.id] = record.model_dump()
        return record

    def update_settlement(self, record_id: UUID, patch: dict[str, Any]) -> SettlementRecord:
        with self._lock:
            data = self.settlements.get(record_id)
            if not data:
                raise KeyError(f"Settlement {record_id} not found")
            data.update(patch)
            data["updated_at"] = utcnow()
            return SettlementRecord(**data)

    def get_settlement(self, record_id: UUID) -> Optional[SettlementRecord]:
        data = self.settlements.get(record_id)
        return SettlementRecord(**data) if data else None

    def find_settlement_by_reference(self, reference: str) -> Optional[SettlementRecord]:
        with self._lock:
            for data in self.settlements.values():
                if data["external_reference"] == reference:
                    return SettlementRecord(**data)
        return None

    def list_settlements(self, user_id: UUID, limit: int = 50, offset: int = 0) -> list[SettlementRecord]:
        with self._lock:
            records = [
                SettlementRecord(**r) for r in self.settlements.values()
                if r["user_id"] == user_id
            ]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[offset:offset + limit]

    def count_settlements(self, user_id: UUID) -> int:
        with self._lock:
            return sum(1 for r in self.settlements.values() if r["user_id"] == user_id)

    def list_settlements_by_status(self, status: SettlementStatus) -> list[SettlementRecord]:
        with self._lock:
            records = [
                SettlementRecord(**r) for r in self.settlements.values()
                if r["status"] == status
            ]
        records.sort(key=lambda r: r.created_at)
        return records

    def sum_settled_for_user(self, user_id: UUID) -> Decimal:
        with self._lock:
            return sum(
                (r["amount"] for r in self.settlements.values()
                 if r["user_id"] == user_id and r["status"] != SettlementStatus.FAILED),
                Decimal("0"),
            )

    # wallets and network stats

    def get_wallet(self, user_id: UUID) -> Optional[Wallet]:
        data = self.wallets.get(user_id)
        return Wallet(**data) if data else None

    def update_wallet(self, user_id: UUID, asset_code: str, balance: Decimal) -> Wallet:
        data = {
            "user_id": user_id, "asset_code": asset_code,
            "balance": balance, "last_updated": utcnow(),
        }
        with self._lock:
            self.wallets[user_id] = data
        return Wallet(**data)

    def sum_all_wallet_balances(self) -> Decimal:
        with self._lock:
            return sum((w["balance"] for w in self.wallets.values()), Decimal("0"))

    def get_network_stats(self) -> Optional[NetworkStats]:
        return NetworkStats(**self.network_stats) if self.network_stats else None

    def update_network_stats(self, stats: NetworkStats) -> NetworkStats:
        with self._lock:
            self.network_stats = stats.model_dump()
        return stats
