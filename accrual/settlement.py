"""
Settlement of accrued amounts on the external ledger.

Each settlement is recorded locally before anything is submitted, then:

1. the recipient account is provisioned (created together with its asset
   authorization when the network accepts multi-operation submissions,
   otherwise step by step with a propagation wait in between),
2. a missing authorization on an existing account is added,
3. a claimable unit addressed to the recipient is created,
4. the unit's id is recovered from the submission: embedded effects first,
   then the encoded result payload, then the transaction's effect history.

A record whose unit id could not be recovered stays pending with its
transaction reference so the reconciler can look it up later. Provisioning
or submission failures mark the record failed and raise
SettlementUnavailable; the amount stays reserved for a retry.
"""

import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional
from uuid import UUID, uuid4

from .config import Settings
from .errors import SettlementUnavailable, UserNotFound
from .gateway import (
    CLAIM_CREATED_EFFECTS,
    Asset,
    LedgerError,
    LedgerGateway,
    Submission,
    decode_result_payload,
)
from .levels import LevelProgression
from .log import get_logger
from .models import (
    ClaimableUnit,
    RedeemResponse,
    SettlementKind,
    SettlementRecord,
    SettlementStatus,
    User,
    Wallet,
    quantize_amount,
    utcnow,
)
from .storage import Storage

logger = get_logger(__name__)


def reference_from_effects(effects: list[dict[str, Any]]) -> Optional[str]:
    for effect in effects or []:
        if effect.get("type") in CLAIM_CREATED_EFFECTS and effect.get("balance_id"):
            return effect["balance_id"]
    return None


def reference_from_payload(payload: Optional[str]) -> Optional[str]:
    if not payload:
        return None
    try:
        meta = decode_result_payload(payload)
        for operation in meta.get("operations", []):
            for change in operation.get("changes", []):
                entry = change.get("entry") or {}
                if change.get("change") == "created" and entry.get("type") == "claimable_balance":
                    return entry.get("balance_id")
    except (ValueError, TypeError, AttributeError) as e:
        logger.debug("result_payload_unreadable", error=str(e))
    return None


class SettlementClient:
    def __init__(
        self,
        storage: Storage,
        gateway: LedgerGateway,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.gateway = gateway
        self.settings = settings or Settings()
        self.asset = Asset(self.settings.asset_code, self.settings.asset_issuer)
        self.sleep = sleep
        self.clock = clock

    def settle(
        self,
        user_id: UUID,
        amount: Decimal,
        session_id: Optional[UUID] = None,
        kind: SettlementKind = SettlementKind.SESSION_CLOSE,
    ) -> SettlementRecord:
        amount = quantize_amount(amount)
        if amount <= 0:
            raise ValueError(f"settlement amount must be positive, got {amount}")
        user = self._require_user(user_id)

        now = self.clock()
        record = self.storage.create_settlement(SettlementRecord(
            id=uuid4(),
            user_id=user_id,
            session_id=session_id,
            kind=kind,
            amount=amount,
            asset_code=self.asset.code,
            recipient=user.address,
            status=SettlementStatus.PENDING,
            created_at=now,
            updated_at=now,
        ))
        return self._submit(record, user)

    def retry(self, record: SettlementRecord) -> SettlementRecord:
        if not record.needs_retry:
            return record
        user = self._require_user(record.user_id)
        logger.info("settlement_retry", record_id=str(record.id), attempt=record.attempts + 1)
        return self._submit(record, user)

    def resolve_pending(self, record: SettlementRecord) -> SettlementRecord:
        if not record.needs_reference:
            return record
        reference = self._reference_from_history(record.tx_ref, wait=False)
        if not reference:
            return record
        logger.info("settlement_reference_resolved", record_id=str(record.id), reference=reference)
        return self.storage.update_settlement(record.id, {
            "external_reference": reference,
            "status": SettlementStatus.COMPLETED,
        })

    def _require_user(self, user_id: UUID) -> User:
        user = self.storage.get_user(user_id)
        if not user:
            raise UserNotFound(user_id)
        return user

    def _submit(self, record: SettlementRecord, user: User) -> SettlementRecord:
        attempts = record.attempts + 1
        try:
            if not user.address:
                raise LedgerError("user has no ledger account address")
            self._provision(user.address)
            submission = self.gateway.create_claimable_unit(user.address, self.asset, record.amount)
            if not submission.successful:
                raise LedgerError(f"transaction {submission.tx_ref} was not successful")
        except Exception as e:
            # No unit was created; the record stays owed and retryable.
            self.storage.update_settlement(record.id, {
                "status": SettlementStatus.FAILED,
                "attempts": attempts,
                "last_error": str(e),
            })
            logger.warning(
                "settlement_failed",
                record_id=str(record.id),
                user_id=str(record.user_id),
                amount=str(record.amount),
                attempt=attempts,
                error=str(e),
            )
            raise SettlementUnavailable(f"Settlement of {record.amount} failed: {e}", record.id) from e

        try:
            reference = self.recover_reference(submission)
        except Exception as e:
            logger.warning("settlement_reference_lookup_failed", record_id=str(record.id), error=repr(e))
            reference = None
        updated = self.storage.update_settlement(record.id, {
            "status": SettlementStatus.COMPLETED if reference else SettlementStatus.PENDING,
            "tx_ref": submission.tx_ref,
            "external_reference": reference,
            "recipient": user.address,
            "attempts": attempts,
            "last_error": None,
        })
        if reference:
            logger.info(
                "settlement_completed",
                record_id=str(record.id),
                user_id=str(record.user_id),
                amount=str(record.amount),
                tx_ref=submission.tx_ref,
                reference=reference,
            )
        else:
            logger.warning(
                "ambiguous_settlement_reference",
                record_id=str(record.id),
                user_id=str(record.user_id),
                amount=str(record.amount),
                tx_ref=submission.tx_ref,
            )
        return updated

    def _wait_for_propagation(self) -> None:
        if self.settings.propagation_delay_sec > 0:
            self.sleep(self.settings.propagation_delay_sec)

    def _provision(self, address: str) -> None:
        if not self.gateway.account_exists(address):
            if self.gateway.supports_atomic_provisioning:
                tx_ref = self.gateway.create_account_with_authorization(
                    address, self.asset, self.settings.account_reserve
                )
                self._wait_for_propagation()
            else:
                tx_ref = self.gateway.create_account(address, self.settings.account_reserve)
                self._wait_for_propagation()
                self.gateway.create_authorization(address, self.asset)
                self._wait_for_propagation()
            logger.info("ledger_account_created", address=address, tx_ref=tx_ref)
            return

        if not self.gateway.has_authorization(address, self.asset):
            tx_ref = self.gateway.create_authorization(address, self.asset)
            self._wait_for_propagation()
            logger.info("ledger_authorization_created", address=address, tx_ref=tx_ref)

    def recover_reference(self, submission: Submission) -> Optional[str]:
        reference = reference_from_effects(submission.effects)
        if reference:
            return reference
        reference = reference_from_payload(submission.result_payload)
        if reference:
            return reference
        if submission.successful and submission.tx_ref:
            return self._reference_from_history(submission.tx_ref, wait=True)
        return None

    def _reference_from_history(self, tx_ref: Optional[str], wait: bool) -> Optional[str]:
        if not tx_ref:
            return None
        if wait and self.settings.reference_lookup_delay_sec > 0:
            self.sleep(self.settings.reference_lookup_delay_sec)
        try:
            effects = self.gateway.query_effects_by_transaction(tx_ref)
        except LedgerError as e:
            logger.debug("effects_lookup_failed", tx_ref=tx_ref, error=str(e))
            return None
        return reference_from_effects(effects)

    # Recipient-side operations

    def list_claimable(self, user_id: UUID) -> list[ClaimableUnit]:
        user = self._require_user(user_id)
        if not user.address:
            return []
        try:
            return self.gateway.list_claimable_units(user.address, self.asset)
        except LedgerError as e:
            raise SettlementUnavailable(f"Could not list claimable units: {e}") from e

    def redeem_claimable(self, user_id: UUID) -> RedeemResponse:
        user = self._require_user(user_id)
        units = self.list_claimable(user_id)
        redeemed: list[str] = []
        for unit in units:
            try:
                self.gateway.claim_claimable_unit(user.address, unit.id)
            except LedgerError as e:
                logger.warning("claimable_redeem_failed", user_id=str(user_id), unit_id=unit.id, error=str(e))
                continue
            redeemed.append(unit.id)
            record = self.storage.find_settlement_by_reference(unit.id)
            if record:
                self.storage.update_settlement(record.id, {
                    "status": SettlementStatus.COMPLETED,
                    "redeemed_at": self.clock(),
                })
        logger.info("claimable_redeemed", user_id=str(user_id), count=len(redeemed))
        wallet = self.refresh_wallet(user_id) if redeemed else self.storage.get_wallet(user_id)
        return RedeemResponse(user_id=user_id, redeemed=redeemed, wallet=wallet)

    def refresh_wallet(self, user_id: UUID) -> Wallet:
        user = self._require_user(user_id)
        if not user.address:
            return self.storage.update_wallet(user_id, self.asset.code, Decimal("0"))
        try:
            balance = self.gateway.get_balance(user.address, self.asset)
        except LedgerError as e:
            raise SettlementUnavailable(f"Could not load balance: {e}") from e
        return self.storage.update_wallet(user_id, self.asset.code, balance)


def settle_reserved(
    client: SettlementClient,
    levels: LevelProgression,
    user_id: UUID,
    amount: Decimal,
    session_id: Optional[UUID],
    kind: SettlementKind,
) -> Optional[SettlementRecord]:
    """Settle an amount that is already reserved in the session's bookkeeping.

    SettlementUnavailable is logged and swallowed; the reservation stays and the
    failed record is returned for the reconciler to retry. On success the
    user's level is re-evaluated against everything settled so far.
    """
    try:
        record = client.settle(user_id, amount, session_id=session_id, kind=kind)
    except SettlementUnavailable as e:
        logger.warning(
            "settlement_deferred",
            user_id=str(user_id),
            session_id=str(session_id) if session_id else None,
            amount=str(amount),
            error=str(e),
        )
        return client.storage.get_settlement(e.record_id) if e.record_id else None
    levels.on_settlement(user_id, client.storage.sum_settled_for_user(user_id))
    return record
