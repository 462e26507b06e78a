"""
Unit Tests for ledger settlement

Tests cover:
1. Account provisioning (atomic and step by step)
2. Claimable unit reference recovery from effects, payload and history
3. Failure handling
4. Recipient-side redemption
"""

import pytest
from decimal import Decimal
from uuid import UUID, uuid4

from accrual.config import Settings
from accrual.errors import SettlementUnavailable, UserNotFound
from accrual.gateway import Asset, InMemoryLedger, encode_result_payload
from accrual.models import SettlementStatus
from accrual.settlement import (
    SettlementClient,
    reference_from_effects,
    reference_from_payload,
)


REFERRER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
REFERRED_ID = UUID("660e8400-e29b-41d4-a716-446655440001")
REFERRED_ADDRESS = "GREFERRED4ACCRUAL4DEMO4ACCOUNT4000000000000000000000002"


@pytest.fixture
def client(storage, ledger, settings, clock, sleeps):
    return SettlementClient(storage, ledger, settings, sleep=sleeps, clock=clock)


class TestProvisioning:
    """Tests for creating the recipient's ledger account."""

    def test_atomic_provisioning(self, client, ledger):
        """A missing account is created together with its authorization."""
        client.settle(REFERRED_ID, Decimal("1"))

        assert "create_account_with_authorization" in ledger.calls
        assert "create_account" not in ledger.calls
        assert ledger.has_authorization(REFERRED_ADDRESS, Asset("DOPE", ""))

    def test_sequential_provisioning_waits(self, storage, clock, sleeps):
        """Without atomic submission the account and authorization are separate steps."""
        ledger = InMemoryLedger(atomic=False)
        client = SettlementClient(
            storage, ledger, Settings(propagation_delay_sec=2, reference_lookup_delay_sec=0),
            sleep=sleeps, clock=clock,
        )

        record = client.settle(REFERRED_ID, Decimal("1"))

        assert record.status == SettlementStatus.COMPLETED
        assert ledger.calls.index("create_account") < ledger.calls.index("create_authorization")
        assert sleeps.calls == [2, 2]

    def test_missing_authorization_added(self, client, ledger):
        ledger.add_account(REFERRED_ADDRESS)

        client.settle(REFERRED_ID, Decimal("1"))

        assert "create_authorization" in ledger.calls
        assert "create_account_with_authorization" not in ledger.calls

    def test_existing_account_not_touched(self, client, ledger):
        ledger.add_account(REFERRED_ADDRESS, Asset("DOPE", ""))

        client.settle(REFERRED_ID, Decimal("1"))

        assert ledger.calls == ["account_exists", "has_authorization", "create_claimable_unit"]


class TestReferenceRecovery:
    """Tests for recovering the claimable unit id."""

    def test_reference_from_effects(self, client, ledger):
        record = client.settle(REFERRED_ID, Decimal("1.5"))

        assert record.status == SettlementStatus.COMPLETED
        assert record.external_reference in ledger.claimable_units
        assert record.tx_ref is not None
        assert "query_effects_by_transaction" not in ledger.calls

    def test_reference_from_payload(self, client, ledger):
        ledger.omit_effects = True

        record = client.settle(REFERRED_ID, Decimal("1.5"))

        assert record.status == SettlementStatus.COMPLETED
        assert record.external_reference in ledger.claimable_units
        assert "query_effects_by_transaction" not in ledger.calls

    def test_reference_from_history(self, storage, clock, sleeps):
        """Effects and payload missing, the transaction history still yields the unit id."""
        ledger = InMemoryLedger()
        ledger.omit_effects = True
        ledger.omit_payload = True
        client = SettlementClient(
            storage, ledger, Settings(propagation_delay_sec=0, reference_lookup_delay_sec=1),
            sleep=sleeps, clock=clock,
        )

        record = client.settle(REFERRED_ID, Decimal("1.5"))

        assert record.status == SettlementStatus.COMPLETED
        assert record.external_reference in ledger.claimable_units
        assert "query_effects_by_transaction" in ledger.calls
        assert sleeps.calls == [1]

    def test_unrecoverable_reference_stays_pending(self, client, ledger):
        ledger.omit_effects = True
        ledger.omit_payload = True
        ledger.omit_history = True

        record = client.settle(REFERRED_ID, Decimal("1.5"))

        assert record.status == SettlementStatus.PENDING
        assert record.tx_ref is not None
        assert record.external_reference is None
        assert record.needs_reference

    def test_pending_resolved_later(self, client, ledger):
        ledger.omit_effects = True
        ledger.omit_payload = True
        ledger.omit_history = True
        record = client.settle(REFERRED_ID, Decimal("1.5"))

        ledger.omit_history = False
        resolved = client.resolve_pending(record)

        assert resolved.status == SettlementStatus.COMPLETED
        assert resolved.external_reference in ledger.claimable_units

    def test_effects_parser(self):
        effects = [
            {"type": "account_debited"},
            {"type": "claimable_balance_claimant_created", "balance_id": "00000000abc"},
        ]
        assert reference_from_effects(effects) == "00000000abc"
        assert reference_from_effects([]) is None

    def test_payload_parser(self):
        payload = encode_result_payload([
            {"changes": [{"change": "updated", "entry": {"type": "account"}}]},
            {"changes": [{"change": "created", "entry": {"type": "claimable_balance", "balance_id": "00000000def"}}]},
        ])
        assert reference_from_payload(payload) == "00000000def"

    def test_garbage_payload_ignored(self):
        assert reference_from_payload("not base64!") is None
        assert reference_from_payload(None) is None


class TestSettlementFailures:
    """Tests for settlement failure handling."""

    def test_record_created_before_submission(self, client, ledger, storage):
        """A failed submission still leaves a failed record behind."""
        ledger.fail("create_claimable_unit")

        with pytest.raises(SettlementUnavailable) as exc:
            client.settle(REFERRED_ID, Decimal("2"))

        record = storage.get_settlement(exc.value.record_id)
        assert record.status == SettlementStatus.FAILED
        assert record.attempts == 1
        assert record.amount == Decimal("2.00000000")

    def test_underfunded_platform(self, storage, clock, sleeps, settings):
        ledger = InMemoryLedger(platform_balance=Decimal("1"))
        client = SettlementClient(storage, ledger, settings, sleep=sleeps, clock=clock)

        with pytest.raises(SettlementUnavailable):
            client.settle(REFERRED_ID, Decimal("5"))

        failed = storage.list_settlements_by_status(SettlementStatus.FAILED)
        assert failed[0].last_error == "op_underfunded"

    def test_provisioning_failure(self, client, ledger, storage):
        ledger.fail("create_account_with_authorization")

        with pytest.raises(SettlementUnavailable):
            client.settle(REFERRED_ID, Decimal("1"))

        assert "create_claimable_unit" not in ledger.calls

    def test_retry_failed_record(self, client, ledger, storage):
        ledger.fail("create_claimable_unit")
        with pytest.raises(SettlementUnavailable) as exc:
            client.settle(REFERRED_ID, Decimal("1"))
        ledger.recover()

        record = client.retry(storage.get_settlement(exc.value.record_id))

        assert record.status == SettlementStatus.COMPLETED
        assert record.attempts == 2
        assert record.last_error is None

    def test_non_positive_amount_rejected(self, client):
        with pytest.raises(ValueError):
            client.settle(REFERRED_ID, Decimal("0"))

    def test_unknown_user(self, client):
        with pytest.raises(UserNotFound):
            client.settle(uuid4(), Decimal("1"))


class TestRedemption:
    """Tests for recipient-side redemption of claimable units."""

    def test_list_claimable(self, client):
        client.settle(REFERRED_ID, Decimal("1"))
        client.settle(REFERRED_ID, Decimal("2"))

        units = client.list_claimable(REFERRED_ID)

        assert sorted(u.amount for u in units) == [Decimal("1.00000000"), Decimal("2.00000000")]

    def test_redeem_updates_wallet(self, client, storage):
        record = client.settle(REFERRED_ID, Decimal("3"))

        response = client.redeem_claimable(REFERRED_ID)

        assert response.redeemed == [record.external_reference]
        assert response.wallet.balance == Decimal("3.00000000")
        assert storage.get_settlement(record.id).redeemed_at is not None
        assert client.list_claimable(REFERRED_ID) == []

    def test_redeem_nothing(self, client, storage):
        response = client.redeem_claimable(REFERRER_ID)

        assert response.redeemed == []
        assert response.wallet is None

    def test_wallet_refresh_on_missing_account(self, client):
        wallet = client.refresh_wallet(REFERRER_ID)
        assert wallet.balance == Decimal("0")


class BrokenLedger(InMemoryLedger):
    def create_claimable_unit(self, recipient, asset, amount):
        raise RuntimeError("relay returned garbage")


class TestUnexpectedGatewayErrors:
    """Tests for gateway failures that are not ledger errors."""

    def test_unexpected_error_marks_record_failed(self, storage, settings, clock, sleeps):
        client = SettlementClient(storage, BrokenLedger(), settings, sleep=sleeps, clock=clock)

        with pytest.raises(SettlementUnavailable) as exc:
            client.settle(REFERRED_ID, Decimal("1"))

        record = storage.get_settlement(exc.value.record_id)
        assert record.status == SettlementStatus.FAILED
        assert record.last_error == "relay returned garbage"
        assert record.needs_retry
