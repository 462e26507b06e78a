from decimal import Decimal
from uuid import UUID

from structlog.testing import capture_logs


REFERRED_ID = UUID("660e8400-e29b-41d4-a716-446655440001")


def events(logs, name):
    return [entry for entry in logs if entry["event"] == name]


class TestLogEvents:
    """Tests for structured log events emitted by the engine."""

    def test_session_lifecycle_logged(self, engine, clock):
        with capture_logs() as logs:
            engine.sessions.start(REFERRED_ID)
            clock.advance(hours=1)
            engine.sessions.stop(REFERRED_ID)

        started = events(logs, "session_started")
        assert started[0]["user_id"] == str(REFERRED_ID)
        assert started[0]["log_level"] == "info"
        assert events(logs, "session_stopped")[0]["owed"] == "0.10000000"
        assert events(logs, "settlement_completed")

    def test_ambiguous_reference_warning(self, engine, ledger):
        ledger.omit_effects = True
        ledger.omit_payload = True
        ledger.omit_history = True

        with capture_logs() as logs:
            engine.settlement.settle(REFERRED_ID, Decimal("1"))

        warning = events(logs, "ambiguous_settlement_reference")[0]
        assert warning["log_level"] == "warning"
        assert warning["tx_ref"]

    def test_deferred_settlement_logged(self, engine, ledger, clock):
        engine.sessions.start(REFERRED_ID)
        clock.advance(hours=1)
        ledger.fail("create_claimable_unit")

        with capture_logs() as logs:
            engine.sessions.stop(REFERRED_ID)

        assert events(logs, "settlement_failed")[0]["attempt"] == 1
        assert events(logs, "settlement_deferred")

    def test_level_up_logged(self, engine, storage):
        with capture_logs() as logs:
            engine.levels.on_settlement(REFERRED_ID, Decimal("10"))

        assert events(logs, "level_up")[0]["level"] == 2
