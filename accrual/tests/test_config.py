from decimal import Decimal

from accrual.config import Settings


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("ACCRUAL_ASSET_CODE", "LEDGER_URL", "PROPAGATION_DELAY_SEC", "RECONCILE_MAX_ATTEMPTS"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings.from_env()

        assert settings.asset_code == "DOPE"
        assert settings.ledger_url is None
        assert settings.propagation_delay_sec == 2.0
        assert settings.reconcile_max_attempts == 5

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("ACCRUAL_ASSET_CODE", "PULSE")
        monkeypatch.setenv("ACCRUAL_ACCOUNT_RESERVE", "2.5")
        monkeypatch.setenv("LEDGER_URL", "https://ledger.example")
        monkeypatch.setenv("STATS_INTERVAL_SEC", "30")

        settings = Settings.from_env()

        assert settings.asset_code == "PULSE"
        assert settings.account_reserve == Decimal("2.5")
        assert settings.ledger_url == "https://ledger.example"
        assert settings.stats_interval_sec == 30.0
