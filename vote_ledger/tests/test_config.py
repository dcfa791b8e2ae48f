"""
Tests for ledger settings.
"""

import pytest
from pydantic import ValidationError

from vote_ledger.config import LedgerSettings


class TestTimeouts:
    """Tests for settlement timeout ordering."""

    def test_defaults_are_ordered(self):
        settings = LedgerSettings()

        assert settings.settlement_timeout_seconds < settings.in_flight_timeout_seconds

    def test_settlement_timeout_must_be_shorter_than_orphan_cutoff(self):
        with pytest.raises(ValidationError) as exc_info:
            LedgerSettings(settlement_timeout_seconds=300, in_flight_timeout_seconds=300)

        assert "in_flight_timeout_seconds" in str(exc_info.value)

    def test_longer_settlement_timeout_rejected(self):
        with pytest.raises(ValidationError):
            LedgerSettings(settlement_timeout_seconds=600)


class TestFromEnv:
    """Tests for environment loading."""

    def test_reads_prefixed_variables(self, monkeypatch, tmp_path):
        monkeypatch.setenv("VOTE_LEDGER_DAILY_VOTE_CAP", "1")
        monkeypatch.setenv("VOTE_LEDGER_SETTLEMENT_TIMEOUT_SECONDS", "5")

        settings = LedgerSettings.from_env(dotenv_path=str(tmp_path / "missing.env"))

        assert settings.daily_vote_cap == 1
        assert settings.settlement_timeout_seconds == 5.0

    def test_misordered_timeouts_from_env_rejected(self, monkeypatch, tmp_path):
        monkeypatch.setenv("VOTE_LEDGER_SETTLEMENT_TIMEOUT_SECONDS", "120")
        monkeypatch.setenv("VOTE_LEDGER_IN_FLIGHT_TIMEOUT_SECONDS", "60")

        with pytest.raises(ValidationError):
            LedgerSettings.from_env(dotenv_path=str(tmp_path / "missing.env"))
