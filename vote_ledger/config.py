import os
from datetime import timedelta
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

ENV_PREFIX = "VOTE_LEDGER_"


class LedgerSettings(BaseModel):
    daily_vote_cap: int = Field(default=3, ge=1)
    weekly_vendor_cap: int = Field(default=20, ge=1)
    weekly_window_days: int = Field(default=7, ge=1)
    attestation_window_hours: int = Field(default=24, ge=0)

    regular_vote_reward: int = Field(default=10, ge=0)
    verified_vote_reward: int = Field(default=30, ge=0)
    streak_bonus_per_day: int = Field(default=1, ge=0)
    max_streak_bonus: int = Field(default=10, ge=0)
    territory_bonus: int = Field(default=5, ge=0)
    weekly_token_cap: Optional[int] = Field(default=None, ge=0)

    max_settlement_attempts: int = Field(default=3, ge=1)
    settlement_timeout_seconds: float = Field(default=30.0, gt=0)
    balance_timeout_seconds: float = Field(default=10.0, gt=0)
    in_flight_timeout_seconds: float = Field(default=300.0, gt=0)
    transaction_retries: int = Field(default=5, ge=1)
    sweep_interval_seconds: Optional[float] = Field(default=None, gt=0)

    database_url: Optional[str] = None
    settlement_gateway_url: Optional[str] = None

    @model_validator(mode="after")
    def check_timeouts(self) -> "LedgerSettings":
        # A live transfer must never outlast the orphan cutoff, or recovery fails it mid-call.
        if self.settlement_timeout_seconds >= self.in_flight_timeout_seconds:
            raise ValueError(
                f"settlement_timeout_seconds ({self.settlement_timeout_seconds}) must be shorter than "
                f"in_flight_timeout_seconds ({self.in_flight_timeout_seconds})"
            )
        return self

    @property
    def weekly_window(self) -> timedelta:
        return timedelta(days=self.weekly_window_days)

    @property
    def attestation_window(self) -> timedelta:
        return timedelta(hours=self.attestation_window_hours)

    @property
    def in_flight_timeout(self) -> timedelta:
        return timedelta(seconds=self.in_flight_timeout_seconds)

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "LedgerSettings":
        """Build settings from VOTE_LEDGER_* variables, loading a .env file first if present."""
        load_dotenv(dotenv_path=dotenv_path, override=False)
        values = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        return cls.model_validate(values)
