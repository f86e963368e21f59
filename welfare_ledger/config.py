"""Runtime settings for the ledger, read from environment variables."""

import os
from datetime import timedelta
from typing import Mapping, Optional

from pydantic import BaseModel, Field


ENV_VARS = {
    "reversal_window_hours": "LEDGER_REVERSAL_WINDOW_HOURS",
    "inactivity_months": "LEDGER_INACTIVITY_MONTHS",
    "neighbor_radius": "LEDGER_NEIGHBOR_RADIUS",
    "lock_timeout_seconds": "LEDGER_LOCK_TIMEOUT_SECONDS",
    "max_retries": "LEDGER_MAX_RETRIES",
    "retry_backoff_seconds": "LEDGER_RETRY_BACKOFF_SECONDS",
    "sweep_interval_hours": "LEDGER_SWEEP_INTERVAL_HOURS",
    "sweep_scheduler_enabled": "LEDGER_SWEEP_SCHEDULER",
    "log_level": "LOG_LEVEL",
}


class LedgerSettings(BaseModel):
    reversal_window_hours: float = Field(default=24, gt=0)
    inactivity_months: int = Field(default=6, ge=1)
    neighbor_radius: int = Field(default=3, ge=0)
    lock_timeout_seconds: float = Field(default=5.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    retry_backoff_seconds: float = Field(default=0.05, ge=0)
    sweep_interval_hours: float = Field(default=24, gt=0)
    sweep_scheduler_enabled: bool = False
    log_level: str = "INFO"

    @property
    def reversal_window(self) -> timedelta:
        return timedelta(hours=self.reversal_window_hours)

    @property
    def sweep_interval_seconds(self) -> float:
        return self.sweep_interval_hours * 3600.0


def load_settings(environ: Optional[Mapping[str, str]] = None) -> LedgerSettings:
    """Build settings from the environment; unset variables keep their defaults.

    Raises pydantic.ValidationError if a value is malformed or out of range.
    """
    if environ is None:
        environ = os.environ

    values = {}
    for field_name, env_var in ENV_VARS.items():
        raw = environ.get(env_var)
        if raw is not None and raw.strip() != "":
            values[field_name] = raw.strip()

    return LedgerSettings(**values)
