from datetime import timedelta

import pytest
from pydantic import ValidationError

from welfare_ledger.config import LedgerSettings, load_settings


def test_defaults():
    settings = load_settings({})

    assert settings == LedgerSettings()
    assert settings.reversal_window == timedelta(hours=24)
    assert settings.inactivity_months == 6
    assert settings.neighbor_radius == 3
    assert settings.sweep_scheduler_enabled is False


def test_reads_environment():
    settings = load_settings({
        "LEDGER_REVERSAL_WINDOW_HOURS": "48",
        "LEDGER_INACTIVITY_MONTHS": "3",
        "LEDGER_NEIGHBOR_RADIUS": "5",
        "LEDGER_SWEEP_SCHEDULER": "true",
        "LEDGER_SWEEP_INTERVAL_HOURS": "0.5",
        "LOG_LEVEL": "debug",
    })

    assert settings.reversal_window == timedelta(hours=48)
    assert settings.inactivity_months == 3
    assert settings.neighbor_radius == 5
    assert settings.sweep_scheduler_enabled is True
    assert settings.sweep_interval_seconds == 1800.0
    assert settings.log_level == "debug"


def test_blank_values_keep_defaults():
    assert load_settings({"LEDGER_INACTIVITY_MONTHS": "  "}).inactivity_months == 6


@pytest.mark.parametrize("env_var, value", [
    ("LEDGER_REVERSAL_WINDOW_HOURS", "0"),
    ("LEDGER_INACTIVITY_MONTHS", "0"),
    ("LEDGER_NEIGHBOR_RADIUS", "-1"),
    ("LEDGER_MAX_RETRIES", "many"),
])
def test_rejects_invalid_values(env_var, value):
    with pytest.raises(ValidationError):
        load_settings({env_var: value})
