"""Configuration package."""

from ledger_recon.config.settings import (
    EngineSettings,
    LedgerServiceSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "EngineSettings",
    "LedgerServiceSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
