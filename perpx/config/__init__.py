"""
PerpX Configuration

Loads all sections of config.toml at startup.
Environment variables override TOML values.
"""

from .loader import (
    AutomationConfig,
    BridgeSectionConfig,
    LedgerSectionConfig,
    LoggingSectionConfig,
    MarketConfig,
    PerpXConfig,
    RandomizerConfig,
    load_config,
)

__all__ = [
    "AutomationConfig",
    "BridgeSectionConfig",
    "LedgerSectionConfig",
    "LoggingSectionConfig",
    "MarketConfig",
    "PerpXConfig",
    "RandomizerConfig",
    "load_config",
]
