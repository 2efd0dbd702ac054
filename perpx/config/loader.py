"""
PerpX TOML Configuration Loader

Loads every section of config.toml with environment variable overrides.
Dataclass per section, each with from_dict / apply_env; the top-level
PerpXConfig adds from_file, validate and to_dict.

Environment variable mapping:
    [ledger] max_balance        → PERPX_MAX_BALANCE
    [ledger] max_exposure       → PERPX_MAX_EXPOSURE
    [ledger] max_price_age      → PERPX_MAX_PRICE_AGE
    [automation] interval_seconds → PERPX_LIQUIDATION_INTERVAL
    [bridge] optimistic         → PERPX_BRIDGE_OPTIMISTIC
    [logging] level             → PERPX_LOG_LEVEL

USD amounts are written in whole dollars ("100", 12.5) and held as
6-decimal integer units once loaded.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from decimal import InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import tomllib as tomli  # Python 3.11+
except ImportError:
    import tomli  # type: ignore[no-redef]

from ..constants import (
    BRIDGE_FEE_TOKEN,
    DEFAULT_MAINTENANCE_MARGIN_BPS,
    DEFAULT_MARKETS,
    DEFAULT_MAX_BALANCE,
    DEFAULT_MAX_EXPOSURE,
    DEFAULT_MAX_LEVERAGE,
    LIQUIDATION_EVENT_COOLDOWN,
    LIQUIDATION_INTERVAL_SECONDS,
    RANDOMNESS_REFRESH_INTERVAL,
    SETTLEMENT_TOKEN,
    USD_DECIMALS,
    BPS_DENOMINATOR,
    from_units,
    to_units,
)
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
CHAINS = ("AVALANCHE_FUJI", "ETHEREUM_SEPOLIA")


def _usd(value: Any, name: str) -> int:
    try:
        return to_units(value)
    except (InvalidOperation, ValueError) as e:
        raise ConfigurationError(f"Invalid USD amount for {name}: {value!r}") from e


def _env_int(name: str) -> Optional[int]:
    v = os.environ.get(name)
    if not v:
        return None
    try:
        return int(v)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {v!r}") from e


# ---------------------------------------------------------------------------
# Section dataclasses, one per [section] of config.example.toml
# ---------------------------------------------------------------------------

@dataclass
class LedgerSectionConfig:
    """[ledger] section. Amounts in 6-decimal units."""
    max_balance: int = DEFAULT_MAX_BALANCE
    max_exposure: int = DEFAULT_MAX_EXPOSURE
    max_price_age: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerSectionConfig":
        return cls(
            max_balance=_usd(data.get("max_balance", from_units(DEFAULT_MAX_BALANCE)), "max_balance"),
            max_exposure=_usd(data.get("max_exposure", from_units(DEFAULT_MAX_EXPOSURE)), "max_exposure"),
            max_price_age=data.get("max_price_age", 0),
        )

    def apply_env(self) -> None:
        """Override from environment variables."""
        if v := os.environ.get("PERPX_MAX_BALANCE"):
            self.max_balance = _usd(v, "PERPX_MAX_BALANCE")
        if v := os.environ.get("PERPX_MAX_EXPOSURE"):
            self.max_exposure = _usd(v, "PERPX_MAX_EXPOSURE")
        if (v := _env_int("PERPX_MAX_PRICE_AGE")) is not None:
            self.max_price_age = v


@dataclass
class MarketConfig:
    """[[markets]] entry."""
    symbol: str
    max_leverage: int = DEFAULT_MAX_LEVERAGE
    maintenance_margin_bps: int = DEFAULT_MAINTENANCE_MARGIN_BPS
    active: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MarketConfig":
        if "symbol" not in data:
            raise ConfigurationError("Market entry missing 'symbol'")
        return cls(
            symbol=data["symbol"],
            max_leverage=data.get("max_leverage", DEFAULT_MAX_LEVERAGE),
            maintenance_margin_bps=data.get("maintenance_margin_bps", DEFAULT_MAINTENANCE_MARGIN_BPS),
            active=data.get("active", True),
        )


def _default_markets() -> List[MarketConfig]:
    return [MarketConfig(symbol=s) for s in DEFAULT_MARKETS]


@dataclass
class AutomationConfig:
    """[automation] section."""
    interval_seconds: int = LIQUIDATION_INTERVAL_SECONDS
    event_cooldown_seconds: int = LIQUIDATION_EVENT_COOLDOWN
    event_trigger: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutomationConfig":
        return cls(
            interval_seconds=data.get("interval_seconds", LIQUIDATION_INTERVAL_SECONDS),
            event_cooldown_seconds=data.get("event_cooldown_seconds", LIQUIDATION_EVENT_COOLDOWN),
            event_trigger=data.get("event_trigger", True),
        )

    def apply_env(self) -> None:
        if (v := _env_int("PERPX_LIQUIDATION_INTERVAL")) is not None:
            self.interval_seconds = v


@dataclass
class RandomizerConfig:
    """[randomizer] section."""
    enabled: bool = True
    refresh_interval_seconds: int = RANDOMNESS_REFRESH_INTERVAL

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RandomizerConfig":
        return cls(
            enabled=data.get("enabled", True),
            refresh_interval_seconds=data.get("refresh_interval_seconds", RANDOMNESS_REFRESH_INTERVAL),
        )


@dataclass
class BridgeSectionConfig:
    """[bridge] section."""
    enabled: bool = True
    optimistic: bool = True
    chain: str = "AVALANCHE_FUJI"
    settlement_token: str = SETTLEMENT_TOKEN
    settlement_token_address: str = "0x5425890298aed601595a70ab815c96711a31bc65"
    settlement_decimals: int = USD_DECIMALS
    fee_token: str = BRIDGE_FEE_TOKEN

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BridgeSectionConfig":
        defaults = cls()
        return cls(
            enabled=data.get("enabled", True),
            optimistic=data.get("optimistic", True),
            chain=data.get("chain", defaults.chain),
            settlement_token=data.get("settlement_token", SETTLEMENT_TOKEN),
            settlement_token_address=data.get("settlement_token_address", defaults.settlement_token_address),
            settlement_decimals=data.get("settlement_decimals", USD_DECIMALS),
            fee_token=data.get("fee_token", BRIDGE_FEE_TOKEN),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("PERPX_BRIDGE_OPTIMISTIC"):
            self.optimistic = v.lower() in ("1", "true", "yes")


@dataclass
class LoggingSectionConfig:
    """[logging] section."""
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LoggingSectionConfig":
        return cls(level=str(data.get("level", "INFO")).upper())

    def apply_env(self) -> None:
        if v := os.environ.get("PERPX_LOG_LEVEL"):
            self.level = v.upper()


# -----------------------------------------------------------------------
# Top-level config
# -----------------------------------------------------------------------

@dataclass
class PerpXConfig:
    """
    Unified protocol configuration.

    Loads every section of config.toml and applies environment variable
    overrides. build_protocol() consumes it.
    """
    ledger: LedgerSectionConfig = field(default_factory=LedgerSectionConfig)
    markets: List[MarketConfig] = field(default_factory=_default_markets)
    automation: AutomationConfig = field(default_factory=AutomationConfig)
    randomizer: RandomizerConfig = field(default_factory=RandomizerConfig)
    bridge: BridgeSectionConfig = field(default_factory=BridgeSectionConfig)
    logging: LoggingSectionConfig = field(default_factory=LoggingSectionConfig)

    # --- factories --------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PerpXConfig":
        """Create PerpXConfig from a parsed TOML dict."""
        markets_data = data.get("markets")
        return cls(
            ledger=LedgerSectionConfig.from_dict(data.get("ledger", {})),
            markets=(
                [MarketConfig.from_dict(m) for m in markets_data]
                if markets_data is not None else _default_markets()
            ),
            automation=AutomationConfig.from_dict(data.get("automation", {})),
            randomizer=RandomizerConfig.from_dict(data.get("randomizer", {})),
            bridge=BridgeSectionConfig.from_dict(data.get("bridge", {})),
            logging=LoggingSectionConfig.from_dict(data.get("logging", {})),
        )

    @classmethod
    def from_file(cls, config_path: str) -> "PerpXConfig":
        """
        Load configuration from a TOML file.

        A missing file yields the defaults (with env overrides).
        """
        path = Path(config_path)
        if not path.exists():
            logger.warning("Config file not found: %s, using defaults", config_path)
            cfg = cls()
            cfg.apply_env()
            return cfg

        with open(path, "rb") as f:
            try:
                raw = tomli.load(f)
            except tomli.TOMLDecodeError as e:
                raise ConfigurationError(f"Invalid TOML in {config_path}: {e}") from e

        cfg = cls.from_dict(raw)
        cfg.apply_env()
        return cfg

    # --- env overrides ----------------------------------------------------

    def apply_env(self) -> None:
        """Apply environment variable overrides to all sections."""
        self.ledger.apply_env()
        self.automation.apply_env()
        self.bridge.apply_env()
        self.logging.apply_env()

    # --- validation -------------------------------------------------------

    def validate(self) -> bool:
        """
        Validate all configuration sections.

        Raises:
            ConfigurationError: on invalid config
        """
        if self.ledger.max_balance <= 0 or self.ledger.max_exposure <= 0:
            raise ConfigurationError("max_balance and max_exposure must be positive")
        if self.ledger.max_price_age < 0:
            raise ConfigurationError("max_price_age must be >= 0")

        seen = set()
        for market in self.markets:
            if market.symbol in seen:
                raise ConfigurationError(f"Duplicate market: {market.symbol}")
            seen.add(market.symbol)
            if market.max_leverage < 1:
                raise ConfigurationError(f"{market.symbol}: max_leverage must be >= 1")
            if not 0 < market.maintenance_margin_bps < BPS_DENOMINATOR:
                raise ConfigurationError(f"{market.symbol}: maintenance_margin_bps out of range")

        if self.automation.interval_seconds <= 0:
            raise ConfigurationError("interval_seconds must be positive")
        if self.automation.event_cooldown_seconds < 0:
            raise ConfigurationError("event_cooldown_seconds must be >= 0")
        if self.randomizer.refresh_interval_seconds <= 0:
            raise ConfigurationError("refresh_interval_seconds must be positive")
        if self.bridge.chain not in CHAINS:
            raise ConfigurationError(f"Unknown bridge chain: {self.bridge.chain}")
        if self.bridge.settlement_decimals < 0:
            raise ConfigurationError("settlement_decimals must be >= 0")
        if self.logging.level not in LOG_LEVELS:
            raise ConfigurationError(f"Invalid log level: {self.logging.level}")
        return True

    # --- serialisation ----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (for diagnostics, NOT for re-creating TOML)."""
        return {
            "ledger": {
                "max_balance": str(from_units(self.ledger.max_balance)),
                "max_exposure": str(from_units(self.ledger.max_exposure)),
                "max_price_age": self.ledger.max_price_age,
            },
            "markets": [
                {
                    "symbol": m.symbol,
                    "max_leverage": m.max_leverage,
                    "maintenance_margin_bps": m.maintenance_margin_bps,
                    "active": m.active,
                }
                for m in self.markets
            ],
            "automation": {
                "interval_seconds": self.automation.interval_seconds,
                "event_cooldown_seconds": self.automation.event_cooldown_seconds,
                "event_trigger": self.automation.event_trigger,
            },
            "randomizer": {
                "enabled": self.randomizer.enabled,
                "refresh_interval_seconds": self.randomizer.refresh_interval_seconds,
            },
            "bridge": {
                "enabled": self.bridge.enabled,
                "optimistic": self.bridge.optimistic,
                "chain": self.bridge.chain,
                "settlement_token": self.bridge.settlement_token,
                "settlement_decimals": self.bridge.settlement_decimals,
                "fee_token": self.bridge.fee_token,
            },
            "logging": {
                "level": self.logging.level,
            },
        }


# -----------------------------------------------------------------------
# Convenience function
# -----------------------------------------------------------------------

def load_config(path: Optional[str] = None) -> PerpXConfig:
    """
    Load protocol configuration.

    Resolution order:
        1. Explicit *path* argument
        2. PERPX_CONFIG env var
        3. ./config.toml in current directory
        4. Defaults (with env overrides)
    """
    if path is None:
        path = os.environ.get("PERPX_CONFIG", "config.toml")

    return PerpXConfig.from_file(path)
