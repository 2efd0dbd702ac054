"""
PerpX Protocol Constants

This module consolidates the protocol constants and the environment
configuration used throughout the codebase. Constants are organized by
category for easy reference and maintenance.
"""
import ast
from decimal import Decimal, ROUND_DOWN
from dotenv import dotenv_values

# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================
# Load environment variables once at module import
_config = dotenv_values(".env")

LOGGER_DEFAULTS = {
    'LOG_LEVEL':                       'INFO',
    'LOG_FORMAT':                      '%(asctime)s - %(levelname)s - %(name)s - %(message)s',
    'LOG_DATE_FORMAT':                 '%Y-%m-%dT%H:%M:%S',
    'LOG_CONSOLE_HIGHLIGHTING':        'True',
    'LOG_FILE_OUTPUT':                 'False',
}

LOG_MAX_FILE_SIZE = 10 * 1024 * 1024 # 10MB
LOG_BACKUP_COUNT = 5


# ==================================================================================
# FIXED-POINT UNITS
# ==================================================================================
USD_DECIMALS = 6              # balances, collateral, sizes, fees, P&L
PRICE_DECIMALS = 8            # oracle prices
USD_UNIT = 10 ** USD_DECIMALS
PRICE_UNIT = 10 ** PRICE_DECIMALS
BPS_DENOMINATOR = 10_000
PCT_DENOMINATOR = 100


# ==================================================================================
# FEE POLICY
# ==================================================================================
OPENING_FEE_BPS = 100               # 1 % of collateral
CLOSING_FEE_BPS = 100               # 1 % of collateral
HOLDING_FEE_BPS_PER_PERIOD = 100    # 1 % of collateral per period
HOLDING_FEE_PERIOD = 86_400         # one day
PROFIT_TAX_PCT = 30                 # 30 % of realized profit


# ==================================================================================
# LEDGER LIMITS (testnet safety caps, overridable through config)
# ==================================================================================
DEFAULT_MAX_BALANCE = 100 * USD_UNIT     # $100 free balance per user
DEFAULT_MAX_EXPOSURE = 300 * USD_UNIT    # $300 aggregate open notional per user
DEFAULT_MAX_LEVERAGE = 3
DEFAULT_MAINTENANCE_MARGIN_BPS = 500     # 5 %
DEFAULT_MARKETS = ("BTC/USD", "ETH/USD")


# ==================================================================================
# AUTOMATION
# ==================================================================================
LIQUIDATION_INTERVAL_SECONDS = 6 * 3600  # time-based sweep
LIQUIDATION_EVENT_COOLDOWN = 60          # log-based sweep, at most once a minute
RANDOMNESS_REFRESH_INTERVAL = 3600


# ==================================================================================
# BRIDGE
# ==================================================================================
SETTLEMENT_TOKEN = "USDC"
BRIDGE_FEE_TOKEN = "LINK"
NATIVE_PRICE_SYMBOL = "AVAX/USD"
NATIVE_DECIMALS = 18
BRIDGE_BASE_FEE = 10 ** 16               # 0.01 LINK
BRIDGE_FEE_PER_BYTE = 10 ** 13


# ==================================================================================
# UNIT HELPERS
# ==================================================================================
def div_trunc(numerator: int, denominator: int) -> int:
    """Integer division truncating toward zero, like fixed-point EVM math."""
    if denominator == 0:
        raise ZeroDivisionError("division by zero")
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator >= 0) == (denominator > 0) else -quotient


def to_units(value, decimals: int = USD_DECIMALS) -> int:
    """Convert a human amount ("12.5", Decimal, int) to scaled integer units."""
    scaled = Decimal(str(value)) * (Decimal(10) ** decimals)
    return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def from_units(value: int, decimals: int = USD_DECIMALS) -> Decimal:
    """Convert scaled integer units back to a Decimal for display."""
    return Decimal(value) / (Decimal(10) ** decimals)


# ==================================================================================
# CONFIGURATION WRAPPERS
# ==================================================================================
class ConfigString(str):
    """
    String subclass that stores a default value.
    """
    def __new__(cls, value, default):
        obj = str.__new__(cls, value)
        obj._default = default
        return obj

    def default(self):
        return self._default

class ConfigBool(int):
    """
    Int subclass acting as a boolean that stores a default value.
    """
    def __new__(cls, value, default):
        obj = int.__new__(cls, bool(value))
        obj._default = default
        return obj

    def default(self):
        return self._default

    def __repr__(self):
        return str(bool(self))

    def __str__(self):
        return str(bool(self))

    def __eq__(self, other):
        return bool(self) == other

    __hash__ = int.__hash__


# ==================================================================================
# DYNAMIC CONFIGURATION LOADING
# ==================================================================================
DEFAULTS = LOGGER_DEFAULTS
namespace = globals()

def parse_bool(v):
    """
    Convert "True"/"False" (any casing, with surrounding whitespace) into bool.
    Avoids exceptions by only calling ast.literal_eval for known literals.
    """
    if not isinstance(v, str):
        return v
    s = v.strip()
    if not s:
        return v
    if s.casefold() in {"true", "false"}:
        return ast.literal_eval(s.title())
    return v

for key, default_raw in DEFAULTS.items():
    # dotenv_values returns strings or None. None is treated as missing.
    raw = _config.get(key)
    value_raw = default_raw if raw is None else raw

    value = parse_bool(value_raw)
    default_val = parse_bool(default_raw)

    if isinstance(value, bool):
        namespace[key] = ConfigBool(value, default_val)
    else:
        namespace[key] = ConfigString(value_raw, default_val)
