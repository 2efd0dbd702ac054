"""
PerpX Exceptions

Custom exception classes for the PerpX protocol.

Every failure is scoped to the single operation that raised it and leaves
ledger state unchanged. Validation and oracle errors also derive from
ValueError so callers written against plain ValueError keep working.
"""


class PerpXException(Exception):
    """Base exception for PerpX."""
    pass


class ConfigurationError(PerpXException):
    """Configuration error."""
    pass


# -- Validation (caller-fixable) ------------------------------------------

class ValidationError(PerpXException, ValueError):
    """Request is invalid against the current ledger state."""
    pass


class InvalidAmountError(ValidationError):
    """Amount must be positive."""
    pass


class UnknownMarketError(ValidationError):
    """No market (or price feed) registered for the symbol."""
    pass


class MarketExistsError(ValidationError):
    """Market already registered."""
    pass


class MarketInactiveError(ValidationError):
    """Market is not accepting new positions."""
    pass


class InvalidLeverageError(ValidationError):
    """Leverage outside [1, max_leverage]."""
    pass


class InsufficientBalanceError(ValidationError):
    """Free balance does not cover the request."""
    pass


class BalanceCapExceededError(ValidationError):
    """Deposit would push the user's balance over the per-user cap."""
    pass


class ExposureCapExceededError(ValidationError):
    """Position would push the user's open notional over the exposure cap."""
    pass


class PositionExistsError(ValidationError):
    """An open position already exists for (user, symbol)."""
    pass


class PositionNotFoundError(ValidationError):
    """No open position for (user, symbol)."""
    pass


class OpenPositionsError(ValidationError):
    """Withdrawal blocked while positions are open."""
    pass


class NotLiquidatableError(PerpXException):
    """Position is currently healthy; may become eligible later."""
    pass


# -- Oracle ----------------------------------------------------------------

class OracleError(PerpXException, ValueError):
    """Price could not be obtained."""
    pass


class InvalidQuoteError(OracleError):
    """Source returned a non-positive price or a zero timestamp."""
    pass


class StalePriceError(OracleError):
    """Price is older than the configured maximum age."""
    pass


class InvalidPriceError(OracleError):
    """Non-positive price handed to a risk computation."""
    pass


# -- Authorization ---------------------------------------------------------

class AuthorizationError(PerpXException):
    """Caller is not allowed to invoke a restricted entry point."""
    pass


# -- Scheduling / randomness -----------------------------------------------

class SchedulerError(PerpXException):
    """Automation error."""
    pass


class UpkeepNotNeededError(SchedulerError):
    """Trigger called again before its window elapsed."""
    pass


class UnknownRequestError(SchedulerError):
    """Randomness fulfilment for an unknown or already-fulfilled request."""
    pass


# -- Bridge ----------------------------------------------------------------

class BridgeError(PerpXException):
    """Cross-chain settlement error."""
    pass


class BridgeNotConfiguredError(BridgeError):
    """Destination has no pool manager / ledger configured."""
    pass


class UnsupportedAssetError(BridgeError):
    """Message carries an asset the destination does not accept."""
    pass


class UnauthorizedSourceError(BridgeError):
    """Message from a chain or sender that is not allow-listed."""
    pass


class AssetNotDeliveredError(BridgeError):
    """Strict settlement received a message without its asset."""
    pass


class InsufficientFeeBalanceError(BridgeError):
    """Origin cannot pay the transport fee."""
    pass
