"""
PerpX Perpetuals Package

Core imports are lazily loaded so the CLI starts fast.
For direct module access, import from submodules:

    from perpx.exchange import PositionLedger, PriceFeed
    from perpx.protocol import build_protocol
    from perpx.exceptions import NotLiquidatableError
"""

__version__ = "1.0.0"


def __getattr__(name):
    """Lazy module loading."""
    if name == 'build_protocol':
        from .protocol import build_protocol
        return build_protocol
    elif name == 'PositionLedger':
        from .exchange.perpetual import PositionLedger
        return PositionLedger
    elif name == 'load_config':
        from .config import load_config
        return load_config
    raise AttributeError(f"module 'perpx' has no attribute {name!r}")

__all__ = ['build_protocol', 'PositionLedger', 'load_config']
