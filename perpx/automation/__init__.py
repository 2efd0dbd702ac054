"""
PerpX Automation Module

Liquidation triggers and the fairness randomizer.
"""

from .randomizer import FairnessRandomizer, QueuedRandomnessSource, RandomnessSource
from .triggers import (
    EventLiquidationTrigger,
    IntervalLiquidationTrigger,
    ManualLiquidationTrigger,
)

__all__ = [
    "FairnessRandomizer",
    "QueuedRandomnessSource",
    "RandomnessSource",
    "EventLiquidationTrigger",
    "IntervalLiquidationTrigger",
    "ManualLiquidationTrigger",
]
