"""
Shared components for trading strategies.

These components are reusable across different strategy implementations.
"""

from .cost_model import CostModel, CostQuote, SlippageSettings, SpacingStatus, FEE_SCHEDULES
from .safety_monitor import SafetyCheck, SafetyMonitor

__all__ = [
    # Costs
    'CostModel',
    'CostQuote',
    'SlippageSettings',
    'SpacingStatus',
    'FEE_SCHEDULES',

    # Safety
    'SafetyCheck',
    'SafetyMonitor',
]
