"""
Helper modules for the virtual grid engine.
"""

from .unified_logger import get_logger, get_exchange_logger, get_strategy_logger, get_core_logger, log_stage

__all__ = [
    'get_logger',
    'get_exchange_logger',
    'get_strategy_logger',
    'get_core_logger',
    'log_stage',
]
