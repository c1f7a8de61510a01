"""
Paper Exchange Client Module

Deterministic in-memory execution capability used by the launcher and the tests.
"""

from .client import PaperExchangeClient

__all__ = [
    'PaperExchangeClient',
]
