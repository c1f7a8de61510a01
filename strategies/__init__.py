"""
Trading Strategies Module
Provides the strategy abstraction and the virtual grid implementation.

Simplified Architecture:
- BaseStrategy: Minimal abstract interface that all strategies implement
- VirtualGridStrategy: per-symbol owner composing its grid engine,
  position materializer and signal gate
  - No forced intermediate layers - simple and flexible

Philosophy: Composition over Inheritance
"""

from .base_strategy import BaseStrategy

from .implementations.virtual_grid import VirtualGridStrategy, GridConfig

__all__ = [
    'BaseStrategy',
    'VirtualGridStrategy',
    'GridConfig',
]
