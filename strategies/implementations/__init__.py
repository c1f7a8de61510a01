"""
Strategy Implementations

Concrete strategy implementations organized by type:
- virtual_grid: Leveraged virtual grid with signal gating
"""

from .virtual_grid import VirtualGridStrategy, GridConfig

__all__ = [
    'VirtualGridStrategy',
    'GridConfig',
]
