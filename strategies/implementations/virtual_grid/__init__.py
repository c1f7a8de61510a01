"""
Virtual Grid Strategy Implementation

A leveraged perpetual-futures grid that:
- Watches a geometric ladder of virtual (unfunded) price levels
- Commits capital only when price crosses a level whose spacing beats costs
- Caps concurrent positions and keeps a capital reserve untouched
- Cools a level down after its position closes
- Gates external trading signals through safety and cooldown checks
"""

from .config import BotConfig, CostConfig, GridConfig, SafetyConfig, SignalGateConfig, build_config
from .errors import ConfigurationError, ExternalFailure, GridEngineError, InvariantViolation, ResourceExhausted
from .models import (
    CloseRequest,
    ExecutionRecord,
    FundingEvent,
    GateAction,
    GridPerformance,
    GridStatus,
    LevelStatus,
    OpenRejection,
    OpenResult,
    PositionOrigin,
    PositionSide,
    PriceTick,
    RealizedTrade,
    RealPosition,
    SignalDirection,
    SignalEvent,
    SignalType,
    SignalUrgency,
    TradingSignal,
    VirtualLevel,
    VolatilityUpdate,
)
from .position_materializer import PositionMaterializer
from .risk_controller import CapitalLedger, GridRiskController, symbol_leverage_limit
from .signal_gate import SignalGate
from .strategy import VirtualGridStrategy
from .virtual_grid import VirtualGridEngine

__all__ = [
    'VirtualGridStrategy',
    'VirtualGridEngine',
    'PositionMaterializer',
    'SignalGate',
    'CapitalLedger',
    'GridRiskController',
    'symbol_leverage_limit',
    # Configuration
    'BotConfig',
    'GridConfig',
    'SignalGateConfig',
    'CostConfig',
    'SafetyConfig',
    'build_config',
    # Errors
    'GridEngineError',
    'ConfigurationError',
    'ResourceExhausted',
    'ExternalFailure',
    'InvariantViolation',
    # Models
    'VirtualLevel',
    'LevelStatus',
    'RealPosition',
    'RealizedTrade',
    'OpenResult',
    'OpenRejection',
    'PositionSide',
    'PositionOrigin',
    'GridStatus',
    'GridPerformance',
    'TradingSignal',
    'SignalType',
    'SignalDirection',
    'SignalUrgency',
    'GateAction',
    'ExecutionRecord',
    'PriceTick',
    'SignalEvent',
    'FundingEvent',
    'VolatilityUpdate',
    'CloseRequest',
]
