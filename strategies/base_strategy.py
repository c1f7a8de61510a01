"""
Base Strategy Interface
Defines the contract that all per-symbol strategy owners implement.

Lifecycle:
- initialize(): one-time setup (ladder generation, initial positions)
- start(): begin draining events
- stop(): refuse new events, finish in-flight work, release ownership
- cleanup(): flush logs
"""

from abc import ABC, abstractmethod
from typing import Any, Dict

from helpers.unified_logger import get_strategy_logger


class BaseStrategy(ABC):
    """
    Base class for strategy owners.

    Subclasses compose the components they need (grid engine, position
    materializer, signal gate) rather than inheriting them.
    """

    def __init__(self, config, exchange_client=None):
        """
        Initialize strategy with configuration and exchange client.

        Args:
            config: Strategy configuration
            exchange_client: Execution capability for the symbol
        """
        self.config = config
        self.exchange_client = exchange_client

        context = {'symbol': getattr(config, 'symbol', 'unknown')}
        venue = getattr(config, 'venue', None)
        if venue:
            context['venue'] = venue

        self.logger = get_strategy_logger(
            self.get_strategy_name().lower().replace(' ', '_'),
            **context
        )

        self.is_initialized = False

    async def initialize(self, *args, **kwargs):
        """Initialize strategy-specific components (idempotent)."""
        if not self.is_initialized:
            await self._initialize_strategy(*args, **kwargs)
            self.is_initialized = True
            self.logger.info(f"Strategy '{self.get_strategy_name()}' initialized")

    @abstractmethod
    async def _initialize_strategy(self, *args, **kwargs):
        """Strategy-specific initialization logic."""
        pass

    @abstractmethod
    async def start(self):
        """Start processing events."""
        pass

    @abstractmethod
    async def stop(self):
        """Stop processing events after in-flight work completes."""
        pass

    @abstractmethod
    def get_strategy_name(self) -> str:
        """Get the strategy name."""
        pass

    @abstractmethod
    def get_status(self) -> Dict[str, Any]:
        """Snapshot of the strategy state for display."""
        pass

    async def cleanup(self):
        """Cleanup strategy resources."""
        self.logger.info(f"Strategy '{self.get_strategy_name()}' cleanup completed")
        # Flush so enqueued file writes land before the process exits
        if hasattr(self.logger, 'flush'):
            self.logger.flush()
