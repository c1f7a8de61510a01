"""
Safety Monitor - default safety collaborator for the signal gate.

Kills trading when portfolio value drops more than ``global_stop_loss_pct``
against the oldest value observed inside the rolling window, and exposes a
manual kill switch.
"""

import time
from collections import deque
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Deque, Optional, Tuple

from helpers.unified_logger import get_core_logger


@dataclass
class SafetyCheck:
    """Result of a safety check."""
    safe: bool
    reason: Optional[str] = None
    action: Optional[str] = None  # "kill_bot" when trading must stop


@dataclass
class SafetyState:
    """Current safety monitoring state."""
    killed: bool = False
    kill_reason: Optional[str] = None
    killed_at: Optional[float] = None

    def kill(self, reason: str, now: float) -> None:
        self.killed = True
        self.kill_reason = reason
        self.killed_at = now

    def reset(self) -> None:
        self.killed = False
        self.kill_reason = None
        self.killed_at = None


class SafetyMonitor:
    """Global stop loss over a rolling window plus a kill switch."""

    def __init__(
        self,
        global_stop_loss_pct: Decimal = Decimal("25"),
        window_hours: Decimal = Decimal("24"),
        clock: Callable[[], float] = time.time,
        logger=None,
    ):
        self.global_stop_loss_pct = Decimal(global_stop_loss_pct)
        self.window_seconds = float(window_hours) * 3600
        self.clock = clock
        self.state = SafetyState()
        self.logger = logger or get_core_logger("safety_monitor")
        self._history: Deque[Tuple[float, Decimal]] = deque()

    def _baseline(self, now: float) -> Optional[Decimal]:
        cutoff = now - self.window_seconds
        while len(self._history) > 1 and self._history[0][0] < cutoff:
            self._history.popleft()
        return self._history[0][1] if self._history else None

    def check_safety(self, portfolio_value: Decimal) -> SafetyCheck:
        if self.state.killed:
            return SafetyCheck(
                safe=False,
                action="kill_bot",
                reason=f"Trading halted by safety system: {self.state.kill_reason}",
            )

        now = self.clock()
        portfolio_value = Decimal(portfolio_value)
        baseline = self._baseline(now)
        self._history.append((now, portfolio_value))

        if baseline is None or baseline <= 0:
            return SafetyCheck(safe=True)

        change_pct = (portfolio_value - baseline) / baseline * Decimal("100")
        if change_pct <= -self.global_stop_loss_pct:
            reason = (
                f"Portfolio down {abs(change_pct):.2f}% - exceeded "
                f"{self.global_stop_loss_pct}% stop loss"
            )
            self.state.kill(reason, now)
            self.logger.log(f"EMERGENCY STOP: {reason}", "CRITICAL")
            return SafetyCheck(safe=False, action="kill_bot", reason=reason)

        return SafetyCheck(safe=True)

    def kill(self, reason: str = "Manual kill switch") -> None:
        self.state.kill(reason, self.clock())
        self.logger.log(f"Kill switch engaged: {reason}", "WARNING")

    def reset(self) -> None:
        """Clear the kill switch and the value history."""
        self.state.reset()
        self._history.clear()
        self.logger.log("Safety monitor reset", "INFO")
