"""
Virtual grid ladder.

Watches a geometric ladder of unfunded price levels around a center price.
Only a crossing reaches the expensive path (capital allocation); the ladder
itself is cheap and grows by at most one level per side per tick as price
drifts toward its edges.
"""

from __future__ import annotations

import time
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from helpers.unified_logger import get_core_logger

from .errors import InvariantViolation
from .models import LevelStatus, PositionSide, VirtualLevel


NEAREST_LEVEL_COUNT = 5
EXTEND_ABOVE_FACTOR = Decimal("1.5")
EXTEND_BELOW_FACTOR = Decimal("0.5")
VOLATILITY_MIN = Decimal("0.5")
VOLATILITY_MAX = Decimal("2")
MAX_SPACING = Decimal("0.99")

AdmitFn = Callable[[VirtualLevel], bool]


class VirtualGridEngine:
    """Owns the virtual levels for one symbol."""

    def __init__(
        self,
        spacing_pct: Decimal,
        watch_depth: int = 50,
        cooldown_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
        logger=None,
    ) -> None:
        if spacing_pct <= 0 or spacing_pct >= 100:
            raise ValueError(f"spacing must be within (0, 100) percent, got {spacing_pct}")
        self.base_spacing = Decimal(spacing_pct) / Decimal("100")
        self.spacing = self.base_spacing
        self.watch_depth = watch_depth
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock
        self.logger = logger or get_core_logger("virtual_grid")

        self.levels: List[VirtualLevel] = []
        self.center_price: Optional[Decimal] = None
        self._generation = 0

    # ------------------------------------------------------------------ #
    # Ladder construction
    # ------------------------------------------------------------------ #
    def _level_id(self, side: PositionSide, rank: int) -> str:
        suffix = f"_g{self._generation}" if self._generation else ""
        return f"virtual_{side.value}_{abs(rank)}{suffix}"

    def generate(self, center_price: Decimal) -> List[VirtualLevel]:
        """``watch_depth`` levels per side around ``center_price``, sorted by descending price."""
        if center_price <= 0:
            raise ValueError(f"center price must be positive, got {center_price}")

        now = self.clock()
        levels: List[VirtualLevel] = []
        for i in range(1, self.watch_depth + 1):
            levels.append(
                VirtualLevel(
                    level_id=self._level_id(PositionSide.SHORT, i),
                    price=center_price * (1 + self.spacing) ** i,
                    side=PositionSide.SHORT,
                    rank=i,
                    created_at=now,
                )
            )
            levels.append(
                VirtualLevel(
                    level_id=self._level_id(PositionSide.LONG, -i),
                    price=center_price * (1 - self.spacing) ** i,
                    side=PositionSide.LONG,
                    rank=-i,
                    created_at=now,
                )
            )

        levels.sort(key=lambda level: level.price, reverse=True)
        self.levels = levels
        self.center_price = center_price
        self.logger.log(f"Generated {len(levels)} virtual levels around {center_price}", "DEBUG")
        return levels

    def recenter(self, price: Decimal) -> List[VirtualLevel]:
        """
        Rebuild the pending part of the ladder around ``price``.

        Filled and cooldown levels are kept so open positions and their
        cooldowns stay linked to their levels. Ranks are renumbered per side
        afterwards so price stays strictly monotone in rank.
        """
        kept = [level for level in self.levels if level.status is not LevelStatus.PENDING]
        self._generation += 1
        fresh = self.generate(price)
        merged = fresh + kept
        merged.sort(key=lambda level: level.price, reverse=True)
        self._renumber(merged)
        self.levels = merged
        self.logger.log(
            f"Recentered grid at {price}: {len(fresh)} fresh levels, {len(kept)} active levels kept",
            "INFO",
        )
        return merged

    @staticmethod
    def _renumber(levels: List[VirtualLevel]) -> None:
        """Assign ranks 1..n to shorts by ascending price and -1..-n to longs by descending price."""
        shorts = sorted((lv for lv in levels if lv.side is PositionSide.SHORT), key=lambda lv: lv.price)
        longs = sorted((lv for lv in levels if lv.side is PositionSide.LONG), key=lambda lv: lv.price, reverse=True)
        for i, level in enumerate(shorts, start=1):
            level.rank = i
        for i, level in enumerate(longs, start=1):
            level.rank = -i

    def update_spacing(self, volatility: Decimal) -> Decimal:
        """
        Scale the base spacing by ``volatility`` (clamped to 0.5x - 2x).

        Existing levels keep their prices; the new spacing applies to levels
        added by ``extend`` and to the next ``recenter``.

        Returns:
            The new spacing as a percentage
        """
        multiplier = min(max(Decimal(volatility), VOLATILITY_MIN), VOLATILITY_MAX)
        self.spacing = min(self.base_spacing * multiplier, MAX_SPACING)
        return self.spacing * Decimal("100")

    def extend(self, current_price: Decimal, levels: Optional[List[VirtualLevel]] = None) -> List[VirtualLevel]:
        """Add at most one level per side when price nears the ladder's edges."""
        target = self.levels if levels is None else levels
        extended = list(target)
        now = self.clock()

        shorts = [level for level in extended if level.side is PositionSide.SHORT]
        longs = [level for level in extended if level.side is PositionSide.LONG]

        if shorts:
            top = max(shorts, key=lambda level: level.price)
            if top.price < current_price * EXTEND_ABOVE_FACTOR:
                rank = max(level.rank for level in shorts) + 1
                extended.insert(
                    0,
                    VirtualLevel(
                        level_id=self._level_id(PositionSide.SHORT, rank),
                        price=top.price * (1 + self.spacing),
                        side=PositionSide.SHORT,
                        rank=rank,
                        created_at=now,
                    ),
                )

        if longs:
            bottom = min(longs, key=lambda level: level.price)
            if bottom.price > current_price * EXTEND_BELOW_FACTOR:
                rank = min(level.rank for level in longs) - 1
                extended.append(
                    VirtualLevel(
                        level_id=self._level_id(PositionSide.LONG, rank),
                        price=bottom.price * (1 - self.spacing),
                        side=PositionSide.LONG,
                        rank=rank,
                        created_at=now,
                    )
                )

        if len(extended) != len(target):
            extended.sort(key=lambda level: level.price, reverse=True)
        if levels is None:
            self.levels = extended
        return extended

    # ------------------------------------------------------------------ #
    # Crossing detection
    # ------------------------------------------------------------------ #
    def _rearm_if_elapsed(self, level: VirtualLevel, now: float) -> bool:
        if level.last_closed_at is None:
            raise InvariantViolation(f"Level {level.level_id} is in cooldown without a close time")
        if now - level.last_closed_at >= self.cooldown_seconds:
            level.status = LevelStatus.PENDING
            self.logger.log(f"Level {level.level_id} re-armed after cooldown", "DEBUG")
            return True
        return False

    def _is_stale(self, level: VirtualLevel) -> bool:
        """A level left on the wrong side of the center by a recenter."""
        if self.center_price is None:
            return False
        if level.side is PositionSide.SHORT:
            return level.price <= self.center_price
        return level.price >= self.center_price

    def detect_crossings(
        self,
        current_price: Decimal,
        levels: Optional[List[VirtualLevel]] = None,
        admit: Optional[AdmitFn] = None,
    ) -> List[VirtualLevel]:
        """
        Mark every pending level reached by ``current_price`` as filled.

        Not idempotent: call at most once per price tick. Levels rejected by
        ``admit`` stay pending and are not reported. Cooldown levels stranded
        on the wrong side of the center are dropped instead of re-armed.
        """
        target = self.levels if levels is None else levels
        now = self.clock()
        crossed: List[VirtualLevel] = []
        retired: List[VirtualLevel] = []

        for level in target:
            if level.status is LevelStatus.COOLDOWN:
                expired = level.last_closed_at is not None and now - level.last_closed_at >= self.cooldown_seconds
                if expired and self._is_stale(level):
                    retired.append(level)
                    continue
                if not self._rearm_if_elapsed(level, now):
                    continue
            elif level.status is LevelStatus.FILLED:
                continue
            elif level.status is not LevelStatus.PENDING:
                raise InvariantViolation(f"Unknown status {level.status!r} for level {level.level_id}")

            if level.side is PositionSide.SHORT:
                hit = current_price >= level.price
            else:
                hit = current_price <= level.price
            if not hit:
                continue
            if admit is not None and not admit(level):
                continue

            level.status = LevelStatus.FILLED
            crossed.append(level)

        for level in retired:
            target.remove(level)
            self.logger.log(f"Level {level.level_id} retired after recenter", "DEBUG")

        if crossed:
            self.logger.log(f"Price {current_price} crossed {len(crossed)} virtual levels", "DEBUG")
        return crossed

    # ------------------------------------------------------------------ #
    # Level transitions
    # ------------------------------------------------------------------ #
    def get_level(self, level_id: str) -> Optional[VirtualLevel]:
        for level in self.levels:
            if level.level_id == level_id:
                return level
        return None

    def _require(self, level_id: str) -> VirtualLevel:
        level = self.get_level(level_id)
        if level is None:
            raise InvariantViolation(f"Unknown level {level_id}")
        return level

    def attach_position(self, level_id: str, position_id: str) -> None:
        level = self._require(level_id)
        if level.status is not LevelStatus.FILLED:
            raise InvariantViolation(
                f"Cannot attach position to level {level_id} in status {level.status.value}"
            )
        level.position_id = position_id

    def release(self, level_id: str) -> bool:
        """Roll a crossed level back to pending when nothing was materialized for it."""
        level = self._require(level_id)
        if level.position_id is not None:
            raise InvariantViolation(
                f"Level {level_id} still backs position {level.position_id}; it cannot be released"
            )
        if level.status is not LevelStatus.FILLED:
            return False
        level.status = LevelStatus.PENDING
        return True

    def mark_cooldown(self, level_id: str, now: Optional[float] = None) -> None:
        """Start the cooldown window after the level's position closed."""
        level = self._require(level_id)
        if level.status is not LevelStatus.FILLED:
            raise InvariantViolation(
                f"Level {level_id} must be filled before cooldown (status {level.status.value})"
            )
        level.status = LevelStatus.COOLDOWN
        level.last_closed_at = self.clock() if now is None else now
        level.position_id = None

    # ------------------------------------------------------------------ #
    # Telemetry
    # ------------------------------------------------------------------ #
    def nearest_levels(
        self,
        current_price: Decimal,
        levels: Optional[List[VirtualLevel]] = None,
    ) -> Dict[str, List[VirtualLevel]]:
        """Five nearest pending levels above and below ``current_price``."""
        target = self.levels if levels is None else levels
        pending = [level for level in target if level.status is LevelStatus.PENDING]
        above = sorted((lv for lv in pending if lv.price > current_price), key=lambda lv: lv.price)
        below = sorted((lv for lv in pending if lv.price < current_price), key=lambda lv: lv.price, reverse=True)
        return {"above": above[:NEAREST_LEVEL_COUNT], "below": below[:NEAREST_LEVEL_COUNT]}

    def stats(self, levels: Optional[List[VirtualLevel]] = None) -> Dict[str, int]:
        target = self.levels if levels is None else levels
        stats = {"total": len(target), "pending": 0, "filled": 0, "cooldown": 0}
        for level in target:
            stats[level.status.value] += 1
        return stats

    def density(self, current_price: Decimal, levels: Optional[List[VirtualLevel]] = None) -> Decimal:
        """Levels within one spacing of ``current_price``, per price unit."""
        target = self.levels if levels is None else levels
        window = self.spacing * current_price
        if window <= 0:
            return Decimal("0")
        nearby = sum(1 for level in target if abs(level.price - current_price) <= window)
        return Decimal(nearby) / (window * 2)

    def health(self, current_price: Decimal) -> Dict[str, object]:
        nearest = self.nearest_levels(current_price)
        above = nearest["above"][0].price if nearest["above"] else None
        below = nearest["below"][0].price if nearest["below"] else None
        prices = [level.price for level in self.levels]
        spans = bool(prices) and max(prices) >= current_price * EXTEND_ABOVE_FACTOR \
            and min(prices) <= current_price * EXTEND_BELOW_FACTOR
        return {
            "stats": self.stats(),
            "density": self.density(current_price),
            "center_price": self.center_price,
            "nearest_above": above,
            "nearest_below": below,
            "distance_above_pct": (above - current_price) / current_price * 100 if above is not None else None,
            "distance_below_pct": (current_price - below) / current_price * 100 if below is not None else None,
            "spans_range": spans,
        }
