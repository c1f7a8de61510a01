from decimal import Decimal

import pytest

from strategies.implementations.virtual_grid.errors import InvariantViolation
from strategies.implementations.virtual_grid.models import LevelStatus, PositionSide
from strategies.implementations.virtual_grid.virtual_grid import VirtualGridEngine


@pytest.fixture
def engine(clock):
    grid = VirtualGridEngine(spacing_pct=Decimal("1"), watch_depth=5, cooldown_seconds=300, clock=clock)
    grid.generate(Decimal("100"))
    return grid


def _assert_monotone(levels):
    shorts = sorted((lv for lv in levels if lv.side is PositionSide.SHORT), key=lambda lv: lv.rank)
    longs = sorted((lv for lv in levels if lv.side is PositionSide.LONG), key=lambda lv: lv.rank)
    for lower, higher in zip(shorts, shorts[1:]):
        assert higher.price > lower.price
    for lower, higher in zip(longs, longs[1:]):
        assert higher.price > lower.price
    prices = [lv.price for lv in levels]
    assert prices == sorted(prices, reverse=True)


def test_generate_builds_symmetric_geometric_ladder(engine):
    assert len(engine.levels) == 10
    assert engine.center_price == Decimal("100")

    short_1 = engine.get_level("virtual_short_1")
    long_1 = engine.get_level("virtual_long_1")
    assert short_1.price == Decimal("101.00")
    assert long_1.price == Decimal("99.00")
    assert engine.get_level("virtual_short_2").price == Decimal("102.0100")
    assert all(level.status is LevelStatus.PENDING for level in engine.levels)
    _assert_monotone(engine.levels)


def test_generate_rejects_non_positive_center():
    grid = VirtualGridEngine(spacing_pct=Decimal("1"))
    with pytest.raises(ValueError):
        grid.generate(Decimal("0"))


def test_invalid_spacing_rejected():
    with pytest.raises(ValueError):
        VirtualGridEngine(spacing_pct=Decimal("0"))


def test_extend_adds_at_most_one_level_per_side_and_stays_monotone(engine):
    before = len(engine.levels)
    engine.extend(Decimal("100"))

    # top short ~105.1 < 150 and bottom long ~95.1 > 50: one level each side
    assert len(engine.levels) == before + 2
    assert engine.levels[0].rank == 6
    assert engine.levels[-1].rank == -6
    _assert_monotone(engine.levels)

    for _ in range(5):
        engine.extend(Decimal("100"))
    assert len(engine.levels) == before + 12
    _assert_monotone(engine.levels)


def test_extend_is_noop_when_ladder_spans_range(clock):
    grid = VirtualGridEngine(spacing_pct=Decimal("10"), watch_depth=10, clock=clock)
    grid.generate(Decimal("100"))
    before = [level.level_id for level in grid.levels]

    grid.extend(Decimal("100"))
    assert [level.level_id for level in grid.levels] == before


def test_crossing_marks_level_filled_once(engine):
    crossed = engine.detect_crossings(Decimal("101"))

    assert [level.level_id for level in crossed] == ["virtual_short_1"]
    assert crossed[0].status is LevelStatus.FILLED
    assert engine.detect_crossings(Decimal("101")) == []


def test_drop_crosses_every_long_level_reached(engine):
    crossed = engine.detect_crossings(Decimal("97.5"))
    assert {level.level_id for level in crossed} == {"virtual_long_1", "virtual_long_2"}


def test_filled_level_cannot_recross_until_cooldown_elapses(engine, clock):
    engine.detect_crossings(Decimal("101"))
    engine.attach_position("virtual_short_1", "pos_btc_1")
    engine.mark_cooldown("virtual_short_1")

    level = engine.get_level("virtual_short_1")
    assert level.status is LevelStatus.COOLDOWN
    assert level.position_id is None

    clock.advance(299)
    assert engine.detect_crossings(Decimal("101")) == []
    assert level.status is LevelStatus.COOLDOWN

    clock.advance(1)
    crossed = engine.detect_crossings(Decimal("101"))
    assert [lv.level_id for lv in crossed] == ["virtual_short_1"]


def test_rearmed_level_waits_for_price(engine, clock):
    engine.detect_crossings(Decimal("101"))
    engine.mark_cooldown("virtual_short_1")
    clock.advance(301)

    assert engine.detect_crossings(Decimal("100.5")) == []
    assert engine.get_level("virtual_short_1").status is LevelStatus.PENDING


def test_admit_rejection_leaves_level_pending(engine):
    crossed = engine.detect_crossings(Decimal("101"), admit=lambda level: False)

    assert crossed == []
    assert engine.get_level("virtual_short_1").status is LevelStatus.PENDING


def test_release_returns_unmaterialized_level_to_pending(engine):
    engine.detect_crossings(Decimal("101"))
    assert engine.release("virtual_short_1") is True
    assert engine.get_level("virtual_short_1").status is LevelStatus.PENDING
    assert engine.release("virtual_short_1") is False


def test_release_with_attached_position_is_invariant_violation(engine):
    engine.detect_crossings(Decimal("101"))
    engine.attach_position("virtual_short_1", "pos_btc_1")
    with pytest.raises(InvariantViolation):
        engine.release("virtual_short_1")


def test_cooldown_without_close_time_is_invariant_violation(engine):
    engine.get_level("virtual_short_1").status = LevelStatus.COOLDOWN
    with pytest.raises(InvariantViolation):
        engine.detect_crossings(Decimal("100"))


def test_unknown_status_is_invariant_violation(engine):
    engine.get_level("virtual_long_1").status = "corrupted"
    with pytest.raises(InvariantViolation):
        engine.detect_crossings(Decimal("100"))


def test_mark_cooldown_requires_filled_level(engine):
    with pytest.raises(InvariantViolation):
        engine.mark_cooldown("virtual_short_1")


def test_recenter_keeps_active_levels_and_uses_fresh_ids(engine):
    engine.detect_crossings(Decimal("101"))
    engine.attach_position("virtual_short_1", "pos_btc_1")

    engine.recenter(Decimal("120"))

    assert engine.center_price == Decimal("120")
    kept = engine.get_level("virtual_short_1")
    assert kept.status is LevelStatus.FILLED
    assert kept.position_id == "pos_btc_1"
    assert engine.get_level("virtual_short_1_g1").price == Decimal("121.20")
    assert len(engine.levels) == 11

    short_ranks = [lv.rank for lv in engine.levels if lv.side is PositionSide.SHORT]
    long_ranks = [lv.rank for lv in engine.levels if lv.side is PositionSide.LONG]
    assert len(set(short_ranks)) == len(short_ranks)
    assert len(set(long_ranks)) == len(long_ranks)
    assert kept.rank == 1
    assert engine.get_level("virtual_short_1_g1").rank == 2
    _assert_monotone(engine.levels)


def test_recenter_after_extend_keeps_ranks_unique(engine):
    engine.detect_crossings(Decimal("104"))
    for level_id in ("virtual_short_1", "virtual_short_2", "virtual_short_3"):
        engine.attach_position(level_id, f"pos_{level_id}")

    engine.recenter(Decimal("111"))
    engine.extend(Decimal("111"))

    ids = [lv.level_id for lv in engine.levels]
    assert len(set(ids)) == len(ids)
    _assert_monotone(engine.levels)


def test_stranded_cooldown_level_is_retired(engine, clock):
    engine.detect_crossings(Decimal("101"))
    engine.attach_position("virtual_short_1", "pos_btc_1")
    engine.recenter(Decimal("120"))
    engine.mark_cooldown("virtual_short_1")

    clock.advance(300)
    crossed = engine.detect_crossings(Decimal("120"))

    assert crossed == []
    assert engine.get_level("virtual_short_1") is None
    _assert_monotone(engine.levels)


def test_update_spacing_scales_future_levels(engine):
    assert engine.update_spacing(Decimal("1.5")) == Decimal("1.5")
    assert engine.update_spacing(Decimal("5")) == Decimal("2")
    assert engine.update_spacing(Decimal("0.1")) == Decimal("0.5")

    engine.update_spacing(Decimal("2"))
    engine.recenter(Decimal("100"))
    assert engine.get_level("virtual_short_1_g1").price == Decimal("102.00")


def test_telemetry(engine):
    nearest = engine.nearest_levels(Decimal("100"))
    assert [lv.level_id for lv in nearest["above"]][:2] == ["virtual_short_1", "virtual_short_2"]
    assert nearest["below"][0].level_id == "virtual_long_1"

    stats = engine.stats()
    assert stats == {"total": 10, "pending": 10, "filled": 0, "cooldown": 0}

    health = engine.health(Decimal("100"))
    assert health["nearest_above"] == Decimal("101.00")
    assert health["nearest_below"] == Decimal("99.00")
    assert health["spans_range"] is False
    assert engine.density(Decimal("100")) > 0
