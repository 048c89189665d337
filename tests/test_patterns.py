import pytest

from coach_core.models import PatternCategory
from coach_core.patterns import (
    detect_behavioral,
    detect_economic,
    detect_positional,
    detect_tactical,
    linear_slope,
    run_detectors,
)

from factories import make_snapshot


def window_of(count, **per_index):
    """Snapshots where each keyword maps to a function of the index."""
    return [
        make_snapshot(i, seconds=i, **{key: func(i) for key, func in per_index.items()})
        for i in range(1, count + 1)
    ]


def test_linear_slope():
    assert linear_slope([1, 2, 3, 4]) == pytest.approx(1.0)
    assert linear_slope([5, 5, 5]) == 0.0
    assert linear_slope([7]) == 0.0


def test_rising_caution_is_reported():
    window = window_of(8, behaviors=lambda i: ("holding angle",) * i)
    patterns = detect_behavioral(window)
    assert [p.description for p in patterns] == ["Increasingly passive play"]
    assert patterns[0].confidence == 0.65


def test_declining_money_is_reported():
    window = window_of(6, money=lambda i: 5000 - 600 * i)
    patterns = detect_behavioral(window)
    assert any(p.description == "Declining economy across recent rounds" for p in patterns)


def test_static_positions_are_tactical_pattern():
    window = window_of(6, position=lambda i: (float(i), float(i)))
    patterns = detect_tactical(window)
    assert len(patterns) == 1
    assert patterns[0].category == PatternCategory.TACTICAL
    assert patterns[0].confidence == 0.8


def test_moving_player_has_no_tactical_or_positional_pattern():
    window = window_of(8, position=lambda i: (i * 400.0, i * 300.0))
    assert detect_tactical(window) == []
    assert detect_positional(window) == []


def test_frequent_eco_rounds_are_economic_pattern():
    window = window_of(6, money=lambda i: 800 if i % 3 else 4200)
    patterns = detect_economic(window)
    assert len(patterns) == 1
    assert patterns[0].pattern_id == f"economic_{window[-1].sequence_id}_0"


def test_absent_positions_are_insufficient_data():
    window = window_of(8, position=lambda i: None)
    assert detect_tactical(window) == []
    assert detect_positional(window) == []


def test_failing_detector_does_not_block_others():
    def broken(window):
        raise RuntimeError("boom")

    window = window_of(6)
    results, failures = run_detectors(
        window,
        {PatternCategory.BEHAVIORAL: broken, PatternCategory.TACTICAL: detect_tactical},
    )
    assert failures == {PatternCategory.BEHAVIORAL: "boom"}
    assert results[PatternCategory.TACTICAL]
