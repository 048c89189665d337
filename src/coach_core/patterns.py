"""Trend detectors mined from the recent snapshot window.

Each detector is independent: it receives the window, returns zero or more
patterns of its own category, and may raise without affecting the others.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Sequence

from loguru import logger

from .models import Pattern, PatternCategory, Position, Snapshot


AGGRESSIVE_MARKERS = ("aggressive", "rush")
CAUTIOUS_MARKERS = ("passive", "cautious", "hold", "save")

TREND_POINTS = 5
TREND_SLOPE_THRESHOLD = 0.1
MONEY_DECLINE_SLOPE = -200.0
STATIC_POSITION_STDDEV = 50.0
ECO_MONEY = 1500
BUY_MONEY = 3000
ECO_TO_BUY_RATIO = 1.5
GRID_CELL_SIZE = 100.0
MIN_DISTINCT_CELLS = 5
MIN_SAMPLES = 5


def linear_slope(values: Sequence[float]) -> float:
    """Least-squares slope of ``values`` against their index."""
    n = len(values)
    if n < 2:
        return 0.0
    mean_x = (n - 1) / 2
    mean_y = sum(values) / n
    numerator = sum((i - mean_x) * (value - mean_y) for i, value in enumerate(values))
    denominator = sum((i - mean_x) ** 2 for i in range(n))
    return numerator / denominator if denominator else 0.0


def _marker_count(snapshot: Snapshot, markers: tuple[str, ...]) -> int:
    player = snapshot.player
    if player is None:
        return 0
    return sum(
        1
        for behavior in player.observed_behaviors
        if any(marker in behavior.lower() for marker in markers)
    )


def _positions(window: Sequence[Snapshot]) -> list[Position]:
    return [s.player.position for s in window if s.player is not None and s.player.position is not None]


def _money(window: Sequence[Snapshot]) -> list[int]:
    return [s.player.money for s in window if s.player is not None and s.player.money is not None]


def _make(
    window: Sequence[Snapshot],
    category: PatternCategory,
    index: int,
    description: str,
    frequency: float,
    confidence: float,
    implications: list[str],
) -> Pattern:
    newest = window[-1]
    return Pattern(
        pattern_id=f"{category.value}_{newest.sequence_id}_{index}",
        category=category,
        description=description,
        frequency=round(frequency, 4),
        confidence=confidence,
        implications=tuple(implications),
        detected_at=newest.timestamp,
        window_size=len(window),
    )


def detect_behavioral(window: Sequence[Snapshot]) -> list[Pattern]:
    found: list[Pattern] = []

    aggression = [_marker_count(s, AGGRESSIVE_MARKERS) for s in window]
    if len(aggression) >= TREND_POINTS and linear_slope(aggression[-TREND_POINTS:]) > TREND_SLOPE_THRESHOLD:
        frequency = sum(1 for count in aggression if count > 0) / len(aggression)
        found.append(
            _make(
                window,
                PatternCategory.BEHAVIORAL,
                len(found),
                "Increasing aggressive play",
                frequency,
                0.7,
                ["Higher risk of early deaths", "Consider trading kills with teammates"],
            )
        )

    caution = [_marker_count(s, CAUTIOUS_MARKERS) for s in window]
    if len(caution) >= TREND_POINTS and linear_slope(caution[-TREND_POINTS:]) > TREND_SLOPE_THRESHOLD:
        frequency = sum(1 for count in caution if count > 0) / len(caution)
        found.append(
            _make(
                window,
                PatternCategory.BEHAVIORAL,
                len(found),
                "Increasingly passive play",
                frequency,
                0.65,
                ["Map control may be conceded", "Look for safe information plays"],
            )
        )

    money = _money(window)
    if len(money) >= MIN_SAMPLES and linear_slope(money) < MONEY_DECLINE_SLOPE:
        found.append(
            _make(
                window,
                PatternCategory.BEHAVIORAL,
                len(found),
                "Declining economy across recent rounds",
                len(money) / len(window),
                0.6,
                ["Coordinate save rounds with the team", "Avoid unnecessary force buys"],
            )
        )
    return found


def detect_tactical(window: Sequence[Snapshot]) -> list[Pattern]:
    positions = _positions(window)
    if len(positions) < MIN_SAMPLES:
        return []
    cx = sum(p.x for p in positions) / len(positions)
    cy = sum(p.y for p in positions) / len(positions)
    stddev = math.sqrt(sum((p.x - cx) ** 2 + (p.y - cy) ** 2 for p in positions) / len(positions))
    if stddev >= STATIC_POSITION_STDDEV:
        return []
    return [
        _make(
            window,
            PatternCategory.TACTICAL,
            0,
            f"Static positioning (spread {stddev:.0f} units)",
            len(positions) / len(window),
            0.8,
            ["Predictable position for opponents", "Vary angles between rounds"],
        )
    ]


def detect_economic(window: Sequence[Snapshot]) -> list[Pattern]:
    money = _money(window)
    if len(money) < MIN_SAMPLES:
        return []
    eco = sum(1 for value in money if value < ECO_MONEY)
    buy = sum(1 for value in money if value > BUY_MONEY)
    if eco == 0 or eco <= buy * ECO_TO_BUY_RATIO:
        return []
    return [
        _make(
            window,
            PatternCategory.ECONOMIC,
            0,
            f"Frequent low-economy rounds ({eco} eco vs {buy} buy)",
            eco / len(money),
            0.7,
            ["Plan buys together with the team", "Save to reach full-buy rounds"],
        )
    ]


def detect_positional(window: Sequence[Snapshot]) -> list[Pattern]:
    positions = _positions(window)
    if len(positions) < MIN_SAMPLES:
        return []
    cells = {(math.floor(p.x / GRID_CELL_SIZE), math.floor(p.y / GRID_CELL_SIZE)) for p in positions}
    if len(cells) >= MIN_DISTINCT_CELLS:
        return []
    return [
        _make(
            window,
            PatternCategory.POSITIONAL,
            0,
            f"Limited map coverage ({len(cells)} areas visited)",
            len(cells) / len(positions),
            0.6,
            ["Explore rotations to other sites", "Gather information from new areas"],
        )
    ]


DETECTORS: dict[PatternCategory, Callable[[Sequence[Snapshot]], list[Pattern]]] = {
    PatternCategory.BEHAVIORAL: detect_behavioral,
    PatternCategory.TACTICAL: detect_tactical,
    PatternCategory.ECONOMIC: detect_economic,
    PatternCategory.POSITIONAL: detect_positional,
}


def run_detectors(
    window: Sequence[Snapshot],
    detectors: dict[PatternCategory, Callable[[Sequence[Snapshot]], list[Pattern]]] | None = None,
) -> tuple[dict[PatternCategory, list[Pattern]], dict[PatternCategory, str]]:
    """Run every detector, returning results and per-category failures."""
    results: dict[PatternCategory, list[Pattern]] = {}
    failures: dict[PatternCategory, str] = {}
    for category, detector in (detectors or DETECTORS).items():
        try:
            results[category] = detector(window)
        except Exception as exc:
            logger.warning("Pattern detector {} failed: {}", category.value, exc)
            failures[category] = str(exc)
    return results, failures
