"""Unit tests for metric verdicts and failure streaks."""

from __future__ import annotations

from delivery.analyzer import Analyzer
from models.schemas import MetricCheck, RolloutStep

SUCCESS_RATE = MetricCheck(
    name="success_rate",
    query="success_rate",
    threshold_min=99.0,
    threshold_max=100.0,
    tolerated_failures=2,
)
LATENCY = MetricCheck(name="latency_p95", query="p95", threshold_max=300.0)


def test_lookback_window_has_floor() -> None:
    analyzer = Analyzer(min_lookback_seconds=30.0)
    assert analyzer.lookback_seconds(RolloutStep(weight_percent=10, hold_seconds=5)) == 30.0
    assert analyzer.lookback_seconds(RolloutStep(weight_percent=10, hold_seconds=120)) == 120.0


def test_all_checks_in_bounds_pass_and_reset_streaks() -> None:
    result = Analyzer().analyze(
        [SUCCESS_RATE, LATENCY],
        {"success_rate": 99.5, "latency_p95": 120.0},
        {"success_rate": 2},
    )
    assert result.verdict == "pass"
    assert result.advance_blocked is False
    assert result.failure_streaks == {"success_rate": 0, "latency_p95": 0}


def test_breach_within_tolerance_blocks_without_failing() -> None:
    result = Analyzer().analyze([SUCCESS_RATE], {"success_rate": 80.0}, {"success_rate": 1})
    assert result.verdict == "pass"
    assert result.advance_blocked is True
    assert result.names_with_status("breach") == ["success_rate"]
    assert result.failure_streaks["success_rate"] == 2


def test_streak_beyond_tolerance_fails() -> None:
    result = Analyzer().analyze([SUCCESS_RATE], {"success_rate": 80.0}, {"success_rate": 2})
    assert result.verdict == "fail"
    assert result.failure_streaks["success_rate"] == 3


def test_no_data_is_inconclusive_and_keeps_streak() -> None:
    result = Analyzer().analyze([SUCCESS_RATE], {"success_rate": None}, {"success_rate": 2})
    assert result.verdict == "inconclusive"
    assert result.failure_streaks["success_rate"] == 2
    assert "no data" in result.summary()


def test_missing_sample_counts_as_no_data() -> None:
    result = Analyzer().analyze([SUCCESS_RATE, LATENCY], {"success_rate": 99.9}, {})
    assert result.verdict == "inconclusive"


def test_single_failing_check_wins_over_passing_and_missing() -> None:
    result = Analyzer().analyze(
        [SUCCESS_RATE, LATENCY],
        {"success_rate": 10.0, "latency_p95": None},
        {"success_rate": 2},
    )
    assert result.verdict == "fail"


def test_default_tolerance_applies_when_check_has_none() -> None:
    analyzer = Analyzer(default_tolerated_failures=0)
    result = analyzer.analyze([LATENCY], {"latency_p95": 900.0}, {})
    assert result.verdict == "fail"
    assert result.outcomes[0].tolerated_failures == 0


def test_no_checks_pass() -> None:
    result = Analyzer().analyze([], {}, {})
    assert result.verdict == "pass"
    assert result.summary() == "no metric checks configured"
