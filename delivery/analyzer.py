"""Metric analysis producing per-tick rollout verdicts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Sequence

from models.schemas import CheckStatus, MetricCheck, RolloutStep, Verdict


@dataclass(frozen=True)
class CheckOutcome:
    """Result of one metric check for one tick."""

    name: str
    sample: float | None
    status: CheckStatus
    failure_streak: int
    tolerated_failures: int


@dataclass(frozen=True)
class AnalysisResult:
    """Aggregated verdict plus updated failure streaks."""

    verdict: Verdict
    outcomes: tuple[CheckOutcome, ...] = ()
    failure_streaks: dict[str, int] = field(default_factory=dict)

    @property
    def advance_blocked(self) -> bool:
        """True when any check is outside its bounds, even within tolerance."""

        return any(outcome.status in {"breach", "fail"} for outcome in self.outcomes)

    def names_with_status(self, status: CheckStatus) -> list[str]:
        return [outcome.name for outcome in self.outcomes if outcome.status == status]

    def summary(self) -> str:
        """Human-readable description used in history reasons."""

        if not self.outcomes:
            return "no metric checks configured"
        parts = []
        for outcome in self.outcomes:
            sample = "no data" if outcome.sample is None else f"{outcome.sample:g}"
            parts.append(
                f"{outcome.name}={sample} ({outcome.status}, "
                f"streak {outcome.failure_streak}/{outcome.tolerated_failures})"
            )
        return "; ".join(parts)


class Analyzer:
    """Scores metric samples against declared thresholds."""

    def __init__(
        self,
        *,
        default_tolerated_failures: int = 2,
        min_lookback_seconds: float = 30.0,
    ) -> None:
        if default_tolerated_failures < 0:
            raise ValueError("default_tolerated_failures cannot be negative.")
        self._default_tolerated_failures = default_tolerated_failures
        self._min_lookback_seconds = min_lookback_seconds

    def lookback_seconds(self, step: RolloutStep) -> float:
        """Window for metric queries at a step, floored to reduce noise."""

        return max(step.hold_seconds, self._min_lookback_seconds)

    def tolerated_failures(self, check: MetricCheck) -> int:
        if check.tolerated_failures is None:
            return self._default_tolerated_failures
        return check.tolerated_failures

    def analyze(
        self,
        checks: Sequence[MetricCheck],
        samples: Mapping[str, float | None],
        previous_streaks: Mapping[str, int],
    ) -> AnalysisResult:
        """Evaluate one tick of samples; missing samples count as no data."""

        outcomes: list[CheckOutcome] = []
        streaks: dict[str, int] = {}
        for check in checks:
            sample = samples.get(check.name)
            tolerated = self.tolerated_failures(check)
            streak = previous_streaks.get(check.name, 0)
            status: CheckStatus
            if sample is None:
                status = "no_data"
            elif check.within_bounds(sample):
                streak = 0
                status = "pass"
            else:
                streak += 1
                status = "fail" if streak > tolerated else "breach"
            streaks[check.name] = streak
            outcomes.append(
                CheckOutcome(
                    name=check.name,
                    sample=sample,
                    status=status,
                    failure_streak=streak,
                    tolerated_failures=tolerated,
                )
            )

        verdict: Verdict = "pass"
        statuses = {outcome.status for outcome in outcomes}
        if "fail" in statuses:
            verdict = "fail"
        elif "no_data" in statuses:
            verdict = "inconclusive"
        return AnalysisResult(
            verdict=verdict,
            outcomes=tuple(outcomes),
            failure_streaks=streaks,
        )
