"""Typed domain models for progressive delivery rollouts."""

from __future__ import annotations

from datetime import datetime
from typing import Literal, TypeAlias
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

RolloutPhase: TypeAlias = Literal[
    "initializing",
    "progressing",
    "paused",
    "promoting",
    "rolling_back",
    "succeeded",
    "failed",
]

Verdict: TypeAlias = Literal["pass", "fail", "inconclusive"]
CheckStatus: TypeAlias = Literal["pass", "breach", "fail", "no_data"]
TickStatus: TypeAlias = Literal[
    "skipped",
    "unchanged",
    "transitioned",
    "conflict",
    "adapter_error",
    "busy",
]

TERMINAL_PHASES: frozenset[RolloutPhase] = frozenset({"succeeded", "failed"})

# Ids double as state file names.
ROLLOUT_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$"


class RolloutStep(BaseModel):
    """One point on the traffic curve."""

    model_config = ConfigDict(frozen=True)

    weight_percent: int = Field(ge=0, le=100)
    hold_seconds: float = Field(default=0.0, ge=0.0)


class MetricCheck(BaseModel):
    """Health indicator with optional bounds evaluated every tick."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    query: str = Field(min_length=1)
    threshold_min: float | None = None
    threshold_max: float | None = None
    tolerated_failures: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def validate_bounds(self) -> "MetricCheck":
        """Reject inverted threshold ranges."""

        if (
            self.threshold_min is not None
            and self.threshold_max is not None
            and self.threshold_min > self.threshold_max
        ):
            raise ValueError(f"threshold_min exceeds threshold_max for check {self.name}")
        return self

    def within_bounds(self, sample: float) -> bool:
        if self.threshold_min is not None and sample < self.threshold_min:
            return False
        if self.threshold_max is not None and sample > self.threshold_max:
            return False
        return True


class RolloutSpec(BaseModel):
    """Immutable rollout intent submitted by an operator or CI step."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid4().hex, pattern=ROLLOUT_ID_PATTERN)
    stable_version: str = Field(min_length=1)
    candidate_version: str = Field(min_length=1)
    steps: tuple[RolloutStep, ...] = Field(min_length=1)
    metric_checks: tuple[MetricCheck, ...] = ()
    max_rollout_duration_seconds: float = Field(gt=0.0)

    @model_validator(mode="after")
    def validate_traffic_curve(self) -> "RolloutSpec":
        """Require a non-decreasing curve that starts above 0 and ends at 100."""

        weights = [step.weight_percent for step in self.steps]
        if weights[0] <= 0:
            raise ValueError("first step weight_percent must be greater than 0")
        if weights[-1] != 100:
            raise ValueError("last step weight_percent must equal 100")
        for previous, current in zip(weights, weights[1:]):
            if current < previous:
                raise ValueError("step weight_percent values must be non-decreasing")
        names = [check.name for check in self.metric_checks]
        if len(names) != len(set(names)):
            raise ValueError("metric check names must be unique")
        return self

    @property
    def last_step_index(self) -> int:
        return len(self.steps) - 1


class HistoryEntry(BaseModel):
    """Append-only audit record of one phase transition."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    from_phase: RolloutPhase
    to_phase: RolloutPhase
    reason: str = Field(min_length=1)
    step_index: int = Field(ge=0)
    weight_percent: int = Field(ge=0, le=100)


class RolloutState(BaseModel):
    """Mutable progress record; written only through the arbiter."""

    rollout_id: str = Field(min_length=1)
    phase: RolloutPhase = "initializing"
    current_step_index: int = Field(default=0, ge=0)
    current_weight_percent: int = Field(default=0, ge=0, le=100)
    consecutive_failures: dict[str, int] = Field(default_factory=dict)
    history: list[HistoryEntry] = Field(default_factory=list)
    started_at: datetime
    step_started_at: datetime | None = None
    last_reconciled_at: datetime | None = None

    @property
    def version(self) -> int:
        """Optimistic concurrency version: number of recorded transitions."""

        return len(self.history)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def target_weight_percent(self, spec: RolloutSpec) -> int:
        """Weight the traffic shaper should converge to for the current phase."""

        if self.phase in {"promoting", "succeeded"}:
            return 100
        if self.phase in {"rolling_back", "failed"}:
            return 0
        index = min(self.current_step_index, spec.last_step_index)
        return spec.steps[index].weight_percent


class PhaseTransitionEvent(BaseModel):
    """Notification payload emitted after a committed transition."""

    rollout_id: str
    from_phase: RolloutPhase
    to_phase: RolloutPhase
    reason: str
    timestamp: datetime


class TickOutcome(BaseModel):
    """Summary of one reconciliation tick."""

    rollout_id: str
    status: TickStatus
    phase: RolloutPhase | None = None
    weight_percent: int | None = None
    reason: str = ""
