"""Rollout phase transitions as pure functions of state, verdict and spec."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from delivery.analyzer import AnalysisResult
from delivery.errors import InvalidTransitionError
from models.schemas import HistoryEntry, RolloutPhase, RolloutSpec, RolloutState

ALLOWED_TRANSITIONS: dict[RolloutPhase, frozenset[RolloutPhase]] = {
    "initializing": frozenset({"progressing", "rolling_back", "failed"}),
    "progressing": frozenset({"progressing", "paused", "rolling_back", "promoting", "failed"}),
    "paused": frozenset({"progressing", "rolling_back", "failed"}),
    "promoting": frozenset({"succeeded", "rolling_back", "failed"}),
    "rolling_back": frozenset({"failed"}),
    "succeeded": frozenset(),
    "failed": frozenset(),
}

DEADLINE_BOUND_PHASES: frozenset[RolloutPhase] = frozenset(
    {"initializing", "progressing", "paused", "promoting"}
)


@dataclass(frozen=True)
class Decision:
    """Next state computed for one tick."""

    state: RolloutState
    transitioned: bool
    reason: str


def transition(
    state: RolloutState,
    spec: RolloutSpec,
    *,
    analysis: AnalysisResult | None,
    observed_weight: int,
    now: datetime,
    cancel_requested: bool = False,
    cancel_reason: str | None = None,
) -> Decision:
    """
    Compute the next rollout state.

    Priority: confirmation of an in-flight rollback, cancellation, deadline
    exhaustion, phase-specific confirmation, then analyzer-driven moves. Any
    failing check wins over passing ones; every check must pass to advance.
    """

    if state.is_terminal:
        raise InvalidTransitionError(
            f"Rollout {state.rollout_id} is terminal ({state.phase}) and cannot transition."
        )
    if state.current_step_index > spec.last_step_index:
        raise InvalidTransitionError(
            f"Rollout {state.rollout_id} step index {state.current_step_index} is out of "
            f"range for {len(spec.steps)} steps."
        )

    observed = state.model_copy(
        update={"current_weight_percent": observed_weight, "last_reconciled_at": now}
    )

    if state.phase == "rolling_back":
        if observed_weight == 0:
            return _moved(
                observed,
                spec,
                "failed",
                now=now,
                reason=f"Traffic fully reverted to stable version {spec.stable_version}.",
            )
        return _held(observed, f"Waiting for traffic shaper to confirm 0% (at {observed_weight}%).")

    if cancel_requested:
        return _moved(
            observed,
            spec,
            "rolling_back",
            now=now,
            reason=f"Cancellation requested: {cancel_reason or 'operator request'}.",
        )

    exhausted = _exhaustion(observed, spec, now)
    if exhausted is not None:
        return exhausted

    if state.phase == "initializing":
        initial = spec.steps[0].weight_percent
        if observed_weight == initial:
            return _moved(
                observed,
                spec,
                "progressing",
                now=now,
                reason=f"Initial weight {initial}% applied for {spec.candidate_version}.",
                current_step_index=0,
                step_started_at=now,
            )
        return _held(observed, f"Waiting for initial weight {initial}% (at {observed_weight}%).")

    if state.phase == "promoting":
        if observed_weight == 100:
            return _moved(
                observed,
                spec,
                "succeeded",
                now=now,
                reason=f"Candidate {spec.candidate_version} serving 100% of traffic.",
            )
        return _held(observed, f"Waiting for traffic shaper to confirm 100% (at {observed_weight}%).")

    step = spec.steps[state.current_step_index]
    if observed_weight != step.weight_percent:
        return _held(
            observed,
            f"Waiting for traffic shaper to apply {step.weight_percent}% for step "
            f"{state.current_step_index + 1} (at {observed_weight}%).",
        )
    if observed.step_started_at is None:
        observed = observed.model_copy(update={"step_started_at": now})

    if analysis is None:
        return _held(observed, "No analysis available for this tick.")

    observed = observed.model_copy(
        update={"consecutive_failures": dict(analysis.failure_streaks)}
    )

    if analysis.verdict == "fail":
        failing = ", ".join(analysis.names_with_status("fail"))
        return _moved(
            observed,
            spec,
            "rolling_back",
            now=now,
            reason=f"Metric checks exceeded tolerated failures: {failing}. {analysis.summary()}",
        )

    if analysis.verdict == "inconclusive":
        if state.phase == "progressing":
            return _moved(
                observed,
                spec,
                "paused",
                now=now,
                reason=f"Insufficient metric data: {analysis.summary()}",
            )
        return _held(observed, f"Still waiting for metric data: {analysis.summary()}")

    if state.phase == "paused":
        return _moved(
            observed,
            spec,
            "progressing",
            now=now,
            reason=f"Metric data resumed: {analysis.summary()}",
        )

    if analysis.advance_blocked:
        breaching = ", ".join(analysis.names_with_status("breach"))
        return _held(observed, f"Advancement blocked by breaching checks: {breaching}.")

    if not _hold_elapsed(observed, step.hold_seconds, now):
        return _held(observed, f"Holding step {state.current_step_index + 1} for {step.hold_seconds:g}s.")

    if state.current_step_index == spec.last_step_index:
        return _moved(
            observed,
            spec,
            "promoting",
            now=now,
            reason=(
                f"Final step held {step.hold_seconds:g}s with passing checks; "
                f"promoting {spec.candidate_version}."
            ),
        )

    next_index = state.current_step_index + 1
    next_weight = spec.steps[next_index].weight_percent
    return _moved(
        observed,
        spec,
        "progressing",
        now=now,
        reason=(
            f"Advanced to step {next_index + 1}/{len(spec.steps)} at {next_weight}% "
            f"after {step.hold_seconds:g}s hold with passing checks."
        ),
        current_step_index=next_index,
        step_started_at=None,
    )


def exhaust(state: RolloutState, spec: RolloutSpec, now: datetime) -> Decision | None:
    """Return the forced rollback for an overdue rollout, or None when within bounds."""

    if state.is_terminal:
        return None
    return _exhaustion(state, spec, now)


def force_failed(
    state: RolloutState,
    spec: RolloutSpec,
    *,
    now: datetime,
    reason: str,
) -> RolloutState:
    """Record an internal consistency violation as a terminal failure."""

    return _record(state, spec, "failed", now=now, reason=reason)


def settle_weight(
    state: RolloutState, spec: RolloutSpec, weight_percent: int, now: datetime
) -> RolloutState:
    """Copy of `state` with the confirmed weight; a matching weight starts the step timer."""

    updates: dict[str, object] = {
        "current_weight_percent": weight_percent,
        "last_reconciled_at": now,
    }
    if (
        state.phase in {"progressing", "paused"}
        and state.step_started_at is None
        and weight_percent == state.target_weight_percent(spec)
    ):
        updates["step_started_at"] = now
    return state.model_copy(update=updates)


def _exhaustion(state: RolloutState, spec: RolloutSpec, now: datetime) -> Decision | None:
    if state.phase not in DEADLINE_BOUND_PHASES:
        return None
    elapsed = (now - state.started_at).total_seconds()
    if elapsed <= spec.max_rollout_duration_seconds:
        return None
    return _moved(
        state,
        spec,
        "rolling_back",
        now=now,
        reason=(
            f"Max rollout duration of {spec.max_rollout_duration_seconds:g}s exceeded "
            f"({elapsed:.0f}s elapsed) in phase {state.phase}."
        ),
    )


def _hold_elapsed(state: RolloutState, hold_seconds: float, now: datetime) -> bool:
    if state.step_started_at is None:
        return False
    return (now - state.step_started_at).total_seconds() >= hold_seconds


def _held(state: RolloutState, reason: str) -> Decision:
    return Decision(state=state, transitioned=False, reason=reason)


def _moved(
    state: RolloutState,
    spec: RolloutSpec,
    to_phase: RolloutPhase,
    *,
    now: datetime,
    reason: str,
    **updates: object,
) -> Decision:
    return Decision(
        state=_record(state, spec, to_phase, now=now, reason=reason, **updates),
        transitioned=True,
        reason=reason,
    )


def _record(
    state: RolloutState,
    spec: RolloutSpec,
    to_phase: RolloutPhase,
    *,
    now: datetime,
    reason: str,
    **updates: object,
) -> RolloutState:
    if to_phase not in ALLOWED_TRANSITIONS[state.phase]:
        raise InvalidTransitionError(
            f"Transition {state.phase} -> {to_phase} is not allowed for rollout {state.rollout_id}."
        )
    moved = state.model_copy(update={**updates, "phase": to_phase, "last_reconciled_at": now})
    entry = HistoryEntry(
        timestamp=now,
        from_phase=state.phase,
        to_phase=to_phase,
        reason=reason,
        step_index=moved.current_step_index,
        weight_percent=_entry_weight(moved, spec),
    )
    return moved.model_copy(update={"history": [*state.history, entry]})


def _entry_weight(state: RolloutState, spec: RolloutSpec) -> int:
    if state.phase == "failed":
        return 0
    if state.current_step_index > spec.last_step_index:
        return state.current_weight_percent
    return state.target_weight_percent(spec)
