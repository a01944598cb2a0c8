"""Single committing writer for rollout state transitions."""

from __future__ import annotations

from loguru import logger

from delivery.errors import ConflictError
from delivery.state_store import RolloutStateStore
from models.schemas import RolloutState


class RollbackArbiter:
    """
    Commits each decided state at most once per rollout.

    The history length read at the start of a tick is the optimistic version;
    a write is accepted only if no other transition landed in between. Losing
    writers abandon their decision and the next tick starts from fresh state.
    """

    def __init__(self, store: RolloutStateStore) -> None:
        self._store = store

    async def commit(self, expected_version: int, state: RolloutState) -> bool:
        """Return True when the write landed, False when it lost a conflict."""

        try:
            await self._store.compare_and_set(expected_version, state)
        except ConflictError as exc:
            logger.info(
                "rollout_commit_conflict",
                rollout_id=state.rollout_id,
                expected_version=exc.expected_version,
                actual_version=exc.actual_version,
            )
            return False
        if state.version > expected_version:
            entry = state.history[-1]
            logger.bind(rollout_id=state.rollout_id).info(
                "rollout_transition",
                from_phase=entry.from_phase,
                to_phase=entry.to_phase,
                step_index=entry.step_index,
                weight_percent=entry.weight_percent,
                reason=entry.reason,
            )
        return True
