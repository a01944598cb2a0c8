"""Operator-facing rollout submission, query and cancellation."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Callable, Mapping

from loguru import logger
from pydantic import ValidationError

from delivery.errors import RolloutValidationError
from delivery.state_store import RolloutStateStore
from models.schemas import RolloutSpec, RolloutState


class RolloutService:
    """Boundary through which rollouts are created and inspected."""

    def __init__(
        self,
        store: RolloutStateStore,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(UTC))

    async def submit(self, payload: RolloutSpec | Mapping[str, Any]) -> str:
        """Validate and register a rollout, returning its id."""

        if isinstance(payload, RolloutSpec):
            spec = payload
        else:
            try:
                spec = RolloutSpec.model_validate(payload)
            except ValidationError as exc:
                errors = [
                    f"{'.'.join(str(part) for part in error['loc']) or 'spec'}: {error['msg']}"
                    for error in exc.errors()
                ]
                logger.warning("rollout_rejected", errors=errors)
                raise RolloutValidationError("Rollout spec failed validation.", errors=errors) from exc

        state = RolloutState(rollout_id=spec.id, started_at=self._clock())
        await self._store.create(spec, state)
        logger.info(
            "rollout_submitted",
            rollout_id=spec.id,
            stable_version=spec.stable_version,
            candidate_version=spec.candidate_version,
            steps=[step.weight_percent for step in spec.steps],
        )
        return spec.id

    async def get_state(self, rollout_id: str) -> RolloutState:
        """Read-only view of the current state; raises RolloutNotFoundError."""

        return await self._store.get_state(rollout_id)

    async def get_spec(self, rollout_id: str) -> RolloutSpec:
        return await self._store.get_spec(rollout_id)

    async def cancel(self, rollout_id: str, reason: str = "operator request") -> bool:
        """
        Mark a rollout for cancellation.

        Returns False without error when the rollout is already terminal. The
        next reconciliation tick forces a rollback.
        """

        state = await self._store.get_state(rollout_id)
        if state.is_terminal:
            logger.info("rollout_cancel_ignored", rollout_id=rollout_id, phase=state.phase)
            return False
        await self._store.request_cancel(rollout_id, reason, self._clock())
        logger.info("rollout_cancel_requested", rollout_id=rollout_id, reason=reason)
        return True
