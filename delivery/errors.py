"""Error taxonomy for rollout submission, persistence and decisioning."""

from __future__ import annotations

from adapters.errors import AdapterError

__all__ = [
    "AdapterError",
    "ConflictError",
    "InvalidTransitionError",
    "RolloutExistsError",
    "RolloutNotFoundError",
    "RolloutValidationError",
]


class RolloutValidationError(ValueError):
    """Submitted rollout spec is malformed; nothing was created."""

    def __init__(self, message: str, *, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class RolloutNotFoundError(KeyError):
    """No rollout is registered under the requested id."""

    def __init__(self, rollout_id: str) -> None:
        super().__init__(rollout_id)
        self.rollout_id = rollout_id

    def __str__(self) -> str:
        return f"Rollout not found: {self.rollout_id}"


class RolloutExistsError(RuntimeError):
    """A rollout with the same id has already been accepted."""


class ConflictError(RuntimeError):
    """Conditioned write lost against a concurrent writer."""

    def __init__(self, rollout_id: str, *, expected_version: int, actual_version: int) -> None:
        super().__init__(
            f"Rollout {rollout_id} version conflict: expected {expected_version}, "
            f"found {actual_version}"
        )
        self.rollout_id = rollout_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class InvalidTransitionError(RuntimeError):
    """Attempted transition is outside the allowed phase table."""
