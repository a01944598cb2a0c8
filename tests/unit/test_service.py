"""Unit tests for rollout submission, query and cancellation."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest

from delivery.errors import RolloutExistsError, RolloutNotFoundError, RolloutValidationError
from delivery.service import RolloutService
from delivery.state_store import InMemoryRolloutStateStore

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def _payload(**overrides: object) -> dict:
    payload: dict[str, object] = {
        "id": "payments",
        "stable_version": "2024.06.1",
        "candidate_version": "2024.06.2",
        "steps": [
            {"weight_percent": 5, "hold_seconds": 60},
            {"weight_percent": 100, "hold_seconds": 60},
        ],
        "metric_checks": [
            {"name": "success_rate", "query": "sum(rate(ok[{window}]))", "threshold_min": 99.0},
            {"name": "latency_p95", "query": "p95{version='{version}'}", "threshold_max": 250.0},
        ],
        "max_rollout_duration_seconds": 1800,
    }
    payload.update(overrides)
    return payload


def _service() -> tuple[RolloutService, InMemoryRolloutStateStore]:
    store = InMemoryRolloutStateStore()
    return RolloutService(store, clock=lambda: T0), store


def test_submit_creates_initializing_state() -> None:
    service, _ = _service()

    async def scenario():
        rollout_id = await service.submit(_payload())
        return rollout_id, await service.get_state(rollout_id)

    rollout_id, state = asyncio.run(scenario())
    assert rollout_id == "payments"
    assert state.phase == "initializing"
    assert state.current_weight_percent == 0
    assert state.started_at == T0
    assert state.history == []


def test_submit_generates_id_when_missing() -> None:
    service, _ = _service()
    payload = _payload()
    del payload["id"]
    rollout_id = asyncio.run(service.submit(payload))
    assert len(rollout_id) == 32


def test_invalid_submission_has_no_side_effects() -> None:
    service, store = _service()
    payload = _payload(
        steps=[{"weight_percent": 50}, {"weight_percent": 20}, {"weight_percent": 100}]
    )

    with pytest.raises(RolloutValidationError) as excinfo:
        asyncio.run(service.submit(payload))

    assert any("non-decreasing" in error for error in excinfo.value.errors)
    assert asyncio.run(store.list_active()) == []


def test_duplicate_submission_is_rejected() -> None:
    service, _ = _service()

    async def scenario() -> None:
        await service.submit(_payload())
        await service.submit(_payload())

    with pytest.raises(RolloutExistsError):
        asyncio.run(scenario())


def test_unknown_rollout_is_not_found() -> None:
    service, _ = _service()
    with pytest.raises(RolloutNotFoundError):
        asyncio.run(service.get_state("nope"))
    with pytest.raises(RolloutNotFoundError):
        asyncio.run(service.cancel("nope"))


def test_cancel_is_idempotent() -> None:
    service, store = _service()

    async def scenario():
        await service.submit(_payload())
        first = await service.cancel("payments", reason="rollback requested")
        second = await service.cancel("payments", reason="again")
        return first, second, await store.cancellation("payments")

    first, second, request = asyncio.run(scenario())
    assert first is True
    assert second is True
    assert request is not None
    assert request.reason == "rollback requested"
