"""Unit tests for rollout persistence and the conditioned-write arbiter."""

from __future__ import annotations

import asyncio
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from filelock import FileLock

from delivery import state_machine, state_store
from delivery.arbiter import RollbackArbiter
from delivery.errors import (
    AdapterError,
    ConflictError,
    RolloutExistsError,
    RolloutNotFoundError,
)
from delivery.state_store import InMemoryRolloutStateStore, JsonFileRolloutStateStore
from models.schemas import RolloutSpec, RolloutState, RolloutStep

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


def _spec(rollout_id: str = "search-api") -> RolloutSpec:
    return RolloutSpec(
        id=rollout_id,
        stable_version="v1",
        candidate_version="v2",
        steps=(RolloutStep(weight_percent=20), RolloutStep(weight_percent=100)),
        max_rollout_duration_seconds=600,
    )


def _initial(rollout_id: str = "search-api") -> RolloutState:
    return RolloutState(rollout_id=rollout_id, started_at=T0)


def _stores(tmp_path: Path) -> list[object]:
    return [InMemoryRolloutStateStore(), JsonFileRolloutStateStore(tmp_path / "rollouts")]


def _progress(state: RolloutState) -> RolloutState:
    return state_machine.transition(
        state, _spec(state.rollout_id), analysis=None, observed_weight=20, now=T0
    ).state


@pytest.mark.parametrize("kind", ["memory", "file"])
def test_store_round_trips_spec_and_state(tmp_path: Path, kind: str) -> None:
    store = _stores(tmp_path)[0 if kind == "memory" else 1]

    async def scenario() -> tuple[RolloutSpec, RolloutState]:
        await store.create(_spec(), _initial())
        return await store.get_spec("search-api"), await store.get_state("search-api")

    spec, state = asyncio.run(scenario())
    assert spec.model_dump() == _spec().model_dump()
    assert state.phase == "initializing"
    assert state.started_at == T0


@pytest.mark.parametrize("kind", ["memory", "file"])
def test_store_rejects_duplicate_ids(tmp_path: Path, kind: str) -> None:
    store = _stores(tmp_path)[0 if kind == "memory" else 1]

    async def scenario() -> None:
        await store.create(_spec(), _initial())
        await store.create(_spec(), _initial())

    with pytest.raises(RolloutExistsError):
        asyncio.run(scenario())


@pytest.mark.parametrize("kind", ["memory", "file"])
def test_store_raises_not_found(tmp_path: Path, kind: str) -> None:
    store = _stores(tmp_path)[0 if kind == "memory" else 1]
    with pytest.raises(RolloutNotFoundError):
        asyncio.run(store.get_state("missing"))


@pytest.mark.parametrize("kind", ["memory", "file"])
def test_compare_and_set_detects_stale_version(tmp_path: Path, kind: str) -> None:
    store = _stores(tmp_path)[0 if kind == "memory" else 1]

    async def scenario() -> RolloutState:
        await store.create(_spec(), _initial())
        stale = await store.get_state("search-api")
        await store.compare_and_set(0, _progress(stale))
        with pytest.raises(ConflictError):
            await store.compare_and_set(0, _progress(stale))
        return await store.get_state("search-api")

    state = asyncio.run(scenario())
    assert state.version == 1
    assert state.phase == "progressing"


def test_compare_and_set_rejects_rewritten_history() -> None:
    store = InMemoryRolloutStateStore()

    async def scenario() -> None:
        await store.create(_spec(), _initial())
        progressed = _progress(await store.get_state("search-api"))
        await store.compare_and_set(0, progressed)
        rewritten = progressed.model_copy(
            update={"history": [progressed.history[0].model_copy(update={"reason": "edited"})]}
        )
        await store.compare_and_set(1, rewritten)

    with pytest.raises(ConflictError):
        asyncio.run(scenario())


def test_state_reads_are_detached_copies() -> None:
    store = InMemoryRolloutStateStore()

    async def scenario() -> RolloutState:
        await store.create(_spec(), _initial())
        state = await store.get_state("search-api")
        state.consecutive_failures["success_rate"] = 5
        return await store.get_state("search-api")

    assert asyncio.run(scenario()).consecutive_failures == {}


@pytest.mark.parametrize("kind", ["memory", "file"])
def test_cancellation_keeps_first_request(tmp_path: Path, kind: str) -> None:
    store = _stores(tmp_path)[0 if kind == "memory" else 1]

    async def scenario():
        await store.create(_spec(), _initial())
        assert await store.cancellation("search-api") is None
        await store.request_cancel("search-api", "first", T0)
        await store.request_cancel("search-api", "second", T0 + timedelta(seconds=5))
        return await store.cancellation("search-api")

    request = asyncio.run(scenario())
    assert request.reason == "first"
    assert request.requested_at == T0


@pytest.mark.parametrize("kind", ["memory", "file"])
def test_archive_moves_only_expired_terminal_rollouts(tmp_path: Path, kind: str) -> None:
    store = _stores(tmp_path)[0 if kind == "memory" else 1]

    async def scenario() -> tuple[list[str], list[str]]:
        for rollout_id in ("done", "running"):
            await store.create(_spec(rollout_id), _initial(rollout_id))
        done = _progress(await store.get_state("done"))
        failed = state_machine.force_failed(done, _spec("done"), now=T0, reason="test")
        await store.compare_and_set(0, done)
        await store.compare_and_set(1, failed)
        archived = await store.archive_terminal(T0 + timedelta(days=1))
        return archived, await store.list_active()

    archived, active = asyncio.run(scenario())
    assert archived == ["done"]
    assert active == ["running"]
    if kind == "file":
        assert (tmp_path / "rollouts" / "archive" / "done.json").exists()


def test_arbiter_commits_replayed_decision_once() -> None:
    store = InMemoryRolloutStateStore()
    arbiter = RollbackArbiter(store)

    async def scenario() -> tuple[bool, bool, RolloutState]:
        await store.create(_spec(), _initial())
        snapshot = await store.get_state("search-api")
        decided = _progress(snapshot)
        first = await arbiter.commit(snapshot.version, decided)
        replay = await arbiter.commit(snapshot.version, decided)
        return first, replay, await store.get_state("search-api")

    first, replay, state = asyncio.run(scenario())
    assert first is True
    assert replay is False
    assert len(state.history) == 1


def test_file_store_survives_reopen(tmp_path: Path) -> None:
    root = tmp_path / "rollouts"

    async def write() -> None:
        store = JsonFileRolloutStateStore(root)
        await store.create(_spec(), _initial())
        await store.compare_and_set(0, _progress(await store.get_state("search-api")))

    asyncio.run(write())
    state = asyncio.run(JsonFileRolloutStateStore(root).get_state("search-api"))
    assert state.phase == "progressing"
    assert state.history[0].to_phase == "progressing"


def test_file_store_keeps_cancellation_written_during_state_commit(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    root = tmp_path / "rollouts"
    controller_store = JsonFileRolloutStateStore(root)
    cli_store = JsonFileRolloutStateStore(root)
    validate = state_store.check_write

    def cancel_between_read_and_write(
        current: RolloutState, expected_version: int, new: RolloutState
    ) -> None:
        validate(current, expected_version, new)
        # A separate rolloutctl process cancels while the commit is in flight.
        cli = threading.Thread(
            target=asyncio.run,
            args=(cli_store.request_cancel("search-api", "pager alert", T0),),
        )
        cli.start()
        cli.join()

    async def scenario():
        await controller_store.create(_spec(), _initial())
        progressed = _progress(await controller_store.get_state("search-api"))
        monkeypatch.setattr(state_store, "check_write", cancel_between_read_and_write)
        await controller_store.compare_and_set(0, progressed)
        return (
            await controller_store.get_state("search-api"),
            await controller_store.cancellation("search-api"),
        )

    state, request = asyncio.run(scenario())
    assert state.phase == "progressing"
    assert request is not None
    assert request.reason == "pager alert"


def test_file_store_writes_wait_for_other_writers(tmp_path: Path) -> None:
    root = tmp_path / "rollouts"
    store = JsonFileRolloutStateStore(root, lock_timeout_seconds=0.05)
    asyncio.run(store.create(_spec(), _initial()))
    progressed = _progress(asyncio.run(store.get_state("search-api")))

    other_writer = FileLock(str(root / "search-api.json.lock"))
    other_writer.acquire()
    try:
        with pytest.raises(AdapterError) as excinfo:
            asyncio.run(store.compare_and_set(0, progressed))
        assert excinfo.value.adapter == "state_store"
    finally:
        other_writer.release()

    asyncio.run(store.compare_and_set(0, progressed))
    assert asyncio.run(store.get_state("search-api")).version == 1


@pytest.mark.parametrize("rollout_id", ["../search-api", "search/api"])
def test_file_store_never_resolves_unsafe_ids(tmp_path: Path, rollout_id: str) -> None:
    store = JsonFileRolloutStateStore(tmp_path / "rollouts")
    asyncio.run(store.create(_spec(), _initial()))
    with pytest.raises(RolloutNotFoundError):
        asyncio.run(store.get_state(rollout_id))
    with pytest.raises(RolloutNotFoundError):
        asyncio.run(store.request_cancel(rollout_id, "nope", T0))
