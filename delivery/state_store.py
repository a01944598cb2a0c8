"""Durable rollout state records with version-conditioned writes."""

from __future__ import annotations

import asyncio
import json
import os
import re
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterator, Protocol
from uuid import uuid4

from filelock import FileLock, Timeout
from loguru import logger

from delivery.errors import AdapterError, ConflictError, RolloutExistsError, RolloutNotFoundError
from models.schemas import ROLLOUT_ID_PATTERN, RolloutSpec, RolloutState


@dataclass(frozen=True)
class CancellationRequest:
    """Operator request to abort a rollout."""

    requested_at: datetime
    reason: str


class RolloutStateStore(Protocol):
    """Persistence contract owning every RolloutSpec and RolloutState."""

    async def create(self, spec: RolloutSpec, state: RolloutState) -> None:
        """Register a new rollout; raises RolloutExistsError for duplicate ids."""

    async def get_spec(self, rollout_id: str) -> RolloutSpec:
        """Return the immutable spec or raise RolloutNotFoundError."""

    async def get_state(self, rollout_id: str) -> RolloutState:
        """Return a detached copy of the current state or raise RolloutNotFoundError."""

    async def compare_and_set(self, expected_version: int, state: RolloutState) -> None:
        """Persist `state` only if the stored version still equals `expected_version`."""

    async def request_cancel(self, rollout_id: str, reason: str, requested_at: datetime) -> None:
        """Mark a rollout for cancellation; repeated requests keep the first one."""

    async def cancellation(self, rollout_id: str) -> CancellationRequest | None:
        """Return the pending cancellation, if any."""

    async def list_active(self) -> list[str]:
        """Ids of rollouts not yet in a terminal phase."""

    async def archive_terminal(self, older_than: datetime) -> list[str]:
        """Archive terminal rollouts whose last transition predates `older_than`."""


def check_write(current: RolloutState, expected_version: int, new: RolloutState) -> None:
    """Validate a conditioned write against the stored state."""

    if current.version != expected_version:
        raise ConflictError(
            current.rollout_id,
            expected_version=expected_version,
            actual_version=current.version,
        )
    if new.rollout_id != current.rollout_id:
        raise ValueError("Conditioned write cannot change rollout_id.")
    appended = new.version - current.version
    if appended not in (0, 1) or new.history[: current.version] != current.history:
        raise ConflictError(
            current.rollout_id,
            expected_version=expected_version,
            actual_version=new.version,
        )


def _last_activity(state: RolloutState) -> datetime:
    if state.history:
        return state.history[-1].timestamp
    return state.started_at


class InMemoryRolloutStateStore:
    """Process-local store used by tests and single-node dry runs."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._specs: dict[str, RolloutSpec] = {}
        self._states: dict[str, RolloutState] = {}
        self._cancellations: dict[str, CancellationRequest] = {}

    async def create(self, spec: RolloutSpec, state: RolloutState) -> None:
        async with self._lock:
            if spec.id in self._specs:
                raise RolloutExistsError(f"Rollout {spec.id} already exists.")
            self._specs[spec.id] = spec
            self._states[spec.id] = state.model_copy(deep=True)

    async def get_spec(self, rollout_id: str) -> RolloutSpec:
        spec = self._specs.get(rollout_id)
        if spec is None:
            raise RolloutNotFoundError(rollout_id)
        return spec

    async def get_state(self, rollout_id: str) -> RolloutState:
        state = self._states.get(rollout_id)
        if state is None:
            raise RolloutNotFoundError(rollout_id)
        return state.model_copy(deep=True)

    async def compare_and_set(self, expected_version: int, state: RolloutState) -> None:
        async with self._lock:
            current = self._states.get(state.rollout_id)
            if current is None:
                raise RolloutNotFoundError(state.rollout_id)
            check_write(current, expected_version, state)
            self._states[state.rollout_id] = state.model_copy(deep=True)

    async def request_cancel(self, rollout_id: str, reason: str, requested_at: datetime) -> None:
        async with self._lock:
            if rollout_id not in self._specs:
                raise RolloutNotFoundError(rollout_id)
            self._cancellations.setdefault(
                rollout_id, CancellationRequest(requested_at=requested_at, reason=reason)
            )

    async def cancellation(self, rollout_id: str) -> CancellationRequest | None:
        return self._cancellations.get(rollout_id)

    async def list_active(self) -> list[str]:
        return [rollout_id for rollout_id, state in self._states.items() if not state.is_terminal]

    async def archive_terminal(self, older_than: datetime) -> list[str]:
        async with self._lock:
            expired = [
                rollout_id
                for rollout_id, state in self._states.items()
                if state.is_terminal and _last_activity(state) < older_than
            ]
            for rollout_id in expired:
                del self._states[rollout_id]
                del self._specs[rollout_id]
                self._cancellations.pop(rollout_id, None)
        return expired


class JsonFileRolloutStateStore:
    """
    One JSON document per rollout under `root_dir`, shared across processes.

    Every read-check-write of a rollout document holds that rollout's
    `filelock.FileLock`, so the controller and `rolloutctl` can use the same
    directory. Documents are written to a temporary file and moved into place
    with `os.replace`, so readers never observe a partial write.

    Cancellations live in `root_dir/cancellations` and are published with
    `os.link`, which refuses to overwrite an earlier request. State writes
    never rewrite them. Archived rollouts move to `root_dir/archive`.
    """

    def __init__(self, root_dir: Path, *, lock_timeout_seconds: float = 5.0) -> None:
        self._root_dir = root_dir
        self._cancel_dir = root_dir / "cancellations"
        self._archive_dir = root_dir / "archive"
        self._lock_timeout_seconds = lock_timeout_seconds
        for directory in (self._root_dir, self._cancel_dir, self._archive_dir / "cancellations"):
            directory.mkdir(parents=True, exist_ok=True)

    async def create(self, spec: RolloutSpec, state: RolloutState) -> None:
        path = self._path(spec.id)
        with self._locked(spec.id):
            if path.exists():
                raise RolloutExistsError(f"Rollout {spec.id} already exists.")
            self._write(
                path,
                {"spec": spec.model_dump(mode="json"), "state": state.model_dump(mode="json")},
            )
        logger.debug("rollout_record_created", rollout_id=spec.id, path=str(path))

    async def get_spec(self, rollout_id: str) -> RolloutSpec:
        document = self._read(rollout_id)
        return RolloutSpec.model_validate(document["spec"])

    async def get_state(self, rollout_id: str) -> RolloutState:
        document = self._read(rollout_id)
        return RolloutState.model_validate(document["state"])

    async def compare_and_set(self, expected_version: int, state: RolloutState) -> None:
        with self._locked(state.rollout_id):
            document = self._read(state.rollout_id)
            current = RolloutState.model_validate(document["state"])
            check_write(current, expected_version, state)
            document["state"] = state.model_dump(mode="json")
            self._write(self._path(state.rollout_id), document)

    async def request_cancel(self, rollout_id: str, reason: str, requested_at: datetime) -> None:
        if not self._path(rollout_id).exists():
            raise RolloutNotFoundError(rollout_id)
        target = self._cancel_path(rollout_id)
        tmp_path = self._cancel_dir / f".{rollout_id}.{uuid4().hex}.tmp"
        payload = {"requested_at": requested_at.isoformat(), "reason": reason}
        tmp_path.write_text(json.dumps(payload) + "\n", encoding="utf-8")
        try:
            os.link(tmp_path, target)
        except FileExistsError:
            logger.debug("rollout_cancel_already_requested", rollout_id=rollout_id)
        finally:
            tmp_path.unlink()

    async def cancellation(self, rollout_id: str) -> CancellationRequest | None:
        if not self._path(rollout_id).exists():
            raise RolloutNotFoundError(rollout_id)
        path = self._cancel_path(rollout_id)
        if not path.exists():
            return None
        payload = json.loads(path.read_text(encoding="utf-8"))
        return CancellationRequest(
            requested_at=datetime.fromisoformat(payload["requested_at"]),
            reason=payload["reason"],
        )

    async def list_active(self) -> list[str]:
        active: list[str] = []
        for path in sorted(self._root_dir.glob("*.json")):
            try:
                document = json.loads(path.read_text(encoding="utf-8"))
            except FileNotFoundError:
                continue
            state = RolloutState.model_validate(document["state"])
            if not state.is_terminal:
                active.append(state.rollout_id)
        return active

    async def archive_terminal(self, older_than: datetime) -> list[str]:
        archived: list[str] = []
        for path in sorted(self._root_dir.glob("*.json")):
            rollout_id = path.stem
            if re.fullmatch(ROLLOUT_ID_PATTERN, rollout_id) is None:
                continue
            with self._locked(rollout_id):
                try:
                    document = self._read(rollout_id)
                except RolloutNotFoundError:
                    continue
                state = RolloutState.model_validate(document["state"])
                if not state.is_terminal or _last_activity(state) >= older_than:
                    continue
                os.replace(path, self._archive_dir / path.name)
                cancel_path = self._cancel_path(rollout_id)
                if cancel_path.exists():
                    os.replace(cancel_path, self._archive_dir / "cancellations" / path.name)
            archived.append(rollout_id)
        return archived

    @contextmanager
    def _locked(self, rollout_id: str) -> Iterator[None]:
        lock = FileLock(f"{self._path(rollout_id)}.lock")
        try:
            lock.acquire(timeout=self._lock_timeout_seconds)
        except Timeout as exc:
            raise AdapterError(
                f"Rollout {rollout_id} is locked by another writer.",
                adapter="state_store",
            ) from exc
        try:
            yield
        finally:
            lock.release()

    def _path(self, rollout_id: str) -> Path:
        return self._root_dir / f"{_file_stem(rollout_id)}.json"

    def _cancel_path(self, rollout_id: str) -> Path:
        return self._cancel_dir / f"{_file_stem(rollout_id)}.json"

    def _read(self, rollout_id: str) -> dict:
        path = self._path(rollout_id)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise RolloutNotFoundError(rollout_id) from exc

    def _write(self, path: Path, document: dict) -> None:
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(document, indent=2) + "\n", encoding="utf-8")
        os.replace(tmp_path, path)


def _file_stem(rollout_id: str) -> str:
    # Ids rejected by RolloutSpec validation were never stored.
    if re.fullmatch(ROLLOUT_ID_PATTERN, rollout_id) is None:
        raise RolloutNotFoundError(rollout_id)
    return rollout_id
