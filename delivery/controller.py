"""Reconciliation loop driving rollouts from intent to a terminal phase."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Awaitable, Callable, TypeVar

from loguru import logger

from adapters.errors import AdapterError
from adapters.metrics import MetricsProvider, PrometheusMetricsProvider
from adapters.notifier import EventNotifier, LogNotifier, WebhookNotifier
from adapters.traffic import HttpTrafficShaper, TrafficShaper
from config.logging import configure_logging
from config.settings import Settings, get_settings
from delivery import state_machine
from delivery.analyzer import AnalysisResult, Analyzer
from delivery.arbiter import RollbackArbiter
from delivery.errors import InvalidTransitionError, RolloutNotFoundError
from delivery.state_machine import Decision
from delivery.state_store import JsonFileRolloutStateStore, RolloutStateStore
from models.schemas import (
    HistoryEntry,
    PhaseTransitionEvent,
    RolloutSpec,
    RolloutState,
    TickOutcome,
)

T = TypeVar("T")
Clock = Callable[[], datetime]

ANALYZED_PHASES = frozenset({"progressing", "paused"})


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class ControllerConfig:
    """Timing knobs for reconciliation."""

    reconcile_interval_seconds: float = 30.0
    adapter_timeout_seconds: float = 10.0
    terminal_retention_seconds: float = 7 * 24 * 3600

    @classmethod
    def from_settings(cls, settings: Settings) -> "ControllerConfig":
        return cls(
            reconcile_interval_seconds=settings.reconcile_interval_seconds,
            adapter_timeout_seconds=settings.adapter_timeout_seconds,
            terminal_retention_seconds=settings.terminal_retention_seconds,
        )


class RolloutController:
    """
    Runs observe-decide-act ticks for every active rollout.

    Each tick reads state, converges the traffic shaper to the current target,
    scores metrics, computes the next state and commits it through the
    arbiter. Adapter calls are the only suspension points and each one is
    bounded by `adapter_timeout_seconds`.
    """

    def __init__(
        self,
        *,
        store: RolloutStateStore,
        traffic: TrafficShaper,
        metrics: MetricsProvider,
        notifier: EventNotifier | None = None,
        analyzer: Analyzer | None = None,
        config: ControllerConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = store
        self._traffic = traffic
        self._metrics = metrics
        self._notifier = notifier or LogNotifier()
        self._analyzer = analyzer or Analyzer()
        self._config = config or ControllerConfig()
        self._clock = clock or utc_now
        self._arbiter = RollbackArbiter(store)
        self._in_flight: set[str] = set()
        self._notifications: set[asyncio.Task[None]] = set()

    async def reconcile(self, rollout_id: str) -> TickOutcome:
        """Run one tick; overlapping ticks for the same rollout are refused."""

        if rollout_id in self._in_flight:
            return TickOutcome(rollout_id=rollout_id, status="busy", reason="Tick already running.")
        self._in_flight.add(rollout_id)
        try:
            return await self._reconcile(rollout_id)
        finally:
            self._in_flight.discard(rollout_id)

    async def drain_notifications(self) -> None:
        """Wait for in-flight notifier deliveries."""

        if self._notifications:
            await asyncio.gather(*list(self._notifications))

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Schedule one independent loop per active rollout until stopped."""

        stop = stop_event or asyncio.Event()
        loops: dict[str, asyncio.Task[None]] = {}
        logger.info(
            "controller_started",
            interval_seconds=self._config.reconcile_interval_seconds,
            adapter_timeout_seconds=self._config.adapter_timeout_seconds,
        )
        try:
            while not stop.is_set():
                for rollout_id in await self._store.list_active():
                    task = loops.get(rollout_id)
                    if task is None or task.done():
                        loops[rollout_id] = asyncio.create_task(
                            self._rollout_loop(rollout_id, stop),
                            name=f"rollout-{rollout_id}",
                        )
                await self._archive_expired()
                await _wait(stop, self._config.reconcile_interval_seconds)
        finally:
            stop.set()
            await asyncio.gather(*loops.values(), return_exceptions=True)
            await self.drain_notifications()
            logger.info("controller_stopped", rollouts=len(loops))

    async def close(self) -> None:
        """Close adapters that own network sessions."""

        for adapter in (self._traffic, self._metrics, self._notifier):
            close_fn = getattr(adapter, "close", None)
            if close_fn is not None:
                await close_fn()

    async def _rollout_loop(self, rollout_id: str, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                outcome = await self.reconcile(rollout_id)
            except RolloutNotFoundError:
                logger.info("rollout_loop_finished", rollout_id=rollout_id, reason="not found")
                return
            except Exception as exc:
                logger.error("reconcile_failed", rollout_id=rollout_id, error=str(exc))
            else:
                if outcome.status == "skipped":
                    logger.info("rollout_loop_finished", rollout_id=rollout_id, phase=outcome.phase)
                    return
            await _wait(stop, self._config.reconcile_interval_seconds)

    async def _reconcile(self, rollout_id: str) -> TickOutcome:
        state = await self._call("state_store", self._store.get_state(rollout_id))
        spec = await self._call("state_store", self._store.get_spec(rollout_id))
        if state.is_terminal:
            return TickOutcome(
                rollout_id=rollout_id,
                status="skipped",
                phase=state.phase,
                weight_percent=state.current_weight_percent,
                reason=f"Rollout is {state.phase}.",
            )

        now = self._clock()
        analysis: AnalysisResult | None = None
        try:
            cancellation = await self._call("state_store", self._store.cancellation(rollout_id))
            # Cancelled rollouts converge straight to the stable version.
            target = 0 if cancellation is not None else state.target_weight_percent(spec)
            observed = await self._converge_weight(spec, target)
            if state.phase in ANALYZED_PHASES and cancellation is None and observed == target:
                analysis = await self._analyze(spec, state)
        except AdapterError as exc:
            return await self._on_adapter_error(state, spec, now, exc)

        if (
            state.phase in ANALYZED_PHASES
            and cancellation is None
            and observed < state.current_weight_percent
        ):
            logger.warning(
                "traffic_weight_drift",
                rollout_id=rollout_id,
                expected=state.current_weight_percent,
                observed=observed,
            )

        try:
            decision = state_machine.transition(
                state,
                spec,
                analysis=analysis,
                observed_weight=observed,
                now=now,
                cancel_requested=cancellation is not None,
                cancel_reason=cancellation.reason if cancellation is not None else None,
            )
        except InvalidTransitionError as exc:
            return await self._fail_inconsistent(state, spec, now, exc)
        return await self._commit(state, spec, decision, now)

    async def _commit(
        self,
        state: RolloutState,
        spec: RolloutSpec,
        decision: Decision,
        now: datetime,
    ) -> TickOutcome:
        if not await self._arbiter.commit(state.version, decision.state):
            return TickOutcome(
                rollout_id=state.rollout_id,
                status="conflict",
                phase=state.phase,
                weight_percent=state.current_weight_percent,
                reason="Concurrent write detected; decision deferred to next tick.",
            )

        current = decision.state
        if decision.transitioned:
            for entry in current.history[state.version :]:
                self._emit(current.rollout_id, entry)
            target = current.target_weight_percent(spec)
            if target != current.current_weight_percent or current.step_started_at is None:
                current = await self._apply_weight(current, spec, target, now)
        return TickOutcome(
            rollout_id=current.rollout_id,
            status="transitioned" if decision.transitioned else "unchanged",
            phase=current.phase,
            weight_percent=current.current_weight_percent,
            reason=decision.reason,
        )

    async def _apply_weight(
        self,
        state: RolloutState,
        spec: RolloutSpec,
        target: int,
        now: datetime,
    ) -> RolloutState:
        try:
            observed = await self._converge_weight(spec, target)
        except AdapterError as exc:
            logger.warning(
                "traffic_apply_deferred",
                rollout_id=state.rollout_id,
                target=target,
                adapter=exc.adapter,
                error=str(exc),
            )
            return state
        settled = state_machine.settle_weight(state, spec, observed, now)
        if settled == state:
            return state
        if await self._arbiter.commit(state.version, settled):
            return settled
        return state

    async def _read_weight(self, spec: RolloutSpec) -> int:
        return await self._adapter_call(
            "traffic", self._traffic.get_weight(spec.candidate_version)
        )

    async def _converge_weight(self, spec: RolloutSpec, target: int) -> int:
        observed = await self._read_weight(spec)
        if observed == target:
            return observed
        ack = await self._adapter_call(
            "traffic", self._traffic.set_weight(spec.candidate_version, target)
        )
        if not ack.accepted:
            raise AdapterError(
                f"Traffic shaper rejected {target}%: {ack.reason}",
                adapter="traffic",
                retryable=False,
            )
        return await self._read_weight(spec)

    async def _analyze(self, spec: RolloutSpec, state: RolloutState) -> AnalysisResult:
        step = spec.steps[min(state.current_step_index, spec.last_step_index)]
        window = self._analyzer.lookback_seconds(step)
        samples: dict[str, float | None] = {}
        for check in spec.metric_checks:
            samples[check.name] = await self._adapter_call(
                "metrics",
                self._metrics.query(check.query, spec.candidate_version, window),
            )
        return self._analyzer.analyze(spec.metric_checks, samples, state.consecutive_failures)

    async def _on_adapter_error(
        self,
        state: RolloutState,
        spec: RolloutSpec,
        now: datetime,
        exc: AdapterError,
    ) -> TickOutcome:
        logger.warning(
            "reconcile_adapter_error",
            rollout_id=state.rollout_id,
            adapter=exc.adapter,
            retryable=exc.retryable,
            error=str(exc),
        )
        decision = state_machine.exhaust(state, spec, now)
        if decision is None:
            return TickOutcome(
                rollout_id=state.rollout_id,
                status="adapter_error",
                phase=state.phase,
                weight_percent=state.current_weight_percent,
                reason=str(exc),
            )
        logger.warning("rollout_deadline_exhausted", rollout_id=state.rollout_id, phase=state.phase)
        return await self._commit(state, spec, decision, now)

    async def _fail_inconsistent(
        self,
        state: RolloutState,
        spec: RolloutSpec,
        now: datetime,
        exc: InvalidTransitionError,
    ) -> TickOutcome:
        logger.error("rollout_invariant_violation", rollout_id=state.rollout_id, error=str(exc))
        reason = f"Internal consistency violation: {exc}"
        failed = state_machine.force_failed(state, spec, now=now, reason=reason)
        return await self._commit(
            state,
            spec,
            Decision(state=failed, transitioned=True, reason=reason),
            now,
        )

    async def _archive_expired(self) -> None:
        cutoff = self._clock() - timedelta(seconds=self._config.terminal_retention_seconds)
        archived = await self._store.archive_terminal(cutoff)
        if archived:
            logger.info("rollouts_archived", rollout_ids=archived)

    def _emit(self, rollout_id: str, entry: HistoryEntry) -> None:
        event = PhaseTransitionEvent(
            rollout_id=rollout_id,
            from_phase=entry.from_phase,
            to_phase=entry.to_phase,
            reason=entry.reason,
            timestamp=entry.timestamp,
        )
        task = asyncio.create_task(self._deliver(event))
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)

    async def _deliver(self, event: PhaseTransitionEvent) -> None:
        try:
            await asyncio.wait_for(
                self._notifier.notify(event),
                timeout=self._config.adapter_timeout_seconds,
            )
        except Exception as exc:
            logger.warning(
                "notification_failed",
                rollout_id=event.rollout_id,
                to_phase=event.to_phase,
                error=str(exc) or type(exc).__name__,
            )

    async def _call(self, adapter: str, awaitable: Awaitable[T]) -> T:
        timeout = self._config.adapter_timeout_seconds
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except TimeoutError as exc:
            raise AdapterError(
                f"{adapter} call exceeded {timeout:g}s deadline",
                adapter=adapter,
            ) from exc

    async def _adapter_call(self, adapter: str, awaitable: Awaitable[T]) -> T:
        """Like `_call`, but any adapter failure surfaces as AdapterError."""

        try:
            return await self._call(adapter, awaitable)
        except AdapterError:
            raise
        except Exception as exc:
            raise AdapterError(
                f"{adapter} call failed: {type(exc).__name__}: {exc}",
                adapter=adapter,
                retryable=False,
            ) from exc


async def _wait(stop: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop.wait(), timeout=seconds)
    except TimeoutError:
        pass


def build_controller(settings: Settings) -> RolloutController:
    """Wire production adapters from settings."""

    timeout = settings.adapter_timeout_seconds
    notifier: EventNotifier
    if settings.notifier_webhook_url:
        notifier = WebhookNotifier(url=settings.notifier_webhook_url, timeout_seconds=timeout)
    else:
        notifier = LogNotifier()
    return RolloutController(
        store=JsonFileRolloutStateStore(settings.state_dir),
        traffic=HttpTrafficShaper(
            base_url=settings.traffic_api_url,
            route=settings.traffic_route,
            timeout_seconds=timeout,
        ),
        metrics=PrometheusMetricsProvider(base_url=settings.prometheus_url, timeout_seconds=timeout),
        notifier=notifier,
        analyzer=Analyzer(
            default_tolerated_failures=settings.default_tolerated_failures,
            min_lookback_seconds=settings.min_lookback_seconds,
        ),
        config=ControllerConfig.from_settings(settings),
    )


async def _serve(controller: RolloutController) -> None:
    try:
        await controller.run()
    finally:
        await controller.close()


def main() -> None:
    """Entrypoint for the containerized controller service."""

    settings = get_settings()
    configure_logging(settings)
    controller = build_controller(settings)
    try:
        asyncio.run(_serve(controller))
    except KeyboardInterrupt:
        logger.info("controller_interrupted")


if __name__ == "__main__":
    main()
