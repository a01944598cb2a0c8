"""Metrics query layer returning scalar health indicators per version."""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Protocol

import aiohttp
from loguru import logger

from adapters.errors import AdapterError


class MetricsProvider(Protocol):
    """Provider contract for external metrics backends."""

    async def query(self, query: str, version: str, window_seconds: float) -> float | None:
        """Return one scalar sample for `version` over the window, or None for no data."""


@dataclass
class StaticMetricsProvider:
    """
    Scripted provider for tests and dry runs.

    Each query string maps to a queue of samples consumed one per call; once a
    queue holds a single value it is repeated. Queries with no script return
    `default`.
    """

    scripts: dict[str, list[float | None]] = field(default_factory=dict)
    default: float | None = None
    calls: list[tuple[str, str, float]] = field(default_factory=list)
    _queues: dict[str, deque[float | None]] = field(
        default_factory=lambda: defaultdict(deque), init=False, repr=False
    )

    def __post_init__(self) -> None:
        for query, samples in self.scripts.items():
            self._queues[query].extend(samples)

    def push(self, query: str, *samples: float | None) -> None:
        """Append samples to a query's script."""

        self._queues[query].extend(samples)

    async def query(self, query: str, version: str, window_seconds: float) -> float | None:
        self.calls.append((query, version, window_seconds))
        queue = self._queues.get(query)
        if not queue:
            return self.default
        if len(queue) == 1:
            return queue[0]
        return queue.popleft()


class PrometheusMetricsProvider:
    """
    Prometheus instant-query provider.

    Queries may reference `{version}` and `{window}` placeholders; the window is
    rendered as a Prometheus duration in whole seconds.
    """

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = 10.0,
        session: Any | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Any | None = session

    async def query(self, query: str, version: str, window_seconds: float) -> float | None:
        rendered = render_query(query, version=version, window_seconds=window_seconds)
        url = f"{self._base_url}/api/v1/query"
        session = self._get_or_create_session()
        try:
            async with session.get(url, params={"query": rendered}) as response:
                if response.status >= 400:
                    raise AdapterError(
                        f"Prometheus returned status {response.status}",
                        adapter="metrics",
                        retryable=response.status >= 500,
                    )
                payload = await response.json()
        except aiohttp.ClientError as exc:
            raise AdapterError(f"Prometheus request failed: {exc}", adapter="metrics") from exc
        except ValueError as exc:
            raise AdapterError(
                f"Prometheus returned invalid JSON: {exc}",
                adapter="metrics",
                retryable=False,
            ) from exc
        sample = parse_prometheus_sample(payload)
        if sample is None:
            logger.debug("metrics_no_data", query=rendered, version=version)
        return sample

    async def close(self) -> None:
        """Close the owned aiohttp session."""

        if self._session is not None:
            await self._session.close()
            self._session = None

    def _get_or_create_session(self) -> Any:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session


def render_query(query: str, *, version: str, window_seconds: float) -> str:
    """Substitute version and window placeholders in a query template."""

    window = f"{max(1, int(window_seconds))}s"
    return query.replace("{version}", version).replace("{window}", window)


def parse_prometheus_sample(payload: dict[str, Any]) -> float | None:
    """Return the first scalar of an instant-query payload, or None when empty."""

    if payload.get("status") != "success":
        raise AdapterError(
            f"Prometheus query failed: {payload.get('error', 'unknown error')}",
            adapter="metrics",
        )
    data = payload.get("data", {})
    result_type = data.get("resultType")
    result = data.get("result")
    if result_type == "scalar":
        raw = result[1] if isinstance(result, list) and len(result) == 2 else None
    elif result_type == "vector":
        if not result:
            return None
        try:
            raw = result[0].get("value", [None, None])[1]
        except (AttributeError, IndexError, KeyError, TypeError) as exc:
            raise AdapterError(
                f"Malformed Prometheus vector sample: {result[0]!r}",
                adapter="metrics",
                retryable=False,
            ) from exc
    else:
        raise AdapterError(
            f"Unsupported Prometheus result type: {result_type}",
            adapter="metrics",
            retryable=False,
        )
    if raw is None:
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise AdapterError(
            f"Prometheus returned non-numeric sample: {raw!r}",
            adapter="metrics",
            retryable=False,
        ) from exc
    if value != value:  # NaN
        return None
    return value
