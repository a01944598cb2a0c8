"""Traffic shaper abstractions wrapping the external traffic-splitting substrate."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

import aiohttp
from loguru import logger

from adapters.errors import AdapterError


@dataclass(frozen=True)
class TrafficAck:
    """Acknowledgement of a weight change request."""

    candidate_version: str
    requested_percent: int
    accepted: bool
    reason: str = ""


class TrafficShaper(Protocol):
    """Protocol for clients that route a share of live traffic to a candidate."""

    async def set_weight(self, candidate_version: str, percent: int) -> TrafficAck:
        """Request that `percent` of traffic be routed to the candidate."""

    async def get_weight(self, candidate_version: str) -> int:
        """Return the percentage currently applied for the candidate."""


@dataclass
class InMemoryTrafficShaper:
    """
    Local traffic shaper holding weights in a dict.

    `lag_reads` delays application: a requested weight becomes visible only
    after that many `get_weight` calls, mimicking substrates that converge
    asynchronously.
    """

    lag_reads: int = 0
    weights: dict[str, int] = field(default_factory=dict)
    requests: list[tuple[str, int]] = field(default_factory=list)
    _pending: dict[str, tuple[int, int]] = field(default_factory=dict, init=False, repr=False)

    async def set_weight(self, candidate_version: str, percent: int) -> TrafficAck:
        if not 0 <= percent <= 100:
            return TrafficAck(
                candidate_version=candidate_version,
                requested_percent=percent,
                accepted=False,
                reason="Weight must be within 0-100.",
            )
        self.requests.append((candidate_version, percent))
        if self.lag_reads <= 0:
            self.weights[candidate_version] = percent
        else:
            self._pending[candidate_version] = (percent, self.lag_reads)
        return TrafficAck(
            candidate_version=candidate_version,
            requested_percent=percent,
            accepted=True,
        )

    async def get_weight(self, candidate_version: str) -> int:
        pending = self._pending.get(candidate_version)
        if pending is not None:
            percent, remaining = pending
            if remaining <= 1:
                self.weights[candidate_version] = percent
                del self._pending[candidate_version]
            else:
                self._pending[candidate_version] = (percent, remaining - 1)
        return self.weights.get(candidate_version, 0)


class HttpTrafficShaper:
    """
    Traffic shaper backed by a JSON routing API.

    `PUT {base_url}/routes/{route}` with `{"candidate": ..., "weight": ...}`
    requests a split; `GET {base_url}/routes/{route}` returns
    `{"weights": {"<version>": <percent>, ...}}`.
    """

    def __init__(
        self,
        *,
        base_url: str,
        route: str,
        timeout_seconds: float = 10.0,
        session: Any | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._route = route
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Any | None = session

    async def set_weight(self, candidate_version: str, percent: int) -> TrafficAck:
        url = f"{self._base_url}/routes/{self._route}"
        payload = {"candidate": candidate_version, "weight": percent}
        session = self._get_or_create_session()
        try:
            async with session.put(url, json=payload) as response:
                if response.status >= 500:
                    raise AdapterError(
                        f"Traffic API returned status {response.status}",
                        adapter="traffic",
                    )
                if response.status >= 400:
                    body = await response.text()
                    logger.warning(
                        "traffic_weight_rejected",
                        candidate_version=candidate_version,
                        percent=percent,
                        status=response.status,
                    )
                    return TrafficAck(
                        candidate_version=candidate_version,
                        requested_percent=percent,
                        accepted=False,
                        reason=f"Traffic API rejected weight: {body[:200]}",
                    )
        except aiohttp.ClientError as exc:
            raise AdapterError(f"Traffic API request failed: {exc}", adapter="traffic") from exc
        return TrafficAck(
            candidate_version=candidate_version,
            requested_percent=percent,
            accepted=True,
        )

    async def get_weight(self, candidate_version: str) -> int:
        url = f"{self._base_url}/routes/{self._route}"
        session = self._get_or_create_session()
        try:
            async with session.get(url) as response:
                if response.status >= 400:
                    raise AdapterError(
                        f"Traffic API returned status {response.status}",
                        adapter="traffic",
                        retryable=response.status >= 500,
                    )
                payload = await response.json()
        except aiohttp.ClientError as exc:
            raise AdapterError(f"Traffic API request failed: {exc}", adapter="traffic") from exc
        except ValueError as exc:
            raise AdapterError(
                f"Traffic API returned invalid JSON: {exc}",
                adapter="traffic",
                retryable=False,
            ) from exc
        return parse_route_weight(payload, candidate_version)

    async def close(self) -> None:
        """Close the owned aiohttp session."""

        if self._session is not None:
            await self._session.close()
            self._session = None

    def _get_or_create_session(self) -> Any:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session


def parse_route_weight(payload: dict[str, Any], candidate_version: str) -> int:
    """Extract the candidate's weight from a routing API payload."""

    weights = payload.get("weights")
    if not isinstance(weights, dict):
        raise AdapterError("Traffic API payload missing weights.", adapter="traffic")
    raw = weights.get(candidate_version, 0)
    try:
        percent = int(round(float(raw)))
    except (TypeError, ValueError) as exc:
        raise AdapterError(
            f"Traffic API returned non-numeric weight: {raw!r}",
            adapter="traffic",
            retryable=False,
        ) from exc
    return max(0, min(100, percent))
