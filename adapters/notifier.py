"""Event notifier contracts for phase-transition announcements."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import aiohttp
from loguru import logger

from adapters.errors import AdapterError
from models.schemas import PhaseTransitionEvent


class EventNotifier(Protocol):
    """Fire-and-forget receiver of rollout phase transitions."""

    async def notify(self, event: PhaseTransitionEvent) -> None:
        """Deliver one transition event."""


@dataclass(frozen=True)
class LogNotifier:
    """Notifier that only writes transitions to the log."""

    async def notify(self, event: PhaseTransitionEvent) -> None:
        logger.info(
            "rollout_event",
            rollout_id=event.rollout_id,
            from_phase=event.from_phase,
            to_phase=event.to_phase,
            reason=event.reason,
        )


class WebhookNotifier:
    """Posts transition events as JSON to a chat or incident webhook."""

    def __init__(
        self,
        *,
        url: str,
        timeout_seconds: float = 5.0,
        session: Any | None = None,
    ) -> None:
        self._url = url
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Any | None = session

    async def notify(self, event: PhaseTransitionEvent) -> None:
        session = self._get_or_create_session()
        payload = event.model_dump(mode="json")
        payload["text"] = (
            f"Rollout {event.rollout_id}: {event.from_phase} -> {event.to_phase} ({event.reason})"
        )
        try:
            async with session.post(self._url, json=payload) as response:
                if response.status >= 400:
                    raise AdapterError(
                        f"Webhook returned status {response.status}",
                        adapter="notifier",
                        retryable=response.status >= 500,
                    )
        except aiohttp.ClientError as exc:
            raise AdapterError(f"Webhook delivery failed: {exc}", adapter="notifier") from exc

    async def close(self) -> None:
        """Close the owned aiohttp session."""

        if self._session is not None:
            await self._session.close()
            self._session = None

    def _get_or_create_session(self) -> Any:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session
