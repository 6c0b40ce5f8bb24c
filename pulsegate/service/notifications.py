from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Optional

from pulsegate.config import Settings
from pulsegate.logging import get_logger
from pulsegate.storage.common import Clock, to_iso, utc_now
from pulsegate.storage.errors import StoreError
from pulsegate.storage.keyvalue import KeyValueStore

logger = get_logger(__name__)


class AuthEventNotifier:
    """Publishes authentication-state changes for other bot workers.

    A failed publish is retried with exponential backoff
    (``base * 2 ** attempt``) up to ``notifier_max_attempts``; after that the
    notification is dropped and logged, never raised.
    """

    def __init__(
        self,
        store: KeyValueStore,
        settings: Settings,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._sleep = sleep
        self._clock = clock or utc_now

    def backoff_delay(self, attempt: int) -> float:
        return self.settings.notifier_backoff_base_seconds * (2 ** attempt)

    async def publish(self, event: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        message = json.dumps(
            {"event": event, "at": to_iso(self._clock()), "payload": payload or {}}
        )
        attempts = max(1, self.settings.notifier_max_attempts)
        for attempt in range(attempts):
            try:
                await self.store.publish(self.settings.notifier_channel, message)
                return True
            except StoreError as exc:
                if attempt == attempts - 1:
                    logger.error(
                        "auth_event_publish_failed",
                        notification=event,
                        attempts=attempts,
                        error=str(exc),
                    )
                    return False
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "auth_event_publish_retry",
                    notification=event,
                    attempt=attempt + 1,
                    delay=delay,
                )
                await self._sleep(delay)
        return False
