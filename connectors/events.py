"""
EventBus — explicit observer registration for gateway notifications.

Event names used by the gateway:

  connection:created   connection:updated   connection:deleted
  request:success      request:error
  provider:registered  auth:url_generated   auth:completed   auth:failed
  token:refreshed      token:refresh_failed connection:revoked

Payloads carry identifiers only, never credentials.  Delivery is
fire-and-forget: a failing subscriber is logged and skipped.
"""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

Subscriber = Callable[[str, Dict[str, Any]], Any]

ALL_EVENTS = "*"


class EventBus:
    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Subscriber]] = defaultdict(list)

    def subscribe(self, event: str, callback: Subscriber) -> Callable[[], None]:
        """Register *callback* for *event* (or ``"*"``).  Returns an unsubscribe function."""
        self._subscribers[event].append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers[event]:
                self._subscribers[event].remove(callback)

        return _unsubscribe

    async def emit(self, event: str, payload: Dict[str, Any]) -> None:
        for callback in [*self._subscribers.get(event, []), *self._subscribers.get(ALL_EVENTS, [])]:
            try:
                result = callback(event, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.warning("Event subscriber failed for %s", event, exc_info=True)
