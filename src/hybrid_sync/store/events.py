"""
events.py - In-process change notification.

A ChangeBus delivers (key, value) pairs to handlers subscribed to a
collection key, or to every key when subscribed with key=None.
Handlers run synchronously in publish order. A failing handler is
logged and never affects the publisher or the other handlers.
"""

import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[str, Any], None]


class ChangeBus:
    """Publish/subscribe keyed by collection."""

    def __init__(self) -> None:
        self._handlers: dict[str | None, list[ChangeHandler]] = {}

    def subscribe(self, key: str | None, handler: ChangeHandler) -> Callable[[], None]:
        """
        Register a handler for one key (or all keys when key is None).

        Returns:
            Callable that removes the subscription
        """
        self._handlers.setdefault(key, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(key, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, key: str, value: Any) -> None:
        """Deliver a change to the key's subscribers, then the catch-all ones."""
        handlers = list(self._handlers.get(key, ())) + list(self._handlers.get(None, ()))
        for handler in handlers:
            try:
                handler(key, value)
            except Exception:
                logger.exception(f"Change handler for {key} failed")

    def clear(self) -> None:
        self._handlers.clear()

    def __len__(self) -> int:
        return sum(len(h) for h in self._handlers.values())
