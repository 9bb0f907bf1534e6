"""Observer interface used for transport events and client notifications.

Handlers are plain callables taking a single payload. A failing handler is
logged and does not stop delivery to the others.
"""

import logging
import threading
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

# Events emitted by the transport socket
CREDS_UPDATE = "creds.update"
CONNECTION_UPDATE = "connection.update"
MESSAGES_UPSERT = "messages.upsert"
KEYS_UPDATE = "keys.update"

# Events re-emitted to the embedding application
QR = "qr"
PAIRING_CODE = "pairing-code"
MESSAGE = "message"
GROUPS_UPSERT = "groups.upsert"
GROUPS_UPDATE = "groups.update"
CONNECTION_STATE = "connection.state"

Handler = Callable[[Any], None]


class EventEmitter:
    """Thread-safe named-event fan-out."""

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = {}
        self._lock = threading.Lock()

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Subscribe ``handler`` to ``event``.

        Returns:
            A callable that removes the subscription. Calling it twice is harmless.
        """
        with self._lock:
            self._handlers.setdefault(event, []).append(handler)

        def unsubscribe() -> None:
            self.off(event, handler)

        return unsubscribe

    def off(self, event: str, handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

    def emit(self, event: str, payload: Any = None) -> int:
        """Deliver ``payload`` to every handler of ``event``.

        Returns:
            Number of handlers that were called
        """
        with self._lock:
            handlers = list(self._handlers.get(event, []))

        for handler in handlers:
            try:
                handler(payload)
            except Exception as e:
                logger.exception(f"Error in '{event}' handler: {e}")
        return len(handlers)

    def listener_count(self, event: str) -> int:
        with self._lock:
            return len(self._handlers.get(event, []))

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()
