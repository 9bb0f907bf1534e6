"""HTTP transport talking to a local WhatsApp bridge process.

The bridge runs the WhatsApp protocol library and exposes each socket as a
session over a small JSON API:

    GET    /version                               -> {"version": [2, 3000, 1015901307]}
    POST   /sessions                              -> {"session_id": "..."}
    GET    /sessions/<id>/events?after=N&wait=S   -> {"events": [{"seq": N, "event": "...", "data": ...}]}
    POST   /sessions/<id>/messages                -> {"key": {...}, "status": ...}
    POST   /sessions/<id>/pairing-code            -> {"code": "..."}
    GET    /sessions/<id>/groups/<jid>            -> group metadata
    POST   /sessions/<id>/logout
    DELETE /sessions/<id>

Events are long-polled on a daemon thread and dispatched to the socket's
EventEmitter, so handlers run on that thread.
"""

import json
import logging
import threading
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from errors import TransportError
from events import CONNECTION_UPDATE, KEYS_UPDATE, EventEmitter
from models import DisconnectReason
from transport import SocketOptions, VersionInfo

logger = logging.getLogger(__name__)

WHATSAPP_API_BASE_URL = "http://localhost:8080/api"

# Default timeout: 3s connect, 15s read
DEFAULT_TIMEOUT = (3, 15)

# Long-poll wait on the bridge side, in seconds
EVENT_POLL_WAIT = 25


def create_http_session(retries: int = 3) -> requests.Session:
    """Create an HTTP session with retries configured."""
    session = requests.Session()
    # backoff factor of 0.3s
    retry_strategy = Retry(
        total=retries,
        backoff_factor=0.3,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["HEAD", "GET", "POST", "DELETE", "OPTIONS"]
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def _request(
    session: requests.Session,
    method: str,
    url: str,
    timeout=DEFAULT_TIMEOUT,
    **kwargs,
) -> Any:
    """Call the bridge and decode its JSON answer.

    Raises:
        TransportError: On timeouts, connection errors, non-2xx answers or invalid JSON
    """
    try:
        response = session.request(method, url, timeout=timeout, **kwargs)
    except requests.Timeout as e:
        raise TransportError(f"Request to {url} timed out. The bridge may be unresponsive.") from e
    except requests.RequestException as e:
        raise TransportError(f"Request error: {str(e)}") from e

    if response.status_code >= 400:
        raise TransportError(f"Error: HTTP {response.status_code} - {response.text}")
    if response.status_code == 204 or not response.content:
        return {}
    try:
        return response.json()
    except json.JSONDecodeError as e:
        raise TransportError(f"Error parsing response: {response.text}") from e


class _SessionEvents(EventEmitter):
    """Starts the event poller once connection updates are subscribed to."""

    def __init__(self, start):
        super().__init__()
        self._start = start

    def on(self, event, handler):
        unsubscribe = super().on(event, handler)
        if event == CONNECTION_UPDATE:
            self._start()
        return unsubscribe


class BridgeSocket:
    """One bridge session. Implements transport.Socket."""

    def __init__(
        self,
        http_session: requests.Session,
        base_url: str,
        session_id: str,
        auth_state: Any = None,
        poll_wait: float = EVENT_POLL_WAIT,
    ):
        self.base_url = base_url.rstrip("/")
        self.session_id = session_id
        self._http = http_session
        self._auth_state = auth_state
        self._poll_wait = poll_wait
        self._events = _SessionEvents(self.start)
        self._cursor = 0
        self._closed = threading.Event()
        self._poller: Optional[threading.Thread] = None
        self._poller_lock = threading.Lock()
        if auth_state is not None:
            self._events.on(KEYS_UPDATE, self._store_keys)

    @property
    def ev(self) -> EventEmitter:
        return self._events

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _url(self, path: str = "") -> str:
        return f"{self.base_url}/sessions/{quote(self.session_id, safe='')}{path}"

    def start(self) -> None:
        """Start delivering events. Only the first call has an effect."""
        with self._poller_lock:
            if self._poller is not None or self._closed.is_set():
                return
            self._poller = threading.Thread(
                target=self._poll_events,
                name=f"whatsapp-bridge-{self.session_id}",
                daemon=True,
            )
            self._poller.start()

    def _poll_events(self) -> None:
        while not self._closed.is_set():
            try:
                result = _request(
                    self._http,
                    "GET",
                    self._url("/events"),
                    params={"after": self._cursor, "wait": self._poll_wait},
                    timeout=(DEFAULT_TIMEOUT[0], self._poll_wait + DEFAULT_TIMEOUT[1]),
                )
            except TransportError as e:
                if self._closed.is_set():
                    break
                logger.warning(f"Lost event stream of bridge session {self.session_id}: {e}")
                self._closed.set()
                self._events.emit(CONNECTION_UPDATE, {
                    "connection": "close",
                    "lastDisconnect": {
                        "error": {"statusCode": int(DisconnectReason.CONNECTION_LOST), "message": str(e)},
                    },
                })
                break

            for item in result.get("events", []):
                if self._closed.is_set():
                    break
                self._cursor = max(self._cursor, int(item.get("seq", self._cursor)))
                self._events.emit(item.get("event", ""), item.get("data"))

    def _store_keys(self, data: Dict[str, Dict[str, Any]]) -> None:
        self._auth_state.keys.set(data or {})

    def send_message(self, jid: str, content: Dict[str, Any]) -> Dict[str, Any]:
        return _request(self._http, "POST", self._url("/messages"), json={"jid": jid, "content": content})

    def request_pairing_code(self, phone_number: str) -> str:
        result = _request(self._http, "POST", self._url("/pairing-code"), json={"phone_number": phone_number})
        code = result.get("code")
        if not code:
            raise TransportError("Bridge did not return a pairing code")
        return code

    def group_metadata(self, jid: str) -> Dict[str, Any]:
        return _request(self._http, "GET", self._url(f"/groups/{quote(jid, safe='')}"))

    def logout(self) -> None:
        _request(self._http, "POST", self._url("/logout"))
        self.end()

    def end(self, error: Optional[Exception] = None) -> None:
        if self._closed.is_set() and self._poller is None:
            return
        self._closed.set()
        if error is not None:
            logger.info(f"Ending bridge session {self.session_id}: {error}")
        try:
            _request(self._http, "DELETE", self._url())
        except TransportError as e:
            logger.warning(f"Failed to close bridge session {self.session_id}: {e}")

        poller, self._poller = self._poller, None
        # end() may run on the poller itself when called from an event handler
        if poller is not None and poller is not threading.current_thread():
            poller.join(timeout=DEFAULT_TIMEOUT[0])


class BridgeTransport:
    """Opens bridge sessions. Implements transport.Transport."""

    def __init__(
        self,
        base_url: str = WHATSAPP_API_BASE_URL,
        http_session: Optional[requests.Session] = None,
        poll_wait: float = EVENT_POLL_WAIT,
    ):
        self.base_url = base_url.rstrip("/")
        self.poll_wait = poll_wait
        self._http = http_session or create_http_session()

    def check_health(self) -> bool:
        """Check if the bridge API is responsive."""
        try:
            _request(self._http, "GET", f"{self.base_url}/version")
            return True
        except TransportError:
            return False

    def fetch_latest_version(self) -> VersionInfo:
        result = _request(self._http, "GET", f"{self.base_url}/version")
        version = result.get("version")
        if not isinstance(version, (list, tuple)) or len(version) != 3:
            raise TransportError(f"Bridge returned an invalid version: {version!r}")
        return tuple(int(part) for part in version)  # type: ignore[return-value]

    def connect(self, auth_state: Any, version: Optional[VersionInfo], options: SocketOptions) -> BridgeSocket:
        payload = {
            "auth": {
                "creds": auth_state.creds,
                "keys": auth_state.keys.read_all(),
            },
            "version": list(version) if version else None,
            "browser": list(options.browser),
            "mark_online_on_connect": options.mark_online_on_connect,
        }
        result = _request(self._http, "POST", f"{self.base_url}/sessions", json=payload)
        session_id = result.get("session_id")
        if not session_id:
            raise TransportError("Bridge did not return a session id")

        logger.info(f"Opened bridge session {session_id}")
        return BridgeSocket(self._http, self.base_url, session_id, auth_state, self.poll_wait)
