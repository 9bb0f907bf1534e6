import threading
import time
from unittest.mock import MagicMock

import pytest

from config import ClientConfig
from events import CONNECTION_UPDATE, EventEmitter


class ScriptedEvents(EventEmitter):
    """Delivers the scripted connection updates on a separate thread once
    connection.update is subscribed, like a real socket would."""

    def __init__(self, updates):
        super().__init__()
        self._updates = list(updates)
        self.delivered = threading.Event()

    def on(self, event, handler):
        unsubscribe = super().on(event, handler)
        if event == CONNECTION_UPDATE and self._updates:
            updates, self._updates = self._updates, []
            threading.Thread(target=self._deliver, args=(updates,), daemon=True).start()
        return unsubscribe

    def _deliver(self, updates):
        for update in updates:
            self.emit(CONNECTION_UPDATE, update)
        self.delivered.set()


class FakeSocket:
    def __init__(self, updates):
        self.ev = ScriptedEvents(updates)
        self.send_message = MagicMock(return_value={"key": {"remoteJid": "94771234567@s.whatsapp.net", "id": "MSG1"}})
        self.end = MagicMock()
        self.logout = MagicMock()
        self.request_pairing_code = MagicMock(return_value="ABCD1234")
        self.group_metadata = MagicMock(return_value={
            "id": "123@g.us",
            "subject": "Team",
            "participants": [{"id": "1@s.whatsapp.net"}],
        })


class FakeTransport:
    """Transport whose sockets replay one scripted list of updates each."""

    def __init__(self):
        self.scripts = []
        self.sockets = []
        self.connect_calls = []
        self.live_at_connect = []
        self.connect_error = None
        self.connected = threading.Event()

    def fetch_latest_version(self):
        return (2, 3000, 1)

    def connect(self, auth_state, version, options):
        self.connect_calls.append((auth_state, version, options))
        self.live_at_connect.append(sum(1 for socket in self.sockets if not socket.end.called))
        if self.connect_error is not None:
            raise self.connect_error
        socket = FakeSocket(self.scripts.pop(0) if self.scripts else [])
        self.sockets.append(socket)
        self.connected.set()
        return socket


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def config(tmp_path):
    return ClientConfig(
        auth_path=str(tmp_path / "auth"),
        reconnect_backoff=0,
        connect_timeout=2,
        max_reconnect_attempts=3,
        version=(2, 3000, 1),
    )


@pytest.fixture
def wait_for():
    def wait(predicate, timeout=2.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return predicate()
    return wait
