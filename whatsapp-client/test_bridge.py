import json
from unittest.mock import MagicMock

import pytest
import requests

from auth_state import load_auth_state
from bridge import BridgeSocket, BridgeTransport, _request, create_http_session
from errors import TransportError
from events import CONNECTION_UPDATE, KEYS_UPDATE
from transport import SocketOptions

BASE_URL = "http://localhost:8080/api"


def make_response(status_code=200, data=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.text = text or (json.dumps(data) if data is not None else "")
    response.content = response.text.encode()
    response.json.return_value = data
    return response


@pytest.fixture
def http():
    return MagicMock()


def test_request_success(http):
    http.request.return_value = make_response(data={"ok": True})

    assert _request(http, "GET", f"{BASE_URL}/version") == {"ok": True}
    http.request.assert_called_once_with("GET", f"{BASE_URL}/version", timeout=(3, 15))


def test_request_empty_body(http):
    http.request.return_value = make_response(status_code=204)

    assert _request(http, "DELETE", f"{BASE_URL}/sessions/abc") == {}


def test_request_http_error(http):
    http.request.return_value = make_response(status_code=500, text="Internal Server Error")

    with pytest.raises(TransportError) as excinfo:
        _request(http, "GET", f"{BASE_URL}/version")
    assert "HTTP 500 - Internal Server Error" in str(excinfo.value)


def test_request_timeout(http):
    http.request.side_effect = requests.Timeout()

    with pytest.raises(TransportError) as excinfo:
        _request(http, "GET", f"{BASE_URL}/version")
    assert "timed out" in str(excinfo.value)


def test_request_connection_error(http):
    http.request.side_effect = requests.ConnectionError("Connection refused")

    with pytest.raises(TransportError) as excinfo:
        _request(http, "GET", f"{BASE_URL}/version")
    assert "Connection refused" in str(excinfo.value)


def test_request_invalid_json(http):
    response = make_response(text="<html>")
    response.json.side_effect = json.JSONDecodeError("Expecting value", "<html>", 0)
    http.request.return_value = response

    with pytest.raises(TransportError):
        _request(http, "GET", f"{BASE_URL}/version")


def test_create_http_session_retries():
    session = create_http_session(retries=5)

    retry = session.get_adapter("http://localhost").max_retries
    assert retry.total == 5
    assert 503 in retry.status_forcelist


def test_fetch_latest_version(http):
    http.request.return_value = make_response(data={"version": [2, 3000, 1015901307]})

    assert BridgeTransport(BASE_URL, http_session=http).fetch_latest_version() == (2, 3000, 1015901307)


def test_fetch_latest_version_invalid(http):
    http.request.return_value = make_response(data={"version": "latest"})

    with pytest.raises(TransportError):
        BridgeTransport(BASE_URL, http_session=http).fetch_latest_version()


def test_check_health(http):
    transport = BridgeTransport(BASE_URL, http_session=http)
    http.request.return_value = make_response(data={"version": [2, 3000, 1]})
    assert transport.check_health() is True

    http.request.side_effect = requests.ConnectionError("down")
    assert transport.check_health() is False


def test_connect_sends_credentials(http, tmp_path):
    auth = load_auth_state(str(tmp_path / "auth"))
    auth.state.creds["registered"] = True
    auth.state.keys.set({"pre-key": {"1": {"public": "abc"}}})
    http.request.return_value = make_response(data={"session_id": "abc"})

    socket = BridgeTransport(BASE_URL, http_session=http).connect(auth.state, (2, 3000, 1), SocketOptions())

    assert socket.session_id == "abc"
    assert not socket.closed
    method, url = http.request.call_args[0]
    payload = http.request.call_args[1]["json"]
    assert (method, url) == ("POST", f"{BASE_URL}/sessions")
    assert payload["auth"] == {"creds": {"registered": True}, "keys": {"pre-key-1": {"public": "abc"}}}
    assert payload["version"] == [2, 3000, 1]
    assert payload["browser"] == ["OneX Universe HR", "Chrome", "1.0.0"]


def test_connect_without_session_id(http, tmp_path):
    auth = load_auth_state(str(tmp_path / "auth"))
    http.request.return_value = make_response(data={})

    with pytest.raises(TransportError):
        BridgeTransport(BASE_URL, http_session=http).connect(auth.state, None, SocketOptions())


def test_send_message(http):
    http.request.return_value = make_response(data={"key": {"remoteJid": "1@s.whatsapp.net", "id": "MSG1"}})
    socket = BridgeSocket(http, BASE_URL, "abc")

    ack = socket.send_message("1@s.whatsapp.net", {"text": "Hello"})

    assert ack["key"]["id"] == "MSG1"
    http.request.assert_called_once_with(
        "POST",
        f"{BASE_URL}/sessions/abc/messages",
        timeout=(3, 15),
        json={"jid": "1@s.whatsapp.net", "content": {"text": "Hello"}},
    )


def test_request_pairing_code(http):
    socket = BridgeSocket(http, BASE_URL, "abc")
    http.request.return_value = make_response(data={"code": "ABCD1234"})
    assert socket.request_pairing_code("94770000000") == "ABCD1234"

    http.request.return_value = make_response(data={})
    with pytest.raises(TransportError):
        socket.request_pairing_code("94770000000")


def test_group_metadata_quotes_jid(http):
    http.request.return_value = make_response(data={"id": "123@g.us"})

    BridgeSocket(http, BASE_URL, "abc").group_metadata("123@g.us")

    assert http.request.call_args[0] == ("GET", f"{BASE_URL}/sessions/abc/groups/123%40g.us")


def test_end_is_idempotent(http):
    http.request.return_value = make_response(status_code=204)
    socket = BridgeSocket(http, BASE_URL, "abc")

    socket.end()
    socket.end()

    assert socket.closed
    http.request.assert_called_once_with("DELETE", f"{BASE_URL}/sessions/abc", timeout=(3, 15))


def test_end_tolerates_bridge_errors(http):
    http.request.side_effect = requests.ConnectionError("down")
    socket = BridgeSocket(http, BASE_URL, "abc")

    socket.end()

    assert socket.closed


def test_logout(http):
    http.request.return_value = make_response(status_code=204)
    socket = BridgeSocket(http, BASE_URL, "abc")

    socket.logout()

    methods = [call[0][:2] for call in http.request.call_args_list]
    assert methods == [("POST", f"{BASE_URL}/sessions/abc/logout"), ("DELETE", f"{BASE_URL}/sessions/abc")]
    assert socket.closed


def test_events_are_polled_after_subscription(http, wait_for):
    http.request.side_effect = [
        make_response(data={"events": [
            {"seq": 1, "event": "connection.update", "data": {"qr": "2@QRDATA"}},
            {"seq": 2, "event": "connection.update", "data": {"connection": "open"}},
        ]}),
        requests.ConnectionError("bridge stopped"),
    ]
    socket = BridgeSocket(http, BASE_URL, "abc", poll_wait=1)
    assert http.request.call_count == 0

    updates = []
    socket.ev.on(CONNECTION_UPDATE, updates.append)

    assert wait_for(lambda: len(updates) == 3)
    assert updates[0] == {"qr": "2@QRDATA"}
    assert updates[1] == {"connection": "open"}
    assert updates[2]["connection"] == "close"
    assert updates[2]["lastDisconnect"]["error"]["statusCode"] == 408
    assert http.request.call_args_list[1][1]["params"] == {"after": 2, "wait": 1}
    assert socket.closed


def test_keys_update_is_stored(http, tmp_path):
    auth = load_auth_state(str(tmp_path / "auth"))
    socket = BridgeSocket(http, BASE_URL, "abc", auth.state)

    socket.ev.emit(KEYS_UPDATE, {"session": {"1": {"id": 1}}})

    assert auth.state.keys.get("session", ["1"]) == {"1": {"id": 1}}
