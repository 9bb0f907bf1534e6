"""Verification script to ensure the bridge transport implements all Protocol contracts."""

import tempfile

import requests

from auth_state import load_auth_state
from bridge import BridgeSocket, BridgeTransport
from transport import EventStream, Socket, Transport


def verify_protocol_implementation():
    """Verify that the bridge implementations satisfy Protocol contracts."""

    # No request is sent: the socket is built directly and never started
    transport = BridgeTransport("http://localhost:8080/api")
    with tempfile.TemporaryDirectory() as auth_path:
        auth = load_auth_state(auth_path)
        socket = BridgeSocket(requests.Session(), transport.base_url, "verify", auth.state)

        # Verify Transport implementation
        for name in ("connect", "fetch_latest_version"):
            assert hasattr(transport, name), f"Transport missing {name}"

        # Verify Socket implementation
        for name in ("ev", "send_message", "end", "logout", "request_pairing_code", "group_metadata"):
            assert hasattr(socket, name), f"Socket missing {name}"

        # Verify EventStream implementation
        assert hasattr(socket.ev, "on"), "EventStream missing on"
        unsubscribe = socket.ev.on("creds.update", lambda payload: None)
        assert callable(unsubscribe), "EventStream.on must return an unsubscribe callable"
        unsubscribe()

        # Verify the auth state exposes what BridgeTransport.connect reads
        assert isinstance(auth.state.creds, dict), "AuthenticationState.creds must be a dict"
        assert auth.state.keys.read_all() == {}, "Fresh key store must be empty"

    print("✓ All Protocol contracts are properly implemented!")
    print(f"✓ BridgeTransport implements {Transport.__name__}")
    print(f"✓ BridgeSocket implements {Socket.__name__}")
    print(f"✓ BridgeSocket.ev implements {EventStream.__name__}")

if __name__ == '__main__':
    verify_protocol_implementation()
