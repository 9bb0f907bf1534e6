"""Transport abstraction layer using Protocol-based interfaces.

This module defines the contract the client expects from the external
WhatsApp protocol library. The lifecycle manager and the message facade only
depend on these Protocols, so the concrete transport (the HTTP bridge in
bridge.py, or a fake in tests) can be swapped without touching them.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

VersionInfo = Tuple[int, int, int]

DEFAULT_BROWSER: Tuple[str, str, str] = ("OneX Universe HR", "Chrome", "1.0.0")


@dataclass
class SocketOptions:
    """Options passed to Transport.connect.

    Attributes:
        browser: (client name, browser, version) shown under Linked Devices
        print_qr_in_terminal: Whether the transport should print QR codes itself.
            The client renders them, so this stays False.
        mark_online_on_connect: Whether to send an "available" presence on connect
        get_message: Lookup used by the transport to re-send messages on retry
            requests. Receives (chat_jid, message_id).
        cached_group_metadata: Lookup used by the transport to avoid refetching
            group metadata on every group send. Receives a group JID.
    """
    browser: Tuple[str, str, str] = DEFAULT_BROWSER
    print_qr_in_terminal: bool = False
    mark_online_on_connect: bool = False
    get_message: Optional[Callable[[str, str], Optional[Dict[str, Any]]]] = field(default=None, repr=False)
    cached_group_metadata: Optional[Callable[[str], Optional[Dict[str, Any]]]] = field(default=None, repr=False)


class EventStream(Protocol):
    """Protocol for the socket's event stream.

    The socket emits at least: creds.update, connection.update,
    messages.upsert, groups.upsert and groups.update.
    """

    def on(self, event: str, handler: Callable[[Any], None]) -> Callable[[], None]:
        """Subscribe a handler.

        Args:
            event: Event name
            handler: Callable receiving the event payload

        Returns:
            A callable removing the subscription
        """
        ...


class Socket(Protocol):
    """Protocol for an open transport session.

    A socket is created by Transport.connect and stays valid until end() or
    logout() is called, or it reports a close through connection.update.
    """

    @property
    def ev(self) -> EventStream:
        """Event stream of this socket."""
        ...

    def send_message(self, jid: str, content: Dict[str, Any]) -> Dict[str, Any]:
        """Send a message.

        Args:
            jid: Normalized recipient JID
            content: Message content, e.g. {"text": "Hello"}

        Returns:
            The acknowledgement, containing at least the message "key"

        Raises:
            TransportError: If the transport rejected or failed the send
        """
        ...

    def end(self, error: Optional[Exception] = None) -> None:
        """Close the session without invalidating credentials."""
        ...

    def logout(self) -> None:
        """Unlink this device, invalidating the stored credentials."""
        ...

    def request_pairing_code(self, phone_number: str) -> str:
        """Request a pairing code to link by phone number instead of QR.

        Args:
            phone_number: Phone number in international format, digits only

        Returns:
            The code the user types into WhatsApp on the phone
        """
        ...

    def group_metadata(self, jid: str) -> Dict[str, Any]:
        """Fetch metadata of a group.

        Args:
            jid: Group JID

        Returns:
            Group metadata payload (id, subject, owner, participants, ...)
        """
        ...


class Transport(Protocol):
    """Protocol for the socket factory."""

    def connect(
        self,
        auth_state: Any,
        version: Optional[VersionInfo],
        options: SocketOptions,
    ) -> Socket:
        """Open a new socket.

        Args:
            auth_state: Authentication state loaded by auth_state.load_auth_state
            version: WhatsApp Web protocol version, None for the transport default
            options: Socket options

        Returns:
            Socket whose event stream reports the connection progress

        Raises:
            TransportError: If the socket cannot be opened
        """
        ...

    def fetch_latest_version(self) -> VersionInfo:
        """Fetch the latest supported WhatsApp Web version.

        Raises:
            TransportError: If the version cannot be fetched
        """
        ...
