"""Domain models for the WhatsApp client.

This module contains the dataclasses and enums shared by the connection
lifecycle manager, the transport adapters and the message facade. Transport
payloads are parsed into these models at the edge (``from_dict``) so the rest
of the code never has to dig through raw dictionaries.
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional


class ConnectionPhase(Enum):
    """Lifecycle phase of the single logical connection."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class CloseReason(Enum):
    """Why the transport closed.

    LOGGED_OUT is terminal: the session was invalidated on the phone and the
    stored credentials are useless. Everything else is TRANSIENT and retried.
    """
    LOGGED_OUT = "logged_out"
    TRANSIENT = "transient"


class DisconnectReason(IntEnum):
    """Status codes reported by the transport when a connection ends."""
    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    TIMED_OUT = 408
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411
    FORBIDDEN = 403
    UNAVAILABLE_SERVICE = 503


@dataclass(frozen=True)
class ConnectionState:
    """Current connection state.

    Attributes:
        phase: Lifecycle phase
        reason: Close classification, only set when phase is CLOSED and the
            transport reported the close. A CLOSED state without a reason means
            initialization failed with a fatal error.
    """
    phase: ConnectionPhase = ConnectionPhase.DISCONNECTED
    reason: Optional[CloseReason] = None

    @property
    def is_open(self) -> bool:
        return self.phase is ConnectionPhase.OPEN

    @property
    def is_logged_out(self) -> bool:
        return self.phase is ConnectionPhase.CLOSED and self.reason is CloseReason.LOGGED_OUT

    def __str__(self) -> str:
        if self.reason is not None:
            return f"{self.phase.value}({self.reason.value})"
        return self.phase.value


@dataclass
class DisconnectInfo:
    """The error attached to a ``close`` connection update.

    Attributes:
        status_code: Transport status code (see DisconnectReason), if reported
        message: Human readable reason
    """
    status_code: Optional[int] = None
    message: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["DisconnectInfo"]:
        """Parse ``{"error": {"statusCode": 401, "message": "..."}}``."""
        if not data:
            return None
        error = data.get("error") or {}
        status_code = error.get("statusCode")
        if status_code is None:
            status_code = (error.get("output") or {}).get("statusCode")
        return cls(
            status_code=int(status_code) if status_code is not None else None,
            message=error.get("message", ""),
        )


@dataclass
class ConnectionUpdate:
    """A ``connection.update`` event from the transport.

    Attributes:
        connection: "connecting", "open" or "close" when the phase changed
        last_disconnect: Close error, present with connection == "close"
        qr: QR payload to render for device linking (optional)
        is_new_login: Whether the transport just completed a fresh login
    """
    connection: Optional[str] = None
    last_disconnect: Optional[DisconnectInfo] = None
    qr: Optional[str] = None
    is_new_login: bool = False

    @property
    def is_open(self) -> bool:
        return self.connection == "open"

    @property
    def is_close(self) -> bool:
        return self.connection == "close"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectionUpdate":
        """Create from the transport's connection update payload."""
        return cls(
            connection=data.get("connection"),
            last_disconnect=DisconnectInfo.from_dict(data.get("lastDisconnect")),
            qr=data.get("qr"),
            is_new_login=bool(data.get("isNewLogin", False)),
        )


def parse_timestamp(value: Any) -> int:
    """Unix timestamp from a number, a numeric string or a protobuf Long
    serialized as {"low": ..., "high": ...}. Anything else is 0."""
    if isinstance(value, dict):
        try:
            return (int(value.get("high", 0)) << 32) + (int(value.get("low", 0)) & 0xFFFFFFFF)
        except (TypeError, ValueError):
            return 0
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


@dataclass
class IncomingMessage:
    """A message delivered through ``messages.upsert``.

    Attributes:
        id: Message identifier
        chat_jid: JID of the chat the message belongs to
        sender: JID of the participant who sent it (group chats) or chat_jid
        text: Text body, empty for media-only messages
        timestamp: Unix timestamp reported by the transport
        from_me: Whether the message was sent by the linked account
        upsert_type: "notify" for new messages, "append" for history
        raw: Original payload, kept for retry lookups
    """
    id: str
    chat_jid: str
    sender: str
    text: str = ""
    timestamp: int = 0
    from_me: bool = False
    upsert_type: str = "notify"
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_group(self) -> bool:
        return self.chat_jid.endswith("@g.us")

    @classmethod
    def from_dict(cls, data: Dict[str, Any], upsert_type: str = "notify") -> "IncomingMessage":
        key = data.get("key", {})
        content = data.get("message") or {}
        text = content.get("conversation") or (content.get("extendedTextMessage") or {}).get("text", "")
        chat_jid = key.get("remoteJid", "")
        return cls(
            id=key.get("id", ""),
            chat_jid=chat_jid,
            sender=key.get("participant") or chat_jid,
            text=text or "",
            timestamp=parse_timestamp(data.get("messageTimestamp")),
            from_me=bool(key.get("fromMe", False)),
            upsert_type=upsert_type,
            raw=data,
        )


@dataclass
class GroupMetadata:
    """Metadata of a WhatsApp group.

    Attributes:
        jid: Group JID (ends with @g.us)
        subject: Group name
        owner: JID of the group creator (optional)
        participants: Participant JIDs
        raw: Original payload
    """
    jid: str
    subject: str = ""
    owner: Optional[str] = None
    participants: List[str] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GroupMetadata":
        participants = [
            p.get("id", "") if isinstance(p, dict) else str(p)
            for p in data.get("participants", [])
        ]
        return cls(
            jid=data.get("id", ""),
            subject=data.get("subject", ""),
            owner=data.get("owner"),
            participants=participants,
            raw=dict(data),
        )

    def merged(self, changes: Dict[str, Any]) -> "GroupMetadata":
        """Return a copy with a partial ``groups.update`` payload applied."""
        data = dict(self.raw)
        data.update(changes)
        data.setdefault("id", self.jid)
        return GroupMetadata.from_dict(data)
