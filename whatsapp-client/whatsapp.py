"""WhatsApp client facade.

WhatsappClient is what applications use: it wires the connection lifecycle
manager, the template registry and the caches together and exposes the send
operations.

Example:
    client = WhatsappClient(auth_path="auth_info_baileys")
    client.on("qr", print_qr)
    client.initialize()
    client.send_template_message("94771234567", "verificationCode", {"code": "812399"})
    client.disconnect()
"""

import copy
import logging
import re
from typing import Any, Callable, Dict, Mapping, Optional

from cache import GroupMetadataCache, MessageStore
from config import ClientConfig, create_transport
from connection import ConnectionLifecycleManager
from errors import NotConnectedError, TemplateNotFoundError
from events import EventEmitter
from models import ConnectionState, GroupMetadata
from templates import TemplateRegistry
from transport import Socket, Transport

logger = logging.getLogger(__name__)

USER_SERVER = "s.whatsapp.net"


def format_jid(jid: str) -> str:
    """Normalize a recipient into a JID.

    Addresses that already carry a server part (anything with "@") are
    returned untouched. Otherwise every non-digit is stripped and the user
    server is appended, so "+94 77-123 4567" becomes "94771234567@s.whatsapp.net".
    """
    if "@" in jid:
        return jid
    cleaned = re.sub(r"[^0-9]", "", jid)
    return f"{cleaned}@{USER_SERVER}"


class WhatsappClient:
    """High level WhatsApp client: connection lifecycle plus send operations."""

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        transport: Optional[Transport] = None,
        templates: Optional[TemplateRegistry] = None,
        auth_path: Optional[str] = None,
    ):
        """Create a client. Nothing connects until initialize() is called.

        Args:
            config: Client configuration, loaded from the environment if omitted
            transport: Transport to use, created from the configuration if omitted
            templates: Template registry, the built-in templates if omitted
            auth_path: Overrides config.auth_path
        """
        config = config or ClientConfig.from_environment()
        if auth_path:
            config = copy.copy(config)
            config.auth_path = auth_path
        self.config = config
        self.templates = templates or TemplateRegistry.with_defaults()
        self.events = EventEmitter()
        self.group_cache = GroupMetadataCache(ttl=config.group_cache_ttl)
        self.message_store = MessageStore(ttl=config.message_cache_ttl, max_size=config.message_cache_size)
        self.connection = ConnectionLifecycleManager(
            config,
            transport or create_transport(config),
            events=self.events,
            group_cache=self.group_cache,
            message_store=self.message_store,
        )

    def __enter__(self) -> "WhatsappClient":
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    @property
    def is_connected(self) -> bool:
        return self.connection.state.is_open

    def on(self, event: str, handler: Callable[[Any], None]) -> Callable[[], None]:
        """Subscribe to qr, pairing-code, message, groups.upsert,
        groups.update or connection.state. Returns an unsubscribe callable."""
        return self.events.on(event, handler)

    def initialize(self, timeout: Optional[float] = None) -> bool:
        """Connect to WhatsApp. See ConnectionLifecycleManager.initialize."""
        return self.connection.initialize(timeout)

    def disconnect(self) -> None:
        self.connection.disconnect()

    def logout(self) -> None:
        """Unlink this device and delete the stored credentials."""
        self.connection.logout()

    def close(self) -> None:
        self.connection.close()

    def _require_socket(self, action: str = "send message") -> Socket:
        socket = self.connection.socket
        if socket is None:
            logger.error(f"Cannot {action}: WhatsApp client is not connected.")
            raise NotConnectedError()
        return socket

    def send_message(self, to: str, content: Dict[str, Any]) -> Dict[str, Any]:
        """Send raw message content.

        Args:
            to: Phone number or JID of the recipient
            content: Message content forwarded verbatim, e.g. {"text": "Hi"}

        Returns:
            The transport acknowledgement

        Raises:
            NotConnectedError: If the connection is not open
            ValueError: If no recipient was given
            TransportError: If the transport failed the send
        """
        socket = self._require_socket()
        if not to:
            raise ValueError("Recipient must be provided")

        jid = format_jid(to)
        try:
            ack = socket.send_message(jid, content)
        except Exception as e:
            logger.error(f"Error sending message to {jid}: {e}")
            raise

        key = (ack or {}).get("key") or {}
        self.message_store.add(key.get("remoteJid") or jid, key.get("id", ""), content)
        logger.debug(f"Message sent successfully to {jid}")
        return ack

    def send_template_message(
        self,
        to: str,
        template_name: str,
        data: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Render a template and send it as a text message.

        Raises:
            TemplateNotFoundError: If the template is not registered
            NotConnectedError: If the connection is not open
        """
        try:
            text = self.templates.render(template_name, data)
        except TemplateNotFoundError as e:
            logger.error(str(e))
            raise
        return self.send_message(to, {"text": text})

    def group_metadata(self, jid: str) -> GroupMetadata:
        """Metadata of a group, from the cache when fresh.

        Raises:
            NotConnectedError: If not cached and the connection is not open
        """
        cached = self.group_cache.get(jid)
        if cached is not None:
            return cached
        socket = self._require_socket("fetch group metadata")
        metadata = GroupMetadata.from_dict(socket.group_metadata(jid))
        self.group_cache.set(metadata)
        return metadata

    def get_message(self, chat_jid: str, message_id: str) -> Optional[Dict[str, Any]]:
        """Content of a recently sent or received message, for retries."""
        return self.message_store.get(chat_jid, message_id)
