"""Exception hierarchy for the WhatsApp client.

Every error raised on purpose by this package derives from
WhatsAppClientError, so callers can catch the whole family in one place.
"""

from typing import Optional


class WhatsAppClientError(Exception):
    """Base class for all WhatsApp client errors."""


class NotConnectedError(WhatsAppClientError):
    """An operation that needs an open connection was attempted without one."""

    def __init__(self, message: str = "WhatsApp client is not connected."):
        super().__init__(message)


class TemplateNotFoundError(WhatsAppClientError, KeyError):
    """No template is registered under the requested name."""

    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f'Template "{self.name}" not found.'


class LoggedOutError(WhatsAppClientError):
    """The session was logged out on the phone. Re-authentication is required."""

    def __init__(self, auth_path: str, message: Optional[str] = None):
        super().__init__(
            message or f"Logged out. Credentials in '{auth_path}' were removed; scan a new QR code to link again."
        )
        self.auth_path = auth_path


class TransientDisconnectError(WhatsAppClientError):
    """The connection kept dropping and the reconnect attempts ran out."""

    def __init__(self, attempts: int, last_reason: str = ""):
        message = f"Connection failed after {attempts} attempts"
        if last_reason:
            message += f": {last_reason}"
        super().__init__(message)
        self.attempts = attempts
        self.last_reason = last_reason


class CredentialIOError(WhatsAppClientError):
    """Credentials could not be loaded or saved."""


class PairingCodeRequiredError(WhatsAppClientError):
    """Pairing-code login was requested without a phone number."""

    def __init__(self, message: str = "Pairing code login requires a phone number."):
        super().__init__(message)


class TransportError(WhatsAppClientError, ConnectionError):
    """The transport failed to open, or a transport call failed."""


class DisconnectedDuringInitializationError(WhatsAppClientError):
    """disconnect() was called while initialize() was still waiting."""

    def __init__(self, message: str = "Client was disconnected during initialization."):
        super().__init__(message)
