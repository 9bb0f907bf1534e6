"""Configuration management for the WhatsApp client.

This module handles configuration loading from environment variables and
config files, and provides factory functions for the transport and logging.
"""

import inspect
import logging
import os
import re
from typing import Any, Dict, Optional, Tuple

import yaml

from bridge import WHATSAPP_API_BASE_URL, BridgeTransport
from transport import DEFAULT_BROWSER, Transport, VersionInfo

logger = logging.getLogger(__name__)

DEFAULT_AUTH_PATH = "auth_info_baileys"
DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(__file__), "config.yaml")
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Environment variable -> ClientConfig argument
ENVIRONMENT_VARIABLES = {
    "WHATSAPP_AUTH_PATH": "auth_path",
    "WHATSAPP_BRIDGE_URL": "bridge_url",
    "WHATSAPP_PHONE_NUMBER": "phone_number",
    "WHATSAPP_USE_PAIRING_CODE": "use_pairing_code",
    "WHATSAPP_MAX_RECONNECT_ATTEMPTS": "max_reconnect_attempts",
    "WHATSAPP_RECONNECT_BACKOFF": "reconnect_backoff",
    "WHATSAPP_CONNECT_TIMEOUT": "connect_timeout",
    "WHATSAPP_VERSION": "version",
    "LOG_LEVEL": "log_level",
}


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"Invalid boolean value: {value!r}")


def _parse_attempts(value: Any) -> Optional[int]:
    """Reconnect attempt cap. None, "unlimited" or a negative number mean no cap."""
    if value is None:
        return None
    if isinstance(value, str) and value.strip().lower() in ("", "none", "unlimited"):
        return None
    attempts = int(value)
    return None if attempts < 0 else attempts


def _parse_version(value: Any) -> Optional[VersionInfo]:
    """Parse "2.3000.1015901307", "2,3000,1015901307" or a 3-item list."""
    if value is None or value == "":
        return None
    parts = value if isinstance(value, (list, tuple)) else re.split(r"[.,\s]+", str(value).strip())
    if len(parts) != 3:
        raise ValueError(f"Invalid WhatsApp Web version: {value!r}")
    return tuple(int(part) for part in parts)  # type: ignore[return-value]


def _parse_browser(value: Any) -> Tuple[str, str, str]:
    parts = value if isinstance(value, (list, tuple)) else [part.strip() for part in str(value).split(",")]
    if len(parts) != 3:
        raise ValueError(f"Browser must have 3 parts (client, browser, version): {value!r}")
    return tuple(str(part) for part in parts)  # type: ignore[return-value]


_PARSERS = {
    "use_pairing_code": _parse_bool,
    "max_reconnect_attempts": _parse_attempts,
    "reconnect_backoff": float,
    "max_reconnect_backoff": float,
    "connect_timeout": float,
    "group_cache_ttl": float,
    "message_cache_ttl": float,
    "message_cache_size": int,
    "version": _parse_version,
    "browser": _parse_browser,
}


class ClientConfig:
    """Configuration for a WhatsApp client."""

    def __init__(
        self,
        auth_path: str = DEFAULT_AUTH_PATH,
        bridge_url: str = WHATSAPP_API_BASE_URL,
        browser: Tuple[str, str, str] = DEFAULT_BROWSER,
        phone_number: Optional[str] = None,
        use_pairing_code: bool = False,
        max_reconnect_attempts: Optional[int] = 5,
        reconnect_backoff: float = 1.0,
        max_reconnect_backoff: float = 30.0,
        connect_timeout: float = 60.0,
        version: Optional[VersionInfo] = None,
        log_level: str = "INFO",
        group_cache_ttl: float = 300.0,
        message_cache_ttl: float = 600.0,
        message_cache_size: int = 5000,
    ):
        """Initialize client configuration.

        Args:
            auth_path: Directory holding the stored session credentials
            bridge_url: Base URL of the WhatsApp bridge API
            browser: (client name, browser, version) shown under Linked Devices
            phone_number: Phone number to link with a pairing code
            use_pairing_code: Link with a pairing code instead of a QR code
            max_reconnect_attempts: Reconnects after a transient close before
                giving up, None to retry forever
            reconnect_backoff: Delay before the first reconnect, in seconds.
                Doubles on each consecutive failure.
            max_reconnect_backoff: Upper bound of the reconnect delay, in seconds
            connect_timeout: Seconds to wait for the transport to report
                progress before the attempt counts as failed
            version: WhatsApp Web version, None to ask the transport
            log_level: Logging level name
            group_cache_ttl: Seconds group metadata stays cached
            message_cache_ttl: Seconds messages stay available for retries
            message_cache_size: Maximum number of messages kept for retries

        Raises:
            ValueError: If a value is out of range
        """
        if not auth_path:
            raise ValueError("auth_path must be provided")
        if max_reconnect_attempts is not None and max_reconnect_attempts < 0:
            raise ValueError("max_reconnect_attempts must be >= 0 or None")
        if reconnect_backoff < 0 or max_reconnect_backoff < 0:
            raise ValueError("Reconnect backoff must be >= 0")
        if connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive")

        self.auth_path = auth_path
        self.bridge_url = bridge_url
        self.browser = tuple(browser)
        self.phone_number = phone_number or None
        self.use_pairing_code = use_pairing_code
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_backoff = reconnect_backoff
        self.max_reconnect_backoff = max_reconnect_backoff
        self.connect_timeout = connect_timeout
        self.version = version
        self.log_level = log_level.upper()
        self.group_cache_ttl = group_cache_ttl
        self.message_cache_ttl = message_cache_ttl
        self.message_cache_size = message_cache_size

    def __repr__(self) -> str:
        return (
            f"ClientConfig(auth_path={self.auth_path!r}, bridge_url={self.bridge_url!r}, "
            f"use_pairing_code={self.use_pairing_code}, max_reconnect_attempts={self.max_reconnect_attempts})"
        )

    @classmethod
    def from_environment(cls, config_path: Optional[str] = None, **overrides) -> "ClientConfig":
        """Load configuration from environment variables and config files.

        Priority order:
        1. Keyword overrides (highest priority)
        2. Environment variables (WHATSAPP_*, LOG_LEVEL)
        3. ``whatsapp`` section of config.yaml (path from ``config_path``,
           then WHATSAPP_CONFIG, then next to this module)
        4. Defaults

        Returns:
            ClientConfig instance with loaded configuration

        Raises:
            ValueError: If a configured value is invalid
        """
        values: Dict[str, Any] = {}

        config_path = config_path or os.getenv("WHATSAPP_CONFIG") or DEFAULT_CONFIG_PATH
        if os.path.exists(config_path):
            try:
                with open(config_path, 'r') as f:
                    config_data = yaml.safe_load(f)

                if config_data and 'whatsapp' in config_data:
                    logger.info(f"Loading client configuration from {config_path}")
                    values.update(cls._from_yaml_config(config_data['whatsapp'] or {}))
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load {config_path}: {e}. Falling back to defaults.")

        for variable, name in ENVIRONMENT_VARIABLES.items():
            value = os.getenv(variable)
            if value is not None:
                values[name] = cls._parse(name, value)

        for name, value in overrides.items():
            values[name] = cls._parse(name, value) if isinstance(value, str) else value

        return cls(**values)

    @classmethod
    def _from_yaml_config(cls, config_dict: Dict[str, Any]) -> Dict[str, Any]:
        """Convert the YAML ``whatsapp`` section into constructor arguments."""
        known = inspect.signature(cls).parameters
        values = {}
        for name, value in config_dict.items():
            if name not in known:
                logger.warning(f"Ignoring unknown option '{name}' in config.yaml")
                continue
            values[name] = cls._parse(name, value)
        return values

    @staticmethod
    def _parse(name: str, value: Any) -> Any:
        parser = _PARSERS.get(name)
        if parser is None:
            return value
        try:
            return parser(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid value for {name}: {e}") from e


def create_transport(config: ClientConfig) -> Transport:
    """Create the transport for the given configuration."""
    logger.info(f"Creating WhatsApp bridge transport (url: {config.bridge_url})")
    return BridgeTransport(base_url=config.bridge_url)


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for scripts. Level defaults to LOG_LEVEL or INFO."""
    level_name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)
