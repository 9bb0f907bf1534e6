"""File-based persistence of WhatsApp session credentials.

Credentials are stored in a directory: ``creds.json`` holds the account
credentials and every signal key lives in its own ``<type>-<id>.json`` file.
Writes go through a temporary file and ``os.replace`` so a crash never leaves
a half-written credential file behind.
"""

import json
import logging
import os
import shutil
import tempfile
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Optional

from errors import CredentialIOError

logger = logging.getLogger(__name__)

CREDS_FILE = "creds.json"

# One lock per credential folder, shared by every file in it
_folder_locks: Dict[str, threading.Lock] = {}
_folder_locks_guard = threading.Lock()


def _lock_for(path: str) -> threading.Lock:
    folder = os.path.dirname(os.path.abspath(path))
    with _folder_locks_guard:
        return _folder_locks.setdefault(folder, threading.Lock())


def fix_file_name(name: str) -> str:
    """Make a key identifier safe to use as a file name."""
    return name.replace("/", "__").replace(":", "-")


def _read_json(path: str) -> Optional[Any]:
    with _lock_for(path):
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            raise CredentialIOError(f"Failed to read {path}: {e}") from e


def _write_json(path: str, data: Any) -> None:
    directory = os.path.dirname(path)
    with _lock_for(path):
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=".json")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise CredentialIOError(f"Failed to write {path}: {e}") from e


def _remove(path: str) -> None:
    with _lock_for(path):
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise CredentialIOError(f"Failed to remove {path}: {e}") from e


class KeyStore:
    """Signal keys stored as one JSON file per (type, id)."""

    def __init__(self, folder: str):
        self.folder = folder

    def _path(self, key_type: str, key_id: str) -> str:
        return os.path.join(self.folder, fix_file_name(f"{key_type}-{key_id}.json"))

    def get(self, key_type: str, ids: Iterable[str]) -> Dict[str, Any]:
        """Read keys of one type. Missing keys are left out of the result."""
        result = {}
        for key_id in ids:
            value = _read_json(self._path(key_type, key_id))
            if value is not None:
                result[key_id] = value
        return result

    def set(self, data: Dict[str, Dict[str, Any]]) -> None:
        """Write keys, ``{type: {id: value}}``. A None value deletes the key."""
        for key_type, entries in data.items():
            for key_id, value in entries.items():
                path = self._path(key_type, key_id)
                if value is None:
                    _remove(path)
                else:
                    _write_json(path, value)

    def read_all(self) -> Dict[str, Any]:
        """Every stored key, keyed by file name without the extension."""
        result = {}
        try:
            names = sorted(os.listdir(self.folder))
        except OSError as e:
            raise CredentialIOError(f"Failed to list {self.folder}: {e}") from e
        for name in names:
            if name == CREDS_FILE or name.startswith(".") or not name.endswith(".json"):
                continue
            value = _read_json(os.path.join(self.folder, name))
            if value is not None:
                result[name[:-len(".json")]] = value
        return result


@dataclass
class AuthenticationState:
    """Credentials handed to the transport.

    Attributes:
        creds: Account credentials. Empty for a device that has not linked yet.
        keys: Signal key store
    """
    creds: Dict[str, Any]
    keys: KeyStore

    @property
    def is_registered(self) -> bool:
        return bool(self.creds.get("registered"))


@dataclass
class AuthState:
    """Result of load_auth_state.

    Attributes:
        path: Credential directory
        state: Loaded credentials
        save_creds: Persists the given credentials, or state.creds, to disk
    """
    path: str
    state: AuthenticationState
    save_creds: Callable[..., None] = field(repr=False)


def load_auth_state(path: str) -> AuthState:
    """Load (or start) the credentials stored under ``path``.

    The directory is created if needed.

    Raises:
        CredentialIOError: If the directory or creds.json cannot be used
    """
    if os.path.exists(path) and not os.path.isdir(path):
        raise CredentialIOError(f"Found something that is not a directory at {path}, either delete it or specify a different location")
    try:
        os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise CredentialIOError(f"Failed to create credential directory {path}: {e}") from e

    creds_path = os.path.join(path, CREDS_FILE)
    creds = _read_json(creds_path)
    if creds is None:
        logger.info(f"No stored credentials in {path}, a new device will be linked")
        creds = {}
    elif not isinstance(creds, dict):
        raise CredentialIOError(f"Invalid credentials in {creds_path}: expected an object")

    state = AuthenticationState(creds=creds, keys=KeyStore(path))

    def save_creds(creds: Optional[Dict[str, Any]] = None) -> None:
        _write_json(creds_path, state.creds if creds is None else creds)
        logger.debug(f"Credentials saved to {creds_path}")

    return AuthState(path=path, state=state, save_creds=save_creds)


def purge_auth_state(path: str) -> bool:
    """Delete every stored credential under ``path``.

    Returns:
        True if something was deleted, False if nothing was stored

    Raises:
        CredentialIOError: If the directory exists but cannot be removed
    """
    if not os.path.exists(path):
        return False
    try:
        shutil.rmtree(path)
    except OSError as e:
        raise CredentialIOError(f"Failed to purge credentials in {path}: {e}") from e
    logger.warning(f"Purged stored credentials in {path}")
    return True
