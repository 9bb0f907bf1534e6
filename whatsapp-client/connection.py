"""Connection lifecycle of the WhatsApp client.

The manager owns the single transport socket and its state machine:

    DISCONNECTED -> CONNECTING -> OPEN
                         |          |
                         v          v
                  CLOSED(reason) <--+

initialize() runs a retry loop on a worker thread and waits for its outcome.
Each attempt loads the stored credentials, opens a socket and waits for the
socket to report "open" or "close". A transient close tears the socket down completely before the next
attempt opens a new one, so two sockets are never live at the same time. A
logged-out close purges the credentials and ends the loop for good.

Socket events arrive on the transport's thread. Every subscription is bound to
a session token; events from a socket that was already torn down are dropped.
All state changes happen under one lock.
"""

import logging
import queue
import re
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Tuple

from auth_state import AuthState, load_auth_state, purge_auth_state
from cache import GroupMetadataCache, MessageStore
from errors import (
    CredentialIOError,
    DisconnectedDuringInitializationError,
    LoggedOutError,
    PairingCodeRequiredError,
    TransientDisconnectError,
    TransportError,
    WhatsAppClientError,
)
from events import (
    CONNECTION_STATE,
    CONNECTION_UPDATE,
    CREDS_UPDATE,
    GROUPS_UPDATE,
    GROUPS_UPSERT,
    MESSAGE,
    MESSAGES_UPSERT,
    PAIRING_CODE,
    QR,
    EventEmitter,
)
from models import (
    CloseReason,
    ConnectionPhase,
    ConnectionState,
    ConnectionUpdate,
    DisconnectInfo,
    DisconnectReason,
    GroupMetadata,
    IncomingMessage,
)
from transport import Socket, SocketOptions, Transport, VersionInfo

logger = logging.getLogger(__name__)

_CANCELLED = object()


def classify_close(info: Optional[DisconnectInfo]) -> CloseReason:
    """Map the close error of a connection update to a CloseReason.

    Only an explicit logged-out status is terminal. A close without a status
    code is treated as transient.
    """
    if info is not None and info.status_code == DisconnectReason.LOGGED_OUT:
        return CloseReason.LOGGED_OUT
    return CloseReason.TRANSIENT


class _InitializationRun:
    """One run of the retry loop and the updates feeding it."""

    def __init__(self):
        self.future: Future = Future()
        self.updates: "queue.Queue[Tuple[Optional[int], Any]]" = queue.Queue()
        self.cancelled = threading.Event()

    @property
    def active(self) -> bool:
        return not self.future.done()

    def put(self, session_id: int, item: Any) -> None:
        self.updates.put((session_id, item))

    def cancel(self) -> None:
        self.cancelled.set()
        self.updates.put((None, _CANCELLED))

    def resolve(self) -> None:
        if not self.future.done():
            self.future.set_result(True)

    def reject(self, error: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(error)


class ConnectionLifecycleManager:
    """Owns the transport socket and drives connect, reconnect and teardown."""

    def __init__(
        self,
        config,
        transport: Transport,
        events: Optional[EventEmitter] = None,
        group_cache: Optional[GroupMetadataCache] = None,
        message_store: Optional[MessageStore] = None,
    ):
        self.config = config
        self.transport = transport
        self.events = events or EventEmitter()
        self.group_cache = group_cache or GroupMetadataCache()
        self.message_store = message_store or MessageStore()

        self._lock = threading.RLock()
        self._state = ConnectionState()
        self._socket: Optional[Socket] = None
        self._auth: Optional[AuthState] = None
        self._session_id = 0
        self._unsubscribers: List[Callable[[], None]] = []
        self._run: Optional[_InitializationRun] = None
        self._pairing_requested = False
        self._persist_executor: Optional[ThreadPoolExecutor] = None

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def socket(self) -> Optional[Socket]:
        """The live socket, borrowed for sends. None unless connected."""
        with self._lock:
            return self._socket if self._state.is_open else None

    def initialize(self, timeout: Optional[float] = None) -> bool:
        """Connect and block until the connection is open.

        Calling it while another initialization (or a background reconnect)
        is in flight waits for that one instead of opening a second socket.

        The retry loop runs on a worker thread. When ``timeout`` elapses the
        loop keeps running; a later initialize() joins it and disconnect()
        stops it.

        Args:
            timeout: Seconds to wait for the outcome, None to wait until the
                retry loop finishes

        Returns:
            True once the connection is open

        Raises:
            PairingCodeRequiredError: Pairing code login configured without a phone number
            LoggedOutError: The session was logged out; credentials were purged
            CredentialIOError: Credentials could not be loaded or saved
            TransportError: The transport could not be opened
            TransientDisconnectError: Reconnect attempts were exhausted
            DisconnectedDuringInitializationError: disconnect() was called meanwhile
            concurrent.futures.TimeoutError: ``timeout`` elapsed first
        """
        with self._lock:
            if self._state.is_open:
                return True
            run = self._run
            owner = run is None or not run.active
            if owner:
                if self.config.use_pairing_code and not self.config.phone_number:
                    raise PairingCodeRequiredError()
                run = _InitializationRun()
                self._run = run
            else:
                logger.debug("Initialization already in progress, waiting for it")

        if owner:
            self._start_run(run, "whatsapp-connect")
        return run.future.result(timeout)

    def disconnect(self) -> None:
        """Close the connection. A pending initialize() raises
        DisconnectedDuringInitializationError. Does nothing when already
        disconnected."""
        socket, changed = self._invalidate()
        if socket is not None:
            logger.info("Disconnecting WhatsApp client...")
            self._end_socket(socket)
        if changed:
            self._emit_state()

    def logout(self) -> None:
        """Unlink the device, purge stored credentials and disconnect.

        The transport error of a failed logout call is raised after the local
        teardown and purge are done.
        """
        socket, changed = self._invalidate()
        error: Optional[Exception] = None
        if socket is not None:
            logger.warning("Logging out client and invalidating credentials...")
            try:
                socket.logout()
            except Exception as e:
                logger.error(f"Logout request failed: {e}")
                error = e
            self._end_socket(socket)

        purge_auth_state(self.config.auth_path)
        if changed:
            self._emit_state()
        if error is not None:
            if isinstance(error, WhatsAppClientError):
                raise error
            raise TransportError(f"Logout failed: {error}") from error

    def close(self) -> None:
        """Disconnect and stop the credential writer."""
        self.disconnect()
        with self._lock:
            executor, self._persist_executor = self._persist_executor, None
        if executor is not None:
            executor.shutdown(wait=True)

    # =========================================================================
    # RETRY LOOP
    # =========================================================================

    def _connect_with_retries(self, run: _InitializationRun) -> None:
        failures = 0
        max_attempts = self.config.max_reconnect_attempts
        while True:
            try:
                opened, reason = self._attempt(run)
            except DisconnectedDuringInitializationError as e:
                logger.info("Initialization aborted by disconnect()")
                run.reject(e)
                return
            except LoggedOutError as e:
                logger.error(str(e))
                run.reject(e)
                return
            except WhatsAppClientError as e:
                self._fail(run, e)
                return
            except Exception as e:
                logger.exception(f"Unexpected error while connecting: {e}")
                self._fail(run, e)
                return

            if opened:
                return

            failures += 1
            if max_attempts is not None and failures > max_attempts:
                self._fail(run, TransientDisconnectError(failures, reason), CloseReason.TRANSIENT)
                return

            delay = self._backoff(failures)
            logger.warning(f"Reconnecting in {delay:.1f}s (attempt {failures + 1})")
            if run.cancelled.wait(delay):
                run.reject(DisconnectedDuringInitializationError())
                return

    def _attempt(self, run: _InitializationRun) -> Tuple[bool, str]:
        """Open one socket and wait for it to open or close.

        Returns:
            (True, "") when the connection opened, (False, reason) after a
            transient close or a timeout
        """
        if not self._set_run_state(run, ConnectionState(ConnectionPhase.CONNECTING)):
            raise DisconnectedDuringInitializationError()

        auth = load_auth_state(self.config.auth_path)
        version = self._resolve_version()
        try:
            socket = self.transport.connect(auth.state, version, self._socket_options())
        except WhatsAppClientError:
            raise
        except Exception as e:
            raise TransportError(f"Failed to open transport: {e}") from e

        with self._lock:
            cancelled = run.cancelled.is_set()
            if not cancelled:
                self._session_id += 1
                session_id = self._session_id
                self._socket = socket
                self._auth = auth
                self._pairing_requested = False
                self._unsubscribers = self._subscribe(socket, session_id)
        if cancelled:
            self._end_socket(socket)
            raise DisconnectedDuringInitializationError()

        while True:
            try:
                item_session, item = run.updates.get(timeout=self.config.connect_timeout)
            except queue.Empty:
                logger.warning(f"No connection update within {self.config.connect_timeout}s")
                self._teardown(session_id)
                self._set_run_state(run, ConnectionState(ConnectionPhase.CLOSED, CloseReason.TRANSIENT))
                return False, "timed out waiting for the connection"

            if item is _CANCELLED:
                raise DisconnectedDuringInitializationError()
            if item_session != session_id:
                continue
            if isinstance(item, Exception):
                self._teardown(session_id)
                raise item

            update: ConnectionUpdate = item
            if update.is_open:
                with self._lock:
                    if run.cancelled.is_set() or self._session_id != session_id:
                        continue
                    self._state = ConnectionState(ConnectionPhase.OPEN)
                    # resolved under the lock so a close arriving right after
                    # is handled as a close of an open connection
                    run.resolve()
                logger.info("WhatsApp connection opened successfully.")
                self._emit_state()
                return True, ""

            if update.is_close:
                reason = classify_close(update.last_disconnect)
                message = update.last_disconnect.message if update.last_disconnect else ""
                logger.warning(
                    f"Connection closed. Reason: {message or 'unknown'}. "
                    f"Reconnecting: {reason is CloseReason.TRANSIENT}"
                )
                self._teardown(session_id)
                if reason is CloseReason.LOGGED_OUT:
                    self._handle_logged_out(run)
                    raise LoggedOutError(self.config.auth_path)
                self._set_run_state(run, ConnectionState(ConnectionPhase.CLOSED, CloseReason.TRANSIENT))
                return False, message or "connection closed"

    def _fail(self, run: _InitializationRun, error: BaseException, reason: Optional[CloseReason] = None) -> None:
        logger.error(f"WhatsApp initialization failed: {error}")
        self._set_run_state(run, ConnectionState(ConnectionPhase.CLOSED, reason))
        run.reject(error)

    def _backoff(self, failures: int) -> float:
        delay = self.config.reconnect_backoff * (2 ** (failures - 1))
        return min(delay, self.config.max_reconnect_backoff)

    def _resolve_version(self) -> Optional[VersionInfo]:
        if self.config.version:
            return self.config.version
        try:
            version = self.transport.fetch_latest_version()
        except Exception as e:
            logger.warning(f"Could not fetch the latest WhatsApp Web version, using the transport default: {e}")
            return None
        logger.info(f"Using WhatsApp Web v{'.'.join(str(part) for part in version)}")
        return version

    def _socket_options(self) -> SocketOptions:
        return SocketOptions(
            browser=self.config.browser,
            get_message=self.message_store.get,
            cached_group_metadata=self._cached_group_metadata,
        )

    def _cached_group_metadata(self, jid: str) -> Optional[Dict[str, Any]]:
        metadata = self.group_cache.get(jid)
        return metadata.raw if metadata is not None else None

    # =========================================================================
    # STATE AND TEARDOWN
    # =========================================================================

    def _set_run_state(self, run: _InitializationRun, state: ConnectionState) -> bool:
        """Set the state on behalf of a run, unless disconnect() cancelled it."""
        with self._lock:
            if run.cancelled.is_set():
                return False
            changed = self._state != state
            self._state = state
        if changed:
            self._emit_state()
        return True

    def _emit_state(self) -> None:
        self.events.emit(CONNECTION_STATE, self.state)

    def _invalidate(self) -> Tuple[Optional[Socket], bool]:
        """Detach the current socket, cancel any run and go DISCONNECTED."""
        with self._lock:
            socket, self._socket = self._socket, None
            unsubscribers, self._unsubscribers = self._unsubscribers, []
            self._session_id += 1
            if self._run is not None and self._run.active:
                self._run.cancel()
            changed = self._state.phase is not ConnectionPhase.DISCONNECTED
            self._state = ConnectionState()
        for unsubscribe in unsubscribers:
            unsubscribe()
        return socket, changed

    def _teardown(self, session_id: int) -> bool:
        """End the socket of ``session_id`` if it is still the current one."""
        with self._lock:
            if session_id != self._session_id:
                return False
            socket, self._socket = self._socket, None
            unsubscribers, self._unsubscribers = self._unsubscribers, []
            self._session_id += 1
        for unsubscribe in unsubscribers:
            unsubscribe()
        if socket is not None:
            self._end_socket(socket)
        return True

    def _end_socket(self, socket: Socket) -> None:
        try:
            socket.end(None)
        except Exception as e:
            logger.warning(f"Error while closing the transport: {e}")

    def _handle_logged_out(self, run: Optional[_InitializationRun] = None) -> None:
        logger.error(f"Logged out. Removing stored credentials in '{self.config.auth_path}'.")
        try:
            purge_auth_state(self.config.auth_path)
        except CredentialIOError as e:
            logger.error(f"Failed to purge credentials after logout: {e}")
        state = ConnectionState(ConnectionPhase.CLOSED, CloseReason.LOGGED_OUT)
        if run is not None:
            self._set_run_state(run, state)
            return
        with self._lock:
            self._state = state
        self._emit_state()

    # =========================================================================
    # SOCKET EVENTS
    # =========================================================================

    def _subscribe(self, socket: Socket, session_id: int) -> List[Callable[[], None]]:
        ev = socket.ev
        # connection.update last: some transports start delivering on that subscription
        return [
            ev.on(CREDS_UPDATE, partial(self._on_creds_update, session_id)),
            ev.on(MESSAGES_UPSERT, partial(self._on_messages_upsert, session_id)),
            ev.on(GROUPS_UPSERT, partial(self._on_groups_upsert, session_id)),
            ev.on(GROUPS_UPDATE, partial(self._on_groups_update, session_id)),
            ev.on(CONNECTION_UPDATE, partial(self._on_connection_update, session_id)),
        ]

    def _is_current(self, session_id: int) -> bool:
        with self._lock:
            return session_id == self._session_id

    def _active_run(self) -> Optional[_InitializationRun]:
        with self._lock:
            if self._run is not None and self._run.active:
                return self._run
            return None

    def _on_connection_update(self, session_id: int, payload: Any) -> None:
        if isinstance(payload, ConnectionUpdate):
            update = payload
        else:
            update = ConnectionUpdate.from_dict(payload or {})

        with self._lock:
            if session_id != self._session_id:
                logger.debug(f"Ignoring connection update of stale session {session_id}")
                return
            socket = self._socket
            run = self._active_run()

        if update.qr:
            self._handle_qr(session_id, socket, run, update.qr)
        if run is not None:
            run.put(session_id, update)
        elif update.is_close:
            self._handle_close_while_open(session_id, update)

    def _handle_qr(self, session_id: int, socket: Optional[Socket], run: Optional[_InitializationRun], qr: str) -> None:
        if not self.config.use_pairing_code:
            logger.info("QR Code received, scan please.")
            self.events.emit(QR, qr)
            return

        with self._lock:
            if self._pairing_requested or socket is None:
                return
            self._pairing_requested = True

        phone_number = re.sub(r"[^0-9]", "", self.config.phone_number or "")
        try:
            code = socket.request_pairing_code(phone_number)
        except Exception as e:
            logger.error(f"Failed to request a pairing code: {e}")
            if run is not None:
                error = e if isinstance(e, WhatsAppClientError) else TransportError(f"Pairing code request failed: {e}")
                run.put(session_id, error)
            return
        logger.info(f"Pairing code received for {phone_number}: {code}")
        self.events.emit(PAIRING_CODE, {"code": code, "phone_number": phone_number})

    def _handle_close_while_open(self, session_id: int, update: ConnectionUpdate) -> None:
        reason = classify_close(update.last_disconnect)
        message = update.last_disconnect.message if update.last_disconnect else ""
        logger.warning(
            f"Connection closed. Reason: {message or 'unknown'}. "
            f"Reconnecting: {reason is CloseReason.TRANSIENT}"
        )
        if not self._teardown(session_id):
            return
        if reason is CloseReason.LOGGED_OUT:
            self._handle_logged_out()
            return

        with self._lock:
            if self._active_run() is not None:
                return
            run = _InitializationRun()
            self._run = run
            self._state = ConnectionState(ConnectionPhase.CLOSED, CloseReason.TRANSIENT)
        self._emit_state()
        self._start_run(run, "whatsapp-reconnect", report_failure=True)

    def _start_run(self, run: _InitializationRun, name: str, report_failure: bool = False) -> None:
        thread = threading.Thread(
            target=self._run_retries,
            args=(run, report_failure),
            name=name,
            daemon=True,
        )
        thread.start()

    def _run_retries(self, run: _InitializationRun, report_failure: bool) -> None:
        self._connect_with_retries(run)
        # initialize() callers receive the error themselves
        error = run.future.exception()
        if error is not None and report_failure:
            logger.error(f"Reconnect gave up: {error}")

    def _on_creds_update(self, session_id: int, creds: Optional[Dict[str, Any]]) -> None:
        with self._lock:
            if session_id != self._session_id or self._auth is None:
                return
            auth = self._auth
            auth.state.creds.update(creds or {})
            snapshot = dict(auth.state.creds)
            if self._persist_executor is None:
                self._persist_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="whatsapp-creds")
            future = self._persist_executor.submit(auth.save_creds, snapshot)
        future.add_done_callback(partial(self._on_creds_saved, session_id))

    def _on_creds_saved(self, session_id: int, future: Future) -> None:
        error = future.exception()
        if error is None:
            return
        logger.error(f"Failed to save credentials: {error}")
        run = self._active_run()
        if run is not None:
            if not isinstance(error, CredentialIOError):
                error = CredentialIOError(f"Failed to save credentials: {error}")
            run.put(session_id, error)

    def _on_messages_upsert(self, session_id: int, payload: Optional[Dict[str, Any]]) -> None:
        if not self._is_current(session_id):
            return
        payload = payload or {}
        upsert_type = payload.get("type", "notify")
        for raw in payload.get("messages", []):
            try:
                message = IncomingMessage.from_dict(raw, upsert_type)
            except (AttributeError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed message in {MESSAGES_UPSERT}: {e}")
                continue
            self.message_store.add_incoming(message)
            self.events.emit(MESSAGE, message)

    def _on_groups_upsert(self, session_id: int, payload: Optional[List[Dict[str, Any]]]) -> None:
        if not self._is_current(session_id):
            return
        groups = [GroupMetadata.from_dict(item) for item in payload or []]
        self.group_cache.upsert(groups)
        self.events.emit(GROUPS_UPSERT, groups)

    def _on_groups_update(self, session_id: int, payload: Optional[List[Dict[str, Any]]]) -> None:
        if not self._is_current(session_id):
            return
        changes = list(payload or [])
        for change in changes:
            self.group_cache.update(change)
        self.events.emit(GROUPS_UPDATE, changes)
