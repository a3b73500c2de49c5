"""Control connection session for duplexftp.

Provides ConnectionState enum, the Task unit of work, and ControlSession,
which runs exactly one command/reply exchange at a time over the control
socket and can upgrade that socket to TLS in place.
"""

import logging
import socket
import ssl
import threading
import time
from enum import Enum
from typing import Callable, List, Optional

from duplexftp.ftp.codec import Reply, ReplyCodec
from duplexftp.ftp.exceptions import (
    DataConnectionError,
    FTPConnectionError,
    FTPError,
    FTPTimeoutError,
    ProtocolError,
    SessionBusyError,
    SessionClosedError,
    TLSNegotiationError,
    TransferCancelledError,
    mask_command,
)

logger = logging.getLogger("duplexftp.session")

# Replies are read in short slices so a task finished from another thread
# (e.g. by the data channel) is noticed without waiting for more input.
POLL_INTERVAL = 0.1

BUFFER_SIZE = 8192


class ConnectionState(Enum):
    """Control connection state."""
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    CLOSED = "closed"


class Task:
    """
    A command in flight on the control connection.

    The handler receives every reply until it resolves or rejects the task.
    Only the first resolve/reject counts.
    """

    def __init__(self, command: Optional[str], handler: "ReplyHandler"):
        self.command = command
        self.handler = handler
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._value = None
        self._error: Optional[BaseException] = None

    @property
    def done(self) -> bool:
        """True once the task was resolved or rejected."""
        return self._done.is_set()

    def resolve(self, value=None) -> bool:
        """
        Finish the task successfully.

        Returns:
            False if the task was already finished
        """
        with self._lock:
            if self._done.is_set():
                return False
            self._value = value
            self._done.set()
        return True

    def reject(self, error: BaseException) -> bool:
        """
        Finish the task with an error.

        Returns:
            False if the task was already finished
        """
        with self._lock:
            if self._done.is_set():
                return False
            self._error = error
            self._done.set()
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the task is finished, returns False on timeout."""
        return self._done.wait(timeout)

    def result(self):
        """Return the resolved value or raise the rejection error."""
        if self._error is not None:
            raise self._error
        return self._value


ReplyHandler = Callable[[Reply, Task], None]


def final_reply_handler(ignore_error_codes: bool = False) -> ReplyHandler:
    """
    Create a handler that finishes on the first non-preliminary reply.

    Args:
        ignore_error_codes: Resolve with negative replies instead of
            rejecting the task with ProtocolError

    Returns:
        Reply handler
    """
    def handler(reply: Reply, task: Task) -> None:
        if reply.is_preliminary:
            return
        if reply.is_positive or ignore_error_codes:
            task.resolve(reply)
        else:
            task.reject(ProtocolError(reply, task.command))

    return handler


class ControlSession:
    """Owns the control socket and serializes commands on it."""

    def __init__(self, timeout: float = 0, encoding: str = "utf-8"):
        """
        Initialize the session.

        Args:
            timeout: Seconds of inactivity before a control or data socket
                operation fails, 0 disables the timeout
            encoding: Control connection encoding ("utf-8" or "latin-1")
        """
        self.timeout = timeout
        self.codec = ReplyCodec(encoding)
        self.tls_context: Optional[ssl.SSLContext] = None
        self.server_hostname: Optional[str] = None
        self._host: Optional[str] = None
        self._port: Optional[int] = None
        self._socket: Optional[socket.socket] = None
        self._buffer = b""
        # Decoded replies that arrived after their task had finished
        self._unhandled: List[Reply] = []
        self._state = ConnectionState.DISCONNECTED
        self._task: Optional[Task] = None
        self._submit_lock = threading.Lock()
        self._io_lock = threading.Lock()
        self._timeout_suspended = False
        self._last_activity = 0.0
        self._data_connection = None

    @property
    def encoding(self) -> str:
        """Encoding used for commands and replies."""
        return self.codec.encoding

    @encoding.setter
    def encoding(self, value: str) -> None:
        self.codec.encoding = value

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """True while the control connection is usable."""
        return self._state == ConnectionState.CONNECTED

    @property
    def is_closed(self) -> bool:
        """True once the session was closed."""
        return self._state == ConnectionState.CLOSED

    @property
    def socket(self) -> socket.socket:
        """
        The control socket.

        Raises:
            SessionClosedError: If not connected
        """
        sock = self._socket
        if not self.is_connected or sock is None:
            raise SessionClosedError("Control socket access")
        return sock

    @property
    def is_encrypted(self) -> bool:
        """True if the control socket is TLS-wrapped."""
        return isinstance(self._socket, ssl.SSLSocket)

    @property
    def tls_session(self) -> Optional[ssl.SSLSession]:
        """TLS session of the control connection, for data channel resumption."""
        if isinstance(self._socket, ssl.SSLSocket):
            return self._socket.session
        return None

    @property
    def timeout_suspended(self) -> bool:
        """True while control-socket inactivity is not enforced."""
        return self._timeout_suspended

    @property
    def current_task(self) -> Optional[Task]:
        """Task currently in flight, if any."""
        return self._task

    @property
    def data_connection(self):
        """Data connection owned by the running transfer, if any."""
        return self._data_connection

    def connect(self, host: str, port: int = 21) -> Reply:
        """
        Open the control connection and wait for the welcome reply.

        Args:
            host: Server host
            port: Server port

        Returns:
            The server's welcome reply

        Raises:
            FTPConnectionError: If the connection fails
            FTPTimeoutError: If the connection times out
            ProtocolError: If the server refuses the session
        """
        if self.is_closed:
            raise SessionClosedError("Connect")
        if self._socket is not None:
            raise FTPError(f"Session is already connected to {self._host}:{self._port}")

        logger.info(f"Connecting to {host}:{port}")
        try:
            sock = socket.create_connection((host, port), timeout=self.timeout or None)
        except socket.timeout:
            raise FTPTimeoutError("Connection", self.timeout)
        except OSError as e:
            raise FTPConnectionError(host, port, e)

        sock.settimeout(POLL_INTERVAL)
        self._socket = sock
        self._host = host
        self._port = port
        self.server_hostname = host
        self._state = ConnectionState.CONNECTED
        return self.submit(None, final_reply_handler())

    def submit(self, command: Optional[str], handler: ReplyHandler):
        """
        Send a command and feed replies to the handler until it finishes.

        Args:
            command: Command without line ending, None to only wait for
                replies (e.g. the welcome message). Replies that arrived
                after the previous task had finished go to a waiting task
                and are discarded when a new command is sent.
            handler: Called with every reply until it resolves or rejects
                the task

        Returns:
            Whatever the handler resolved the task with

        Raises:
            SessionBusyError: If another command is in flight
            SessionClosedError: If the session is closed
            FTPError: Whatever the handler rejected the task with, or the
                socket error that ended the session
        """
        if not self.is_connected:
            raise SessionClosedError(f"'{mask_command(command)}'" if command else "Reading a reply")
        if not self._submit_lock.acquire(blocking=False):
            pending = self._task
            raise SessionBusyError(pending.command if pending else None)

        task = Task(command, handler)
        try:
            self._task = task
            self._last_activity = time.monotonic()
            unhandled, self._unhandled = self._unhandled, []
            if command is None:
                self._handle(unhandled, task)
            else:
                for reply in unhandled:
                    logger.debug(f"Discarding reply {reply.code}, no command waited for it")
                logger.debug(f"> {mask_command(command)}")
                try:
                    self._write(command)
                except OSError as e:
                    self._fail(FTPConnectionError(self._host, self._port, e))
            self._pump(task)
        finally:
            self._task = None
            self._submit_lock.release()
        return task.result()

    def send_only(self, command: str) -> None:
        """
        Send a command without waiting for its reply.

        Raises:
            SessionClosedError: If the session is closed
            FTPConnectionError: If writing fails
        """
        if not self.is_connected:
            raise SessionClosedError(f"'{mask_command(command)}'")
        logger.debug(f"> {mask_command(command)}")
        try:
            self._write(command)
        except OSError as e:
            raise FTPConnectionError(self._host, self._port, e)

    def suspend_timeout(self, suspended: bool) -> None:
        """
        Suspend or re-enable the control connection idle timeout.

        Used while a data transfer runs, because the control socket sits
        idle and the data socket enforces the timeout itself.
        """
        self._timeout_suspended = suspended
        if not suspended:
            self._last_activity = time.monotonic()

    def upgrade(self, context: ssl.SSLContext, server_hostname: Optional[str] = None) -> None:
        """
        Wrap the control socket in TLS.

        Bytes received but not decoded yet are kept.

        Args:
            context: SSL context to use, also reused for data connections
            server_hostname: Name to verify, defaults to the connected host

        Raises:
            SessionBusyError: If a command is in flight
            TLSNegotiationError: If the handshake fails or times out
        """
        if not self.is_connected:
            raise SessionClosedError("TLS upgrade")
        if self._task is not None:
            raise SessionBusyError(self._task.command)

        hostname = server_hostname or self._host
        error = None
        with self._io_lock:
            raw = self._socket
            raw.settimeout(self.timeout or None)
            try:
                tls = context.wrap_socket(raw, server_hostname=hostname)
            except (ssl.SSLError, OSError) as e:
                error = TLSNegotiationError("TLS handshake on control connection failed", e)
            else:
                tls.settimeout(POLL_INTERVAL)
                self._socket = tls
                self.tls_context = context
                self.server_hostname = hostname

        if error is not None:
            self.close(error)
            raise error
        logger.info(f"Control connection secured with {tls.version()}")

    def attach_data_connection(self, connection) -> None:
        """
        Hand a data connection to the session for the running transfer.

        Raises:
            DataConnectionError: If an earlier data connection is still open
        """
        current = self._data_connection
        if current is not None and not current.closed:
            raise DataConnectionError("A data connection is still open")
        self._data_connection = connection

    def release_data_connection(self, connection) -> None:
        """Close and forget a data connection once its transfer is over."""
        connection.close()
        if self._data_connection is connection:
            self._data_connection = None

    def close(self, error: Optional[BaseException] = None) -> None:
        """
        Close control and data connections.

        A command in flight fails with the given error, or with
        TransferCancelledError if none is given. The session cannot be used
        anymore afterwards.
        """
        was_open = self._state != ConnectionState.CLOSED
        self._state = ConnectionState.CLOSED
        task = self._task
        if task is not None:
            task.reject(error or TransferCancelledError("Session closed"))

        connection, self._data_connection = self._data_connection, None
        if connection is not None:
            connection.close()

        sock, self._socket = self._socket, None
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()
        if was_open and self._host:
            logger.info(f"Closed connection to {self._host}:{self._port}")

    def _write(self, command: str) -> None:
        data = self.codec.encode(command)
        with self._io_lock:
            sock = self._socket
            if sock is None:
                raise OSError("Control socket is closed")
            sock.settimeout(self.timeout or None)
            try:
                sock.sendall(data)
            finally:
                sock.settimeout(POLL_INTERVAL)

    def _read(self) -> bytes:
        with self._io_lock:
            sock = self._socket
            if sock is None:
                raise OSError("Control socket is closed")
            return sock.recv(BUFFER_SIZE)

    def _pump(self, task: Task) -> None:
        while not task.done:
            if not self.is_connected:
                task.reject(SessionClosedError("Reading a reply"))
                break
            try:
                chunk = self._read()
            except socket.timeout:
                self._check_idle()
                continue
            except OSError as e:
                self._fail(FTPConnectionError(self._host, self._port, e))
                break
            if not chunk:
                self._fail(SessionClosedError(
                    "Reading a reply", ConnectionResetError("Server closed the control connection")
                ))
                break
            self._last_activity = time.monotonic()
            self._dispatch(chunk, task)

    def _dispatch(self, chunk: bytes, task: Task) -> None:
        messages, self._buffer = self.codec.decode(self._buffer + chunk)
        replies = []
        for message in messages:
            try:
                reply = Reply.parse(message)
            except ValueError:
                logger.warning(f"Ignoring malformed reply: {message!r}")
                continue
            logger.debug(f"< {reply.message}")
            replies.append(reply)
        self._handle(replies, task)

    def _handle(self, replies: List[Reply], task: Task) -> None:
        for index, reply in enumerate(replies):
            if task.done:
                self._unhandled.extend(replies[index:])
                return
            try:
                task.handler(reply, task)
            except Exception as e:
                task.reject(e)

    def _check_idle(self) -> None:
        if not self.timeout or self._timeout_suspended:
            return
        if time.monotonic() - self._last_activity >= self.timeout:
            self._fail(FTPTimeoutError("Waiting for a reply", self.timeout))

    def _fail(self, error: FTPError) -> None:
        if self.is_connected:
            logger.error(f"Control connection failed: {error}")
        self.close(error)
