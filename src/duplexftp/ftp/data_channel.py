"""Data connection management for duplexftp.

Negotiates one data connection per transfer, in passive (PASV/EPSV) or
active (PORT/EPRT) mode, and wraps it in TLS when the control connection is
encrypted.
"""

import ipaddress
import logging
import re
import socket
import ssl
import threading
from typing import Callable, Optional, Tuple

from duplexftp.ftp.exceptions import (
    DataConnectionError,
    FTPTimeoutError,
    ProtocolError,
    TLSNegotiationError,
)
from duplexftp.ftp.session import ControlSession, final_reply_handler

logger = logging.getLogger("duplexftp.data")

# Block size for data transfers (8KB)
BLOCK_SIZE = 8192

_PASV_ADDRESS = re.compile(r"(\d{1,3}),(\d{1,3}),(\d{1,3}),(\d{1,3}),(\d{1,3}),(\d{1,3})")
_EPSV_PORT = re.compile(r"\((?P<d>[!-~])(?P=d)(?P=d)(?P<port>\d+)(?P=d)\)")


def parse_pasv_response(message: str) -> Tuple[str, int]:
    """
    Extract host and port from a PASV reply.

    Args:
        message: Reply text, e.g. "227 Entering Passive Mode (192,168,1,2,19,137)"

    Returns:
        Tuple of (host, port)

    Raises:
        DataConnectionError: If the reply holds no valid address
    """
    match = _PASV_ADDRESS.search(message)
    if match is None:
        raise DataConnectionError(f"Can't parse PASV reply: {message!r}")
    numbers = [int(group) for group in match.groups()]
    if any(number > 255 for number in numbers):
        raise DataConnectionError(f"Invalid address in PASV reply: {message!r}")
    host = ".".join(str(number) for number in numbers[:4])
    port = (numbers[4] << 8) + numbers[5]
    return host, port


def parse_epsv_response(message: str) -> int:
    """
    Extract the port from an EPSV reply.

    Args:
        message: Reply text, e.g. "229 Entering Extended Passive Mode (|||6446|)"

    Returns:
        Port number

    Raises:
        DataConnectionError: If the reply holds no valid port
    """
    match = _EPSV_PORT.search(message)
    if match is None:
        raise DataConnectionError(f"Can't parse EPSV reply: {message!r}")
    port = int(match.group("port"))
    if not 0 < port <= 65535:
        raise DataConnectionError(f"Invalid port in EPSV reply: {message!r}")
    return port


class DataStream:
    """A connected data socket, used for exactly one transfer."""

    def __init__(self, sock: socket.socket):
        self._socket = sock
        self._lock = threading.Lock()
        self._closed = False
        self.bytes_read = 0
        self.bytes_written = 0
        # Called with the byte count of every chunk (progress tracking)
        self.observer: Optional[Callable[[int], None]] = None

    @property
    def closed(self) -> bool:
        """True once the stream was closed."""
        return self._closed

    @property
    def socket(self) -> socket.socket:
        """The underlying socket."""
        return self._socket

    def read(self, size: int = BLOCK_SIZE) -> bytes:
        """Read up to ``size`` bytes, returns b"" at end of stream."""
        data = self._socket.recv(size)
        if data:
            self.bytes_read += len(data)
            self._notify(len(data))
        return data

    def write(self, data: bytes) -> None:
        """Send all bytes."""
        self._socket.sendall(data)
        self.bytes_written += len(data)
        self._notify(len(data))

    def finish(self) -> None:
        """Close the stream in an orderly way (TLS close_notify, then FIN)."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        sock = self._socket
        if isinstance(sock, ssl.SSLSocket):
            try:
                sock = sock.unwrap()
            except (ssl.SSLError, OSError, ValueError) as e:
                logger.debug(f"TLS shutdown of data connection incomplete: {e}")
        _close_socket(sock)

    def close(self) -> None:
        """Force-close both directions of the stream."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        _close_socket(self._socket)

    def _notify(self, count: int) -> None:
        observer = self.observer
        if observer is not None:
            observer(count)


def _close_socket(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    sock.close()


class DataConnection:
    """
    A data connection negotiated for one transfer.

    In passive mode the TCP connection exists already; in active mode a
    listening socket waits for the server. ``open`` is called once the
    transfer command was sent and yields the (TLS-wrapped) DataStream.
    """

    def __init__(
        self,
        sock: Optional[socket.socket] = None,
        listener: Optional[socket.socket] = None,
        timeout: float = 0,
        tls_context: Optional[ssl.SSLContext] = None,
        tls_session: Optional[ssl.SSLSession] = None,
        server_hostname: Optional[str] = None,
    ):
        if (sock is None) == (listener is None):
            raise ValueError("Exactly one of sock or listener is required")
        self._socket = sock
        self._listener = listener
        self.timeout = timeout
        self._tls_context = tls_context
        self._tls_session = tls_session
        self._server_hostname = server_hostname
        self._stream: Optional[DataStream] = None
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        """True once the connection was closed."""
        return self._closed

    @property
    def is_passive(self) -> bool:
        """True for connections the client opened itself."""
        return self._listener is None

    def open(self) -> DataStream:
        """
        Establish the data stream.

        Returns:
            DataStream ready for reading or writing

        Raises:
            FTPTimeoutError: If the server does not connect in time
            DataConnectionError: If accepting fails or the connection was
                closed meanwhile
            TLSNegotiationError: If the TLS handshake fails
        """
        if self._closed:
            raise DataConnectionError("Data connection was closed before the transfer started")

        sock = self._socket
        if sock is None:
            sock = self._accept()

        sock.settimeout(self.timeout or None)
        if self._tls_context is not None:
            try:
                sock = self._tls_context.wrap_socket(
                    sock,
                    server_hostname=self._server_hostname,
                    session=self._tls_session,
                )
            except socket.timeout:
                raise FTPTimeoutError("TLS handshake on data connection", self.timeout)
            except (ssl.SSLError, OSError) as e:
                raise TLSNegotiationError("TLS handshake on data connection failed", e)

        with self._lock:
            self._socket = sock
            self._stream = DataStream(sock)
            closed = self._closed
        if closed:
            self._stream.close()
            raise DataConnectionError("Data connection was closed while opening")
        return self._stream

    def close(self) -> None:
        """Close the stream, the socket and any listening socket."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            stream, sock, listener = self._stream, self._socket, self._listener
        if stream is not None:
            stream.close()
        elif sock is not None:
            _close_socket(sock)
        if listener is not None:
            listener.close()

    def _accept(self) -> socket.socket:
        listener = self._listener
        try:
            sock, address = listener.accept()
        except socket.timeout:
            raise FTPTimeoutError("Waiting for the server's data connection", self.timeout)
        except OSError as e:
            raise DataConnectionError("Accepting the data connection failed", e)
        finally:
            listener.close()
        logger.debug(f"Accepted data connection from {address[0]}:{address[1]}")
        with self._lock:
            self._socket = sock
        return sock


class DataChannelManager:
    """Negotiates data connections on behalf of a control session."""

    def __init__(self, session: ControlSession, passive_mode: bool = True):
        """
        Initialize the manager.

        Args:
            session: Control session to negotiate on
            passive_mode: Use PASV/EPSV if True, PORT/EPRT otherwise
        """
        self.session = session
        self.passive_mode = passive_mode
        # PASV or EPSV, decided on the first passive transfer
        self._passive_command: Optional[str] = None

    @property
    def passive_command(self) -> Optional[str]:
        """Passive mode command in use, None until the first transfer."""
        return self._passive_command

    def prepare(self) -> DataConnection:
        """
        Negotiate a data connection for the next transfer.

        The connection is attached to the session, which closes it if the
        session closes.

        Returns:
            DataConnection to open once the transfer command is sent

        Raises:
            ProtocolError: If the server rejects PASV/EPSV/PORT/EPRT
            DataConnectionError: If the reply is malformed or connecting fails
            FTPTimeoutError: If connecting times out
        """
        if self.passive_mode:
            connection = self._prepare_passive()
        else:
            connection = self._prepare_active()
        try:
            self.session.attach_data_connection(connection)
        except DataConnectionError:
            connection.close()
            raise
        return connection

    def _connection_kwargs(self) -> dict:
        session = self.session
        if not session.is_encrypted:
            return {"timeout": session.timeout}
        return {
            "timeout": session.timeout,
            "tls_context": session.tls_context,
            "tls_session": session.tls_session,
            "server_hostname": session.server_hostname,
        }

    def _prepare_passive(self) -> DataConnection:
        host, port = self._enter_passive_mode()
        logger.debug(f"Opening data connection to {host}:{port}")
        try:
            sock = socket.create_connection((host, port), timeout=self.session.timeout or None)
        except socket.timeout:
            raise FTPTimeoutError(f"Data connection to {host}:{port}", self.session.timeout)
        except OSError as e:
            raise DataConnectionError(f"Can't open data connection to {host}:{port}", e)
        return DataConnection(sock=sock, **self._connection_kwargs())

    def _enter_passive_mode(self) -> Tuple[str, int]:
        control = self.session.socket
        control_host = control.getpeername()[0]
        if self._passive_command is None:
            self._passive_command = "EPSV" if control.family == socket.AF_INET6 else "PASV"

        if self._passive_command == "PASV":
            reply = self.session.submit("PASV", final_reply_handler(ignore_error_codes=True))
            if reply.is_positive:
                host, port = parse_pasv_response(reply.message)
                return self._usable_host(host, control_host), port
            if reply.code < 500:
                raise ProtocolError(reply, "PASV")
            logger.info("PASV not supported, switching to EPSV")
            self._passive_command = "EPSV"

        reply = self.session.submit("EPSV", final_reply_handler())
        return control_host, parse_epsv_response(reply.message)

    @staticmethod
    def _usable_host(host: str, control_host: str) -> str:
        # Servers behind NAT often announce their private address
        try:
            announced = ipaddress.ip_address(host)
            control = ipaddress.ip_address(control_host)
        except ValueError:
            return host
        if (announced.is_private or announced.is_unspecified) and not control.is_private:
            logger.debug(f"Replacing announced data address {host} with {control_host}")
            return control_host
        return host

    def _prepare_active(self) -> DataConnection:
        control = self.session.socket
        local_host = control.getsockname()[0]
        try:
            listener = socket.socket(control.family, socket.SOCK_STREAM)
            listener.bind((local_host, 0))
            listener.listen(1)
        except OSError as e:
            raise DataConnectionError(f"Can't listen for a data connection on {local_host}", e)
        listener.settimeout(self.session.timeout or None)

        port = listener.getsockname()[1]
        if control.family == socket.AF_INET6:
            command = f"EPRT |2|{local_host}|{port}|"
        else:
            command = f"PORT {local_host.replace('.', ',')},{port >> 8},{port & 0xFF}"
        try:
            self.session.submit(command, final_reply_handler())
        except Exception:
            listener.close()
            raise
        logger.debug(f"Waiting for data connection on {local_host}:{port}")
        return DataConnection(listener=listener, **self._connection_kwargs())
