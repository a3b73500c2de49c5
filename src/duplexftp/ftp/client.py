"""FTP client for duplexftp.

Provides AccessOptions dataclass and FTPClient, the user-facing API that
combines the control session, data channels, transfer coordination,
listing parser and progress tracking.
"""

import logging
import ssl
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Callable, Dict, List, Optional, Union

from duplexftp.config.credentials import CredentialManager
from duplexftp.ftp.codec import Reply
from duplexftp.ftp.data_channel import DataChannelManager
from duplexftp.ftp.directories import DirectoryTransfer
from duplexftp.ftp.exceptions import FTPAuthenticationError, FTPError
from duplexftp.ftp.listing import FileInfo, parse_list
from duplexftp.ftp.progress import ProgressHandler, ProgressTracker
from duplexftp.ftp.session import ConnectionState, ControlSession, final_reply_handler
from duplexftp.ftp.transfer import TransferCoordinator
from duplexftp.utils.validators import (
    validate_encoding,
    validate_host,
    validate_port,
    validate_timeout,
)

logger = logging.getLogger("duplexftp.client")

DEFAULT_USER = "anonymous"
DEFAULT_PASSWORD = "guest"

# Local files can be passed by path or as open binary streams
LocalSource = Union[str, Path, BinaryIO]


@dataclass
class AccessOptions:
    """Options for connecting and logging in with one call."""
    host: str = "localhost"
    port: int = 21
    user: str = DEFAULT_USER
    password: Optional[str] = None
    secure: bool = False
    secure_context: Optional[ssl.SSLContext] = None

    def __post_init__(self):
        """Validate options after initialization."""
        is_valid, error = validate_host(self.host)
        if not is_valid:
            raise ValueError(error)
        is_valid, error = validate_port(self.port)
        if not is_valid:
            raise ValueError(error)


class FTPClient:
    """
    FTP and explicit FTPS client.

    Usage:
        with FTPClient(timeout=30) as client:
            client.access(AccessOptions(host="ftp.example.com", user="me",
                                        password="secret", secure=True))
            for entry in client.list():
                print(entry.name)
            client.download("local.bin", "remote.bin")

    One client runs one operation at a time. ``abort`` and ``close`` may be
    called from another thread to stop a running transfer.
    """

    def __init__(
        self,
        timeout: float = 30,
        encoding: str = "utf-8",
        passive_mode: bool = True,
        progress_interval: float = 0.5,
        credentials: Optional[CredentialManager] = None,
    ):
        """
        Initialize the client.

        Args:
            timeout: Seconds before control or data socket operations time
                out, 0 for no timeout
            encoding: Control connection encoding, "latin-1" for old servers
            passive_mode: Let the client open data connections (PASV/EPSV)
            progress_interval: Minimum seconds between progress reports
            credentials: Keyring access used by ``access`` when no password
                is given
        """
        is_valid, error = validate_timeout(timeout)
        if not is_valid:
            raise ValueError(error)
        is_valid, error = validate_encoding(encoding)
        if not is_valid:
            raise ValueError(error)

        self.session = ControlSession(timeout=timeout, encoding=encoding)
        self._data_channels = DataChannelManager(self.session, passive_mode=passive_mode)
        self._progress = ProgressTracker(interval=progress_interval)
        self._transfers = TransferCoordinator(self.session, self._data_channels, self._progress)
        self._directories = DirectoryTransfer(self)
        self._credentials = credentials

    @classmethod
    def from_settings(cls, settings, credentials: Optional[CredentialManager] = None) -> "FTPClient":
        """
        Create a client from persisted ClientSettings.

        Args:
            settings: ClientSettings instance
            credentials: Keyring access for ``access``
        """
        return cls(
            timeout=settings.timeout,
            encoding=settings.encoding,
            passive_mode=settings.passive_mode,
            progress_interval=settings.progress_interval,
            credentials=credentials or CredentialManager(),
        )

    @property
    def state(self) -> ConnectionState:
        """Control connection state."""
        return self.session.state

    @property
    def is_closed(self) -> bool:
        """True once the client was closed or its connection failed."""
        return self.session.is_closed

    @property
    def passive_mode(self) -> bool:
        """True if data connections are opened by the client."""
        return self._data_channels.passive_mode

    @passive_mode.setter
    def passive_mode(self, value: bool) -> None:
        self._data_channels.passive_mode = value

    def close(self) -> None:
        """Close all connections. The client can't be used anymore afterwards."""
        self.session.close()

    def __enter__(self) -> "FTPClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def connect(self, host: str = "localhost", port: int = 21) -> Reply:
        """
        Connect to an FTP server.

        Returns:
            The server's welcome reply
        """
        return self.session.connect(host, port)

    def send(self, command: str, ignore_error_codes: bool = False) -> Reply:
        """
        Send a command and return its final reply.

        Args:
            command: FTP command
            ignore_error_codes: Return negative replies instead of raising

        Raises:
            ProtocolError: If the reply is negative and not ignored
        """
        return self.session.submit(command, final_reply_handler(ignore_error_codes))

    def use_tls(self, context: Optional[ssl.SSLContext] = None, command: str = "AUTH TLS") -> Reply:
        """
        Upgrade the control connection to TLS.

        Data connections opened afterwards are encrypted with the same
        context and reuse the control connection's TLS session.

        Args:
            context: SSL context, defaults to ``ssl.create_default_context()``
            command: Authentication command, e.g. "AUTH SSL"

        Raises:
            TLSNegotiationError: If the handshake fails
        """
        reply = self.send(command)
        self.session.upgrade(context or ssl.create_default_context())
        return reply

    def login(self, user: str = DEFAULT_USER, password: str = DEFAULT_PASSWORD) -> Reply:
        """
        Log in with user and password.

        Raises:
            FTPAuthenticationError: If the server rejects the credentials
        """
        reply = self.send(f"USER {user}", ignore_error_codes=True)
        if reply.code == 331:
            reply = self.send(f"PASS {password}", ignore_error_codes=True)
        if reply.code != 230 and reply.code != 202:
            raise FTPAuthenticationError(user, reply)
        logger.info(f"Logged in as {user}")
        return reply

    def use_default_settings(self) -> None:
        """
        Apply the usual settings.

        Binary mode (TYPE I), file structure (STRU F) and, on encrypted
        connections, protected data channels (PBSZ 0, PROT P).
        """
        self.send("TYPE I")
        self.send("STRU F", ignore_error_codes=True)
        if self.session.is_encrypted:
            self.send("PBSZ 0")
            self.send("PROT P")

    def access(self, options: Optional[AccessOptions] = None, **kwargs) -> Reply:
        """
        Connect, secure, log in and apply default settings in one call.

        Args:
            options: AccessOptions, or keyword arguments to build them
            **kwargs: AccessOptions fields when ``options`` is None

        Returns:
            The server's welcome reply
        """
        if options is None:
            options = AccessOptions(**kwargs)

        password = options.password
        if password is None and self._credentials is not None:
            password = self._credentials.get_password(options.host, options.user)
        if password is None:
            password = DEFAULT_PASSWORD

        welcome = self.connect(options.host, options.port)
        if options.secure:
            self.use_tls(options.secure_context)
        self.login(options.user, password)
        self.use_default_settings()
        return welcome

    def cd(self, path: str) -> Reply:
        """Change the working directory."""
        return self.send(f"CWD {path}")

    def cdup(self) -> Reply:
        """Change to the parent of the working directory."""
        return self.send("CDUP")

    def pwd(self) -> str:
        """
        Get the working directory.

        Raises:
            FTPError: If the reply holds no quoted path
        """
        reply = self.send("PWD")
        text = reply.message
        start = text.find('"')
        end = text.rfind('"')
        if start < 0 or end <= start:
            raise FTPError(f"Can't parse PWD reply: {reply.message!r}")
        return text[start + 1:end].replace('""', '"')

    def features(self) -> Dict[str, str]:
        """
        Get the features the server announces with FEAT.

        Returns:
            Mapping of feature name to its parameters, empty if the server
            does not support FEAT
        """
        reply = self.send("FEAT", ignore_error_codes=True)
        features: Dict[str, str] = {}
        if reply.is_negative or not reply.is_multiline:
            return features
        # First and last line are the framing "211-..." and "211 End"
        for line in reply.message.split("\n")[1:-1]:
            line = line.strip()
            if not line:
                continue
            name, _, params = line.partition(" ")
            features[name.upper()] = params
        return features

    def size(self, filename: str) -> int:
        """Get the size of a remote file in bytes."""
        reply = self.send(f"SIZE {filename}")
        try:
            return int(_reply_text(reply).strip())
        except ValueError:
            raise FTPError(f"Can't parse SIZE reply: {reply.message!r}")

    def last_modified(self, filename: str) -> datetime:
        """Get the modification time of a remote file (UTC)."""
        reply = self.send(f"MDTM {filename}")
        value = _reply_text(reply).strip()
        try:
            return datetime.strptime(value[:14], "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)
        except ValueError:
            raise FTPError(f"Can't parse MDTM reply: {reply.message!r}")

    def rename(self, path: str, new_path: str) -> Reply:
        """
        Rename or move a remote file.

        Returns:
            The reply to RNTO
        """
        self.send(f"RNFR {path}")
        return self.send(f"RNTO {new_path}")

    def remove(self, filename: str, ignore_error_codes: bool = False) -> Reply:
        """Remove a file in the working directory."""
        return self.send(f"DELE {filename}", ignore_error_codes)

    def make_dir(self, name: str) -> Reply:
        """Create a directory."""
        return self.send(f"MKD {name}")

    def remove_empty_dir(self, name: str) -> Reply:
        """Remove an empty directory."""
        return self.send(f"RMD {name}")

    def track_progress(self, handler: Optional[ProgressHandler] = None) -> None:
        """
        Report transfer progress to a handler.

        Also resets the overall byte counter. Pass None to stop reporting.
        """
        self._progress.report_to(handler)

    def upload(self, source: LocalSource, remote_filename: str) -> Reply:
        """
        Store a local file or binary stream under a remote name.

        Args:
            source: Local path or readable binary stream
            remote_filename: Name in the working directory
        """
        return self._with_local(source, "rb", lambda f: self._transfers.upload(f, remote_filename))

    def append(self, source: LocalSource, remote_filename: str) -> Reply:
        """Append a local file or binary stream to a remote file."""
        return self._with_local(
            source, "rb", lambda f: self._transfers.upload(f, remote_filename, command="APPE")
        )

    def download(self, destination: LocalSource, remote_filename: str, start_at: int = 0) -> Reply:
        """
        Download a remote file to a local path or binary stream.

        Args:
            destination: Local path or writable binary stream
            remote_filename: Name in the working directory
            start_at: Offset to resume from; a local path is appended to

        A local path is opened when the first bytes arrive, so a rejected
        RETR leaves an existing local file as it was.
        """
        if not isinstance(destination, (str, Path)):
            return self._transfers.download(destination, remote_filename, start_at)

        target = _DeferredFile(destination, "ab" if start_at > 0 else "wb")
        try:
            reply = self._transfers.download(target, remote_filename, start_at)
            # An empty remote file still creates the local one
            target.open()
        finally:
            target.close()
        return reply

    def list(self, path: str = "") -> List[FileInfo]:
        """
        List a remote directory, the working directory by default.

        Raises:
            ListingParseError: If the listing format is not recognized
        """
        command = f"LIST {path}" if path else "LIST"
        return parse_list(self._transfers.list(command))

    def abort(self) -> bool:
        """
        Abort the running transfer, if any.

        The transfer fails with TransferCancelledError; the control
        connection stays usable.

        Returns:
            True if a transfer was aborted
        """
        return self._transfers.cancel()

    def upload_dir(self, local_dir: Union[str, Path], remote_dir_name: Optional[str] = None) -> None:
        """Upload a local directory's contents, see DirectoryTransfer.upload_dir."""
        self._directories.upload_dir(local_dir, remote_dir_name)

    def download_dir(self, local_dir: Union[str, Path]) -> None:
        """Download the working directory recursively."""
        self._directories.download_dir(local_dir)

    def remove_dir(self, remote_dir_path: str) -> None:
        """Remove a remote directory and all of its contents."""
        self._directories.remove_dir(remote_dir_path)

    def clear_working_dir(self) -> None:
        """Remove everything inside the working directory."""
        self._directories.clear_working_dir()

    def ensure_dir(self, remote_dir_path: str) -> None:
        """Create a remote path as needed and change into it."""
        self._directories.ensure_dir(remote_dir_path)

    @staticmethod
    def _with_local(target: LocalSource, mode: str, transfer: Callable[[BinaryIO], Reply]) -> Reply:
        if isinstance(target, (str, Path)):
            with open(target, mode) as f:
                return transfer(f)
        return transfer(target)


class _DeferredFile:
    """Local download target that opens its file on the first write."""

    def __init__(self, path: Union[str, Path], mode: str):
        self.path = path
        self.mode = mode
        self._file: Optional[BinaryIO] = None

    def open(self) -> BinaryIO:
        if self._file is None:
            self._file = open(self.path, self.mode)
        return self._file

    def write(self, data: bytes) -> int:
        return self.open().write(data)

    def close(self) -> None:
        if self._file is not None:
            self._file.close()


def _reply_text(reply: Reply) -> str:
    # Last reply line without its code, e.g. "213 1024" -> "1024"
    line = reply.message.split("\n")[-1]
    return line[4:] if line[:3].isdigit() else line
