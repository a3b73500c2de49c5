"""Transfer coordination for duplexftp.

A transfer is only complete when two independent events have happened: the
server's final reply on the control connection and the clean end of the data
connection. They arrive in either order, so both are joined by a
TransferResolver into one outcome.
"""

import io
import logging
import socket
import threading
from enum import Enum
from typing import BinaryIO, Callable, Optional, Tuple

from duplexftp.ftp.codec import Reply
from duplexftp.ftp.data_channel import BLOCK_SIZE, DataChannelManager, DataConnection, DataStream
from duplexftp.ftp.exceptions import (
    DataConnectionError,
    FTPError,
    FTPTimeoutError,
    LocalFileError,
    ProtocolError,
    TransferCancelledError,
)
from duplexftp.ftp.progress import ProgressTracker
from duplexftp.ftp.session import ControlSession, Task, final_reply_handler

logger = logging.getLogger("duplexftp.transfer")


class TransferState(Enum):
    """State of a transfer outcome."""
    PENDING = "pending"
    AWAITING_BOTH = "awaiting_both"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class TransferResolver:
    """
    Joins the control reply and the data channel end into one outcome.

    ``resolve`` and ``confirm`` may be called in either order; the task is
    resolved with the control reply once both happened. The first ``reject``
    wins over everything reported afterwards.
    """

    def __init__(self, session: ControlSession):
        self.session = session
        self.state = TransferState.PENDING
        self.result: Optional[Reply] = None
        self.confirmed = False
        self.error: Optional[BaseException] = None
        self._lock = threading.Lock()

    @property
    def is_terminal(self) -> bool:
        """True once the transfer is confirmed or failed."""
        return self.state in (TransferState.CONFIRMED, TransferState.FAILED)

    def start(self) -> None:
        """Mark the transfer as running on both channels."""
        with self._lock:
            if self.state == TransferState.PENDING:
                self.state = TransferState.AWAITING_BOTH

    def resolve(self, task: Task, reply: Reply) -> None:
        """Record the positive final reply of the control connection."""
        with self._lock:
            if self.is_terminal:
                return
            self.state = TransferState.AWAITING_BOTH
            self.result = reply
            done = self.confirmed
            if done:
                self.state = TransferState.CONFIRMED
        if done:
            task.resolve(reply)

    def confirm(self, task: Task) -> None:
        """Record that the data connection finished cleanly."""
        with self._lock:
            if self.is_terminal:
                return
            self.state = TransferState.AWAITING_BOTH
            self.confirmed = True
            reply = self.result
            if reply is not None:
                self.state = TransferState.CONFIRMED
        if reply is not None:
            task.resolve(reply)
        else:
            # The control reply is still outstanding; bound the wait for it
            self.session.suspend_timeout(False)

    def reject(self, task: Task, error: BaseException) -> bool:
        """
        Fail the transfer unless it already reached a terminal state.

        Returns:
            True if this call decided the outcome
        """
        with self._lock:
            if self.is_terminal:
                return False
            self.state = TransferState.FAILED
            self.error = error
        task.reject(error)
        return True


StreamFunction = Callable[[DataStream], None]


class TransferCoordinator:
    """Runs uploads, downloads and listings over a control session."""

    def __init__(
        self,
        session: ControlSession,
        data_channels: DataChannelManager,
        progress: ProgressTracker,
    ):
        self.session = session
        self.data_channels = data_channels
        self.progress = progress
        self._current: Optional[Tuple[TransferResolver, DataConnection]] = None
        self._cancelled = threading.Event()

    @property
    def is_transferring(self) -> bool:
        """True while a transfer is running."""
        return self._current is not None

    def upload(self, source: BinaryIO, remote_filename: str, command: str = "STOR") -> Reply:
        """
        Upload a readable binary stream.

        Args:
            source: Stream to read from
            remote_filename: Target name on the server
            command: "STOR" to replace, "APPE" to append

        Returns:
            The server's final reply
        """
        def send(stream: DataStream) -> None:
            while True:
                try:
                    chunk = source.read(BLOCK_SIZE)
                except OSError as e:
                    raise LocalFileError("Reading the upload source for", remote_filename, e)
                if not chunk:
                    break
                stream.write(chunk)

        return self.run(f"{command} {remote_filename}", "upload", remote_filename, send)

    def download(self, destination: BinaryIO, remote_filename: str, start_at: int = 0) -> Reply:
        """
        Download a remote file into a writable binary stream.

        Args:
            destination: Stream to write to
            remote_filename: Name of the remote file
            start_at: Offset to resume from

        Returns:
            The server's final reply

        Raises:
            ProtocolError: If the server rejects REST; no data connection is
                opened in that case
        """
        if start_at > 0:
            self.session.submit(f"REST {start_at}", final_reply_handler())

        def receive(stream: DataStream) -> None:
            _copy_to(stream, destination, remote_filename)

        return self.run(f"RETR {remote_filename}", "download", remote_filename, receive)

    def list(self, command: str = "LIST") -> str:
        """
        Run a listing command and return the raw listing text.

        Args:
            command: Full listing command, e.g. "LIST" or "MLSD /pub"
        """
        buffer = io.BytesIO()

        def receive(stream: DataStream) -> None:
            _copy_to(stream, buffer, command)

        self.run(command, "list", command, receive)
        return buffer.getvalue().decode(self.session.encoding, errors="replace")

    def run(self, command: str, kind: str, name: str, stream_function: StreamFunction) -> Reply:
        """
        Run one transfer over both channels.

        Args:
            command: Transfer command sent on the control connection
            kind: "upload", "download" or "list", used for progress info
            name: Name used for progress info and messages
            stream_function: Moves the bytes, called on a worker thread with
                the open DataStream

        Returns:
            The server's final positive reply, once the data connection
            has also finished cleanly

        Raises:
            ProtocolError: If the server rejects the command
            DataConnectionError: If the data connection fails
            LocalFileError: If reading the source or writing the
                destination fails

        When the data side fails first, the server's own final reply to
        the command is still read before the error is raised.
            FTPTimeoutError: If either channel times out
            TransferCancelledError: If the transfer was aborted
        """
        connection = self.data_channels.prepare()
        resolver = TransferResolver(self.session)
        worker: Optional[threading.Thread] = None
        final_reply: Optional[Reply] = None

        def start_worker(task: Task) -> None:
            nonlocal worker
            if worker is not None:
                return
            self.session.suspend_timeout(True)
            worker = threading.Thread(
                target=self._stream,
                args=(connection, resolver, task, kind, name, stream_function),
                name=f"ftp-data-{kind}",
                daemon=True,
            )
            worker.start()

        def handler(reply: Reply, task: Task) -> None:
            nonlocal final_reply
            if self._cancelled.is_set():
                # Replies to ABOR are drained once the transfer is over
                return
            if reply.is_preliminary:
                start_worker(task)
                return
            final_reply = reply
            if reply.is_completion:
                # Some servers skip the 1xx mark for short transfers
                start_worker(task)
                resolver.resolve(task, reply)
            elif reply.is_negative:
                resolver.reject(task, ProtocolError(reply, command))
            else:
                logger.debug(f"Unexpected reply during transfer: {reply.code}")

        self._cancelled.clear()
        self._current = (resolver, connection)
        resolver.start()
        try:
            reply = self.session.submit(command, handler)
        finally:
            self._current = None
            self.session.release_data_connection(connection)
            if worker is not None:
                worker.join()
            self.session.suspend_timeout(False)
            self.progress.stop()
            if self._cancelled.is_set():
                self._drain_abort_replies()
            elif final_reply is None and resolver.state == TransferState.FAILED:
                self._await_final_reply(command)
        logger.debug(f"Transfer of '{name}' confirmed: {reply.code}")
        return reply

    def cancel(self) -> bool:
        """
        Abort the running transfer.

        Sends ABOR, fails the transfer with TransferCancelledError and
        force-closes the data connection. Safe to call from another thread.

        Returns:
            True if a transfer was running
        """
        current = self._current
        task = self.session.current_task
        if current is None or task is None:
            return False
        resolver, connection = current

        self._cancelled.set()
        try:
            self.session.send_only("ABOR")
        except FTPError as e:
            logger.warning(f"Could not send ABOR: {e}")
        resolver.reject(task, TransferCancelledError())
        connection.close()
        logger.info("Transfer aborted")
        return True

    def _drain_abort_replies(self) -> None:
        # ABOR produces one or two replies (426/225/226) that no command is
        # waiting for. A NOOP round trip consumes them.
        if not self.session.is_connected:
            return

        def handler(reply: Reply, task: Task) -> None:
            if reply.code == 200:
                task.resolve(reply)

        try:
            self.session.submit("NOOP", handler)
        except FTPError as e:
            logger.warning(f"Control connection unusable after abort: {e}")

    def _await_final_reply(self, command: str) -> None:
        # The data side failed first. The server still answers the transfer
        # command, and that reply must not be taken for the next command's.
        if not self.session.is_connected:
            return

        def handler(reply: Reply, task: Task) -> None:
            if not reply.is_preliminary:
                task.resolve(reply)

        try:
            reply = self.session.submit(None, handler)
        except FTPError as e:
            logger.warning(f"No final reply to '{command}' after the data connection failed: {e}")
        else:
            logger.debug(f"Final reply to failed '{command}': {reply.code}")

    def _stream(
        self,
        connection: DataConnection,
        resolver: TransferResolver,
        task: Task,
        kind: str,
        name: str,
        stream_function: StreamFunction,
    ) -> None:
        try:
            stream = connection.open()
            self.progress.start(stream, name, kind)
            stream_function(stream)
            stream.finish()
            self.progress.update_and_stop()
        except socket.timeout:
            resolver.reject(task, FTPTimeoutError(f"Data transfer of '{name}'", self.session.timeout))
        except FTPError as e:
            resolver.reject(task, e)
        except OSError as e:
            resolver.reject(task, DataConnectionError(f"Data connection for '{name}' failed", e))
        except Exception as e:
            resolver.reject(task, e)
        else:
            resolver.confirm(task)


def _copy_to(stream: DataStream, destination: BinaryIO, name: str) -> None:
    while True:
        data = stream.read(BLOCK_SIZE)
        if not data:
            break
        try:
            destination.write(data)
        except OSError as e:
            raise LocalFileError("Writing the download of", name, e)
