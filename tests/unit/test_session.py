"""Unit tests for ControlSession.

Tests the command/reply cycle, single-flight rule, timeouts and closing
against a scripted server.
"""

import socket
import threading
import time

import pytest

from duplexftp.ftp.exceptions import (
    FTPConnectionError,
    FTPTimeoutError,
    ProtocolError,
    SessionBusyError,
    SessionClosedError,
    TransferCancelledError,
)
from duplexftp.ftp.session import ConnectionState, ControlSession, final_reply_handler

from .scripted_server import ScriptedFTPServer


def unused_port() -> int:
    """Find a local port nobody listens on."""
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestControlSessionLifecycle:
    """Tests for connecting and closing."""

    def test_initial_state(self):
        """Test that a new session is disconnected."""
        session = ControlSession()
        assert session.state == ConnectionState.DISCONNECTED
        assert session.is_connected is False
        with pytest.raises(SessionClosedError):
            session.socket

    def test_connect_returns_welcome(self):
        """Test that connect waits for the welcome reply."""
        def script(conn):
            conn.send("220 Welcome")

        with ScriptedFTPServer(script) as server:
            session = ControlSession(timeout=5)
            welcome = session.connect(server.host, server.port)
            assert welcome.code == 220
            assert session.state == ConnectionState.CONNECTED
            session.close()

        assert session.state == ConnectionState.CLOSED

    def test_multiline_welcome_in_pieces(self):
        """Test a multi-line welcome split across several writes."""
        def script(conn):
            conn.send_raw(b"220-Hello\r\n220-")
            time.sleep(0.05)
            conn.send_raw(b"More text\r\n2")
            time.sleep(0.05)
            conn.send_raw(b"20 Ready\r\n")

        with ScriptedFTPServer(script) as server:
            session = ControlSession(timeout=5)
            welcome = session.connect(server.host, server.port)
            session.close()

        assert welcome.code == 220
        assert welcome.is_multiline
        assert welcome.message == "220-Hello\n220-More text\n220 Ready"

    def test_connection_refused(self):
        """Test that a refused connection raises FTPConnectionError."""
        session = ControlSession(timeout=2)
        with pytest.raises(FTPConnectionError):
            session.connect("127.0.0.1", unused_port())

    def test_rejected_welcome(self):
        """Test that a 421 welcome raises ProtocolError."""
        def script(conn):
            conn.send("421 Too many connections")

        with ScriptedFTPServer(script) as server:
            session = ControlSession(timeout=5)
            with pytest.raises(ProtocolError) as exc_info:
                session.connect(server.host, server.port)
            session.close()

        assert exc_info.value.code == 421

    def test_closed_session_cannot_reconnect(self):
        """Test that a closed session stays closed."""
        session = ControlSession()
        session.close()
        with pytest.raises(SessionClosedError):
            session.connect("127.0.0.1", 21)


class TestControlSessionCommands:
    """Tests for submitting commands."""

    def test_submit_resolves_with_reply(self):
        """Test a simple command."""
        def script(conn):
            conn.send("220 Welcome")
            conn.expect("NOOP")
            conn.send("200 OK")

        with ScriptedFTPServer(script) as server:
            session = ControlSession(timeout=5)
            session.connect(server.host, server.port)
            reply = session.submit("NOOP", final_reply_handler())
            session.close()

        assert reply.code == 200
        assert server.commands == ["NOOP"]

    def test_negative_reply_keeps_session_usable(self):
        """Test that a 550 raises but the next command works."""
        def script(conn):
            conn.send("220 Welcome")
            conn.expect("CWD missing")
            conn.send("550 No such directory")
            conn.expect("PWD")
            conn.send('257 "/" is current directory')

        with ScriptedFTPServer(script) as server:
            session = ControlSession(timeout=5)
            session.connect(server.host, server.port)
            with pytest.raises(ProtocolError) as exc_info:
                session.submit("CWD missing", final_reply_handler())
            reply = session.submit("PWD", final_reply_handler())
            session.close()

        assert exc_info.value.code == 550
        assert exc_info.value.command == "CWD missing"
        assert reply.code == 257

    def test_ignore_error_codes(self):
        """Test that negative replies can be returned instead of raised."""
        def script(conn):
            conn.send("220 Welcome")
            conn.expect("DELE maybe.txt")
            conn.send("550 No such file")

        with ScriptedFTPServer(script) as server:
            session = ControlSession(timeout=5)
            session.connect(server.host, server.port)
            reply = session.submit("DELE maybe.txt", final_reply_handler(ignore_error_codes=True))
            session.close()

        assert reply.code == 550

    def test_second_submit_is_rejected_while_busy(self):
        """Test the single-flight rule without harming the pending command."""
        release = threading.Event()

        def script(conn):
            conn.send("220 Welcome")
            conn.expect("STAT")
            release.wait(5)
            conn.send("211 Status OK")

        with ScriptedFTPServer(script) as server:
            session = ControlSession(timeout=5)
            session.connect(server.host, server.port)

            results = {}

            def pending():
                results["reply"] = session.submit("STAT", final_reply_handler())

            thread = threading.Thread(target=pending)
            thread.start()
            while session.current_task is None:
                time.sleep(0.01)

            with pytest.raises(SessionBusyError) as exc_info:
                session.submit("NOOP", final_reply_handler())

            release.set()
            thread.join(5)
            session.close()

        assert exc_info.value.pending_command == "STAT"
        assert results["reply"].code == 211
        assert server.commands == ["STAT"]

    def test_preliminary_replies_are_skipped(self):
        """Test that 1xx replies don't finish a command."""
        def script(conn):
            conn.send("220 Welcome")
            conn.expect("SITE WAIT")
            conn.send("120 Wait a moment")
            conn.send("200 Done")

        with ScriptedFTPServer(script) as server:
            session = ControlSession(timeout=5)
            session.connect(server.host, server.port)
            reply = session.submit("SITE WAIT", final_reply_handler())
            session.close()

        assert reply.code == 200

    def test_late_reply_goes_to_waiting_task(self):
        """Test that a reply after the finished command is kept for a wait."""
        def script(conn):
            conn.send("220 Welcome")
            conn.expect("NOOP")
            conn.send_raw(b"200 OK\r\n226 Transfer complete\r\n")

        with ScriptedFTPServer(script) as server:
            session = ControlSession(timeout=5)
            session.connect(server.host, server.port)
            first = session.submit("NOOP", final_reply_handler())
            late = session.submit(None, final_reply_handler())
            session.close()

        assert first.code == 200
        assert late.code == 226

    def test_new_command_discards_late_reply(self):
        """Test that a new command does not take an earlier stray reply."""
        def script(conn):
            conn.send("220 Welcome")
            conn.expect("NOOP")
            conn.send_raw(b"200 OK\r\n226 Transfer complete\r\n")
            conn.expect("PWD")
            conn.send('257 "/" is current directory')

        with ScriptedFTPServer(script) as server:
            session = ControlSession(timeout=5)
            session.connect(server.host, server.port)
            session.submit("NOOP", final_reply_handler())
            reply = session.submit("PWD", final_reply_handler())
            session.close()

        assert reply.code == 257

    def test_handler_exception_rejects_task(self):
        """Test that errors raised by a handler end the command."""
        def script(conn):
            conn.send("220 Welcome")
            conn.expect("NOOP")
            conn.send("200 OK")

        def handler(reply, task):
            raise RuntimeError("handler failed")

        with ScriptedFTPServer(script) as server:
            session = ControlSession(timeout=5)
            session.connect(server.host, server.port)
            with pytest.raises(RuntimeError, match="handler failed"):
                session.submit("NOOP", handler)
            session.close()

    def test_send_only(self):
        """Test writing a command without waiting."""
        def script(conn):
            conn.send("220 Welcome")
            conn.expect("ABOR")

        with ScriptedFTPServer(script) as server:
            session = ControlSession(timeout=5)
            session.connect(server.host, server.port)
            session.send_only("ABOR")
            time.sleep(0.1)
            session.close()

        assert server.commands == ["ABOR"]


class TestControlSessionFailures:
    """Tests for timeouts and lost connections."""

    def test_idle_timeout_closes_session(self):
        """Test that a silent server times out the command."""
        def script(conn):
            conn.send("220 Welcome")
            conn.expect("NOOP")
            time.sleep(1.0)

        with ScriptedFTPServer(script) as server:
            session = ControlSession(timeout=0.3)
            session.connect(server.host, server.port)
            with pytest.raises(FTPTimeoutError):
                session.submit("NOOP", final_reply_handler())

            assert session.is_closed
            with pytest.raises(SessionClosedError):
                session.submit("NOOP", final_reply_handler())

    def test_suspended_timeout_is_not_enforced(self):
        """Test that suspend_timeout lets a slow reply arrive."""
        def script(conn):
            conn.send("220 Welcome")
            conn.expect("NOOP")
            time.sleep(0.6)
            conn.send("200 OK")

        with ScriptedFTPServer(script) as server:
            session = ControlSession(timeout=0.3)
            session.connect(server.host, server.port)
            session.suspend_timeout(True)
            reply = session.submit("NOOP", final_reply_handler())
            session.suspend_timeout(False)
            session.close()

        assert reply.code == 200

    def test_server_closing_connection(self):
        """Test that a closed control connection ends the session."""
        def script(conn):
            conn.send("220 Welcome")
            conn.expect("NOOP")

        with ScriptedFTPServer(script) as server:
            session = ControlSession(timeout=5)
            session.connect(server.host, server.port)
            with pytest.raises(SessionClosedError):
                session.submit("NOOP", final_reply_handler())

        assert session.is_closed

    def test_close_from_other_thread_cancels_command(self):
        """Test that close rejects the command in flight."""
        def script(conn):
            conn.send("220 Welcome")
            conn.expect("STAT")
            time.sleep(1.0)

        with ScriptedFTPServer(script) as server:
            session = ControlSession(timeout=5)
            session.connect(server.host, server.port)
            timer = threading.Timer(0.2, session.close)
            timer.start()
            with pytest.raises(TransferCancelledError):
                session.submit("STAT", final_reply_handler())
            timer.join()

        assert session.is_closed
