"""End-to-end test of an explicit TLS session against a scripted server.

Connect, AUTH TLS, log in and upload 10 MB through a protected passive
data connection while the server sends its final reply before the data
connection is closed.
"""

import io

import pytest

from duplexftp.ftp.client import AccessOptions, FTPClient
from duplexftp.ftp.exceptions import TLSNegotiationError

from .scripted_server import ScriptedFTPServer


UPLOAD_SIZE = 10 * 1024 * 1024


def secure_login(conn, server_context) -> None:
    """Upgrade the control connection and accept login and settings."""
    conn.send("220 Welcome")
    conn.expect("AUTH TLS")
    conn.send("234 Proceed with negotiation")
    conn.start_tls(server_context)
    conn.expect("USER testuser")
    conn.send("331 Password required")
    conn.expect("PASS testpass")
    conn.send("230 Logged in")
    for command in ("TYPE I", "STRU F", "PBSZ 0", "PROT P"):
        conn.expect(command)
        conn.send("200 OK")


def secure_client(server, certificate) -> FTPClient:
    client = FTPClient(timeout=10)
    client.access(AccessOptions(
        host=server.host,
        port=server.port,
        user="testuser",
        password="testpass",
        secure=True,
        secure_context=certificate.client_context(),
    ))
    return client


def test_tls_upload_with_early_reply(certificate):
    """Test a 10 MB upload confirmed by reply and data end."""
    server_context = certificate.server_context()
    received = {}

    def script(conn):
        secure_login(conn, server_context)

        conn.expect("PASV")
        listener = conn.open_passive()
        conn.expect("STOR big.bin")
        conn.send("150 Ok to send data")
        data = conn.accept_data(listener, server_context)
        received["tls"] = data.version()
        payload = conn.receive_all(data, UPLOAD_SIZE)
        # Final reply goes out before the data connection is closed
        conn.send("226 Transfer complete")
        payload += conn.receive_all(data)
        received["size"] = len(payload)
        conn.close_data(data)

    reports = []
    with ScriptedFTPServer(script) as server:
        client = secure_client(server, certificate)
        client.track_progress(reports.append)
        assert client.session.is_encrypted

        reply = client.upload(io.BytesIO(b"\xab" * UPLOAD_SIZE), "big.bin")
        client.close()

    assert reply.code == 226
    assert received["tls"] is not None
    assert received["size"] == UPLOAD_SIZE
    assert reports[-1].name == "big.bin"
    assert reports[-1].type == "upload"
    assert reports[-1].bytes == UPLOAD_SIZE
    assert reports[-1].bytes_overall == UPLOAD_SIZE


def test_data_channel_handshake_failure(certificate):
    """Test that a plain-text data connection fails the transfer but not the session."""
    server_context = certificate.server_context()

    def script(conn):
        secure_login(conn, server_context)

        conn.expect("PASV")
        listener = conn.open_passive()
        conn.expect("RETR secret.bin")
        conn.send("150 Opening data connection")
        data = conn.accept_data(listener)
        try:
            data.sendall(b"plain text where a TLS handshake belongs\r\n")
            conn.receive_all(data)
        except OSError:
            pass
        conn.close_data(data)
        conn.send("425 Data connection failed")
        conn.expect("NOOP")
        conn.send("200 OK")

    with ScriptedFTPServer(script) as server:
        client = secure_client(server, certificate)
        with pytest.raises(TLSNegotiationError):
            client.download(io.BytesIO(), "secret.bin")
        reply = client.send("NOOP")
        client.close()

    assert reply.code == 200
