"""Integration tests for explicit FTPS (AUTH TLS) against pyftpdlib."""

import io
import ssl

import pytest

from duplexftp.ftp.client import AccessOptions, FTPClient
from duplexftp.ftp.exceptions import TLSNegotiationError

from .mock_ftp_server import MockFTPServer


@pytest.fixture
def ftps_server(certificate):
    """Provide a running mock FTP server that accepts AUTH TLS."""
    server = MockFTPServer(
        certfile=str(certificate.cert_path),
        keyfile=str(certificate.key_path),
    )
    server.start()
    yield server
    server.stop()


@pytest.fixture
def tls_context(certificate) -> ssl.SSLContext:
    """Provide a client context trusting the test certificate."""
    context = certificate.client_context()
    # pyftpdlib's pyOpenSSL data channel is most reliable with TLS 1.2
    context.maximum_version = ssl.TLSVersion.TLSv1_2
    return context


def test_secure_session(ftps_server, tls_context, tmp_path):
    """Test login, listing, upload and download over TLS."""
    payload = bytes(range(256)) * 4096
    reports = []

    with FTPClient(timeout=10, progress_interval=0) as client:
        client.access(AccessOptions(
            host=ftps_server.host,
            port=ftps_server.port,
            user=ftps_server.username,
            password=ftps_server.password,
            secure=True,
            secure_context=tls_context,
        ))
        assert client.session.is_encrypted

        names = {entry.name for entry in client.list("pub")}
        assert names == {"hello.txt", "nested"}

        client.track_progress(reports.append)
        client.upload(io.BytesIO(payload), "secure.bin")
        assert (ftps_server.root_dir / "secure.bin").read_bytes() == payload
        assert reports[-1].bytes == len(payload)

        local_file = tmp_path / "secure.bin"
        client.download(local_file, "secure.bin")
        assert local_file.read_bytes() == payload


def test_untrusted_certificate(ftps_server):
    """Test that a failed handshake raises and closes the session."""
    client = FTPClient(timeout=10)
    client.connect(ftps_server.host, ftps_server.port)

    with pytest.raises(TLSNegotiationError):
        client.use_tls(ssl.create_default_context())

    assert client.is_closed
