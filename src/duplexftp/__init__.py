"""duplexftp: FTP and explicit FTPS client.

Runs commands on the control connection one at a time and reports a
transfer as complete only when both the server's reply and the data
connection agree.
"""

from duplexftp.ftp.client import AccessOptions, FTPClient
from duplexftp.ftp.codec import Reply
from duplexftp.ftp.exceptions import (
    DataConnectionError,
    FTPAuthenticationError,
    FTPConnectionError,
    FTPError,
    FTPTimeoutError,
    ListingParseError,
    LocalFileError,
    ProtocolError,
    SessionBusyError,
    SessionClosedError,
    TLSNegotiationError,
    TransferCancelledError,
)
from duplexftp.ftp.listing import FileInfo, FileType, Permission, parse_list
from duplexftp.ftp.progress import ProgressInfo
from duplexftp.utils.logging import setup_logging

__version__ = "0.1.0"

__all__ = [
    "AccessOptions",
    "DataConnectionError",
    "FTPAuthenticationError",
    "FTPClient",
    "FTPConnectionError",
    "FTPError",
    "FTPTimeoutError",
    "FileInfo",
    "FileType",
    "ListingParseError",
    "LocalFileError",
    "Permission",
    "ProgressInfo",
    "ProtocolError",
    "Reply",
    "SessionBusyError",
    "SessionClosedError",
    "TLSNegotiationError",
    "TransferCancelledError",
    "parse_list",
    "setup_logging",
]
