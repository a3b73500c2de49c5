"""FTP-specific exceptions for duplexftp.

Every failure of a control or data channel operation is raised as one of
these types, so callers can catch ``FTPError`` for anything the client
reports.
"""

from typing import Optional


class FTPError(Exception):
    """Base exception for all FTP-related errors."""

    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error

    def __str__(self) -> str:
        if self.original_error:
            return f"{self.message}: {self.original_error}"
        return self.message


class ProtocolError(FTPError):
    """The server answered with a negative reply code (4xx or 5xx)."""

    def __init__(self, reply, command: Optional[str] = None):
        self.reply = reply
        self.command = command
        self.code = reply.code
        if command:
            message = f"'{mask_command(command)}' failed: {reply.message}"
        else:
            message = reply.message
        super().__init__(message)


class FTPAuthenticationError(ProtocolError):
    """FTP authentication (login) failed."""

    def __init__(self, username: str, reply):
        self.username = username
        super().__init__(reply)
        self.message = f"Authentication failed for user '{username}': {reply.message}"


class FTPConnectionError(FTPError):
    """Failed to establish or keep the control connection."""

    def __init__(self, host: str, port: int, original_error: Exception = None):
        self.host = host
        self.port = port
        message = f"Connection to {host}:{port} failed"
        super().__init__(message, original_error)


class FTPTimeoutError(FTPError):
    """A control or data socket operation timed out."""

    def __init__(self, operation: str = "Operation", timeout: float = 30):
        self.operation = operation
        self.timeout = timeout
        message = f"{operation} timed out after {timeout:g} seconds"
        super().__init__(message)


class DataConnectionError(FTPError):
    """Opening, accepting or using a data connection failed."""


class LocalFileError(FTPError):
    """Reading or writing the local side of a transfer failed."""

    def __init__(self, operation: str, name: Optional[str] = None, original_error: Exception = None):
        self.operation = operation
        self.name = name
        message = f"{operation} '{name}' failed" if name else f"{operation} failed"
        super().__init__(message, original_error)


class TLSNegotiationError(FTPError):
    """The TLS handshake on the control or data socket did not complete."""


class TransferCancelledError(FTPError):
    """The transfer was aborted or the session closed while it was running."""

    def __init__(self, message: str = "Transfer cancelled"):
        super().__init__(message)


class SessionClosedError(FTPError):
    """Operation attempted on a closed control session."""

    def __init__(self, operation: str = "Operation", original_error: Exception = None):
        self.operation = operation
        message = f"{operation} requires an open FTP session"
        super().__init__(message, original_error)


class SessionBusyError(FTPError):
    """A command was submitted while another one is still in flight."""

    def __init__(self, pending_command: Optional[str] = None):
        self.pending_command = pending_command
        if pending_command:
            message = f"Another command is still in flight: '{mask_command(pending_command)}'"
        else:
            message = "Another command is still in flight"
        super().__init__(message)


class ListingParseError(FTPError):
    """A directory listing could not be parsed."""

    def __init__(self, line: str, reason: str = "Unknown listing format"):
        self.line = line
        message = f"{reason}: {line!r}"
        super().__init__(message)


def mask_command(command: str) -> str:
    """Hide the argument of a PASS command."""
    if command.upper().startswith("PASS "):
        return "PASS ###"
    return command
