"""Input validators for duplexftp.

Provides validation functions for connection options such as hosts, ports,
timeouts and remote names.
"""

import codecs
import ipaddress
import re
from typing import Optional, Tuple


# Hostname pattern (simplified)
HOSTNAME_PATTERN = re.compile(
    r'^(?=.{1,253}$)(?!-)[A-Za-z0-9-]{1,63}(?<!-)(\.[A-Za-z0-9-]{1,63})*$'
)


def validate_ip_address(ip: str) -> Tuple[bool, Optional[str]]:
    """
    Validate an IPv4 or IPv6 address.

    Args:
        ip: IP address string to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not ip or not ip.strip():
        return False, "IP address is required"

    ip = ip.strip()

    try:
        ipaddress.ip_address(ip)
    except ValueError:
        return False, f"Invalid IP address format: {ip}"
    return True, None


def validate_hostname(hostname: str) -> Tuple[bool, Optional[str]]:
    """
    Validate a hostname.

    Args:
        hostname: Hostname string to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not hostname or not hostname.strip():
        return False, "Hostname is required"

    hostname = hostname.strip()

    if HOSTNAME_PATTERN.match(hostname):
        return True, None

    return False, f"Invalid hostname format: {hostname}"


def validate_host(host: str) -> Tuple[bool, Optional[str]]:
    """
    Validate a host (IP address or hostname).

    Args:
        host: Host string to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not host or not host.strip():
        return False, "Host is required"

    host = host.strip()

    # Try IP first
    is_valid_ip, _ = validate_ip_address(host)
    if is_valid_ip:
        return True, None

    # Try hostname
    is_valid_hostname, _ = validate_hostname(host)
    if is_valid_hostname:
        return True, None

    return False, f"Invalid host: {host}. Must be a valid IP address or hostname."


def validate_port(port: int) -> Tuple[bool, Optional[str]]:
    """
    Validate a port number.

    Args:
        port: Port number to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(port, int):
        try:
            port = int(port)
        except (ValueError, TypeError):
            return False, "Port must be a number"

    if port < 1 or port > 65535:
        return False, f"Port must be between 1 and 65535, got {port}"

    return True, None


def validate_timeout(timeout: float) -> Tuple[bool, Optional[str]]:
    """
    Validate a timeout value in seconds (0 disables the timeout).

    Args:
        timeout: Timeout in seconds

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(timeout, (int, float)):
        try:
            timeout = float(timeout)
        except (ValueError, TypeError):
            return False, "Timeout must be a number"

    if timeout < 0 or timeout > 3600:
        return False, f"Timeout must be between 0 and 3600 seconds, got {timeout}"

    return True, None


def validate_encoding(encoding: str) -> Tuple[bool, Optional[str]]:
    """
    Validate a control connection encoding name.

    Args:
        encoding: Codec name, e.g. "utf-8" or "latin-1"

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        codecs.lookup(encoding)
    except (LookupError, TypeError):
        return False, f"Unknown encoding: {encoding}"
    return True, None


def validate_remote_name(name: str) -> Tuple[bool, Optional[str]]:
    """
    Validate a single remote file or directory name.

    Args:
        name: Name without any path separator

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not name or not name.strip():
        return False, "Remote name is required"

    if "/" in name:
        return False, f"Remote name must not contain '/': {name}"

    if "\r" in name or "\n" in name:
        return False, "Remote name must not contain line breaks"

    return True, None
