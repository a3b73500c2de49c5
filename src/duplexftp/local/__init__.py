"""Local filesystem module.

This module provides:
- LocalDirectoryScanner: List local directories for recursive uploads
"""

from duplexftp.local.scanner import LocalDirectoryScanner, LocalEntry

__all__ = ["LocalDirectoryScanner", "LocalEntry"]
