"""Utility module for duplexftp.

This module provides cross-cutting utilities:
- Logging: Configured logging with credential redaction
- Validators: Input validation for hosts, ports, timeouts and names
"""
