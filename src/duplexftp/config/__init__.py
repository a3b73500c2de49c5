"""Configuration module for duplexftp.

This module handles connection defaults and credentials:
- SettingsManager: JSON-based settings persistence
- CredentialManager: Secure credential storage via keyring
- Paths: Settings and log file locations
- ClientSettings: Settings dataclass
"""
