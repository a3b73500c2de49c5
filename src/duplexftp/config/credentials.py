"""Keyring-backed FTP passwords for duplexftp.

``FTPClient.access`` asks the CredentialManager for a password whenever its
AccessOptions carry none, so saved servers can be reached without a
password in code or in the settings file. Entries live in the system
keyring under the service "duplexftp", one per host and user.
"""

import logging
from typing import Optional

import keyring
from keyring.errors import KeyringError

logger = logging.getLogger("duplexftp.credentials")


class CredentialManager:
    """Stores and looks up FTP passwords in the system keyring."""

    SERVICE_NAME = "duplexftp"

    @staticmethod
    def login_key(host: str, user: str) -> str:
        """Keyring entry name for a login, e.g. "ftp.example.com:alice"."""
        return f"{host}:{user}"

    def save_password(self, host: str, user: str, password: str) -> bool:
        """
        Remember the password for a server login.

        Returns:
            True if the keyring accepted it
        """
        try:
            keyring.set_password(self.SERVICE_NAME, self.login_key(host, user), password)
        except KeyringError as e:
            logger.warning(f"Could not save password for {self.login_key(host, user)}: {e}")
            return False
        return True

    def get_password(self, host: str, user: str) -> Optional[str]:
        """
        Look up the saved password for a server login.

        A keyring that is locked or unavailable counts as no saved password,
        so ``access`` falls back to its default.
        """
        try:
            return keyring.get_password(self.SERVICE_NAME, self.login_key(host, user))
        except KeyringError as e:
            logger.warning(f"Keyring lookup for {self.login_key(host, user)} failed: {e}")
            return None

    def delete_password(self, host: str, user: str) -> bool:
        """Forget a saved password. Returns False if nothing was removed."""
        try:
            keyring.delete_password(self.SERVICE_NAME, self.login_key(host, user))
        except KeyringError:
            return False
        return True

    def has_password(self, host: str, user: str) -> bool:
        return self.get_password(host, user) is not None
