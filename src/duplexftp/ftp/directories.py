"""Recursive directory operations for duplexftp.

Everything here is built from cd, list, upload, download and remove calls
on the client; no additional protocol logic.
"""

import logging
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Optional, Union

from duplexftp.local.scanner import LocalDirectoryScanner
from duplexftp.utils.validators import validate_remote_name

if TYPE_CHECKING:
    from duplexftp.ftp.client import FTPClient

logger = logging.getLogger("duplexftp.directories")


class DirectoryTransfer:
    """Recursive uploads, downloads and removals on one client."""

    def __init__(self, client: "FTPClient", scanner: Optional[LocalDirectoryScanner] = None):
        """
        Initialize the directory helper.

        Args:
            client: Connected FTP client
            scanner: Local directory scanner
        """
        self._client = client
        self._scanner = scanner or LocalDirectoryScanner()

    def upload_dir(self, local_dir: Union[str, Path], remote_dir_name: Optional[str] = None) -> None:
        """
        Upload the contents of a local directory to the working directory.

        With ``remote_dir_name`` the contents go into that directory, which
        is created if necessary. Existing files with the same names are
        overwritten, existing directories reused, unrelated entries left
        alone. The working directory is unchanged afterwards.

        Raises:
            ValueError: If remote_dir_name is not a plain name
            ProtocolError: If a remote entry has the wrong type, e.g. a
                file where a directory should go
        """
        working_dir = self._client.pwd()
        if remote_dir_name is not None:
            is_valid, error = validate_remote_name(remote_dir_name)
            if not is_valid:
                raise ValueError(error)
        try:
            if remote_dir_name is not None:
                self.ensure_dir(remote_dir_name)
            self._upload_contents(Path(local_dir))
        finally:
            self._client.cd(working_dir)

    def _upload_contents(self, local_dir: Path) -> None:
        for entry in self._scanner.scan(local_dir):
            if entry.is_directory:
                logger.debug(f"Uploading directory {entry.path}")
                self._client.send(f"MKD {entry.name}", ignore_error_codes=True)
                self._client.cd(entry.name)
                self._upload_contents(entry.path)
                self._client.cdup()
            else:
                self._client.upload(entry.path, entry.name)

    def download_dir(self, local_dir: Union[str, Path]) -> None:
        """
        Download the working directory recursively into a local directory.

        Symbolic links and entries of unknown type are skipped. The working
        directory is unchanged afterwards.
        """
        local_dir = self._scanner.ensure_directory(local_dir)
        for entry in self._client.list():
            local_path = local_dir / entry.name
            if entry.is_directory:
                self._client.cd(entry.name)
                try:
                    self.download_dir(local_path)
                finally:
                    self._client.cdup()
            elif entry.is_file:
                self._client.download(local_path, entry.name)
            else:
                logger.info(f"Skipping '{entry.name}': {entry.type.value} entries are not downloaded")

    def remove_dir(self, remote_dir_path: str) -> None:
        """
        Remove a remote directory and all of its contents.

        Afterwards the working directory is the parent of the removed
        directory. Removing "/" clears the root without removing it.
        """
        self._client.cd(remote_dir_path)
        self.clear_working_dir()
        if remote_dir_path != "/":
            self._client.cdup()
            self._client.remove_empty_dir(PurePosixPath(remote_dir_path).name)

    def clear_working_dir(self) -> None:
        """Remove all files and directories in the working directory."""
        for entry in self._client.list():
            if entry.is_directory:
                self._client.cd(entry.name)
                self.clear_working_dir()
                self._client.cdup()
                self._client.remove_empty_dir(entry.name)
            else:
                self._client.remove(entry.name)

    def ensure_dir(self, remote_dir_path: str) -> None:
        """
        Make sure a remote path exists, creating directories as needed.

        The working directory is changed to that path.
        """
        if remote_dir_path.startswith("/"):
            self._client.cd("/")
        for name in PurePosixPath(remote_dir_path).parts:
            if name == "/":
                continue
            self._client.send(f"MKD {name}", ignore_error_codes=True)
            self._client.cd(name)
