"""Local filesystem scanner for directory transfers.

Lists the entries of a local directory for recursive uploads and prepares
local target directories for recursive downloads.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Union

logger = logging.getLogger("duplexftp.local_scanner")


@dataclass(frozen=True)
class LocalEntry:
    """A file or directory found in a local directory."""
    path: Path
    is_directory: bool
    size: int = 0

    @property
    def name(self) -> str:
        """Entry name without its parent path."""
        return self.path.name


class LocalDirectoryScanner:
    """Scans local directories, one level at a time."""

    def scan(self, directory: Union[str, Path]) -> List[LocalEntry]:
        """
        List the files and directories in a local directory.

        Entries are sorted by name. Anything that is neither a regular file
        nor a directory (sockets, broken links) is skipped.

        Args:
            directory: Directory to scan

        Returns:
            List of LocalEntry objects

        Raises:
            NotADirectoryError: If the path is not a directory
        """
        directory = Path(directory)
        if not directory.is_dir():
            raise NotADirectoryError(f"Not a directory: {directory}")

        entries: List[LocalEntry] = []
        for path in sorted(directory.iterdir(), key=lambda p: p.name):
            if path.is_dir():
                entries.append(LocalEntry(path=path, is_directory=True))
            elif path.is_file():
                entries.append(LocalEntry(path=path, is_directory=False, size=path.stat().st_size))
            else:
                logger.debug(f"Skipping {path}: not a regular file or directory")

        logger.debug(f"Found {len(entries)} entries in {directory}")
        return entries

    def ensure_directory(self, directory: Union[str, Path]) -> Path:
        """
        Create a local directory and its parents if necessary.

        Args:
            directory: Directory to create

        Returns:
            The directory as Path
        """
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        return directory
