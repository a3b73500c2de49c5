"""Directory listing parser for duplexftp.

Parses the raw text of a LIST or MLSD data transfer into FileInfo records.
The listing format is detected once, from the first non-empty line, and then
applied to every line of the listing.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntFlag
from typing import Callable, List, Optional

from duplexftp.ftp.exceptions import ListingParseError

logger = logging.getLogger("duplexftp.listing")


class FileType(Enum):
    """Kind of a listed entry."""
    FILE = "file"
    DIRECTORY = "directory"
    SYMBOLIC_LINK = "symlink"
    UNKNOWN = "unknown"


class Permission(IntFlag):
    """Permission bits for one class of users."""
    NONE = 0
    READ = 1
    WRITE = 2
    EXECUTE = 4


@dataclass(frozen=True)
class Permissions:
    """UNIX-style permissions of a listed entry."""
    user: Permission = Permission.NONE
    group: Permission = Permission.NONE
    world: Permission = Permission.NONE


@dataclass(frozen=True)
class FileInfo:
    """One entry of a directory listing."""
    name: str
    type: FileType = FileType.UNKNOWN
    size: int = 0
    hard_link_count: int = 0
    permissions: Permissions = field(default_factory=Permissions)
    link: str = ""
    user: str = ""
    group: str = ""
    date: str = ""
    modified_at: Optional[datetime] = None

    @property
    def is_file(self) -> bool:
        """True for regular files."""
        return self.type == FileType.FILE

    @property
    def is_directory(self) -> bool:
        """True for directories."""
        return self.type == FileType.DIRECTORY

    @property
    def is_symbolic_link(self) -> bool:
        """True for symbolic links."""
        return self.type == FileType.SYMBOLIC_LINK


# Returned by a matcher for lines that are valid but describe no entry
# (e.g. "total 42" or the "." entry).
IGNORED = object()


@dataclass(frozen=True)
class ListingFormat:
    """A listing format: a line test and a line parser."""
    name: str
    test_line: Callable[[str], bool]
    parse_line: Callable[[str], object]


# UNIX long listing, e.g. "-rw-r--r-- 1 user group 1024 Jan  1 00:00 file.txt"
_UNIX_LINE = re.compile(
    r"^(?P<type>[bcdelfmpSs-])"
    r"(?P<perms>[r-][w-][xsStTL-][r-][w-][xsStTL-][r-][w-][xsStTL-])?[+.@]?\s*"
    r"(?P<links>\d+)\s+"
    r"(?:(?P<user>\S+(?:\s\S+)*?)\s+)?"
    r"(?:(?P<group>\S+(?:\s\S+)*)\s+)?"
    r"(?P<size>\d+(?:,\s*\d+)?)\s+"
    r"(?P<date>(?:\d+[-/]\d+[-/]\d+)|(?:\S{3}\s+\d{1,2})|(?:\d{1,2}\s+\S{3})|(?:\d{1,2}\.\s+\S{3}))\s+"
    r"(?P<time>\d+(?::\d+)?)\s"
    r"(?P<name>.*)$"
)
_UNIX_TOTAL = re.compile(r"^total\s+\d+", re.IGNORECASE)

# DOS/Windows listing, e.g. "01-31-20  10:15AM       <DIR>          folder"
_DOS_LINE = re.compile(
    r"^(?P<date>\d{2}[-/.]\d{2}[-/.]\d{2,4})\s+"
    r"(?P<time>\d{1,2}:\d{2}\s*(?:[AaPp][Mm])?)\s+"
    r"(?P<size><DIR>|\d+)\s+"
    r"(?P<name>.+)$"
)

# MLSD facts, e.g. "type=file;size=1024;modify=20200101000000; file.txt"
_MLSD_LINE = re.compile(r"^(?P<facts>(?:[A-Za-z0-9.\-]+=[^;]*;)+) (?P<name>.+)$")


def _parse_unix_permissions(perms: str) -> Permissions:
    def group(chunk: str) -> Permission:
        value = Permission.NONE
        if chunk[0] == "r":
            value |= Permission.READ
        if chunk[1] == "w":
            value |= Permission.WRITE
        if chunk[2] in "xst":
            value |= Permission.EXECUTE
        return value

    return Permissions(user=group(perms[0:3]), group=group(perms[3:6]), world=group(perms[6:9]))


def _test_unix_line(line: str) -> bool:
    return bool(_UNIX_TOTAL.match(line) or _UNIX_LINE.match(line))


def _parse_unix_line(line: str):
    if _UNIX_TOTAL.match(line):
        return IGNORED
    match = _UNIX_LINE.match(line)
    if match is None:
        return None

    name = match.group("name")
    if name in (".", ".."):
        return IGNORED

    kind = match.group("type")
    link = ""
    if kind == "d":
        file_type = FileType.DIRECTORY
    elif kind == "l":
        file_type = FileType.SYMBOLIC_LINK
        if " -> " in name:
            name, link = name.split(" -> ", 1)
    elif kind in "-f":
        file_type = FileType.FILE
    else:
        file_type = FileType.UNKNOWN

    perms = match.group("perms")
    size = match.group("size")
    return FileInfo(
        name=name,
        type=file_type,
        # Device files list "major, minor" instead of a size
        size=int(size) if size.isdigit() else 0,
        hard_link_count=int(match.group("links")),
        permissions=_parse_unix_permissions(perms) if perms else Permissions(),
        link=link,
        user=match.group("user") or "",
        group=match.group("group") or "",
        date=f"{match.group('date')} {match.group('time')}",
    )


def _test_dos_line(line: str) -> bool:
    return _DOS_LINE.match(line) is not None


def _parse_dos_line(line: str):
    match = _DOS_LINE.match(line)
    if match is None:
        return None
    name = match.group("name")
    if name in (".", ".."):
        return IGNORED
    size = match.group("size")
    if size == "<DIR>":
        file_type, size_value = FileType.DIRECTORY, 0
    else:
        file_type, size_value = FileType.FILE, int(size)
    return FileInfo(
        name=name,
        type=file_type,
        size=size_value,
        date=f"{match.group('date')} {match.group('time')}",
    )


def _parse_mlsd_timestamp(value: str) -> Optional[datetime]:
    # YYYYMMDDHHMMSS[.sss], always UTC
    try:
        return datetime.strptime(value[:14], "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def _parse_mlsd_mode(mode: str) -> Permissions:
    try:
        bits = int(mode, 8)
    except ValueError:
        return Permissions()
    return Permissions(
        user=Permission((bits >> 6) & 7),
        group=Permission((bits >> 3) & 7),
        world=Permission(bits & 7),
    )


def _test_mlsd_line(line: str) -> bool:
    return _MLSD_LINE.match(line) is not None


def _parse_mlsd_line(line: str):
    match = _MLSD_LINE.match(line)
    if match is None:
        return None

    facts = {}
    for fact in match.group("facts").rstrip(";").split(";"):
        key, _, value = fact.partition("=")
        facts[key.lower()] = value

    kind = facts.get("type", "").lower()
    if kind in ("cdir", "pdir"):
        return IGNORED
    if kind == "dir":
        file_type = FileType.DIRECTORY
    elif kind == "file":
        file_type = FileType.FILE
    elif kind.startswith("os.unix=slink") or kind.startswith("os.unix=symlink"):
        file_type = FileType.SYMBOLIC_LINK
    else:
        file_type = FileType.UNKNOWN

    size = facts.get("size", facts.get("sizd", "0"))
    modify = facts.get("modify", "")
    return FileInfo(
        name=match.group("name"),
        type=file_type,
        size=int(size) if size.isdigit() else 0,
        permissions=_parse_mlsd_mode(facts["unix.mode"]) if "unix.mode" in facts else Permissions(),
        user=facts.get("unix.owner", facts.get("unix.uid", "")),
        group=facts.get("unix.group", facts.get("unix.gid", "")),
        date=modify,
        modified_at=_parse_mlsd_timestamp(modify) if modify else None,
    )


# Priority order for format detection
LISTING_FORMATS: List[ListingFormat] = [
    ListingFormat("unix", _test_unix_line, _parse_unix_line),
    ListingFormat("dos", _test_dos_line, _parse_dos_line),
    ListingFormat("mlsd", _test_mlsd_line, _parse_mlsd_line),
]


def detect_format(line: str) -> Optional[ListingFormat]:
    """
    Find the first listing format that accepts a line.

    Args:
        line: First non-empty line of a listing

    Returns:
        Matching ListingFormat or None
    """
    for listing_format in LISTING_FORMATS:
        if listing_format.test_line(line):
            return listing_format
    return None


def parse_list(raw_list: str) -> List[FileInfo]:
    """
    Parse a raw directory listing.

    Args:
        raw_list: Listing text as received over the data connection

    Returns:
        Parsed entries in listing order (empty for an empty listing)

    Raises:
        ListingParseError: If the format is unknown or no line could be parsed
    """
    lines = [line.rstrip("\r") for line in raw_list.split("\n")]
    lines = [line for line in lines if line.strip()]
    if not lines:
        return []

    listing_format = detect_format(lines[0])
    if listing_format is None:
        raise ListingParseError(lines[0])
    logger.debug(f"Parsing {len(lines)} listing lines as {listing_format.name}")

    entries: List[FileInfo] = []
    ignored = 0
    for line in lines:
        result = listing_format.parse_line(line)
        if result is IGNORED:
            ignored += 1
        elif result is None:
            logger.warning(f"Skipping line not in {listing_format.name} format: {line!r}")
        else:
            entries.append(result)

    if not entries and not ignored:
        raise ListingParseError(lines[0], "No parsable entries in listing")
    return entries
