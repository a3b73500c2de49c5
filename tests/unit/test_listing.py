"""Unit tests for the directory listing parser."""

from datetime import datetime, timezone

import pytest

from duplexftp.ftp.exceptions import ListingParseError
from duplexftp.ftp.listing import (
    FileType,
    Permission,
    detect_format,
    parse_list,
)


UNIX_LISTING = """\
total 12
drwxr-xr-x    2 owner    group        4096 Mar 03 12:00 .
drwxr-xr-x    5 owner    group        4096 Mar 03 11:00 ..
-rw-r--r--    1 owner    group        1024 Jan 01 00:00 file.txt
drwxr-x---    3 owner    group        4096 Feb 14  2021 My Folder
lrwxrwxrwx    1 owner    group          11 Dec 24 18:30 latest -> file.txt
crw-rw-rw-    1 root     root       1,   3 Apr  5 09:15 null
"""

DOS_LISTING = """\
01-31-20  10:15AM       <DIR>          Documents\r
02-01-20  03:42PM                 2048 report.pdf\r
"""

MLSD_LISTING = """\
type=cdir;modify=20240101000000;perm=el; .
type=pdir;modify=20240101000000;perm=el; ..
type=file;size=1024;modify=20240315123045;unix.mode=0644;unix.owner=alice; notes.txt
type=dir;modify=20240210080000;unix.mode=0755; archive
type=OS.unix=slink:/etc/hosts;modify=20240101000000; hosts
"""


class TestUnixListing:
    """Tests for UNIX-style long listings."""

    def test_single_file_line(self):
        """Test the basic long listing line."""
        entries = parse_list("-rw-r--r-- 1 user group 1024 Jan 1 00:00 file.txt")

        assert len(entries) == 1
        entry = entries[0]
        assert entry.name == "file.txt"
        assert entry.type == FileType.FILE
        assert entry.size == 1024
        assert entry.user == "user"
        assert entry.group == "group"
        assert entry.hard_link_count == 1
        assert entry.date == "Jan 1 00:00"

    def test_full_listing(self):
        """Test that total, . and .. are skipped and order is kept."""
        entries = parse_list(UNIX_LISTING)

        assert [e.name for e in entries] == ["file.txt", "My Folder", "latest", "null"]

    def test_directory_with_spaces_in_name(self):
        """Test directory entries with spaces in the name."""
        entry = parse_list(UNIX_LISTING)[1]
        assert entry.is_directory
        assert entry.name == "My Folder"
        assert entry.date == "Feb 14 2021"

    def test_symbolic_link_target(self):
        """Test that the link target is split off the name."""
        entry = parse_list(UNIX_LISTING)[2]
        assert entry.is_symbolic_link
        assert entry.name == "latest"
        assert entry.link == "file.txt"

    def test_device_file_size(self):
        """Test that device entries get size 0 and unknown type."""
        entry = parse_list(UNIX_LISTING)[3]
        assert entry.type == FileType.UNKNOWN
        assert entry.size == 0

    def test_permissions(self):
        """Test permission parsing."""
        entry = parse_list(UNIX_LISTING)[1]
        assert entry.permissions.user == Permission.READ | Permission.WRITE | Permission.EXECUTE
        assert entry.permissions.group == Permission.READ | Permission.EXECUTE
        assert entry.permissions.world == Permission.NONE

    def test_mismatched_line_is_skipped(self):
        """Test that a line in another format is skipped, not fatal."""
        listing = (
            "-rw-r--r-- 1 user group 10 Jan 1 00:00 a.txt\n"
            "01-31-20  10:15AM       <DIR>          Documents\n"
            "-rw-r--r-- 1 user group 20 Jan 1 00:00 b.txt\n"
        )
        entries = parse_list(listing)
        assert [e.name for e in entries] == ["a.txt", "b.txt"]


class TestDosListing:
    """Tests for DOS-style listings."""

    def test_entries(self):
        """Test directory and file entries with CRLF line endings."""
        entries = parse_list(DOS_LISTING)

        assert len(entries) == 2
        assert entries[0].name == "Documents"
        assert entries[0].is_directory
        assert entries[1].name == "report.pdf"
        assert entries[1].is_file
        assert entries[1].size == 2048
        assert entries[1].date == "02-01-20 03:42PM"


class TestMlsdListing:
    """Tests for MLSD machine listings."""

    def test_entries(self):
        """Test that cdir/pdir are skipped and facts are parsed."""
        entries = parse_list(MLSD_LISTING)

        assert [e.name for e in entries] == ["notes.txt", "archive", "hosts"]

        notes = entries[0]
        assert notes.is_file
        assert notes.size == 1024
        assert notes.user == "alice"
        assert notes.modified_at == datetime(2024, 3, 15, 12, 30, 45, tzinfo=timezone.utc)
        assert notes.permissions.user == Permission.READ | Permission.WRITE
        assert notes.permissions.world == Permission.READ

        assert entries[1].is_directory
        assert entries[2].is_symbolic_link


class TestParseList:
    """Tests for format detection and error handling."""

    def test_empty_listing(self):
        """Test that an empty listing yields no entries."""
        assert parse_list("") == []
        assert parse_list("\r\n\n  \n") == []

    def test_only_total_line(self):
        """Test an empty UNIX directory."""
        assert parse_list("total 0\n") == []

    def test_unknown_format_raises(self):
        """Test that an unrecognized first line is a parse error."""
        with pytest.raises(ListingParseError) as exc_info:
            parse_list("this is not a listing\n")
        assert exc_info.value.line == "this is not a listing"

    @pytest.mark.parametrize("line,expected", [
        ("-rw-r--r-- 1 user group 1024 Jan 1 00:00 file.txt", "unix"),
        ("total 42", "unix"),
        ("01-31-20  10:15AM       <DIR>          Documents", "dos"),
        ("type=file;size=1; name", "mlsd"),
        ("garbage", None),
    ])
    def test_detect_format(self, line, expected):
        """Test format detection by first line."""
        listing_format = detect_format(line)
        if expected is None:
            assert listing_format is None
        else:
            assert listing_format.name == expected
