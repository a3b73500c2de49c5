"""Control connection wire codec.

Turns raw control-socket bytes into complete reply texts and commands into
bytes. Multi-line replies (``NNN-`` ... ``NNN ``) are joined into a single
message, and incomplete input is handed back so decoding can resume after the
next read.
"""

import re
from dataclasses import dataclass
from typing import List, Tuple

CRLF = "\r\n"
LF = "\n"

# A reply line starts with a 3-digit code followed by a space (last line) or a
# dash (opens a multi-line block).
_SINGLE_LINE = re.compile(r"^\d\d\d(?: |$)")
_MULTI_LINE = re.compile(r"^\d\d\d-")
_REPLY_CODE = re.compile(r"^(\d\d\d)([ -]?)")


@dataclass(frozen=True)
class Reply:
    """A complete reply on the control connection."""
    code: int
    message: str
    is_multiline: bool = False

    @classmethod
    def parse(cls, text: str) -> "Reply":
        """
        Build a Reply from one decoded reply text.

        Lines without a code before the first coded line are kept as part of
        the message.

        Args:
            text: Raw reply text as returned by ``parse_control_response``

        Returns:
            Reply instance

        Raises:
            ValueError: If the text contains no reply code at all
        """
        for line in text.split(LF):
            match = _REPLY_CODE.match(line)
            if match:
                return cls(
                    code=int(match.group(1)),
                    message=text,
                    is_multiline=match.group(2) == "-",
                )
        raise ValueError(f"No reply code in {text!r}")

    @property
    def is_preliminary(self) -> bool:
        """True for 1xx replies."""
        return 100 <= self.code < 200

    @property
    def is_positive(self) -> bool:
        """True for any reply below 400."""
        return self.code < 400

    @property
    def is_negative(self) -> bool:
        """True for 4xx and 5xx replies."""
        return self.code >= 400

    @property
    def is_completion(self) -> bool:
        """True for 2xx replies."""
        return 200 <= self.code < 300

    def __str__(self) -> str:
        return self.message


def parse_control_response(text: str) -> Tuple[List[str], str]:
    """
    Split control connection text into complete reply messages.

    Args:
        text: Decoded text, possibly ending in an incomplete reply

    Returns:
        Tuple of (messages, rest) where ``rest`` holds the text of a
        multi-line reply or leading noise that is not complete yet
    """
    lines = text.split(LF)
    messages: List[str] = []
    start_at = 0
    token = ""
    for i, line in enumerate(lines):
        line = line.rstrip("\r")
        lines[i] = line
        if token == "":
            if _MULTI_LINE.match(line):
                token = line[:3] + " "
                continue
            if _SINGLE_LINE.match(line):
                messages.append(_join(lines[start_at:i + 1]))
                start_at = i + 1
        elif line.startswith(token) or line == token.rstrip():
            token = ""
            messages.append(_join(lines[start_at:i + 1]))
            start_at = i + 1
    return messages, _join(lines[start_at:])


def _join(lines: List[str]) -> str:
    # Blank lines between replies carry nothing
    while lines and lines[0] == "":
        lines = lines[1:]
    return LF.join(lines)


class ReplyCodec:
    """Encodes commands and decodes replies with one text encoding."""

    def __init__(self, encoding: str = "utf-8"):
        """
        Initialize the codec.

        Args:
            encoding: Text encoding for both directions, e.g. "utf-8" or
                "latin-1" for older servers
        """
        self.encoding = encoding

    def encode(self, command: str) -> bytes:
        """Encode a command and terminate it with CRLF."""
        return (command + CRLF).encode(self.encoding)

    def decode(self, buffer: bytes) -> Tuple[List[str], bytes]:
        """
        Decode as many complete replies as the buffer holds.

        Args:
            buffer: Bytes received so far, starting with any earlier remainder

        Returns:
            Tuple of (messages, remainder). ``remainder`` must be prepended to
            the next chunk read from the socket.
        """
        end = buffer.rfind(b"\n")
        if end < 0:
            return [], buffer
        complete, partial = buffer[:end + 1], buffer[end + 1:]
        text = complete.decode(self.encoding, errors="replace")
        messages, rest = parse_control_response(text)
        return messages, rest.encode(self.encoding) + partial
