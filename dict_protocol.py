"""
Wire helpers for the DICT protocol (RFC 2229 subset).

- Status line: `<3-digit code> <free text>`. parse_status() splits it.
- Text block: lines ended by a line that is exactly '.'. read_block() reads it.
- Quoted tokens: SHOW DB, SHOW STRAT and MATCH lines look like
  `<name> "<text>"`. split_entry() splits and unquotes them.
  split_quoted() does the same for 151 headers with quoted headwords.
- Commands: quote_arg() quotes words with spaces; split_command() is the
  server-side tokenizer for the same quoting rules.
- LineStream: the byte-stream boundary. One buffered reader per connection,
  kept for the whole session so no buffered bytes are lost between commands.

The functions here are pure except LineStream, which does the socket I/O.
"""

from __future__ import annotations

import codecs
import re
import socket
from typing import List, Optional, Tuple

from dict_errors import MalformedResponse, ProtocolViolation, UnexpectedEndOfStream
from dict_models import StatusReply

DEFAULT_PORT = 2628
TERMINATOR = "."
MAX_LINE_LENGTH = 64 * 1024

_ATOM_RE = re.compile(r'[^\s"\'\\]+')
_ESCAPE_RE = re.compile(r'\\(.)')
_ANGLE_RE = re.compile(r'<([^<>]*)>')
_TOKEN_RE = re.compile(r'"((?:[^"\\]|\\.)*)"|(\S+)')


def parse_status(line: str) -> StatusReply:
    """Split a status line on the first space into code and details.

    The details are returned unmodified (inner spaces kept). A bare code
    such as '250' gives empty details.
    """
    if not line:
        raise MalformedResponse("empty status line")
    code_s, _, details = line.partition(" ")
    if len(code_s) != 3 or not code_s.isascii() or not code_s.isdigit():
        raise MalformedResponse(f"bad status line: {line!r}")
    return StatusReply(int(code_s), details)


def read_block(stream: "LineStream", skip_blank: bool = False) -> List[str]:
    """Read lines until a line that is exactly '.'; return them without it.

    Blank lines are kept as '' unless skip_blank is set. A line such as '..'
    is not a terminator and is returned as-is.
    """
    lines: List[str] = []
    while True:
        line = stream.read_line()
        if line is None:
            raise UnexpectedEndOfStream("connection closed before end of text block")
        if line == TERMINATOR:
            return lines
        if skip_blank and not line:
            continue
        lines.append(line)


def unquote(text: str) -> str:
    """Remove one pair of surrounding double quotes and undo backslash escapes."""
    text = text.strip()
    if len(text) >= 2 and text[0] == '"' and text[-1] == '"':
        return _ESCAPE_RE.sub(r'\1', text[1:-1])
    return text


def split_entry(line: str) -> Tuple[str, str]:
    """Split `<name> "<text>"` into (name, text) with the quotes removed."""
    parts = line.split(" ", 1)
    if len(parts) != 2 or not parts[0]:
        raise ProtocolViolation(f"expected '<name> \"<text>\"', got {line!r}")
    return parts[0], unquote(parts[1])


def split_quoted(line: str) -> List[str]:
    """Split a reply line on spaces, keeping "double quoted" words whole.

    Used for 151 headers, where the headword may hold spaces:
    '151 "hello world" wn "WordNet"' gives ['151', 'hello world', 'wn', 'WordNet'].
    """
    return [w if w else _ESCAPE_RE.sub(r'\1', q) for q, w in _TOKEN_RE.findall(line)]


def quote_arg(arg: str) -> str:
    """Return arg ready to put on a command line.

    Plain atoms go out unchanged. Anything with spaces or quotes is wrapped
    in double quotes with '"' and '\\' escaped.
    """
    if not arg:
        raise ValueError("command argument must not be empty")
    if "\r" in arg or "\n" in arg:
        raise ValueError("command argument must not contain line breaks")
    if _ATOM_RE.fullmatch(arg):
        return arg
    return '"' + arg.replace("\\", "\\\\").replace('"', '\\"') + '"'


def split_command(line: str) -> List[str]:
    """Split a command line into tokens, honouring '...' / "..." and backslashes."""
    tokens: List[str] = []
    buf: List[str] = []
    quote = None
    in_token = False
    i = 0
    while i < len(line):
        ch = line[i]
        if quote:
            if ch == "\\" and i + 1 < len(line):
                i += 1
                buf.append(line[i])
            elif ch == quote:
                quote = None
            else:
                buf.append(ch)
        elif ch in " \t":
            if in_token:
                tokens.append("".join(buf))
                buf = []
                in_token = False
        elif ch in "\"'":
            quote = ch
            in_token = True
        elif ch == "\\" and i + 1 < len(line):
            i += 1
            buf.append(line[i])
            in_token = True
        else:
            buf.append(ch)
            in_token = True
        i += 1
    if quote:
        raise ValueError("unterminated quoted string")
    if in_token:
        tokens.append("".join(buf))
    return tokens


def parse_banner(details: str) -> Tuple[List[str], Optional[str]]:
    """Pull the capability list and message id out of a 220 greeting.

    Example: 'dict.org dictd <auth.mime> <123.456@dict.org>' gives
    (['auth', 'mime'], '<123.456@dict.org>').
    """
    capabilities: List[str] = []
    msg_id = None
    for item in _ANGLE_RE.findall(details):
        if "@" in item:
            msg_id = f"<{item}>"
        elif item:
            capabilities = [c for c in item.split(".") if c]
    return capabilities, msg_id


def check_encoding(name: str) -> str:
    """Return name if Python knows the codec, else raise ValueError."""
    try:
        codecs.lookup(name)
    except (LookupError, TypeError) as e:
        raise ValueError(f"unknown encoding: {name!r}") from e
    return name


class LineStream:
    """Line-oriented view of a byte stream.

    read_line() returns one line without its CR/LF, or None at end of
    stream. write_line() appends CRLF and flushes right away. Socket errors
    (including timeouts) surface as UnexpectedEndOfStream. A line longer
    than max_line_length bytes (line end included) is a ProtocolViolation.
    """

    def __init__(self, rfile, wfile, encoding: str = "utf-8", sock: Optional[socket.socket] = None,
                 max_line_length: int = MAX_LINE_LENGTH):
        self._rfile = rfile
        self._wfile = wfile
        self._sock = sock
        self.encoding = check_encoding(encoding)
        self.max_line_length = max_line_length

    @classmethod
    def open(cls, host: str, port: int = DEFAULT_PORT, timeout: Optional[float] = None,
             encoding: str = "utf-8", max_line_length: int = MAX_LINE_LENGTH) -> "LineStream":
        check_encoding(encoding)
        sock = socket.create_connection((host, port), timeout=timeout)
        try:
            rfile = sock.makefile("rb")
            wfile = sock.makefile("wb")
        except OSError:
            sock.close()
            raise
        return cls(rfile, wfile, encoding, sock, max_line_length)

    def read_line(self) -> Optional[str]:
        try:
            raw = self._rfile.readline(self.max_line_length + 1)
        except socket.timeout as e:
            raise UnexpectedEndOfStream(f"timed out waiting for server: {e}") from e
        except (OSError, ValueError) as e:
            raise UnexpectedEndOfStream(f"read failed: {e}") from e
        if not raw:
            return None
        if len(raw) > self.max_line_length:
            raise ProtocolViolation(f"server line longer than {self.max_line_length} bytes")
        return raw.decode(self.encoding, errors="replace").rstrip("\r\n")

    def write_line(self, text: str) -> None:
        try:
            self._wfile.write((text + "\r\n").encode(self.encoding))
            self._wfile.flush()
        except (OSError, ValueError) as e:
            raise UnexpectedEndOfStream(f"write failed: {e}") from e

    def close(self) -> None:
        """Shut down and release everything. Never raises."""
        if self._sock is not None:
            try:
                # Wakes up a read blocked in another thread.
                self._sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        for f in (self._wfile, self._rfile, self._sock):
            if f is None:
                continue
            try:
                f.close()
            except (OSError, ValueError):
                pass
