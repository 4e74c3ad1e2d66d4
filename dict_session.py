"""
DICT client session: one TCP connection, one request at a time.

- Lifecycle: disconnected -> connected (after a 220 greeting) -> closed.
  closed is final; open a new session to reconnect.
- Each request writes one command line, reads one status line, then reads
  the data the status code announces (a count of lines or entries, or a
  text block ended by '.').
- Error codes become DictError subclasses (see dict_errors). Nothing is
  retried and nothing read so far is returned on error.
- A lock serializes requests: the protocol has no request ids, so two
  interleaved replies could not be told apart.
- close() is best effort and never raises.

Usage:

    with connect("dict.org") as s:
        for d in s.define("hello", ALL_DATABASES):
            print(d.database, d.text)
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Dict, List, Optional, Union

from dict_errors import (
    DictError,
    HandshakeFailed,
    InvalidDatabase,
    InvalidStrategy,
    NoDatabasesAvailable,
    NoStrategiesAvailable,
    NotConnected,
    ProtocolViolation,
    ServerError,
    UnexpectedEndOfStream,
)
from dict_log import json_log
from dict_models import Database, Definition, MatchingStrategy, StatusReply
from dict_protocol import (
    DEFAULT_PORT,
    TERMINATOR,
    LineStream,
    check_encoding,
    parse_banner,
    parse_status,
    quote_arg,
    read_block,
    split_entry,
    split_quoted,
)

DISCONNECTED = "disconnected"
CONNECTED = "connected"
CLOSED = "closed"

# Status codes used by the client.
DB_LIST = 110
STRAT_LIST = 111
DB_INFO = 112
SERVER_INFO = 114
DEFINITIONS_FOLLOW = 150
DEFINITION_START = 151
MATCHES_FOLLOW = 152
STATUS_INFO = 210
GREETING = 220
BYE = 221
OK = 250
INVALID_DB = 550
INVALID_STRAT = 551
NO_MATCH = 552
NO_DATABASES = 554
NO_STRATEGIES = 555

DatabaseArg = Union[Database, str]
StrategyArg = Union[MatchingStrategy, str]


def _name(item) -> str:
    return getattr(item, "name", item)


class DictSession:
    """A client connection to one DICT server."""

    def __init__(self, host: str, port: Optional[int] = None, timeout: Optional[float] = 30.0,
                 encoding: str = "utf-8",
                 stream_factory: Optional[Callable[..., LineStream]] = None):
        self.host = host
        self.port = DEFAULT_PORT if port is None else int(port)
        self.timeout = timeout
        self.encoding = check_encoding(encoding)
        self.greeting = ""
        self.capabilities: List[str] = []
        self.message_id: Optional[str] = None
        self._stream_factory = stream_factory or LineStream.open
        self._stream: Optional[LineStream] = None
        self._state = DISCONNECTED
        self._lock = threading.RLock()
        # Guards _state and _stream for close() calls that skip _lock.
        self._state_lock = threading.Lock()

    @property
    def state(self) -> str:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state == CONNECTED

    def __enter__(self) -> "DictSession":
        if self._state == DISCONNECTED:
            self.connect()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<DictSession {self.host}:{self.port} {self._state}>"

    # -- lifecycle ---------------------------------------------------------

    def connect(self) -> "DictSession":
        """Open the connection and check the server greets us with 220."""
        with self._lock:
            if self._state != DISCONNECTED:
                raise NotConnected(f"session is {self._state}; open a new session to reconnect")
            t0 = time.perf_counter()
            try:
                stream = self._stream_factory(self.host, self.port, self.timeout, self.encoding)
            except (OSError, DictError) as e:
                self._abort()
                json_log("handshake_failed", level="error", host=self.host, port=self.port, error=str(e))
                raise HandshakeFailed(f"cannot connect to {self.host}:{self.port}: {e}") from e
            if not self._attach(stream):
                stream.close()
                raise HandshakeFailed(f"session to {self.host}:{self.port} was closed while connecting")
            try:
                line = stream.read_line()
                if line is None:
                    raise UnexpectedEndOfStream("connection closed before greeting")
                status = parse_status(line)
            except DictError as e:
                self._abort()
                json_log("handshake_failed", level="error", host=self.host, port=self.port, error=str(e))
                raise HandshakeFailed(f"bad greeting from {self.host}:{self.port}: {e.detail}") from e
            if status.code != GREETING:
                self._abort()
                json_log("handshake_failed", level="error", host=self.host, port=self.port,
                         code=status.code, details=status.details)
                raise HandshakeFailed(status.details, status.code)
            with self._state_lock:
                # close() from another thread may have won the race.
                if self._state == CLOSED:
                    raise HandshakeFailed(f"session to {self.host}:{self.port} was closed while connecting")
                self.greeting = status.details
                self.capabilities, self.message_id = parse_banner(status.details)
                self._state = CONNECTED
            json_log("connect", host=self.host, port=self.port, greeting=status.details,
                     latency_ms=(time.perf_counter() - t0) * 1000)
            return self

    def close(self) -> None:
        """Send QUIT and release the connection. Safe to call many times.

        If another thread is in the middle of a request, QUIT is skipped and
        the socket is shut down so that thread's read fails instead of hanging.
        """
        if self._state == CLOSED:
            return
        if not self._lock.acquire(blocking=False):
            json_log("close", level="debug", host=self.host, busy=True)
            self._abort()
            return
        try:
            if self._state == CONNECTED and self._stream is not None:
                try:
                    self._stream.write_line("QUIT")
                    status = self._read_status()
                    if status.code != BYE:
                        json_log("close_error", level="debug", host=self.host, code=status.code,
                                 details=status.details)
                except DictError as e:
                    json_log("close_error", level="debug", host=self.host, error=str(e))
            self._abort()
            json_log("close", level="debug", host=self.host)
        finally:
            self._lock.release()

    def _attach(self, stream: LineStream) -> bool:
        with self._state_lock:
            if self._state == CLOSED:
                return False
            self._stream = stream
            return True

    def _abort(self) -> None:
        with self._state_lock:
            self._state = CLOSED
            stream, self._stream = self._stream, None
        if stream is not None:
            stream.close()

    # -- request plumbing --------------------------------------------------

    def _command(self, *words: str) -> StatusReply:
        """Send one command and return the first real status line of its reply."""
        stream = self._stream
        if self._state != CONNECTED or stream is None:
            raise NotConnected(f"session is {self._state}")
        line = " ".join(words)
        json_log("command", level="debug", host=self.host, line=line)
        stream.write_line(line)
        status = self._read_status()
        json_log("reply", level="debug", host=self.host, code=status.code, details=status.details)
        return status

    def _read_status(self) -> StatusReply:
        """Read a status line, dropping leftovers of the previous reply.

        Count-framed replies are read by count only; a server may still send
        the closing '.' and a '250 ok' after them. Both are skipped here.
        """
        while True:
            line = self._live().read_line()
            if line is None:
                raise UnexpectedEndOfStream("connection closed while waiting for a status line")
            if line == TERMINATOR or line.startswith(f"{OK} ") or line == str(OK):
                json_log("discard_trailer", level="debug", host=self.host, line=line)
                continue
            return parse_status(line)

    def _live(self) -> LineStream:
        stream = self._stream
        if stream is None:
            raise UnexpectedEndOfStream("connection was closed during the request")
        return stream

    def _read_line(self) -> str:
        line = self._live().read_line()
        if line is None:
            raise UnexpectedEndOfStream("connection closed in the middle of a reply")
        return line

    def _request(self, body):
        """Run body() under the lock; on a broken stream, close the session."""
        with self._lock:
            try:
                return body()
            except (UnexpectedEndOfStream, ProtocolViolation) as e:
                json_log("protocol_violation", level="warning", host=self.host, error=str(e))
                # The stream position is unknown now; it cannot be reused.
                self._abort()
                raise

    # -- operations --------------------------------------------------------

    def define(self, word: str, database: DatabaseArg) -> List[Definition]:
        """DEFINE <db> <word>: all definitions, in server order.

        A 552 (no match) gives an empty list.
        """
        cmd = ("DEFINE", quote_arg(_name(database)), quote_arg(word))

        def body():
            status = self._command(*cmd)
            if status.code == DEFINITIONS_FOLLOW:
                n = status.count()
                definitions = []
                for _ in range(n):
                    head = self._read_line()
                    # 151 "<word>" <db> "<description>"; the word may be quoted.
                    parts = split_quoted(head)
                    if len(parts) < 3 or parts[0] != str(DEFINITION_START):
                        raise ProtocolViolation(
                            f"expected definition {len(definitions) + 1} of {n} to start with 151, got {head!r}")
                    lines = read_block(self._live())
                    definitions.append(Definition(word, parts[2], tuple(lines)))
                return definitions
            if status.code == NO_MATCH:
                return []
            if status.code == INVALID_DB:
                raise InvalidDatabase(status.code, status.details)
            raise ServerError(status.code, status.details)

        return self._request(body)

    def match(self, word: str, strategy: StrategyArg, database: DatabaseArg) -> List[str]:
        """MATCH <db> <strat> <word>: matched words, first-seen order, no repeats."""
        cmd = ("MATCH", quote_arg(_name(database)), quote_arg(_name(strategy)), quote_arg(word))

        def body():
            status = self._command(*cmd)
            if status.code == MATCHES_FOLLOW:
                n = status.count()
                found: Dict[str, None] = {}
                for _ in range(n):
                    _, matched = split_entry(self._read_line())
                    found.setdefault(matched, None)
                return list(found)
            if status.code == NO_MATCH:
                return []
            if status.code == INVALID_DB:
                raise InvalidDatabase(status.code, status.details)
            if status.code == INVALID_STRAT:
                raise InvalidStrategy(status.code, status.details)
            raise ServerError(status.code, status.details)

        return self._request(body)

    def list_databases(self) -> Dict[str, Database]:
        """SHOW DB: databases keyed by name, in server order."""
        def body():
            status = self._command("SHOW", "DB")
            if status.code == DB_LIST:
                databases: Dict[str, Database] = {}
                for _ in range(status.count()):
                    name, description = split_entry(self._read_line())
                    databases[name] = Database(name, description)
                return databases
            if status.code == NO_DATABASES:
                raise NoDatabasesAvailable(status.code, status.details)
            raise ServerError(status.code, status.details)

        return self._request(body)

    def list_strategies(self) -> List[MatchingStrategy]:
        """SHOW STRAT: strategies in server order, no repeats."""
        def body():
            status = self._command("SHOW", "STRAT")
            if status.code == STRAT_LIST:
                strategies: Dict[MatchingStrategy, None] = {}
                for _ in range(status.count()):
                    name, description = split_entry(self._read_line())
                    strategies.setdefault(MatchingStrategy(name, description), None)
                return list(strategies)
            if status.code == NO_STRATEGIES:
                raise NoStrategiesAvailable(status.code, status.details)
            raise ServerError(status.code, status.details)

        return self._request(body)

    def describe_database(self, database: DatabaseArg) -> str:
        """SHOW INFO <db>: the server's notes on one database, blank lines dropped."""
        cmd = ("SHOW", "INFO", quote_arg(_name(database)))

        def body():
            status = self._command(*cmd)
            if status.code == DB_INFO:
                return "\n".join(read_block(self._live(), skip_blank=True))
            if status.code == INVALID_DB:
                raise InvalidDatabase(status.code, status.details)
            raise ServerError(status.code, status.details)

        return self._request(body)

    def show_server(self) -> str:
        """SHOW SERVER: free-form text about the server."""
        def body():
            status = self._command("SHOW", "SERVER")
            if status.code == SERVER_INFO:
                return "\n".join(read_block(self._live()))
            raise ServerError(status.code, status.details)

        return self._request(body)

    def status(self) -> str:
        """STATUS: the server's one-line status text."""
        def body():
            status = self._command("STATUS")
            if status.code == STATUS_INFO:
                return status.details
            raise ServerError(status.code, status.details)

        return self._request(body)


def connect(host: str, port: Optional[int] = None, timeout: Optional[float] = 30.0,
            encoding: str = "utf-8") -> DictSession:
    """Open a session to host:port (default port 2628) and do the handshake."""
    return DictSession(host, port, timeout=timeout, encoding=encoding).connect()
