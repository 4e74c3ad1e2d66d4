"""
Threaded DICT server that serves dictionaries from a JSON file.

Used for local development and by the integration tests. It speaks the
subset of RFC 2229 the client uses:

- `DEFINE <db> <word>`          150 / 151 blocks / 250, or 550 / 552.
- `MATCH <db> <strat> <word>`   152 list, or 550 / 551 / 552.
- `SHOW DB` | `SHOW DATABASES`  110 list, or 554.
- `SHOW STRAT` | `SHOW STRATEGIES`  111 list, or 555.
- `SHOW INFO <db>`              112 block, or 550.
- `SHOW SERVER`                 114 block.
- `STATUS`                      210 with request counters.
- `CLIENT <text>`               250.
- `QUIT`                        221, then the connection is closed.

Databases '*' (all) and '!' (first database with a hit) are supported.
Unknown commands get 500, bad arguments 501. When the connection limit is
reached new clients get 420 and are dropped.

Dictionary file layout:

    {
      "databases": [
        {"name": "wn", "description": "WordNet", "info": "About WordNet...",
         "entries": {"hello": ["hello\\n  n : a greeting"]}}
      ],
      "strategies": [{"name": "exact", "description": "Match words exactly"}]
    }

Each definition may be a string (split on newlines) or a list of lines.
"strategies" is optional; when missing the built-in ones are offered.
"""

import argparse
import functools
import json
import os
import re
import signal
import socket
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Tuple

from dict_config import clamp_float, clamp_int
from dict_log import json_log, set_level
from dict_protocol import DEFAULT_PORT, TERMINATOR, split_command

try:
    import psutil
except ImportError:
    psutil = None

BUILTIN_STRATEGIES = [
    ("exact", "Match headwords exactly"),
    ("prefix", "Match prefixes"),
    ("substring", "Match substring occurring anywhere in a headword"),
    ("suffix", "Match suffixes"),
    ("re", "POSIX 1003.2 (modern) regular expressions"),
]


@functools.lru_cache(maxsize=100)
def compile_pattern(word: str, strategy: str) -> Optional[re.Pattern]:
    """Compile a case-insensitive regex for the word under a strategy.

    Returns None when a 're' pattern does not compile.
    """
    if strategy == 're':
        try:
            return re.compile(word, re.IGNORECASE)
        except re.error:
            return None
    body = re.escape(word)
    if strategy == 'prefix':
        regex = '^' + body
    elif strategy == 'substring':
        regex = body
    elif strategy == 'suffix':
        regex = body + '$'
    else:
        regex = '^' + body + '$'
    return re.compile(regex, re.IGNORECASE)


class ServedDatabase:
    """One database: name, description, info text and headword -> definitions."""

    def __init__(self, name: str, description: str = "", info: List[str] = None,
                 entries: Dict[str, List[List[str]]] = None):
        self.name = name
        self.description = description
        self.info = list(info or [])
        # lower-cased headword -> (headword as written, definitions)
        self.entries: Dict[str, Tuple[str, List[List[str]]]] = {}
        for headword, defs in (entries or {}).items():
            self.entries[headword.lower()] = (headword, defs)

    def lookup(self, word: str):
        return self.entries.get(word.lower())

    def headwords(self) -> List[str]:
        return [hw for hw, _ in self.entries.values()]


def _as_lines(value) -> List[str]:
    if isinstance(value, str):
        return value.split('\n')
    return [str(x) for x in value]


class DictStore:
    """All databases and strategies served, in file order."""

    def __init__(self, databases: List[ServedDatabase], strategies: List[Tuple[str, str]] = None):
        self.databases = databases
        self.strategies = list(BUILTIN_STRATEGIES if strategies is None else strategies)

    @classmethod
    def from_json(cls, data: dict) -> "DictStore":
        dbs = []
        for d in data.get('databases', []):
            entries = {}
            for headword, defs in (d.get('entries') or {}).items():
                if isinstance(defs, str):
                    defs = [defs]
                entries[headword] = [_as_lines(x) for x in defs]
            dbs.append(ServedDatabase(d['name'], d.get('description', ''),
                                      _as_lines(d.get('info', '')) if d.get('info') else [], entries))
        strategies = None
        if 'strategies' in data:
            strategies = [(s['name'], s.get('description', '')) for s in data['strategies']]
        return cls(dbs, strategies)

    def find_db(self, name: str) -> Optional[ServedDatabase]:
        for db in self.databases:
            if db.name == name:
                return db
        return None

    def has_strategy(self, name: str) -> bool:
        return name == '.' or any(n == name for n, _ in self.strategies)

    def _targets(self, db_name: str) -> List[ServedDatabase]:
        if db_name in ('*', '!'):
            return list(self.databases)
        db = self.find_db(db_name)
        if db is None:
            raise KeyError(db_name)
        return [db]

    def define(self, db_name: str, word: str) -> List[Tuple[ServedDatabase, str, List[str]]]:
        """Return (database, headword, lines) for every definition. KeyError on unknown db."""
        out = []
        for db in self._targets(db_name):
            hit = db.lookup(word)
            if hit is None:
                continue
            headword, defs = hit
            for lines in defs:
                out.append((db, headword, lines))
            if db_name == '!':
                break
        return out

    def match(self, db_name: str, strategy: str, word: str) -> List[Tuple[ServedDatabase, str]]:
        """Return (database, headword) pairs. KeyError on unknown db."""
        strategy = 'exact' if strategy == '.' else strategy
        rx = compile_pattern(word, strategy)
        out = []
        for db in self._targets(db_name):
            if rx is None:
                break
            found = [(db, hw) for hw in db.headwords() if rx.search(hw) is not None]
            out.extend(found)
            if db_name == '!' and found:
                break
        return out


def load_dictionary(path: str) -> DictStore:
    with open(path, 'r', encoding='utf-8') as f:
        return DictStore.from_json(json.load(f))


def _q(text: str) -> str:
    return '"' + text.replace('\\', '\\\\').replace('"', '\\"') + '"'


def _body(lines: List[str]) -> List[str]:
    # A lone '.' would end the block early, so it goes out doubled.
    return ['..' if ln == TERMINATOR else ln for ln in lines]


class Stats:
    """Counters shown by STATUS, shared by all connection threads."""
    def __init__(self):
        self._lock = threading.Lock()
        self._counts = {'connections': 0, 'active': 0, 'requests': 0, 'define': 0, 'match': 0, 'show': 0}
        self._total_ms = 0.0

    def count(self, name: str, delta: int = 1):
        with self._lock:
            self._counts[name] += delta

    def connection_opened(self):
        with self._lock:
            self._counts['connections'] += 1
            self._counts['active'] += 1

    def connection_closed(self):
        with self._lock:
            self._counts['active'] = max(0, self._counts['active'] - 1)

    def request_done(self, ms: float):
        with self._lock:
            self._counts['requests'] += 1
            self._total_ms += ms

    def snapshot(self) -> dict:
        with self._lock:
            snap = dict(self._counts)
            snap['avg_ms'] = self._total_ms / snap['requests'] if snap['requests'] else 0.0
            return snap


def get_memory_rss_bytes():
    """Return current process RSS in bytes if psutil is available."""
    try:
        if psutil is not None:
            return psutil.Process().memory_info().rss
    except (OSError, AttributeError, RuntimeError):
        pass
    return None


def status_text(stats: Stats) -> str:
    snap = stats.snapshot()
    text = (f"status [d/m/s = {snap['define']}/{snap['match']}/{snap['show']}; "
            f"connections {snap['active']}/{snap['connections']}; "
            f"requests {snap['requests']}; avg {snap['avg_ms']:.3f}ms")
    rss = get_memory_rss_bytes()
    if rss is not None:
        text += f"; rss {rss}"
    return text + "]"


def handle_connection(conn: socket.socket, addr, store: DictStore, stats: Stats,
                      request_timeout: float = 30.0, max_line_length: int = 1024):
    """Serve one client: greet, then answer commands until QUIT or EOF."""
    def send(*lines: str):
        conn.sendall(''.join(ln + '\r\n' for ln in lines).encode('utf-8'))

    def reply_block(head: str, lines: List[str]):
        send(head, *_body(lines), TERMINATOR, "250 ok")

    try:
        with conn:
            conn.settimeout(float(request_timeout))
            f = conn.makefile('rb')
            stats.connection_opened()
            msg_id = f"<{uuid.uuid4().hex}@{socket.gethostname()}>"
            send(f"220 {socket.gethostname()} dict_server <mime> {msg_id}")
            while True:
                try:
                    raw = f.readline(max_line_length + 1)
                except socket.timeout:
                    send("420 timeout")
                    break
                if not raw:
                    break
                if len(raw) > max_line_length:
                    send("500 line too long")
                    # Drop the rest of the oversized line.
                    while raw and not raw.endswith(b'\n'):
                        raw = f.readline(max_line_length + 1)
                    continue
                line = raw.decode('utf-8', errors='replace').rstrip('\r\n')
                if not line.strip():
                    continue
                t0 = time.perf_counter()
                try:
                    args = split_command(line)
                except ValueError:
                    send("501 syntax error, illegal parameters")
                    continue
                cmd = args[0].upper()
                code = dispatch(cmd, args[1:], store, stats, send, reply_block)
                dt = (time.perf_counter() - t0) * 1000
                stats.request_done(dt)
                json_log("request", level="debug", cmd=cmd, code=code, latency_ms=dt, remote=str(addr))
                if code == 221:
                    break
    except (BrokenPipeError, ConnectionResetError, ConnectionAbortedError) as e:
        json_log("connection_error", level="warning", remote=str(addr), error=str(e))
    except OSError as e:
        json_log("os_error", level="warning", remote=str(addr), error=str(e))
    finally:
        stats.connection_closed()


def dispatch(cmd: str, args: List[str], store: DictStore, stats: Stats, send, reply_block) -> int:
    """Answer one parsed command. Return the status code sent."""
    if cmd == 'QUIT':
        send("221 bye")
        return 221

    if cmd == 'CLIENT':
        send("250 ok")
        return 250

    if cmd == 'STATUS':
        send("210 " + status_text(stats))
        return 210

    if cmd == 'DEFINE':
        stats.count('define')
        if len(args) != 2:
            send("501 syntax error, illegal parameters")
            return 501
        db_name, word = args
        try:
            found = store.define(db_name, word)
        except KeyError:
            send('550 invalid database, use "SHOW DB" for list of databases')
            return 550
        if not found:
            send("552 no match")
            return 552
        send(f"150 {len(found)} definitions retrieved")
        for db, headword, lines in found:
            send(f"151 {_q(headword)} {db.name} {_q(db.description)}", *_body(lines), TERMINATOR)
        send("250 ok")
        return 150

    if cmd == 'MATCH':
        stats.count('match')
        if len(args) != 3:
            send("501 syntax error, illegal parameters")
            return 501
        db_name, strategy, word = args
        if not store.has_strategy(strategy):
            send('551 invalid strategy, use "SHOW STRAT" for a list of strategies')
            return 551
        try:
            found = store.match(db_name, strategy, word)
        except KeyError:
            send('550 invalid database, use "SHOW DB" for list of databases')
            return 550
        if not found:
            send("552 no match")
            return 552
        reply_block(f"152 {len(found)} matches found", [f"{db.name} {_q(hw)}" for db, hw in found])
        return 152

    if cmd == 'SHOW' and args:
        stats.count('show')
        what = args[0].upper()
        if what in ('DB', 'DATABASES') and len(args) == 1:
            if not store.databases:
                send("554 no databases present")
                return 554
            reply_block(f"110 {len(store.databases)} databases present",
                        [f"{db.name} {_q(db.description)}" for db in store.databases])
            return 110
        if what in ('STRAT', 'STRATEGIES') and len(args) == 1:
            if not store.strategies:
                send("555 no strategies available")
                return 555
            reply_block(f"111 {len(store.strategies)} strategies present",
                        [f"{name} {_q(desc)}" for name, desc in store.strategies])
            return 111
        if what == 'INFO' and len(args) == 2:
            db = store.find_db(args[1])
            if db is None:
                send('550 invalid database, use "SHOW DB" for list of databases')
                return 550
            reply_block("112 database information follows", db.info or [db.description])
            return 112
        if what == 'SERVER' and len(args) == 1:
            reply_block("114 server information", [
                f"dict_server on {socket.gethostname()}",
                "",
                f"databases: {len(store.databases)}",
                f"strategies: {len(store.strategies)}",
            ])
            return 114
        send("501 syntax error, illegal parameters")
        return 501

    send("500 unknown command")
    return 500


DEFAULT_CFG = {
    "max_workers": 50,
    "request_timeout": 30,
    "max_line_length": 1024,
    "max_concurrent_connections": 1000,
}


def _validate(cfg_in: dict) -> dict:
    """Clamp config values to safe ranges to avoid misuse."""
    out = dict(cfg_in)
    out['request_timeout'] = clamp_float(out.get('request_timeout'), 0.1, 3600, 30.0)
    out['max_line_length'] = clamp_int(out.get('max_line_length'), 64, 1_000_000, 1024)
    out['max_workers'] = clamp_int(out.get('max_workers'), 1, 10_000, 50)
    out['max_concurrent_connections'] = clamp_int(out.get('max_concurrent_connections'), 1, 1_000_000, 1000)
    return out


def load_server_config(path=None, env=None) -> dict:
    """Defaults, then an optional JSON file, then DICT_SERVER_<KEY> variables."""
    env = os.environ if env is None else env
    cfg = dict(DEFAULT_CFG)
    if path:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                file_cfg = json.load(f)
            for k in cfg.keys():
                if k in file_cfg:
                    cfg[k] = file_cfg[k]
        except (OSError, ValueError) as e:
            json_log("config_error", level="warning", path=str(path), error=str(e))
    for k in list(cfg.keys()):
        env_name = 'DICT_SERVER_' + k.upper()
        if env.get(env_name, '') != '':
            cfg[k] = env[env_name]
    return _validate(cfg)


def main():
    """Parse flags, load the dictionary file, and serve with a thread pool."""
    ap = argparse.ArgumentParser()
    ap.add_argument("--host", default="127.0.0.1")
    ap.add_argument("--port", type=int, default=DEFAULT_PORT)
    ap.add_argument("--dictionary", required=True, help="Path to the JSON dictionary file.")
    ap.add_argument("--config", help="Path to JSON config.")
    ap.add_argument("--log-level", default="info")
    args = ap.parse_args()

    set_level(args.log_level)
    cfg = load_server_config(args.config)
    store = load_dictionary(args.dictionary)
    stats = Stats()

    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.bind((args.host, args.port))
    sock.listen(20)
    sock.settimeout(1.0)
    json_log("listening", host=args.host, port=args.port, databases=len(store.databases))

    shutdown_evt = threading.Event()
    def _sig_handler(_signum, _frame):
        shutdown_evt.set()
    try:
        signal.signal(signal.SIGINT, _sig_handler)
        signal.signal(signal.SIGTERM, _sig_handler)
    except (ValueError, OSError, RuntimeError, AttributeError):
        pass
    executor = ThreadPoolExecutor(max_workers=int(cfg['max_workers']))
    try:
        while not shutdown_evt.is_set():
            try:
                conn, addr = sock.accept()
            except socket.timeout:
                continue
            # Backpressure: turn away new clients when too many are active.
            if stats.snapshot()['active'] >= int(cfg['max_concurrent_connections']):
                try:
                    conn.sendall(b"420 server temporarily unavailable\r\n")
                except OSError:
                    pass
                conn.close()
                continue
            executor.submit(handle_connection, conn, addr, store, stats,
                            float(cfg['request_timeout']), int(cfg['max_line_length']))
    except KeyboardInterrupt:
        pass
    finally:
        json_log("shutdown", host=args.host, port=args.port)
        executor.shutdown(wait=True)
        sock.close()


if __name__ == "__main__":
    main()
