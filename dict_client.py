"""
Command line client for DICT servers.

One-shot mode opens a connection, runs one lookup, prints it and quits:

    python dict_client.py --define hello --db wn
    python dict_client.py --match hel --strategy prefix
    python dict_client.py --databases
    python dict_client.py --strategies
    python dict_client.py --info wn

Interactive mode (--interactive) keeps one connection open and reads
commands from stdin until 'quit':

    define <word> | match <word> | db | strat | info <db>
    use <db> | strategy <name> | status | quit

A line that is not a command is looked up as a word.

Settings come from --config (JSON), then DICT_* environment variables, then
the flags below. Exit code is 0 on success, 1 on a DICT error, 2 on bad usage.
"""

import argparse
import sys

from dict_config import load_config, validate
from dict_errors import DictError, NotConnected, ProtocolViolation
from dict_log import set_level
from dict_session import DictSession


def print_definitions(definitions, out=sys.stdout):
    if not definitions:
        print("No definitions found.", file=out)
        return
    for d in definitions:
        print(f"--- {d.database} ---", file=out)
        for line in d.body:
            print(line, file=out)
    print(f"(client) total definitions: {len(definitions)}", file=out)


def print_matches(words, out=sys.stdout):
    if not words:
        print("No matches found.", file=out)
        return
    for w in words:
        print(w, file=out)
    print(f"(client) total matches: {len(words)}", file=out)


def print_named(items, out=sys.stdout):
    for item in items:
        print(f"{item.name}\t{item.description}", file=out)


def run_once(session: DictSession, args, cfg, out=sys.stdout):
    """Run the single lookup picked on the command line."""
    if args.define:
        print_definitions(session.define(args.define, cfg['database']), out)
    elif args.match:
        print_matches(session.match(args.match, cfg['strategy'], cfg['database']), out)
    elif args.databases:
        print_named(session.list_databases().values(), out)
    elif args.strategies:
        print_named(session.list_strategies(), out)
    elif args.info:
        print(session.describe_database(args.info), file=out)
    elif args.status:
        print(session.status(), file=out)


def run_shell(session: DictSession, cfg, inp=sys.stdin, out=sys.stdout):
    """Read commands until 'quit' or end of input. Return the exit code."""
    database = cfg['database']
    strategy = cfg['strategy']
    print(f"(client) connected to {session.host}:{session.port}. Type 'quit' to exit.", file=out)
    while True:
        print("> ", end="", file=out, flush=True)
        raw = inp.readline()
        if not raw:
            break
        q = raw.strip()
        if not q:
            continue
        cmd, _, arg = q.partition(" ")
        cmd = cmd.lower()
        arg = arg.strip()
        if cmd == "quit":
            break
        try:
            if cmd == "define" and arg:
                print_definitions(session.define(arg, database), out)
            elif cmd == "match" and arg:
                print_matches(session.match(arg, strategy, database), out)
            elif cmd == "db":
                print_named(session.list_databases().values(), out)
            elif cmd == "strat":
                print_named(session.list_strategies(), out)
            elif cmd == "info" and arg:
                print(session.describe_database(arg), file=out)
            elif cmd == "use" and arg:
                database = arg
                print(f"(client) database: {database}", file=out)
            elif cmd == "strategy" and arg:
                strategy = arg
                print(f"(client) strategy: {strategy}", file=out)
            elif cmd == "status":
                print(session.status(), file=out)
            else:
                print_definitions(session.define(q, database), out)
        except (ProtocolViolation, NotConnected) as e:
            # The session is closed after these; nothing more can be sent.
            print(f"error: {e}", file=sys.stderr)
            return 1
        except DictError as e:
            print(f"error: {e}", file=sys.stderr)
        except ValueError as e:
            print(f"error: {e}", file=sys.stderr)
    print("(client) done.", file=out)
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Look up words on a DICT server.")
    ap.add_argument("--config", help="Path to JSON config.")
    ap.add_argument("--host")
    ap.add_argument("--port", type=int)
    ap.add_argument("--timeout", type=float, help="Socket timeout in seconds.")
    ap.add_argument("--db", dest="database", help="Database name, '*' for all, '!' for first hit.")
    ap.add_argument("--strategy", help="Matching strategy, '.' for server default.")
    ap.add_argument("--verbose", action="store_true", help="Log protocol traffic to stderr.")
    group = ap.add_mutually_exclusive_group(required=True)
    group.add_argument("--define", metavar="WORD")
    group.add_argument("--match", metavar="WORD")
    group.add_argument("--databases", action="store_true")
    group.add_argument("--strategies", action="store_true")
    group.add_argument("--info", metavar="DB")
    group.add_argument("--status", action="store_true")
    group.add_argument("--interactive", action="store_true")
    return ap


def main(argv=None, out=sys.stdout, inp=sys.stdin) -> int:
    """Parse flags, connect, run the lookup (or the shell), and close."""
    args = build_parser().parse_args(argv)
    cfg = load_config(args.config)
    for key in ("host", "port", "timeout", "database", "strategy"):
        val = getattr(args, key)
        if val is not None:
            cfg[key] = val
    cfg = validate(cfg)
    set_level("debug" if args.verbose else cfg['log_level'])

    session = DictSession(cfg['host'], cfg['port'], timeout=cfg['timeout'], encoding=cfg['encoding'])
    try:
        session.connect()
        if args.interactive:
            return run_shell(session, cfg, inp, out)
        run_once(session, args, cfg, out)
        return 0
    except DictError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    finally:
        session.close()


if __name__ == "__main__":
    sys.exit(main())
