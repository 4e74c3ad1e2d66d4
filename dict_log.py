"""
JSON-lines logging to stderr.

One record per event: {"ts": ..., "level": ..., "event": ..., **fields}.
Records below the current threshold are dropped. Writing a record never
raises; a broken stderr must not break a lookup.
"""

import json
import sys
import time

LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40}

_threshold = LEVELS["warning"]


def set_level(name: str) -> None:
    """Set the minimum level that is written. Unknown names mean 'warning'."""
    global _threshold
    _threshold = LEVELS.get(str(name).lower(), LEVELS["warning"])


def enabled(level: str) -> bool:
    return LEVELS.get(level, LEVELS["info"]) >= _threshold


def json_log(event: str, level: str = "info", **fields):
    """Best-effort JSON log to stderr."""
    if not enabled(level):
        return
    try:
        rec = {"ts": time.time(), "level": level, "event": event}
        rec.update(fields)
        print(json.dumps(rec, ensure_ascii=False, default=str), file=sys.stderr)
    except (OSError, ValueError, TypeError):
        pass
