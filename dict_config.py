"""
Client settings: defaults, then a JSON file, then DICT_* environment variables.

Values are clamped to safe ranges after merging, so a bad file or variable
never reaches the socket layer. Example file:

    {"host": "dict.org", "port": 2628, "timeout": 10, "database": "wn"}
"""

import json
import os

from dict_log import LEVELS, json_log
from dict_protocol import DEFAULT_PORT, check_encoding

DEFAULTS = {
    "host": "dict.org",
    "port": DEFAULT_PORT,
    "timeout": 30.0,
    "database": "*",
    "strategy": ".",
    "encoding": "utf-8",
    "log_level": "warning",
}

ENV_PREFIX = "DICT_"


def clamp_int(v, lo, hi, default):
    try:
        v = int(v)
    except (TypeError, ValueError):
        return default
    return max(lo, min(hi, v))


def clamp_float(v, lo, hi, default):
    try:
        v = float(v)
    except (TypeError, ValueError):
        return default
    return max(lo, min(hi, v))


def validate(cfg_in: dict) -> dict:
    """Clamp config values to safe ranges to avoid misuse."""
    out = dict(cfg_in)
    out['port'] = clamp_int(out.get('port'), 1, 65535, DEFAULTS['port'])
    out['timeout'] = clamp_float(out.get('timeout'), 0.1, 3600, DEFAULTS['timeout'])
    for key in ('host', 'database', 'strategy', 'encoding'):
        val = str(out.get(key) or '').strip()
        out[key] = val or DEFAULTS[key]
    try:
        check_encoding(out['encoding'])
    except ValueError:
        json_log("config_bad_encoding", level="warning", encoding=out['encoding'])
        out['encoding'] = DEFAULTS['encoding']
    level = str(out.get('log_level') or '').lower()
    out['log_level'] = level if level in LEVELS else DEFAULTS['log_level']
    return out


def apply_env_overrides(base: dict, env=None) -> dict:
    """Let DICT_<KEY> environment variables override config values."""
    env = os.environ if env is None else env
    for k in list(base.keys()):
        env_name = ENV_PREFIX + k.upper()
        if env.get(env_name, '') != '':
            base[k] = env[env_name]
    return base


def load_config(path=None, env=None) -> dict:
    """Build the effective config from defaults, an optional file and the environment.

    A file that cannot be read or parsed is reported and ignored; the
    other layers still apply.
    """
    merged = dict(DEFAULTS)
    if path:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                file_cfg = json.load(f)
            if not isinstance(file_cfg, dict):
                raise ValueError("config root must be a JSON object")
            for k in merged.keys():
                if k in file_cfg:
                    merged[k] = file_cfg[k]
        except (OSError, ValueError) as e:
            json_log("config_error", level="warning", path=str(path), error=str(e))
    apply_env_overrides(merged, env)
    return validate(merged)
