"""
Config loader for chatsync.
Reads config.yaml once and caches it. Components take the resulting dict in
their from_config() constructors; nothing else reads the file.

Values may reference environment variables as ${VAR}; a .env file next to
the working directory is loaded first. Keys missing from the file fall back
to DEFAULTS, section by section.
"""

import copy
import logging
import os
import re
from pathlib import Path

import yaml
from dotenv import load_dotenv

load_dotenv()

_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"

_config: dict | None = None

DEFAULTS: dict = {
    "api": {
        "base_url": "http://localhost:3000",
        "token": "",
        "timeout": 15,
        "max_retries": 2,
        "backoff_base": 1.5,
        "backoff_max": 10.0,
    },
    "push": {
        "url": "ws://localhost:5000/ws",
        "connect_timeout": 10,
        "ping_interval": 25,
        "max_reconnect_attempts": 5,
        "reconnect_delay": 0.5,
        "reconnect_delay_max": 2.0,
    },
    "polling": {
        "conversation_interval": 3.0,
        "list_interval": 10.0,
    },
    "reconcile": {
        "match_window": 5.0,
        "heuristic": True,
    },
    "read_receipts": {
        "debounce": 0.5,
        "list_threshold": 0.5,
        "detail_threshold": 0.6,
    },
    "typing": {
        "timeout": 3.0,
        "idle": 2.0,
    },
    "assistant": {
        "enabled": True,
        "response_delay": 10.0,
        "reply_delay": 1.5,
        "history": 10,
    },
    "wiretap": {
        "enabled": False,
        "path": "./data/wire.jsonl",
    },
    "logging": {
        "level": "INFO",
        "file": None,
    },
}


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        return os.environ.get(match.group(1), "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def _merge(base: dict, override: dict) -> dict:
    out = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def load_config(path: Path | None = None) -> dict:
    """
    Load and cache config from YAML. An explicit path must exist; the default
    config.yaml is optional and DEFAULTS are used without it.
    """
    global _config
    if _config is not None and path is None:
        return _config

    config_path = Path(path) if path else _CONFIG_PATH
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Config root must be a mapping: {config_path}")
    elif path is not None:
        raise FileNotFoundError(f"Config not found: {config_path}")
    else:
        raw = {}

    _config = _merge(DEFAULTS, _walk_and_resolve(raw))
    return _config


def get_config() -> dict:
    """Return cached config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def reset_config():
    """Drop the cached config (tests, or re-reading after an edit)."""
    global _config
    _config = None


def setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
