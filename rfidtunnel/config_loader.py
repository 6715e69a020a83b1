# rfidtunnel/config_loader.py
from __future__ import annotations
"""
Unified configuration loader for the RFID tunnel.

Single source of truth:
    config/config.yaml   (override with RFIDTUNNEL_CONFIG=/path/to/file.yaml)

Design notes
------------
- If the file is present but broken, we raise a friendly RuntimeError that
  prints absolute paths for quick fixes.
- If the default file is missing we run on built-in defaults, so tests and
  tools can import the package from anywhere.
- Unknown keys are fine; we pass the full dict through untouched.
- Helpers return sensible defaults when sections are absent.

Public API
----------
- CONFIG: dict                              # eager-loaded contents of the YAML file
- load_config(path: str|Path|None = None)   # explicit reload (mainly for tests/tools)
- get_gateway_cfg() -> dict
- get_tunnel_cfg() -> dict
- get_store_path() -> pathlib.Path
- get_log_level(default: str = "INFO") -> str
- get_server_bind() -> tuple[str, int]
"""

import os
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml

# ---------- Files & roots ----------
PROJECT_ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR   = PROJECT_ROOT / "config"
DEFAULT_CFG  = CONFIG_DIR / "config.yaml"
ENV_VAR      = "RFIDTUNNEL_CONFIG"

GATEWAY_DEFAULTS: Dict[str, Any] = {
    "base_url": "",
    "events_path": "/api/realtime/events",
    "ws_path": "/ws/events",
    "timeout_ms": 5000,
}

TUNNEL_DEFAULTS: Dict[str, Any] = {
    "max_events": 200,
    "min_tag_len": 4,
    "status_poll_s": 5.0,
    "ui_refresh_s": 5.0,
    "reader_retry_s": 15,
}


# ---------- I/O helpers ----------
def _load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML mapping from `path`. Human-friendly errors, strict root type."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise RuntimeError(
            f"Missing configuration file: {path}\n"
            f"Expected a single-file config with an 'app:' section.\n"
            f"Repo root: {PROJECT_ROOT}"
        )
    except Exception as ex:
        raise RuntimeError(f"Failed to read {path}: {type(ex).__name__}: {ex}")

    try:
        data = yaml.safe_load(text) or {}
    except Exception as ex:
        raise RuntimeError(f"Failed to parse YAML {path}: {type(ex).__name__}: {ex}")

    if not isinstance(data, dict):
        raise RuntimeError(f"Root of {path} must be a mapping/object, not {type(data).__name__}")
    return data


def _resolve_path(p: str | os.PathLike[str]) -> Path:
    """Return absolute path; resolve relative to repo root."""
    pth = Path(p)
    return pth if pth.is_absolute() else (PROJECT_ROOT / pth).resolve()


# ---------- Loader ----------
def load_config(path: str | os.PathLike[str] | None = None) -> Dict[str, Any]:
    """
    Load a single YAML file (default: config/config.yaml), validate the root
    shape, and return the raw dict (unmodified).
    """
    cfg_path = _resolve_path(path) if path else DEFAULT_CFG
    cfg = _load_yaml(cfg_path)

    app = cfg.get("app", {})
    if app is not None and not isinstance(app, dict):
        raise RuntimeError(
            f"CONFIG key 'app' in {cfg_path} must be a mapping, not {type(app).__name__}"
        )
    return cfg


def _initial_config() -> Dict[str, Any]:
    env_path = os.getenv(ENV_VAR, "").strip()
    if env_path:
        return load_config(env_path)
    if DEFAULT_CFG.exists():
        return load_config(None)
    return {}


# Eagerly load once for the app
CONFIG: Dict[str, Any] = _initial_config()


# ---------- Accessors ----------
def _app() -> Dict[str, Any]:
    return CONFIG.get("app", {}) or {}


def get_gateway_cfg() -> Dict[str, Any]:
    """Return the gateway block (base_url, events_path, ws_path, timeout_ms) with defaults."""
    merged = dict(GATEWAY_DEFAULTS)
    merged.update(_app().get("gateway", {}) or {})
    return merged


def get_tunnel_cfg() -> Dict[str, Any]:
    """Return tunnel tuning knobs (event log cap, timer intervals) with defaults."""
    merged = dict(TUNNEL_DEFAULTS)
    merged.update(_app().get("tunnel", {}) or {})
    return merged


def get_store_path() -> Path:
    """Return absolute filesystem path to the SQLite key-value store."""
    sqlite_path = (
        _app().get("storage", {})
              .get("sqlite_path")
    )
    return _resolve_path(sqlite_path or "data/tunnel.sqlite")


def get_log_level(default: str = "INFO") -> str:
    """Return log level as 'INFO'/'DEBUG', etc."""
    lvl = (CONFIG.get("log", {}) or {}).get("level", default)
    # normalize common variants
    return str(lvl).upper()


def get_server_bind() -> Tuple[str, int]:
    """
    Return (host, port) for launching the HTTP service from code.
    Reads app.server.host / app.server.port, else ('127.0.0.1', 8000).
    """
    server = _app().get("server", {}) or {}
    host = server.get("host")
    port = server.get("port")
    if isinstance(host, str) and isinstance(port, int):
        return host, port
    return "127.0.0.1", 8000
# ---------- End of config_loader.py ----------
