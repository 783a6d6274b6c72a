# kiosk/config_loader.py
from __future__ import annotations
"""
Unified configuration loader for the library kiosk.

Single source of truth:
    config/config.yaml        (override with KIOSK_CONFIG=/path/to/file.yaml)

Design notes
------------
- One file, no merging. Unknown keys pass through untouched.
- A missing or broken file given explicitly raises a friendly RuntimeError
  that prints absolute paths.
- The default file is optional: without it CONFIG is {} and every accessor
  falls back to defaults, so tests and tools import cleanly.
- Paths are absolute (resolved against the repo root) unless already absolute.

Public API
----------
- CONFIG: dict                              # eager-loaded contents
- load_config(path: str|Path|None = None)   # explicit reload (mainly for tests/tools)
- get_service_cfg() -> dict
- get_kiosk_cfg() -> dict
- get_decoder_cfg() -> dict
- get_feed_cfg() -> dict
- get_log_level(default: str = "INFO") -> str
- get_mock_service_bind() -> tuple[str, int]
"""

import os
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml

# ---------- Files & roots ----------
PROJECT_ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR   = PROJECT_ROOT / "config"
DEFAULT_CFG  = CONFIG_DIR / "config.yaml"

ENV_VAR = "KIOSK_CONFIG"


# ---------- I/O helpers ----------
def _load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML mapping from `path`. Human-friendly errors, strict root type."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise RuntimeError(
            f"Missing configuration file: {path}\n"
            f"Expected a single-file config with 'service:' and 'kiosk:' sections.\n"
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
    Load a single YAML file (default: $KIOSK_CONFIG or config/config.yaml),
    validate the shape of the sections we read, and return the raw dict.
    """
    env_path = os.getenv(ENV_VAR, "").strip()
    if path:
        cfg_path = _resolve_path(path)
    elif env_path:
        cfg_path = _resolve_path(env_path)
    else:
        cfg_path = DEFAULT_CFG
    cfg = _load_yaml(cfg_path)

    for section in ("service", "kiosk", "decoder", "feed", "log", "mock_service"):
        value = cfg.get(section)
        if value is not None and not isinstance(value, dict):
            raise RuntimeError(
                f"CONFIG section '{section}' in {cfg_path} must be a mapping, "
                f"not {type(value).__name__}"
            )

    base_url = (cfg.get("service") or {}).get("base_url")
    if base_url is not None and (not isinstance(base_url, str) or not base_url.strip()):
        raise RuntimeError(
            "CONFIG key service.base_url must be a non-empty string, e.g. "
            "'http://localhost:5000'. See config/config.yaml template."
        )

    return cfg


def _initial_config() -> Dict[str, Any]:
    if os.getenv(ENV_VAR, "").strip() or DEFAULT_CFG.exists():
        return load_config()
    return {}


# Eagerly load once for the app
CONFIG: Dict[str, Any] = _initial_config()


# ---------- Accessors ----------
def get_service_cfg() -> Dict[str, Any]:
    """Return attendance service block (base_url/timeout_ms) or {}."""
    return CONFIG.get("service", {}) or {}


def get_kiosk_cfg() -> Dict[str, Any]:
    """Return kiosk block (device_id/source/history_limit/...) or {}."""
    return CONFIG.get("kiosk", {}) or {}


def get_decoder_cfg() -> Dict[str, Any]:
    """Return keystroke decoder block (gap_ms/submit_key) or {}."""
    return CONFIG.get("decoder", {}) or {}


def get_feed_cfg() -> Dict[str, Any]:
    """Return live feed poller block (interval_s/limit/max_rows) or {}."""
    return CONFIG.get("feed", {}) or {}


def get_log_level(default: str = "INFO") -> str:
    """Return log level as 'INFO'/'DEBUG', etc."""
    lvl = (CONFIG.get("log", {}) or {}).get("level", default)
    # normalize common variants
    return str(lvl).upper()


def get_mock_service_bind() -> Tuple[str, int]:
    """
    Return (host, port) for the development service stub. Falls back to the
    port in service.base_url, then to ('127.0.0.1', 5000).
    """
    mock = CONFIG.get("mock_service", {}) or {}
    host = mock.get("host")
    port = mock.get("port")
    if isinstance(host, str) and isinstance(port, int):
        return host, port

    base_url = str(get_service_cfg().get("base_url") or "http://127.0.0.1:5000")
    hostport = base_url.split("://", 1)[-1].split("/", 1)[0]
    try:
        h, p = hostport.split(":")
        return h, int(p)
    except Exception:
        return "127.0.0.1", 5000
# ---------- End of config_loader.py ----------
