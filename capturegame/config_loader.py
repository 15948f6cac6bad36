# capturegame/config_loader.py
from __future__ import annotations
"""
Unified configuration loader for the capture-the-station backend.

Single source of truth:
    config/config.yaml   (or the file named by $CAPTURE_CONFIG)

Design notes
------------
- If the file is missing or broken, we raise a friendly RuntimeError that
  prints absolute paths for quick fixes.
- Unknown keys are fine; we pass the full dict through untouched.
- Helpers return {} or sensible defaults when sections are absent.
- Paths are absolute (resolved against the repo root) unless already absolute.

Public API
----------
- CONFIG: dict                              # eager-loaded contents of the config file
- load_config(path: str|Path|None = None)   # explicit reload (mainly for tests/tools)
- get_db_path(cfg=None) -> pathlib.Path
- get_engine_cfg(cfg=None) -> dict
- get_sequence_defaults(cfg=None) -> dict
- get_feedback_cfg(cfg=None) -> dict
- get_log_level(default: str = "INFO") -> str
- get_server_bind() -> tuple[str, int]
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

# ---------- Files & roots ----------
PROJECT_ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR   = PROJECT_ROOT / "config"
DEFAULT_CFG  = CONFIG_DIR / "config.yaml"
ENV_CFG      = "CAPTURE_CONFIG"


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
    except OSError as ex:
        raise RuntimeError(f"Failed to read {path}: {type(ex).__name__}: {ex}")

    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as ex:
        raise RuntimeError(f"Failed to parse YAML {path}: {type(ex).__name__}: {ex}")

    if not isinstance(data, dict):
        raise RuntimeError(f"Root of {path} must be a mapping/object, not {type(data).__name__}")
    return data


def resolve_path(p: str | os.PathLike[str]) -> Path:
    """Return absolute path; resolve relative to repo root."""
    pth = Path(p)
    return pth if pth.is_absolute() else (PROJECT_ROOT / pth).resolve()


def validate_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Enforce the minimal structural contract engines rely on; returns cfg untouched."""
    try:
        sqlite_path = cfg["app"]["engine"]["persistence"]["sqlite_path"]
    except (KeyError, TypeError) as ke:
        raise RuntimeError(
            "CONFIG missing required key: app.engine.persistence.sqlite_path\n"
            "Your config must contain a single top-level 'app:' mapping with an "
            "'engine.persistence.sqlite_path' entry. See config/config.yaml template."
        ) from ke

    if not isinstance(sqlite_path, (str, os.PathLike)) or not str(sqlite_path).strip():
        raise RuntimeError("app.engine.persistence.sqlite_path must be a non-empty string")
    # every operation opens its own connection, so a private in-memory DB would vanish
    if str(sqlite_path).strip() == ":memory:":
        raise RuntimeError("app.engine.persistence.sqlite_path cannot be ':memory:'")
    return cfg


# ---------- Loader ----------
def load_config(path: str | os.PathLike[str] | None = None) -> Dict[str, Any]:
    """
    Load a single YAML file (default: $CAPTURE_CONFIG or config/config.yaml),
    validate required shape, and return the raw dict (unmodified).
    """
    if path:
        cfg_path = resolve_path(path)
    elif os.getenv(ENV_CFG):
        cfg_path = resolve_path(os.environ[ENV_CFG])
    else:
        cfg_path = DEFAULT_CFG
    return validate_config(_load_yaml(cfg_path))


# Eagerly load once for the app
CONFIG: Dict[str, Any] = load_config()


# ---------- Accessors ----------
def _pick(cfg: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return CONFIG if cfg is None else cfg


def get_engine_cfg(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return the app.engine block or {}."""
    return (_pick(cfg).get("app", {}) or {}).get("engine", {}) or {}


def get_db_path(cfg: Optional[Dict[str, Any]] = None) -> Path:
    """Return absolute filesystem path to the SQLite database."""
    sqlite_path = (get_engine_cfg(cfg).get("persistence", {}) or {}).get("sqlite_path")
    if not sqlite_path:
        # This should be unreachable because validate_config already checked it.
        raise RuntimeError("CONFIG missing app.engine.persistence.sqlite_path")
    return resolve_path(sqlite_path)


def get_busy_timeout_s(cfg: Optional[Dict[str, Any]] = None) -> float:
    """SQLite lock wait in seconds (busy_timeout_ms, default 5000)."""
    pcfg = get_engine_cfg(cfg).get("persistence", {}) or {}
    return max(0.0, float(pcfg.get("busy_timeout_ms", 5000)) / 1000.0)


def get_sequence_defaults(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return sequence.defaults or {} (merged under each new sequence game config)."""
    return (_pick(cfg).get("sequence", {}) or {}).get("defaults", {}) or {}


def get_feedback_cfg(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return integrations.feedback.osc_out or {}."""
    return (
        (_pick(cfg).get("integrations", {}) or {})
        .get("feedback", {}) or {}
    ).get("osc_out", {}) or {}


def get_log_level(default: str = "INFO", cfg: Optional[Dict[str, Any]] = None) -> str:
    """Return log level as 'INFO'/'DEBUG', etc."""
    lvl = (_pick(cfg).get("log", {}) or {}).get("level", default)
    return str(lvl).upper()


def get_server_bind(cfg: Optional[Dict[str, Any]] = None) -> Tuple[str, int]:
    """Return (host, port) from app.engine.server, defaulting to 127.0.0.1:8000."""
    server = get_engine_cfg(cfg).get("server", {}) or {}
    host = server.get("host")
    port = server.get("port")
    if isinstance(host, str) and isinstance(port, int):
        return host, port
    return "127.0.0.1", 8000
# ---------- End of config_loader.py ----------
