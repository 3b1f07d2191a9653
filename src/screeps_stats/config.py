"""Configuration loading utilities for screeps-stats."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

APP_NAME = "screeps-stats"
CONFIG_ENV = "AGENT_CONFIG_PATH"


class ConfigError(Exception):
    """Raised when configuration loading fails."""


def _load_toml_bytes(data: bytes) -> Mapping[str, Any]:
    try:
        import tomllib  # type: ignore[attr-defined]
    except (
        ModuleNotFoundError
    ):  # pragma: no cover - import guarded by tomllib availability
        try:
            import tomli as tomllib  # type: ignore[import-not-found]
        except ModuleNotFoundError as exc:  # pragma: no cover - depends on environment
            raise ConfigError(
                "TOML configuration requires Python 3.11+ or the 'tomli' package."
            ) from exc
    return tomllib.loads(data.decode("utf-8"))


def config_search_paths() -> List[Path]:
    """Return candidate config locations in lookup order."""

    paths: List[Path] = []
    env_path = os.environ.get(CONFIG_ENV)
    if env_path:
        paths.append(Path(env_path))
    paths.append(Path.cwd() / f"{APP_NAME}.toml")
    paths.append(Path.home() / f".{APP_NAME}.toml")
    paths.append(Path("/etc") / APP_NAME / "config.toml")
    return paths


def find_config() -> Optional[Path]:
    for path in config_search_paths():
        if path.is_file():
            return path
    return None


def _table(raw: Mapping[str, Any], name: str) -> Dict[str, Any]:
    value = raw.get(name, {})
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"[{name}] must be a table when present.")
    return dict(value)


def _as_str_list(value: Any, field: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if not isinstance(value, list):
        raise ConfigError(f"{field} must be a list of strings.")
    result: List[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{field} must be a list of strings.")
        result.append(item)
    return result


def _optional_str(section: Mapping[str, Any], key: str, field: str) -> Optional[str]:
    value = section.get(key)
    if value is None or isinstance(value, str):
        return value
    raise ConfigError(f"{field} must be a string when present.")


def load_agent_config(path: Path) -> Dict[str, Any]:
    """Load agent configuration from a TOML file."""

    try:
        data = path.read_bytes()
    except OSError as exc:
        raise ConfigError(f"Failed to read config file: {path}") from exc

    try:
        raw = dict(_load_toml_bytes(data))
    except Exception as exc:
        raise ConfigError(f"Failed to parse TOML config: {path}") from exc

    screeps = _table(raw, "screeps")
    warehouse = _table(raw, "warehouse")
    if not screeps:
        raise ConfigError("Config file must contain a [screeps] table.")

    connect = screeps.get("connect") or {}
    if not isinstance(connect, Mapping):
        raise ConfigError("[screeps.connect] must be a table when present.")
    protocol = connect.get("protocol", "http")
    if protocol not in ("http", "https"):
        raise ConfigError("screeps.connect.protocol must be 'http' or 'https'.")

    segment = screeps.get("segment")
    if segment is not None and (isinstance(segment, bool) or not isinstance(segment, int)):
        raise ConfigError("screeps.segment must be an integer when present.")

    interval = raw.get("interval", 60)
    if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval <= 0:
        raise ConfigError("interval must be a positive number of seconds.")

    backend = warehouse.get("backend", "bigquery")
    if backend not in ("bigquery", "parquet"):
        raise ConfigError("warehouse.backend must be 'bigquery' or 'parquet'.")

    timeout = warehouse.get("request_timeout", 30.0)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ConfigError("warehouse.request_timeout must be a positive number.")

    return {
        "raw": raw,
        "interval": float(interval),
        "screeps": {
            "token": _optional_str(screeps, "token", "screeps.token"),
            "username": _optional_str(screeps, "username", "screeps.username"),
            "password": _optional_str(screeps, "password", "screeps.password"),
            "shard": _as_str_list(screeps.get("shard"), "screeps.shard") or ["shard0"],
            "segment": segment,
            "connect": {
                "host": _optional_str(connect, "host", "screeps.connect.host"),
                "protocol": protocol,
            },
        },
        "warehouse": dict(
            warehouse,
            backend=backend,
            dataset=_optional_str(warehouse, "dataset", "warehouse.dataset"),
            project=_optional_str(warehouse, "project", "warehouse.project"),
            parquet_dir=_optional_str(warehouse, "parquet_dir", "warehouse.parquet_dir"),
            request_timeout=float(timeout),
        ),
    }


__all__ = [
    "APP_NAME",
    "CONFIG_ENV",
    "ConfigError",
    "config_search_paths",
    "find_config",
    "load_agent_config",
]
