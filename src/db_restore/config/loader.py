"""Configuration loader: TOML file plus environment overrides.

Settings come from three layers, later layers winning:

1. ``RestoreSettings`` defaults
2. ``db-restore.toml`` (``[restore]`` and ``[restore.server]`` tables)
3. Environment variables, optionally prefixed (``--env-prefix APP_`` reads
   ``APP_RESTORE_JOBS``)

Usage:
    >>> from db_restore.config import load_restore_config
    >>> settings = load_restore_config(env_prefix="")
"""

import os
import shlex
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from db_restore.config.models import ConfigurationError, RestoreSettings

DEFAULT_CONFIG_FILE = "db-restore.toml"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}

# Environment variable -> (settings key, kind)
_ENV_FIELDS: dict[str, tuple[str, str]] = {
    "DB_RESTORE_ADMIN_URL": ("admin_url", "str"),
    "DB_RESTORE_BACKUP_ROOT": ("backup_root", "str"),
    "DB_RESTORE_DATA_DIR": ("data_dir", "str"),
    "DB_RESTORE_RUN_AS": ("run_as", "argv"),
    "ROLE_DEFAULT_PASSWORD": ("role_default_password", "str"),
    "RESTORE_JOBS": ("restore_jobs", "int"),
    "TIMESCALEDB_FORCE_JOBS": ("timescaledb_force_jobs", "bool"),
}


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be yes/no, got {value!r}")


def _env_overrides(environ: Mapping[str, str], env_prefix: str) -> dict[str, Any]:
    """Collect settings overrides from environment variables."""
    overrides: dict[str, Any] = {}

    for env_name, (key, kind) in _ENV_FIELDS.items():
        full_name = f"{env_prefix}{env_name}"
        raw = environ.get(full_name)
        if raw is None:
            continue
        if kind == "bool":
            overrides[key] = _parse_bool(full_name, raw)
        elif kind == "int":
            if not raw.strip():
                continue
            try:
                overrides[key] = int(raw)
            except ValueError:
                raise ConfigurationError(
                    f"{full_name} must be an integer, got {raw!r}"
                ) from None
        elif kind == "argv":
            overrides[key] = shlex.split(raw)
        else:
            overrides[key] = raw

    hba_file = environ.get(f"{env_prefix}HBA_FILE")
    if hba_file:
        overrides.setdefault("server", {})["hba_file"] = hba_file

    return overrides


def load_restore_config(
    config_path: Path | None = None,
    env_prefix: str = "",
    environ: Mapping[str, str] | None = None,
) -> RestoreSettings:
    """Load restore configuration from TOML and environment.

    Args:
        config_path: Path to a TOML file.  When ``None``, ``db-restore.toml``
            in the current working directory is used if it exists.
        env_prefix: Prefix for environment variable lookup.
        environ: Environment mapping (default: ``os.environ``).

    Returns:
        Validated ``RestoreSettings``.

    Raises:
        FileNotFoundError: If an explicit ``config_path`` does not exist.
        ConfigurationError: If a value fails validation.
    """
    if environ is None:
        environ = os.environ

    data: dict[str, Any] = {}
    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Restore config not found: {config_path}")
        path: Path | None = config_path
    else:
        candidate = Path.cwd() / DEFAULT_CONFIG_FILE
        path = candidate if candidate.exists() else None

    if path is not None:
        with open(path, "rb") as f:
            try:
                data = tomllib.load(f).get("restore", {})
            except tomllib.TOMLDecodeError as e:
                raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e

    overrides = _env_overrides(environ, env_prefix)
    server_overrides = overrides.pop("server", None)
    merged = {**data, **overrides}
    if server_overrides:
        merged["server"] = {**data.get("server", {}), **server_overrides}

    try:
        return RestoreSettings(**merged)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid restore settings: {e}") from e
