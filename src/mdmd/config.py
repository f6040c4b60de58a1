"""Configuration for mdmd.

Locations (first match wins):

* config file: ``$MDMD_CONFIG_PATH``, ``$XDG_CONFIG_HOME/mdmd/config.yaml``,
  ``~/.config/mdmd/config.yaml``
* index database: ``$MDMD_INDEX_DB_PATH``, ``$XDG_DATA_HOME/mdmd/index.db``,
  ``~/.local/share/mdmd/index.db``

The collection root is resolved from the ``--collection`` flag, then
``$MDMD_COLLECTION_PATH``, then the config file, then the Obsidian vault that
is currently open.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path, PurePosixPath
from typing import Any

import yaml

from .errors import ConfigurationError, ErrorCode

log = logging.getLogger(__name__)

COLLECTION_PATH_ENV_VAR = "MDMD_COLLECTION_PATH"
CONFIG_PATH_ENV_VAR = "MDMD_CONFIG_PATH"
INDEX_DB_PATH_ENV_VAR = "MDMD_INDEX_DB_PATH"
OBSIDIAN_CONFIG_PATH_ENV_VAR = "MDMD_OBSIDIAN_CONFIG_PATH"

DEFAULT_INGEST_DEST = "inbox"
DEFAULT_SYMLINK_DIR = "mdmd_notes"

SUPPORTED_CONFIG_KEYS = ("collection", "ingest-dest", "symlink-dir")

# Older config files spelled the collection key this way.
LEGACY_COLLECTION_KEY = "collectionPath"


def _env_path(name: str) -> Path | None:
    value = os.environ.get(name, "")
    if value.strip():
        return Path(value).expanduser().resolve()
    return None


def _xdg_home(env_var: str, fallback: str) -> Path:
    return _env_path(env_var) or Path.home() / fallback


def get_config_path() -> Path:
    return _env_path(CONFIG_PATH_ENV_VAR) or _xdg_home("XDG_CONFIG_HOME", ".config") / "mdmd" / "config.yaml"


def get_index_db_path() -> Path:
    return _env_path(INDEX_DB_PATH_ENV_VAR) or _xdg_home("XDG_DATA_HOME", ".local/share") / "mdmd" / "index.db"


def get_obsidian_config_path() -> Path:
    return (
        _env_path(OBSIDIAN_CONFIG_PATH_ENV_VAR)
        or _xdg_home("XDG_CONFIG_HOME", ".config") / "obsidian" / "obsidian.json"
    )


def read_config() -> dict[str, Any]:
    """Load the YAML config file. A missing or empty file is an empty config.

    Raises:
        ConfigurationError: If the file is not valid YAML or not a mapping.
    """
    config_path = get_config_path()
    try:
        contents = config_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}

    try:
        parsed = yaml.safe_load(contents)
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Invalid config at {config_path}: {e}", code=ErrorCode.INVALID_CONFIG
        ) from e

    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise ConfigurationError(
            f"Invalid config at {config_path}: expected a mapping",
            code=ErrorCode.INVALID_CONFIG,
        )
    return parsed


def write_config(config: dict[str, Any]) -> Path:
    config_path = get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    if not config:
        config_path.write_text("{}\n", encoding="utf-8")
    else:
        config_path.write_text(
            yaml.safe_dump(config, default_flow_style=False, sort_keys=False), encoding="utf-8"
        )
    return config_path


def _non_empty_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def get_config_value(config: dict[str, Any], key: str) -> str | None:
    """Read a supported key, honouring the legacy collection spelling."""
    if key == "collection":
        return _non_empty_str(config.get("collection")) or _non_empty_str(
            config.get(LEGACY_COLLECTION_KEY)
        )
    return _non_empty_str(config.get(key))


def set_config_value(key: str, value: str) -> Path:
    _require_supported_key(key)
    if key == "symlink-dir" or key == "ingest-dest":
        _validate_relative_dir(key, value)
    config = read_config()
    config[key] = value
    if key == "collection":
        config.pop(LEGACY_COLLECTION_KEY, None)
    return write_config(config)


def unset_config_value(key: str) -> Path:
    _require_supported_key(key)
    config = read_config()
    config.pop(key, None)
    if key == "collection":
        config.pop(LEGACY_COLLECTION_KEY, None)
    return write_config(config)


def _require_supported_key(key: str) -> None:
    if key not in SUPPORTED_CONFIG_KEYS:
        raise ConfigurationError(
            f"Unsupported config key: {key}. Supported config keys: {', '.join(SUPPORTED_CONFIG_KEYS)}",
            code=ErrorCode.INVALID_CONFIG,
        )


def _validate_relative_dir(key: str, value: str) -> str:
    candidate = PurePosixPath(value.strip().replace("\\", "/"))
    if not value.strip() or candidate.is_absolute() or ".." in candidate.parts or str(candidate) == ".":
        raise ConfigurationError(
            f"Invalid {key}: {value!r} (expected a relative directory without '..')",
            code=ErrorCode.INVALID_CONFIG,
        )
    return str(candidate)


def resolve_symlink_dir(config: dict[str, Any] | None = None) -> str:
    """Name of the per-directory folder holding projected symlinks."""
    if config is None:
        config = read_config()
    value = get_config_value(config, "symlink-dir")
    if value is None:
        return DEFAULT_SYMLINK_DIR
    return _validate_relative_dir("symlink-dir", value)


def resolve_ingest_dest(config: dict[str, Any] | None = None) -> str:
    """Collection-relative folder that ingested files land in."""
    if config is None:
        config = read_config()
    value = get_config_value(config, "ingest-dest")
    if value is None:
        return DEFAULT_INGEST_DEST
    return _validate_relative_dir("ingest-dest", value)


def _resolve_obsidian_vault_path() -> str | None:
    obsidian_config = get_obsidian_config_path()
    try:
        parsed = json.loads(obsidian_config.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        log.warning("Ignoring unreadable Obsidian config %s: %s", obsidian_config, e)
        return None

    if not isinstance(parsed, dict):
        return None

    direct = _non_empty_str(parsed.get("currentVaultPath"))
    if direct:
        return direct

    vaults = parsed.get("vaults")
    if not isinstance(vaults, dict):
        return None

    candidates: list[str] = []
    last_open = _non_empty_str(parsed.get("lastOpenVault"))
    if last_open:
        candidates.append(last_open)
    candidates.extend(
        vault_id
        for vault_id, vault in vaults.items()
        if isinstance(vault, dict) and vault.get("open") is True
    )

    for candidate in candidates:
        vault = vaults.get(candidate)
        if isinstance(vault, dict):
            vault_path = _non_empty_str(vault.get("path"))
            if vault_path:
                return vault_path
    return None


def resolve_collection_root(flag_override: str | Path | None = None) -> Path:
    """Resolve the collection root through the flag/env/config/Obsidian chain.

    Raises:
        ConfigurationError: If nothing in the chain names a collection.
    """
    candidates = [
        str(flag_override) if flag_override is not None else None,
        os.environ.get(COLLECTION_PATH_ENV_VAR),
        get_config_value(read_config(), "collection"),
    ]
    for raw in candidates:
        if raw and raw.strip():
            return Path(raw).expanduser().resolve()

    vault = _resolve_obsidian_vault_path()
    if vault:
        return Path(vault).expanduser().resolve()

    raise ConfigurationError(
        "Could not resolve collection path. Use --collection, MDMD_COLLECTION_PATH, "
        "`mdmd config set collection <path>`, or open an Obsidian vault."
    )


def require_collection_root(flag_override: str | Path | None = None) -> Path:
    """Resolve the collection root and check that it is an existing directory."""
    root = resolve_collection_root(flag_override)
    if not root.is_dir():
        raise ConfigurationError(
            f"Collection path does not exist: {root}",
            code=ErrorCode.COLLECTION_NOT_FOUND,
            details={"path": str(root)},
        )
    return root
