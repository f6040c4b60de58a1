"""Tests for configuration loading and collection root resolution."""

import json
from pathlib import Path

import pytest

from mdmd import config
from mdmd.errors import ConfigurationError, ErrorCode


def _write_obsidian(state: Path, data: dict) -> None:
    (state / "obsidian.json").write_text(json.dumps(data))


class TestCollectionResolution:
    """Flag, then environment, then config file, then Obsidian."""

    def test_nothing_configured_raises(self):
        with pytest.raises(ConfigurationError) as exc_info:
            config.resolve_collection_root()

        assert exc_info.value.code == ErrorCode.COLLECTION_UNRESOLVED
        assert "MDMD_COLLECTION_PATH" in exc_info.value.message

    def test_flag_wins(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("MDMD_COLLECTION_PATH", str(tmp_path / "env"))
        config.set_config_value("collection", str(tmp_path / "file"))

        assert config.resolve_collection_root(tmp_path / "flag") == (tmp_path / "flag").resolve()

    def test_env_beats_config_file(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("MDMD_COLLECTION_PATH", str(tmp_path / "env"))
        config.set_config_value("collection", str(tmp_path / "file"))

        assert config.resolve_collection_root() == (tmp_path / "env").resolve()

    def test_blank_env_is_ignored(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv("MDMD_COLLECTION_PATH", "   ")
        config.set_config_value("collection", str(tmp_path / "file"))

        assert config.resolve_collection_root() == (tmp_path / "file").resolve()

    def test_legacy_config_key_is_read(self, isolated_env: Path, tmp_path: Path):
        (isolated_env / "config.yaml").write_text(f"collectionPath: {tmp_path / 'legacy'}\n")

        assert config.resolve_collection_root() == (tmp_path / "legacy").resolve()

    def test_obsidian_current_vault(self, isolated_env: Path, tmp_path: Path):
        _write_obsidian(isolated_env, {"currentVaultPath": str(tmp_path / "vault")})

        assert config.resolve_collection_root() == (tmp_path / "vault").resolve()

    def test_obsidian_last_open_vault_before_other_open_vaults(self, isolated_env: Path, tmp_path: Path):
        _write_obsidian(
            isolated_env,
            {
                "lastOpenVault": "b",
                "vaults": {
                    "a": {"path": str(tmp_path / "a"), "open": True},
                    "b": {"path": str(tmp_path / "b")},
                },
            },
        )

        assert config.resolve_collection_root() == (tmp_path / "b").resolve()

    def test_obsidian_open_vault(self, isolated_env: Path, tmp_path: Path):
        _write_obsidian(
            isolated_env,
            {"vaults": {"a": {"path": str(tmp_path / "a")}, "b": {"path": str(tmp_path / "b"), "open": True}}},
        )

        assert config.resolve_collection_root() == (tmp_path / "b").resolve()

    def test_unreadable_obsidian_config_is_ignored(self, isolated_env: Path):
        (isolated_env / "obsidian.json").write_text("{not json")

        with pytest.raises(ConfigurationError):
            config.resolve_collection_root()

    def test_require_checks_directory(self, tmp_path: Path):
        with pytest.raises(ConfigurationError) as exc_info:
            config.require_collection_root(tmp_path / "missing")

        assert exc_info.value.code == ErrorCode.COLLECTION_NOT_FOUND


class TestConfigFile:
    def test_missing_file_is_empty(self):
        assert config.read_config() == {}

    def test_set_get_unset(self, isolated_env: Path):
        path = config.set_config_value("symlink-dir", "notes_here")

        assert path == isolated_env / "config.yaml"
        assert config.get_config_value(config.read_config(), "symlink-dir") == "notes_here"
        assert config.resolve_symlink_dir() == "notes_here"

        config.unset_config_value("symlink-dir")

        assert config.read_config() == {}
        assert config.resolve_symlink_dir() == config.DEFAULT_SYMLINK_DIR

    def test_setting_collection_drops_legacy_key(self, isolated_env: Path, tmp_path: Path):
        (isolated_env / "config.yaml").write_text("collectionPath: /old\nsymlink-dir: links\n")

        config.set_config_value("collection", str(tmp_path))

        assert config.read_config() == {"symlink-dir": "links", "collection": str(tmp_path)}

    @pytest.mark.parametrize("value", ["../escape", "/absolute", "", "."])
    def test_invalid_relative_dirs_are_rejected(self, value):
        with pytest.raises(ConfigurationError, match="Invalid symlink-dir"):
            config.set_config_value("symlink-dir", value)

    def test_unsupported_key_is_rejected(self):
        with pytest.raises(ConfigurationError, match="Unsupported config key"):
            config.set_config_value("colour", "blue")

    def test_invalid_yaml_raises(self, isolated_env: Path):
        (isolated_env / "config.yaml").write_text("collection: [unclosed\n")

        with pytest.raises(ConfigurationError) as exc_info:
            config.read_config()

        assert exc_info.value.code == ErrorCode.INVALID_CONFIG

    def test_non_mapping_raises(self, isolated_env: Path):
        (isolated_env / "config.yaml").write_text("- a\n- b\n")

        with pytest.raises(ConfigurationError, match="expected a mapping"):
            config.read_config()


class TestLocations:
    def test_env_overrides(self, isolated_env: Path):
        assert config.get_config_path() == isolated_env / "config.yaml"
        assert config.get_index_db_path() == isolated_env / "index.db"

    def test_xdg_fallbacks(self, isolated_env: Path, monkeypatch):
        monkeypatch.delenv("MDMD_CONFIG_PATH")
        monkeypatch.delenv("MDMD_INDEX_DB_PATH")

        assert config.get_config_path() == isolated_env / "xdg-config" / "mdmd" / "config.yaml"
        assert config.get_index_db_path() == isolated_env / "xdg-data" / "mdmd" / "index.db"
