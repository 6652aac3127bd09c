"""Tests for configuration loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from keyhold.core.config import KeyholdConfig, load_config
from keyhold.core.errors import ConfigError


class TestLoadConfig:
    """Tests for load_config."""

    def test_defaults_without_file(self, tmp_path) -> None:
        config = load_config(home=tmp_path, environ={})
        assert config.home == tmp_path
        assert config.storage_backend == "keyring"
        assert config.signing_timeout == 15.0
        assert config.required_acks == 1
        assert config.relays == []
        assert config.keys_dir == tmp_path / "keys"

    def test_yaml_file(self, tmp_path) -> None:
        (tmp_path / "config.yaml").write_text(
            "storage_backend: file\n"
            "publish_overall_timeout: 5\n"
            "relays:\n"
            "  - alpha\n"
            "  - beta\n"
            "log_level: debug\n",
            encoding="utf-8",
        )
        config = load_config(home=tmp_path, environ={})
        assert config.storage_backend == "file"
        assert config.publish_overall_timeout == 5.0
        assert config.relays == ["alpha", "beta"]
        assert config.log_level == "DEBUG"

    def test_environment_overrides_file(self, tmp_path) -> None:
        (tmp_path / "config.yaml").write_text("signing_timeout: 20\n", encoding="utf-8")
        config = load_config(home=tmp_path, environ={
            "KEYHOLD_SIGNING_TIMEOUT": "45",
            "KEYHOLD_RELAYS": "a, b,,c",
            "KEYHOLD_REQUIRED_ACKS": "",
        })
        assert config.signing_timeout == 45.0
        assert config.relays == ["a", "b", "c"]
        assert config.required_acks == 1

    def test_home_from_environment(self, tmp_path) -> None:
        config = load_config(environ={"KEYHOLD_HOME": str(tmp_path)})
        assert config.home == tmp_path

    def test_explicit_path(self, tmp_path) -> None:
        path = tmp_path / "custom.yaml"
        path.write_text("user_id: alice\n", encoding="utf-8")
        config = load_config(path, home=tmp_path, environ={})
        assert config.user_id == "alice"

    def test_missing_explicit_path(self, tmp_path) -> None:
        with pytest.raises(ConfigError):
            load_config(tmp_path / "nope.yaml", environ={})

    def test_invalid_yaml(self, tmp_path) -> None:
        (tmp_path / "config.yaml").write_text("relays: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(home=tmp_path, environ={})

    def test_non_mapping_yaml(self, tmp_path) -> None:
        (tmp_path / "config.yaml").write_text("- just\n- a list\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(home=tmp_path, environ={})

    @pytest.mark.parametrize("key, value", [
        ("storage_backend", "floppy"),
        ("required_acks", "0"),
        ("signing_timeout", "-1"),
        ("log_level", "LOUD"),
        ("kdf_version", "0"),
        ("kdf_version", "7"),
        ("publish_retries", "-1"),
        ("publish_backoff_factor", "0.5"),
    ])
    def test_invalid_values(self, tmp_path, key, value) -> None:
        with pytest.raises(ConfigError):
            load_config(home=tmp_path, environ={"KEYHOLD_" + key.upper(): value})


class TestKeyholdConfig:
    """Tests for the config model itself."""

    def test_home_is_expanded(self) -> None:
        config = KeyholdConfig(home="~/somewhere")
        assert "~" not in str(config.home)
        assert config.relays_dir == Path(config.home) / "relays"

    def test_retry_policy_defaults(self) -> None:
        config = KeyholdConfig()
        assert config.publish_retries == 0
        assert config.publish_backoff_factor == 2.0
        assert config.publish_retry_delay == 1.0

    def test_legacy_kdf_version_rejected(self, tmp_path) -> None:
        (tmp_path / "config.yaml").write_text("kdf_version: 0\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="legacy"):
            load_config(home=tmp_path, environ={})
