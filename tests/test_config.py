"""Configuration loading, environment binding and validation."""

import pytest
import yaml

from certichain.config import (
    DEFAULT_CREDENTIAL_TYPES,
    CertichainConfig,
    ConfigManager,
    ConfigValidationError,
    apply_dict,
    get_config,
    load_config,
    validate_config,
)
from certichain.errors import ConfigError


@pytest.fixture
def manager():
    mgr = ConfigManager()
    mgr.reset()
    yield mgr
    mgr.reset()


class TestDefaults:

    def test_defaults_are_valid(self):
        config = CertichainConfig()
        assert validate_config(config) == []
        assert config.credentials.enforce.get() is True
        assert config.credentials.credential_types.get() == DEFAULT_CREDENTIAL_TYPES
        assert config.submission.max_attempts.get() == 4
        assert config.lifecycle.require_validation_before_transfer.get() is False

    def test_to_yaml_round_trips_through_apply(self):
        config = CertichainConfig()
        config.lifecycle.default_quorum.set(2)
        data = yaml.safe_load(config.to_yaml())
        assert data["lifecycle"]["default_quorum"] == 2

        fresh = CertichainConfig()
        apply_dict(fresh, data)
        assert fresh.to_dict() == config.to_dict()

    def test_instances_do_not_share_state(self):
        a, b = CertichainConfig(), CertichainConfig()
        a.credentials.enforce.set(False)
        assert b.credentials.enforce.get() is True


class TestValues:

    def test_validator_rejects(self):
        config = CertichainConfig()
        with pytest.raises(ConfigValidationError):
            config.submission.max_attempts.set(0)
        with pytest.raises(ConfigError):
            config.observability.log_format.set("xml")

    def test_env_override(self, monkeypatch):
        config = CertichainConfig()
        monkeypatch.setenv("CERTICHAIN_SUBMIT_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("CERTICHAIN_CREDENTIAL_ENFORCE", "false")
        monkeypatch.setenv("CERTICHAIN_SUBMIT_BASE_DELAY", "0.25")
        assert config.submission.max_attempts.get() == 7
        assert config.credentials.enforce.get() is False
        assert config.submission.base_delay_seconds.get() == 0.25

    def test_env_dict_override(self, monkeypatch):
        monkeypatch.setenv("CERTICHAIN_CREDENTIAL_TYPES", "LABO=LAB_CERT, BUYER=BUYER_CERT")
        types = CertichainConfig().credentials.credential_types.get()
        assert types == {"LABO": "LAB_CERT", "BUYER": "BUYER_CERT"}

    def test_on_change_callback(self):
        config = CertichainConfig()
        seen = []
        config.lifecycle.default_quorum.on_change(lambda old, new: seen.append((old, new)))
        config.lifecycle.default_quorum.set(3)
        assert seen == [(None, 3)]


class TestLoading:

    def test_load_config(self, tmp_path):
        path = tmp_path / "certichain.yaml"
        path.write_text(
            "credentials:\n"
            "  issuer_address: rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh\n"
            "  enforce: true\n"
            "lifecycle:\n"
            "  submit_decision_marker: true\n",
            encoding="utf-8",
        )
        config = load_config(path)
        assert config.credentials.issuer_address.get() == "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh"
        assert config.lifecycle.submit_decision_marker.get() is True

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert load_config(path).to_dict() == CertichainConfig().to_dict()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(tmp_path / "nope.yaml")

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("lifecycle:\n  warp_speed: 9\n", encoding="utf-8")
        with pytest.raises(ConfigError) as exc:
            load_config(path)
        assert "lifecycle.warp_speed" in str(exc.value)

    def test_non_mapping_root(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_config(path)


class TestConfigManager:

    def test_singleton(self, manager):
        assert ConfigManager() is manager
        assert get_config() is manager.config

    def test_dotted_get_set(self, manager):
        manager.set("lifecycle.default_quorum", 2)
        assert manager.get("lifecycle.default_quorum") == 2
        with pytest.raises(ConfigError):
            manager.set("lifecycle", 2)
        with pytest.raises(ConfigError):
            manager.get("lifecycle.nothing")

    def test_load_and_reload(self, manager, tmp_path):
        path = tmp_path / "certichain.yaml"
        path.write_text("submission:\n  max_attempts: 2\n", encoding="utf-8")
        manager.load_from_file(path)
        assert manager.get("submission.max_attempts") == 2

        seen = []
        manager.watch(seen.append)
        path.write_text("submission:\n  max_attempts: 5\n", encoding="utf-8")
        manager.reload()
        assert manager.get("submission.max_attempts") == 5
        assert seen == [manager.config]

    def test_load_defaults_from_cwd(self, manager, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        assert manager.load_defaults() == []
        (tmp_path / "certichain.yaml").write_text("lifecycle:\n  laboratory_weight: 3\n", encoding="utf-8")
        loaded = manager.load_defaults()
        assert [p.name for p in loaded] == ["certichain.yaml"]
        assert manager.get("lifecycle.laboratory_weight") == 3

    def test_validate_reports_env_errors(self, manager, monkeypatch):
        monkeypatch.setenv("CERTICHAIN_LOG_LEVEL", "chatty")
        errors = manager.validate()
        assert any(e.startswith("observability.log_level") for e in errors)

    def test_reset(self, manager):
        manager.set("credentials.enforce", False)
        manager.reset()
        assert manager.get("credentials.enforce") is True
