"""Test the deployment record and its store."""

import stat
from pathlib import Path

import pytest

from esc_deploy.config import (
    ConfigStore,
    DeploymentConfig,
    SslMode,
    parse_key_values,
    parse_whitelist,
)
from esc_deploy.errors import ConfigurationError


class TestDeploymentConfig:
    """Test invariants and derived values."""

    def test_root_login_disabled_renders_no(self):
        config = DeploymentConfig(disable_root_login="yes")
        assert config.permit_root_login == "no"

    def test_root_login_enabled_renders_yes(self):
        config = DeploymentConfig(disable_root_login="no")
        assert config.permit_root_login == "yes"

    def test_server_names(self):
        assert DeploymentConfig(domain="example.com").server_names == (
            "example.com www.example.com"
        )

    def test_letsencrypt_requires_email(self):
        config = DeploymentConfig(domain="example.com", security_enabled=False)
        with pytest.raises(ConfigurationError, match="email"):
            config.check()

    def test_security_requires_admin_email(self):
        config = DeploymentConfig(domain="example.com", ssl_mode=SslMode.NONE)
        with pytest.raises(ConfigurationError, match="admin email"):
            config.check()

    def test_empty_domain_rejected(self):
        with pytest.raises(ConfigurationError):
            DeploymentConfig(ssl_mode=SslMode.NONE, security_enabled=False).check()

    def test_valid_config_passes(self, scenario_config):
        scenario_config.check()

    def test_secret_not_in_repr(self, scenario_config):
        assert "s3cret" not in repr(scenario_config)


class TestRecord:
    """Test record (de)serialization."""

    def test_round_trip_keeps_fields(self, scenario_config):
        scenario_config.admin_ip_whitelist = ["203.0.113.0/24", "198.51.100.7"]
        restored = DeploymentConfig.from_record(scenario_config.to_record())

        assert restored.domain == "example.com"
        assert restored.ssl_mode is SslMode.LETSENCRYPT
        assert restored.ssh_port == 2222
        assert restored.disable_root_login == "yes"
        assert restored.password_auth_enabled is False
        assert restored.admin_ip_whitelist == ["203.0.113.0/24", "198.51.100.7"]

    def test_secret_never_recorded(self, scenario_config):
        record = scenario_config.to_record()
        assert "s3cret" not in record.values()
        assert DeploymentConfig.from_record(record).registry_secret == ""

    def test_missing_keys_default(self):
        config = DeploymentConfig.from_record({"DOMAIN_NAME": "example.com"})
        assert config.app_dir == Path("/opt/apps/esc")
        assert config.ssh_port == 22
        assert config.security_enabled is False

    def test_unknown_ssl_mode(self):
        with pytest.raises(ConfigurationError):
            DeploymentConfig.from_record({"SETUP_SSL": "wildcard"})


class TestConfigStore:
    """Test persistence of the record."""

    def test_load_without_file_returns_none(self, tmp_path):
        assert ConfigStore.for_app_dir(tmp_path).load() is None

    def test_save_is_owner_only(self, tmp_path, scenario_config):
        store = ConfigStore.for_app_dir(tmp_path)
        store.save(scenario_config)

        mode = stat.S_IMODE(store.path.stat().st_mode)
        assert mode == 0o600

    def test_save_then_load(self, tmp_path, scenario_config):
        store = ConfigStore.for_app_dir(tmp_path)
        store.save(scenario_config)

        text = store.path.read_text()
        assert 'DOMAIN_NAME="example.com"' in text
        assert "s3cret" not in text
        assert store.load().ssh_port == 2222

    def test_undecodable_record_is_configuration_error(self, tmp_path):
        store = ConfigStore.for_app_dir(tmp_path)
        store.path.write_bytes(b'DOMAIN_NAME="caf\xe9.example"\n')

        with pytest.raises(ConfigurationError, match="not valid UTF-8"):
            store.load()


class TestParsing:
    """Test the key/value and whitelist parsers."""

    def test_parse_key_values_handles_quotes_and_comments(self):
        text = '# comment\n\nexport A="1 2"\nB=\'x\'\nC=plain\nnot a pair\n'
        assert parse_key_values(text) == {"A": "1 2", "B": "x", "C": "plain"}

    def test_whitelist_dedupes_and_accepts_cidr(self):
        assert parse_whitelist("10.0.0.1, 10.0.0.0/8 10.0.0.1") == ["10.0.0.1", "10.0.0.0/8"]

    def test_whitelist_rejects_garbage(self):
        with pytest.raises(ValueError, match="not-an-ip"):
            parse_whitelist("10.0.0.1 not-an-ip")
