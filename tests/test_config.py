"""Tests for config.py - site-config loading and environment settings."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import (
    ConfigError,
    EnvConfig,
    get_site_config_dir,
    list_envs,
    load_env_config,
)


class TestListEnvs:
    """Test list_envs()."""

    def test_combines_tfvars_and_site_yaml(self, site_config_dir):
        """Committed tfvars and site.yaml environments are both listed."""
        assert list_envs(site_config_dir) == ['dev', 'prod', 'stage']

    def test_deduplicates(self, site_config_dir):
        (site_config_dir / 'envs' / 'prod.tfvars').write_text('')
        assert list_envs(site_config_dir).count('prod') == 1

    def test_empty_site_config(self, tmp_path):
        assert list_envs(tmp_path) == []

    def test_missing_site_config_returns_empty(self, tmp_path, monkeypatch):
        monkeypatch.setenv('VPC_DRIVER_SITE_CONFIG', str(tmp_path / 'missing'))
        assert list_envs() == []


class TestGetSiteConfigDir:
    """Test site-config discovery."""

    def test_env_var_override(self, site_config_dir, monkeypatch):
        monkeypatch.setenv('VPC_DRIVER_SITE_CONFIG', str(site_config_dir))
        assert get_site_config_dir() == site_config_dir

    def test_env_var_missing_path_raises(self, tmp_path, monkeypatch):
        monkeypatch.setenv('VPC_DRIVER_SITE_CONFIG', str(tmp_path / 'nope'))
        with pytest.raises(ConfigError, match='does not exist'):
            get_site_config_dir()


class TestLoadEnvConfig:
    """Test load_env_config() merge of defaults and environment overrides."""

    def test_dev_merges_defaults(self, site_config_dir):
        config = load_env_config('dev', site_config_dir)
        assert config.name == 'dev'
        assert config.engine_binary == 'terraform'
        assert config.timeout_apply == 900
        assert config.timeout_init == 300
        assert config.repository == 'example-org/gcp-vpc'
        assert config.service_account.startswith('vpc-deployer@cicd-dev')
        assert config.identity_project == 'cicd-dev-xxxxxx'
        assert config.required_apis == ['compute.googleapis.com']
        assert config.params_source == 'auto'
        assert config.cidr_overlap_check is True

    def test_identity_override_is_one_level_deep(self, site_config_dir):
        """prod overrides service_account but keeps the default provider."""
        config = load_env_config('prod', site_config_dir)
        assert config.service_account.startswith('vpc-deployer@cicd-prod')
        assert config.workload_identity_provider.endswith('/providers/github')
        assert config.identity_configured is True

    def test_remote_state_backend(self, site_config_dir):
        config = load_env_config('prod', site_config_dir)
        assert config.has_remote_state is True
        assert config.state_bucket == 'cicd-prod-tfstate'
        assert config.state_prefix == 'vpc'
        assert config.params_source == 'secrets'

    def test_overlap_check_can_be_disabled(self, site_config_dir):
        config = load_env_config('stage', site_config_dir)
        assert config.cidr_overlap_check is False

    def test_unknown_env_lists_available(self, site_config_dir):
        with pytest.raises(ConfigError) as exc:
            load_env_config('qa', site_config_dir)
        assert "Environment 'qa' not found" in str(exc.value)
        assert 'dev, prod, stage' in str(exc.value)

    @pytest.mark.parametrize('name', ['Dev', '1dev', 'dev_env', '', 'a' * 21])
    def test_invalid_env_name(self, site_config_dir, name):
        with pytest.raises(ConfigError, match='Invalid environment name'):
            load_env_config(name, site_config_dir)

    def test_invalid_params_source(self, site_config_dir):
        (site_config_dir / 'site.yaml').write_text("""
environments:
  dev:
    params_source: vault
""")
        with pytest.raises(ConfigError, match="Invalid params_source 'vault'"):
            load_env_config('dev', site_config_dir)

    def test_required_apis_must_be_list(self, site_config_dir):
        (site_config_dir / 'site.yaml').write_text("""
defaults:
  required_apis: compute.googleapis.com
""")
        with pytest.raises(ConfigError, match='required_apis must be a list'):
            load_env_config('dev', site_config_dir)

    def test_invalid_yaml(self, site_config_dir):
        (site_config_dir / 'site.yaml').write_text("defaults: [unclosed\n")
        with pytest.raises(ConfigError, match='Invalid YAML'):
            load_env_config('dev', site_config_dir)

    def test_no_site_yaml_uses_defaults(self, site_config_dir):
        (site_config_dir / 'site.yaml').unlink()
        config = load_env_config('dev', site_config_dir)
        assert config.engine_binary == 'terraform'
        assert config.identity_configured is False


class TestEnvConfig:
    """Test EnvConfig derived paths."""

    def test_tfvars_path(self, site_config_dir):
        config = EnvConfig(name='dev', site_config_dir=site_config_dir)
        assert config.tfvars_path == site_config_dir / 'envs' / 'dev.tfvars'

    def test_state_dir_per_environment(self, tmp_path):
        dev = EnvConfig(name='dev', site_config_dir=tmp_path, base_dir=tmp_path)
        prod = EnvConfig(name='prod', site_config_dir=tmp_path, base_dir=tmp_path)
        assert dev.state_dir == tmp_path / '.states' / 'dev'
        assert dev.state_dir != prod.state_dir

    def test_string_paths_are_converted(self, tmp_path):
        config = EnvConfig(name='dev', site_config_dir=str(tmp_path), base_dir=str(tmp_path))
        assert isinstance(config.site_config_dir, Path)
        assert isinstance(config.base_dir, Path)
