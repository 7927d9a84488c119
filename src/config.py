"""Environment configuration management.

Configuration is loaded from site-config:
- site.yaml: Pipeline settings (engine, state backend, identity, APIs)
- envs/*.tfvars: Committed environment parameter sets

site.yaml layout:

    defaults:
      engine: {binary: terraform, timeout_apply: 1200}
      identity: {workload_identity_provider: ..., service_account: ...}
      required_apis: [compute.googleapis.com]
    environments:
      prod:
        identity: {service_account: ...}

The merge order is: defaults → environments.{env}. Nested sections are
merged one level deep, so an environment can override a single identity key.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml


class ConfigError(Exception):
    """Configuration error."""


ENV_NAME_PATTERN = re.compile(r'^[a-z][a-z0-9-]{0,19}$')

DEFAULT_ENGINE = 'terraform'
DEFAULT_REQUIRED_APIS = ['compute.googleapis.com']
PARAMS_SOURCES = ('auto', 'committed', 'secrets')


@dataclass
class EnvConfig:
    """Resolved pipeline configuration for one environment.

    Identity fields stay empty when not configured; scenarios that
    authenticate are rejected by pre-flight validation in that case.
    """
    name: str
    site_config_dir: Path
    engine_binary: str = DEFAULT_ENGINE
    timeout_init: int = 300
    timeout_plan: int = 600
    timeout_apply: int = 1200

    # Remote state (gcs). Empty bucket means local state under .states/{env}
    state_bucket: str = ''
    state_prefix: str = 'vpc'

    # Federated identity
    workload_identity_provider: str = ''
    service_account: str = ''
    repository: str = ''
    trust_attribute: str = 'repository'
    identity_project: str = ''

    required_apis: list = field(default_factory=lambda: list(DEFAULT_REQUIRED_APIS))
    cidr_overlap_check: bool = True
    params_source: str = 'auto'

    # Root for .states/ (defaults to the repository directory)
    base_dir: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.site_config_dir, str):
            self.site_config_dir = Path(self.site_config_dir)
        if isinstance(self.base_dir, str):
            self.base_dir = Path(self.base_dir)

    @property
    def tfvars_path(self) -> Path:
        """Committed parameter file for this environment."""
        return self.site_config_dir / 'envs' / f'{self.name}.tfvars'

    @property
    def state_dir(self) -> Path:
        """Engine working directory (rendered graph, local state, lockfile)."""
        return (self.base_dir or get_base_dir()) / '.states' / self.name

    @property
    def has_remote_state(self) -> bool:
        return bool(self.state_bucket)

    @property
    def identity_configured(self) -> bool:
        return bool(self.workload_identity_provider and self.service_account and self.repository)


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _merge(base: dict, override: dict) -> dict:
    """Merge override onto base, one level deep for nested dicts."""
    merged = dict(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def get_base_dir() -> Path:
    """Get the vpc-driver directory."""
    return Path(__file__).parent.parent  # src/ -> vpc-driver/


def get_site_config_dir() -> Path:
    """Discover site-config directory.

    Resolution order:
    1. $VPC_DRIVER_SITE_CONFIG environment variable
    2. site-config/ inside the repository
    """
    if env_path := os.environ.get('VPC_DRIVER_SITE_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"VPC_DRIVER_SITE_CONFIG={env_path} does not exist")

    bundled = get_base_dir() / 'site-config'
    if bundled.exists():
        return bundled

    raise ConfigError(
        "site-config not found. "
        "Set VPC_DRIVER_SITE_CONFIG or create site-config/ in the repository."
    )


def load_site_settings(site_config_dir: Path) -> dict:
    """Load site.yaml (empty dict when absent)."""
    site_file = site_config_dir / 'site.yaml'
    if not site_file.exists():
        return {}
    try:
        return _parse_yaml(site_file)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {site_file}: {e}") from e


def list_envs(site_config_dir: Optional[Path] = None) -> list[str]:
    """List environments known to site-config.

    Combines (deduplicated):
    1. envs/*.tfvars - committed parameter sets
    2. site.yaml environments.* - environments whose parameters come from secrets
    """
    try:
        site_config = site_config_dir or get_site_config_dir()
    except ConfigError:
        return []

    envs: set[str] = set()

    envs_dir = site_config / 'envs'
    if envs_dir.exists():
        envs.update(f.stem for f in envs_dir.glob('*.tfvars') if f.is_file())

    envs.update((load_site_settings(site_config).get('environments') or {}).keys())

    return sorted(envs)


def load_env_config(env: str, site_config_dir: Optional[Path] = None) -> EnvConfig:
    """Load configuration for a named environment.

    The environment must either have a committed envs/{env}.tfvars or be
    declared under environments: in site.yaml.
    """
    if not ENV_NAME_PATTERN.match(env or ''):
        raise ConfigError(
            f"Invalid environment name '{env}'. "
            f"Use lowercase letters, digits and '-' (e.g., dev, prod, stage-eu)."
        )

    site_config = site_config_dir or get_site_config_dir()
    available = list_envs(site_config)
    if env not in available:
        raise ConfigError(
            f"Environment '{env}' not found.\n"
            f"  - No parameter file: {site_config / 'envs' / f'{env}.tfvars'}\n"
            f"  - Not declared under environments: in site.yaml\n\n"
            f"Available environments: {', '.join(available) if available else 'none configured'}"
        )

    site = load_site_settings(site_config)
    settings = _merge(site.get('defaults') or {}, (site.get('environments') or {}).get(env) or {})

    engine = settings.get('engine') or {}
    backend = settings.get('state_backend') or {}
    identity = settings.get('identity') or {}
    preflight = settings.get('preflight') or {}

    params_source = settings.get('params_source', 'auto')
    if params_source not in PARAMS_SOURCES:
        raise ConfigError(
            f"Invalid params_source '{params_source}' for environment '{env}'. "
            f"Expected one of: {', '.join(PARAMS_SOURCES)}"
        )

    required_apis = settings.get('required_apis', DEFAULT_REQUIRED_APIS)
    if not isinstance(required_apis, list):
        raise ConfigError(f"required_apis must be a list, got {type(required_apis).__name__}")

    try:
        return EnvConfig(
            name=env,
            site_config_dir=site_config,
            engine_binary=str(engine.get('binary', DEFAULT_ENGINE)),
            timeout_init=int(engine.get('timeout_init', 300)),
            timeout_plan=int(engine.get('timeout_plan', 600)),
            timeout_apply=int(engine.get('timeout_apply', 1200)),
            state_bucket=str(backend.get('bucket', '') or ''),
            state_prefix=str(backend.get('prefix', 'vpc')).strip('/'),
            workload_identity_provider=str(identity.get('workload_identity_provider', '') or ''),
            service_account=str(identity.get('service_account', '') or ''),
            repository=str(identity.get('repository', '') or ''),
            trust_attribute=str(identity.get('attribute', 'repository')),
            identity_project=str(identity.get('project_id', '') or ''),
            required_apis=list(required_apis),
            cidr_overlap_check=bool(preflight.get('cidr_overlap', True)),
            params_source=params_source,
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid engine settings for environment '{env}': {e}") from e
