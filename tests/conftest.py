"""Shared pytest fixtures for vpc-driver tests."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import EnvConfig  # noqa: E402

DEV_TFVARS = """\
# Development environment
project_id = "cicd-dev-xxxxxx"
region     = "us-central1"
front_cidr = "10.0.0.0/24"
back_cidr  = "11.0.0.0/24"
DMZ_cidr   = "12.0.0.0/24"
name       = "dev"
"""

PROVIDER = 'projects/123456789012/locations/global/workloadIdentityPools/ci-pool/providers/github'
SERVICE_ACCOUNT = 'vpc-deployer@cicd-dev-xxxxxx.iam.gserviceaccount.com'
REPOSITORY = 'example-org/gcp-vpc'


@pytest.fixture
def site_config_dir(tmp_path):
    """Create temporary site-config directory structure.

    Creates minimal site-config with:
    - site.yaml (defaults + dev/prod/stage overrides)
    - envs/dev.tfvars (committed)
    - prod and stage declared only in site.yaml (parameters from secrets)
    """
    site = tmp_path / 'site-config'
    (site / 'envs').mkdir(parents=True)

    (site / 'site.yaml').write_text(f"""
defaults:
  engine:
    binary: terraform
    timeout_apply: 900
  identity:
    workload_identity_provider: {PROVIDER}
    repository: {REPOSITORY}
  required_apis:
    - compute.googleapis.com
environments:
  dev:
    identity:
      service_account: {SERVICE_ACCOUNT}
      project_id: cicd-dev-xxxxxx
  prod:
    identity:
      service_account: vpc-deployer@cicd-prod-xxxxxx.iam.gserviceaccount.com
    state_backend:
      bucket: cicd-prod-tfstate
    params_source: secrets
  stage:
    preflight:
      cidr_overlap: false
""")

    (site / 'envs' / 'dev.tfvars').write_text(DEV_TFVARS)
    return site


@pytest.fixture
def env_config(site_config_dir, tmp_path):
    """EnvConfig for dev with state under tmp_path/.states/dev."""
    return EnvConfig(
        name='dev',
        site_config_dir=site_config_dir,
        workload_identity_provider=PROVIDER,
        service_account=SERVICE_ACCOUNT,
        repository=REPOSITORY,
        identity_project='cicd-dev-xxxxxx',
        base_dir=tmp_path,
    )


@pytest.fixture
def dev_tfvars(env_config):
    """Path of the committed dev parameter file."""
    return env_config.tfvars_path


@pytest.fixture
def dev_secrets():
    """Secrets that materialize the dev parameter set."""
    return {
        'DEV_PROJECT_ID': 'cicd-dev-xxxxxx',
        'DEV_REGION': 'us-central1',
        'DEV_FRONT_CIDR': '10.0.0.0/24',
        'DEV_BACK_CIDR': '11.0.0.0/24',
        'DEV_DMZ_CIDR': '12.0.0.0/24',
    }


@pytest.fixture
def rendered_workspace(env_config):
    """State directory with main.tf.json already rendered."""
    from graph import backend_config, write_workspace
    write_workspace(env_config.state_dir, backend_config(env_config))
    return env_config.state_dir
