"""Pre-flight validation checks for scenarios.

This module provides readiness checks that run before scenarios execute,
catching configuration issues early with actionable error messages.
"""

import json
import logging
import os
import re
import shutil
from pathlib import Path
from typing import Mapping, Optional

from common import run_command
from config import ConfigError, EnvConfig, get_base_dir, get_site_config_dir, list_envs, load_env_config
from graph import GOOGLE_PROVIDER_SOURCE, GOOGLE_PROVIDER_VERSION
from oidc import AuthError, parse_provider
from params import REQUIRED_KEYS, cross_env_overlaps, load_params, secret_name

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Tooling
# -----------------------------------------------------------------------------

def validate_engine_installed(binary: str) -> list[str]:
    """Validate the execution engine is on PATH and reports a version.

    Args:
        binary: Engine binary name (terraform or tofu)

    Returns:
        List of validation error messages (empty if valid)
    """
    if not shutil.which(binary):
        return [
            f"{binary} not found on PATH\n"
            f"  Install it, or set engine.binary in site-config/site.yaml"
        ]

    rc, out, err = run_command([binary, 'version', '-json'], timeout=30)
    if rc != 0:
        return [f"{binary} version failed: {err.strip() or out.strip()}"]

    try:
        version = json.loads(out).get('terraform_version', 'unknown')
    except (json.JSONDecodeError, AttributeError):
        version = 'unknown'
    logger.info(f"{binary} {version} available")
    return []


def validate_gcloud_installed() -> list[str]:
    """Validate the gcloud CLI is on PATH."""
    if not shutil.which('gcloud'):
        return [
            "gcloud not found on PATH\n"
            "  Install the Google Cloud CLI: https://cloud.google.com/sdk/docs/install"
        ]
    return []


# -----------------------------------------------------------------------------
# Identity and parameters
# -----------------------------------------------------------------------------

def validate_identity_config(config: EnvConfig) -> list[str]:
    """Validate federated identity settings for an environment.

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []
    missing = [
        key for key, value in (
            ('workload_identity_provider', config.workload_identity_provider),
            ('service_account', config.service_account),
            ('repository', config.repository),
        ) if not value
    ]
    if missing:
        errors.append(
            f"Identity not configured for '{config.name}': missing {', '.join(missing)}\n"
            f"  Edit site.yaml: defaults.identity or environments.{config.name}.identity\n"
            f"  Or skip authentication for local runs: --skip authenticate"
        )
        return errors

    try:
        parse_provider(config.workload_identity_provider)
    except AuthError as e:
        errors.append(f"{e.message}\n  Expected: projects/<number>/locations/global/workloadIdentityPools/<pool>/providers/<provider>")

    if '@' not in config.service_account:
        errors.append(f"service_account '{config.service_account}' is not an email address")

    if config.repository.count('/') != 1:
        errors.append(f"repository '{config.repository}' must be in owner/repo form")

    return errors


def validate_param_source(config: EnvConfig, environ: Optional[Mapping[str, str]] = None) -> list[str]:
    """Validate the environment has a usable parameter source.

    A committed tfvars file satisfies the check for params_source auto or
    committed. Otherwise every secret must be present in the environment.
    """
    environ = os.environ if environ is None else environ

    if config.params_source != 'secrets' and config.tfvars_path.exists():
        try:
            load_params(config.tfvars_path)
        except ConfigError as e:
            return [str(e)]
        return []

    if config.params_source == 'committed':
        return [
            f"Committed parameter file not found: {config.tfvars_path}\n"
            f"  Create it, or set params_source: auto to read secrets"
        ]

    missing = [name for key in REQUIRED_KEYS if not environ.get(name := secret_name(config.name, key))]
    if missing:
        return [
            f"No parameters for '{config.name}': no committed {config.tfvars_path.name} "
            f"and missing secret(s): {', '.join(missing)}"
        ]
    return []


# -----------------------------------------------------------------------------
# Provider Lockfile Validation
# -----------------------------------------------------------------------------

def parse_lockfile_version(lockfile: Path) -> Optional[str]:
    """Extract provider version from .terraform.lock.hcl.

    Parses HCL to find the hashicorp/google provider version:
        provider "registry.terraform.io/hashicorp/google" {
            version = "5.44.0"
            ...
        }

    Args:
        lockfile: Path to .terraform.lock.hcl file

    Returns:
        Version string (e.g., "5.44.0") or None if not found
    """
    if not lockfile.exists():
        return None

    try:
        content = lockfile.read_text()
    except OSError as e:
        logger.warning(f"Cannot read lockfile {lockfile}: {e}")
        return None

    pattern = r'provider\s+"[^"]*' + re.escape(GOOGLE_PROVIDER_SOURCE) + r'"[^}]*version\s*=\s*"([^"]+)"'
    match = re.search(pattern, content, re.DOTALL)
    if match:
        return match.group(1)

    return None


def validate_provider_lockfiles(auto_fix: bool = True,
                                verbose: bool = False,
                                states_dir: Optional[Path] = None,
                                envs: Optional[list[str]] = None) -> tuple[list[str], list[str]]:
    """Validate provider lockfiles are in sync with the pinned provider.

    Compares GOOGLE_PROVIDER_VERSION with cached lockfiles in
    .states/*/.terraform.lock.hcl.

    When a mismatch is found:
    - auto_fix=True: Delete stale lockfile (regenerated on next init)
    - auto_fix=False: Return error message with fix instructions

    Args:
        auto_fix: If True, automatically clear stale lockfiles
        verbose: If True, log detailed information
        states_dir: States directory (defaults to .states/ in the repository)
        envs: Environment names to check (defaults to every state directory)

    Returns:
        Tuple of (errors, fixed) where:
        - errors: List of error messages (empty if all valid or fixed)
        - fixed: List of fixed lockfile descriptions (for reporting)
    """
    errors: list[str] = []
    fixed: list[str] = []

    if verbose:
        logger.info(f"Required provider version: {GOOGLE_PROVIDER_SOURCE} {GOOGLE_PROVIDER_VERSION}")

    states_dir = states_dir or get_base_dir() / '.states'
    if not states_dir.exists():
        return errors, fixed  # No state dirs yet, nothing to validate

    for state_dir in sorted(states_dir.iterdir()):
        if not state_dir.is_dir() or (envs is not None and state_dir.name not in envs):
            continue

        lockfile = state_dir / '.terraform.lock.hcl'
        locked_version = parse_lockfile_version(lockfile)
        if not locked_version or locked_version == GOOGLE_PROVIDER_VERSION:
            continue

        if auto_fix:
            try:
                lockfile.unlink()
                msg = f"{state_dir.name} ({locked_version} -> {GOOGLE_PROVIDER_VERSION})"
                fixed.append(msg)
                logger.info(f"Cleared stale lockfile: {msg}")
            except OSError as e:
                errors.append(f"Cannot clear stale lockfile {lockfile}: {e}")
        else:
            errors.append(
                f"Stale provider lockfile in {state_dir.name}\n"
                f"  Locked: {locked_version}, Required: {GOOGLE_PROVIDER_VERSION}\n"
                f"  Fix: rm {lockfile}"
            )

    return errors, fixed


# -----------------------------------------------------------------------------
# Combined Validation
# -----------------------------------------------------------------------------

def validate_readiness(config: EnvConfig, scenario_class,
                       skip_phases: Optional[list[str]] = None,
                       environ: Optional[Mapping[str, str]] = None) -> list[str]:
    """Run all readiness checks for a scenario.

    Args:
        config: EnvConfig instance
        scenario_class: Scenario class with requirement attributes
        skip_phases: Phases that will be skipped (authenticate skips identity checks)
        environ: Process environment (defaults to os.environ)

    Returns:
        Combined list of all validation errors
    """
    errors = []
    skip_phases = skip_phases or []

    requires_auth = getattr(scenario_class, 'requires_auth', True)
    requires_gcloud = getattr(scenario_class, 'requires_gcloud', False)
    requires_engine = getattr(scenario_class, 'requires_engine', True)

    if requires_engine:
        errors.extend(validate_engine_installed(config.engine_binary))

    if requires_gcloud:
        errors.extend(validate_gcloud_installed())

    if requires_auth and 'authenticate' not in skip_phases:
        errors.extend(validate_identity_config(config))

    if requires_engine and 'materialize' not in skip_phases:
        errors.extend(validate_param_source(config, environ))

    # Provider lockfile for this environment only (auto-fix if stale)
    lockfile_errors, _ = validate_provider_lockfiles(
        auto_fix=True, states_dir=config.state_dir.parent, envs=[config.state_dir.name]
    )
    errors.extend(lockfile_errors)

    return errors


def run_preflight_checks(env: Optional[str] = None,
                         verbose: bool = False) -> tuple[bool, dict]:
    """Run standalone preflight checks.

    Args:
        env: Environment to check (defaults to every known environment)
        verbose: Log detailed output

    Returns:
        (success, results) tuple where results contains check details
    """
    results: dict[str, dict[str, list[str]]] = {
        'tools': {'passed': [], 'failed': []},
        'site_config': {'passed': [], 'failed': []},
        'identity': {'passed': [], 'failed': []},
        'params': {'passed': [], 'failed': []},
        'providers': {'passed': [], 'failed': []},
    }

    configs: list[EnvConfig] = []
    try:
        site_config_dir = get_site_config_dir()
        results['site_config']['passed'].append(f"{site_config_dir} exists")
        envs = [env] if env else list_envs(site_config_dir)
        for name in envs:
            configs.append(load_env_config(name, site_config_dir))
        if configs:
            results['site_config']['passed'].append(f"Environments: {', '.join(c.name for c in configs)}")
        else:
            results['site_config']['failed'].append("No environments configured (add envs/<env>.tfvars)")
    except ConfigError as e:
        results['site_config']['failed'].append(str(e))

    # Tooling
    engines = sorted({c.engine_binary for c in configs}) or ['terraform']
    for binary in engines:
        engine_errors = validate_engine_installed(binary)
        if engine_errors:
            results['tools']['failed'].extend(engine_errors)
        else:
            results['tools']['passed'].append(f"{binary} available")
    gcloud_errors = validate_gcloud_installed()
    if gcloud_errors:
        results['tools']['failed'].extend(gcloud_errors)
    else:
        results['tools']['passed'].append("gcloud available")

    # Per-environment identity and parameters
    committed = {}
    for config in configs:
        identity_errors = validate_identity_config(config)
        if identity_errors:
            results['identity']['failed'].extend(identity_errors)
        else:
            results['identity']['passed'].append(f"{config.name}: {config.service_account}")

        param_errors = validate_param_source(config)
        if param_errors:
            results['params']['failed'].extend(param_errors)
            continue
        if config.params_source != 'secrets' and config.tfvars_path.exists():
            committed[config.name] = load_params(config.tfvars_path)
            results['params']['passed'].append(f"{config.name}: {config.tfvars_path.name}")
        else:
            results['params']['passed'].append(f"{config.name}: secrets present")

    for warning in cross_env_overlaps(committed):
        logger.warning(warning)
        results['params']['passed'].append(f"warning: {warning}")

    # Provider lockfiles
    lockfile_errors, lockfile_fixed = validate_provider_lockfiles(
        auto_fix=True, verbose=verbose, envs=[env] if env else None
    )
    if lockfile_errors:
        results['providers']['failed'].extend(lockfile_errors)
    else:
        results['providers']['passed'].append(f"Provider version: {GOOGLE_PROVIDER_SOURCE} {GOOGLE_PROVIDER_VERSION}")
        if lockfile_fixed:
            results['providers']['passed'].append(f"Cleared {len(lockfile_fixed)} stale lockfile(s)")

    all_failed = []
    for category in results.values():
        all_failed.extend(category['failed'])

    return len(all_failed) == 0, results


def format_preflight_results(label: str, results: dict) -> str:
    """Format preflight check results for display.

    Args:
        label: What was checked (environment name or 'all environments')
        results: Results dict from run_preflight_checks

    Returns:
        Formatted string for display
    """
    lines = [f"\nPreflight checks for {label}:\n"]

    category_names = {
        'tools': 'Tools',
        'site_config': 'Site configuration',
        'identity': 'Identity',
        'params': 'Parameters',
        'providers': 'Providers',
    }

    for key, name in category_names.items():
        category = results.get(key, {'passed': [], 'failed': []})
        if category['passed'] or category['failed']:
            lines.append(f"{name}:")
            for item in category['passed']:
                lines.append(f"✓ {item}")
            for item in category['failed']:
                # Handle multi-line errors
                first_line = item.split('\n')[0]
                lines.append(f"✗ {first_line}")
                for line in item.split('\n')[1:]:
                    lines.append(f"  {line}")
            lines.append("")

    all_passed = all(
        len(cat['failed']) == 0
        for cat in results.values()
    )

    if all_passed:
        lines.append("All checks passed. Ready for scenarios.")
    else:
        lines.append("Some checks failed. Fix issues before running scenarios.")

    return '\n'.join(lines)
