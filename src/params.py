"""Environment parameter sets.

A parameter set is the concrete input for the network graph: project,
region, three subnet CIDRs and an optional name prefix. Sets are stored as
tfvars files (key = "value" lines) and are either committed under
site-config/envs/ or materialized at run time from secrets.

Secret naming: five secrets per environment, prefixed with the environment
name in upper case ('-' becomes '_'):

    DEV_PROJECT_ID, DEV_REGION, DEV_FRONT_CIDR, DEV_BACK_CIDR, DEV_DMZ_CIDR

Materialization (params_from_secrets) is a pure function of the secrets
mapping, so it can be exercised without any cloud call.
"""

import ipaddress
import json
import logging
import os
import re
from dataclasses import dataclass
from itertools import combinations
from pathlib import Path
from typing import Mapping, Optional

from config import ConfigError

logger = logging.getLogger(__name__)

REQUIRED_KEYS = ('project_id', 'region', 'front_cidr', 'back_cidr', 'DMZ_cidr')
OPTIONAL_KEYS = ('name',)
KEY_ORDER = REQUIRED_KEYS + OPTIONAL_KEYS
CIDR_KEYS = ('front_cidr', 'back_cidr', 'DMZ_cidr')

SECRET_SUFFIXES = {
    'project_id': 'PROJECT_ID',
    'region': 'REGION',
    'front_cidr': 'FRONT_CIDR',
    'back_cidr': 'BACK_CIDR',
    'DMZ_cidr': 'DMZ_CIDR',
}

# GCP project id: 6-30 chars, lowercase letter first, no trailing hyphen
PROJECT_ID_PATTERN = re.compile(r'^[a-z][a-z0-9-]{4,28}[a-z0-9]$')
# RFC1035 resource name; '-vpc' is appended so the prefix is capped at 59
NAME_PATTERN = re.compile(r'^[a-z]([a-z0-9-]{0,57}[a-z0-9])?$')
REGION_PATTERN = re.compile(r'^[a-z]+-[a-z]+[0-9]+$')

_LINE_PATTERN = re.compile(r'^([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.*?)\s*$')
_STRING_PATTERN = re.compile(r'"(?:[^"\\]|\\.)*"')
_TRAILING_COMMENT = re.compile(r'\s+(?:#|//).*$')


@dataclass
class EnvParams:
    """Concrete parameter set for one environment."""
    project_id: str
    region: str
    front_cidr: str
    back_cidr: str
    dmz_cidr: str
    name: Optional[str] = None

    @classmethod
    def from_mapping(cls, values: Mapping[str, str], source: str = 'parameters') -> 'EnvParams':
        """Build from a tfvars-keyed mapping, requiring every mandatory key.

        Raises:
            ConfigError: If a required key is missing or empty
        """
        missing = [key for key in REQUIRED_KEYS if not values.get(key)]
        if missing:
            raise ConfigError(f"Missing required parameter(s) in {source}: {', '.join(missing)}")
        return cls(
            project_id=values['project_id'],
            region=values['region'],
            front_cidr=values['front_cidr'],
            back_cidr=values['back_cidr'],
            dmz_cidr=values['DMZ_cidr'],
            name=values.get('name') or None,
        )

    def to_mapping(self) -> dict:
        """Return tfvars-keyed dict (name omitted when unset)."""
        values = {
            'project_id': self.project_id,
            'region': self.region,
            'front_cidr': self.front_cidr,
            'back_cidr': self.back_cidr,
            'DMZ_cidr': self.dmz_cidr,
        }
        if self.name:
            values['name'] = self.name
        return values

    def cidrs(self) -> dict:
        """Return CIDR inputs keyed by variable name."""
        return {
            'front_cidr': self.front_cidr,
            'back_cidr': self.back_cidr,
            'DMZ_cidr': self.dmz_cidr,
        }


def _unquote(raw: str, lineno: int) -> str:
    """Decode a tfvars value (quoted HCL string or bare token).

    A trailing '#' or '//' comment after the value is dropped.
    """
    if raw.startswith('"'):
        match = _STRING_PATTERN.match(raw)
        if not match:
            raise ConfigError(f"Line {lineno}: unterminated string: {raw}")
        rest = raw[match.end():].strip()
        if rest and not rest.startswith(('#', '//')):
            raise ConfigError(f"Line {lineno}: unexpected text after string: {rest}")
        literal = match.group(0)
        try:
            value = json.loads(literal)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Line {lineno}: invalid string literal {literal}: {e}") from e
        return str(value)
    raw = _TRAILING_COMMENT.sub('', raw)
    if not raw or any(c.isspace() for c in raw):
        raise ConfigError(f"Line {lineno}: invalid value '{raw}' (quote string values)")
    return raw


def parse_tfvars(text: str) -> dict:
    """Parse key = "value" tfvars text.

    Supports blank lines, full-line '#' or '//' comments and trailing
    comments after a value. Keys must be parameter-set keys; duplicates
    are rejected.

    Raises:
        ConfigError: On malformed lines, unknown keys or duplicates
    """
    values: dict[str, str] = {}
    for lineno, line in enumerate(text.splitlines(), 1):
        stripped = line.strip()
        if not stripped or stripped.startswith('#') or stripped.startswith('//'):
            continue

        match = _LINE_PATTERN.match(stripped)
        if not match:
            raise ConfigError(f"Line {lineno}: expected 'key = \"value\"', got: {stripped}")

        key, raw = match.group(1), match.group(2)
        if key not in KEY_ORDER:
            raise ConfigError(
                f"Line {lineno}: unknown parameter '{key}'. "
                f"Expected one of: {', '.join(KEY_ORDER)}"
            )
        if key in values:
            raise ConfigError(f"Line {lineno}: duplicate parameter '{key}'")
        values[key] = _unquote(raw, lineno)
    return values


def format_tfvars(values: Mapping[str, str]) -> str:
    """Render values as tfvars text in canonical key order."""
    keys = [key for key in KEY_ORDER if key in values]
    width = max((len(key) for key in keys), default=0)
    lines = [f'{key.ljust(width)} = {json.dumps(str(values[key]))}' for key in keys]
    return '\n'.join(lines) + '\n'


def load_params(path: Path) -> EnvParams:
    """Load a parameter set from a tfvars file.

    Raises:
        ConfigError: If the file is missing, malformed or incomplete
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Parameter file not found: {path}")
    try:
        text = path.read_text(encoding='utf-8')
    except OSError as e:
        raise ConfigError(f"Cannot read parameter file {path}: {e}") from e
    try:
        values = parse_tfvars(text)
    except ConfigError as e:
        raise ConfigError(f"{path}: {e}") from e
    return EnvParams.from_mapping(values, source=str(path))


def write_tfvars(params: EnvParams, output_path: Path) -> None:
    """Write a parameter set as a tfvars file readable only by the owner."""
    with open(output_path, 'w', encoding='utf-8') as f:
        f.write(format_tfvars(params.to_mapping()))
    os.chmod(output_path, 0o600)


def find_overlaps(cidrs: Mapping[str, str]) -> list[tuple[str, str]]:
    """Return pairs of keys whose CIDR ranges overlap.

    Values that do not parse are ignored here; validate_params reports them.
    """
    networks = {}
    for key, cidr in cidrs.items():
        try:
            networks[key] = ipaddress.ip_network(cidr, strict=False)
        except ValueError:
            continue

    return [
        (a, b)
        for a, b in combinations(networks, 2)
        if networks[a].version == networks[b].version and networks[a].overlaps(networks[b])
    ]


def validate_cidr(cidr: str, key: str) -> Optional[str]:
    """Validate an IPv4 network in CIDR notation. Returns an error or None."""
    if not isinstance(cidr, str) or '/' not in cidr:
        return f"{key}: '{cidr}' is not in CIDR notation (e.g., '10.0.0.0/24')"
    try:
        network = ipaddress.ip_network(cidr, strict=True)
    except ValueError as e:
        return f"{key}: invalid CIDR '{cidr}': {e}"
    if network.version != 4:
        return f"{key}: '{cidr}' is not an IPv4 range"
    if network.prefixlen > 29:
        return f"{key}: '{cidr}' is too small (subnet prefix must be /29 or shorter)"
    return None


def validate_params(params: EnvParams, check_overlap: bool = True) -> list[str]:
    """Validate a parameter set before any remote call.

    Args:
        params: Parameter set to validate
        check_overlap: Also reject overlapping subnet ranges

    Returns:
        List of validation error messages (empty if valid)
    """
    errors = []

    if not PROJECT_ID_PATTERN.match(params.project_id):
        errors.append(
            f"project_id: '{params.project_id}' is not a valid project id "
            f"(6-30 chars, lowercase letters, digits and hyphens)"
        )

    if not REGION_PATTERN.match(params.region):
        errors.append(f"region: '{params.region}' is not a valid region (e.g., 'us-central1')")

    if params.name is not None and not NAME_PATTERN.match(params.name):
        errors.append(
            f"name: '{params.name}' is not a valid resource name prefix "
            f"(lowercase letters, digits and hyphens, starting with a letter)"
        )

    cidr_errors = [err for key, cidr in params.cidrs().items() if (err := validate_cidr(cidr, key))]
    errors.extend(cidr_errors)

    if check_overlap and not cidr_errors:
        cidrs = params.cidrs()
        for a, b in find_overlaps(cidrs):
            errors.append(f"{a} ({cidrs[a]}) overlaps {b} ({cidrs[b]})")

    return errors


def secret_name(env: str, key: str) -> str:
    """Return the secret name that supplies key for env."""
    prefix = env.upper().replace('-', '_')
    return f"{prefix}_{SECRET_SUFFIXES[key]}"


def params_from_secrets(env: str, secrets: Mapping[str, str]) -> EnvParams:
    """Build a parameter set for env from named secrets.

    Args:
        env: Environment name (secret prefix and resource name prefix)
        secrets: Mapping of secret name to value (e.g., os.environ)

    Returns:
        Parameter set with name set to env

    Raises:
        ConfigError: Listing every absent or empty secret
    """
    values = {}
    missing = []
    for key in REQUIRED_KEYS:
        name = secret_name(env, key)
        value = (secrets.get(name) or '').strip()
        if not value:
            missing.append(name)
        values[key] = value

    if missing:
        raise ConfigError(f"Missing secret(s) for environment '{env}': {', '.join(missing)}")

    values['name'] = env
    return EnvParams.from_mapping(values, source=f"secrets for '{env}'")


def cross_env_overlaps(params_by_env: Mapping[str, EnvParams]) -> list[str]:
    """Report CIDR ranges shared between environments.

    Only matters if the networks are ever peered, so callers log these as
    warnings rather than failing.
    """
    warnings = []
    labelled = {
        f"{env}.{key}": cidr
        for env, params in sorted(params_by_env.items())
        for key, cidr in params.cidrs().items()
    }
    for a, b in find_overlaps(labelled):
        if a.split('.', 1)[0] != b.split('.', 1)[0]:
            warnings.append(f"{a} ({labelled[a]}) overlaps {b} ({labelled[b]})")
    return warnings
