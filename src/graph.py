"""Network resource graph.

Declares one custom-mode VPC and three regional subnets (front-end,
back-end, DMZ). The graph is rendered as a Terraform JSON document whose
inputs are the parameter-set keys; the engine diffs it against state and
owns all create/update/delete decisions.

build_graph() resolves the same graph for a concrete parameter set, which
is what verification compares the live network against.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from params import EnvParams

logger = logging.getLogger(__name__)

GOOGLE_PROVIDER_SOURCE = 'hashicorp/google'
GOOGLE_PROVIDER_VERSION = '5.44.0'
REQUIRED_ENGINE_VERSION = '>= 1.5.0'

DEFAULT_NAME = 'dev'
NETWORK_RESOURCE = 'vpc'
GRAPH_FILENAME = 'main.tf.json'


@dataclass(frozen=True)
class SubnetRole:
    """Fixed subnet slot in the graph."""
    key: str        # Short role key (front, back, dmz)
    subnet_name: str
    cidr_var: str   # Parameter-set key supplying the range
    resource: str   # Terraform resource name

    @property
    def address(self) -> str:
        return f'google_compute_subnetwork.{self.resource}'


SUBNET_ROLES = (
    SubnetRole('front', 'front-end-subnet', 'front_cidr', 'front_end'),
    SubnetRole('back', 'back-end-subnet', 'back_cidr', 'back_end'),
    SubnetRole('dmz', 'dmz-subnet', 'DMZ_cidr', 'dmz'),
)


@dataclass
class Network:
    name: str
    project: str
    auto_create_subnetworks: bool = False


@dataclass
class Subnet:
    name: str
    role: str
    cidr: str
    region: str
    network: str


@dataclass
class NetworkGraph:
    """Desired state for one environment."""
    network: Network
    subnets: list[Subnet] = field(default_factory=list)

    def subnet(self, name: str) -> Optional[Subnet]:
        for subnet in self.subnets:
            if subnet.name == name:
                return subnet
        return None

    def to_dict(self) -> dict:
        return {
            'network': {
                'name': self.network.name,
                'project': self.network.project,
                'auto_create_subnetworks': self.network.auto_create_subnetworks,
            },
            'subnets': [
                {
                    'name': s.name,
                    'role': s.role,
                    'cidr': s.cidr,
                    'region': s.region,
                    'network': s.network,
                }
                for s in self.subnets
            ],
        }


def network_name(prefix: Optional[str]) -> str:
    """Derive the VPC name from the name prefix."""
    return f"{prefix or DEFAULT_NAME}-vpc"


def build_graph(params: EnvParams) -> NetworkGraph:
    """Resolve the desired network and subnets for a parameter set."""
    vpc = Network(name=network_name(params.name), project=params.project_id)
    cidrs = params.cidrs()
    subnets = [
        Subnet(
            name=role.subnet_name,
            role=role.key,
            cidr=cidrs[role.cidr_var],
            region=params.region,
            network=vpc.name,
        )
        for role in SUBNET_ROLES
    ]
    return NetworkGraph(network=vpc, subnets=subnets)


def backend_config(env_config) -> dict:
    """Return the terraform backend block for an environment.

    Remote gcs state (locking) when a bucket is configured, otherwise a
    local state file inside the environment's state directory.
    """
    if env_config.has_remote_state:
        return {
            'gcs': {
                'bucket': env_config.state_bucket,
                'prefix': f"{env_config.state_prefix}/{env_config.name}",
            }
        }
    return {'local': {'path': str(env_config.state_dir / 'terraform.tfstate')}}


def _variables() -> dict:
    """Input variables: the parameter-set contract."""
    descriptions = {
        'project_id': 'Project that owns the network',
        'region': 'Region for all three subnets',
        'front_cidr': 'IPv4 range of the front-end subnet',
        'back_cidr': 'IPv4 range of the back-end subnet',
        'DMZ_cidr': 'IPv4 range of the DMZ subnet',
    }
    variables: dict = {
        key: {'type': 'string', 'description': description}
        for key, description in descriptions.items()
    }
    variables['name'] = {
        'type': 'string',
        'description': 'Name prefix; the network is named {name}-vpc',
        'default': DEFAULT_NAME,
    }
    return variables


def render_terraform(backend: Optional[dict] = None) -> dict:
    """Render the parameterized graph as a Terraform JSON document.

    Args:
        backend: Backend block from backend_config() (omitted when None)

    Returns:
        Dict suitable for json.dump into main.tf.json
    """
    terraform: dict = {
        'required_version': REQUIRED_ENGINE_VERSION,
        'required_providers': {
            'google': {
                'source': GOOGLE_PROVIDER_SOURCE,
                'version': GOOGLE_PROVIDER_VERSION,
            }
        },
    }
    if backend:
        terraform['backend'] = backend

    network_ref = f'${{google_compute_network.{NETWORK_RESOURCE}.id}}'
    subnetworks = {
        role.resource: {
            'name': role.subnet_name,
            'ip_cidr_range': f'${{var.{role.cidr_var}}}',
            'region': '${var.region}',
            'network': network_ref,
        }
        for role in SUBNET_ROLES
    }

    return {
        'terraform': terraform,
        'variable': _variables(),
        'provider': {
            'google': {
                'project': '${var.project_id}',
                'region': '${var.region}',
            }
        },
        'resource': {
            'google_compute_network': {
                NETWORK_RESOURCE: {
                    'name': '${var.name}-vpc',
                    'auto_create_subnetworks': False,
                }
            },
            'google_compute_subnetwork': subnetworks,
        },
        'output': {
            'network_name': {'value': f'${{google_compute_network.{NETWORK_RESOURCE}.name}}'},
            'network_self_link': {'value': f'${{google_compute_network.{NETWORK_RESOURCE}.self_link}}'},
            'subnets': {
                'value': {
                    role.subnet_name: {
                        'cidr': f'${{{role.address}.ip_cidr_range}}',
                        'region': f'${{{role.address}.region}}',
                    }
                    for role in SUBNET_ROLES
                }
            },
        },
    }


def write_workspace(workdir: Path, backend: Optional[dict] = None) -> Path:
    """Write main.tf.json into the engine working directory.

    Output is sorted and stable, so re-rendering an unchanged graph leaves
    the file byte-identical.
    """
    workdir.mkdir(parents=True, exist_ok=True)
    path = workdir / GRAPH_FILENAME
    content = json.dumps(render_terraform(backend), indent=2, sort_keys=True) + '\n'
    if path.exists() and path.read_text(encoding='utf-8') == content:
        logger.debug(f"Graph unchanged: {path}")
        return path
    path.write_text(content, encoding='utf-8')
    logger.debug(f"Wrote graph: {path}")
    return path
