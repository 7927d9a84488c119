"""gcloud CLI actions.

Covers the parts of the pipeline the engine does not: enabling service
APIs before the first apply, verifying the live network against the graph,
and the one-time identity binding bootstrap.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

from common import ActionResult, credential_env, run_command, run_json_command
from config import ConfigError, EnvConfig
from graph import build_graph
from oidc import AuthError, GITHUB_ISSUER, parse_provider
from params import EnvParams

logger = logging.getLogger(__name__)

WORKLOAD_IDENTITY_USER_ROLE = 'roles/iam.workloadIdentityUser'


def _project_from_context(context: dict) -> Optional[str]:
    """Project id published by the validate phase."""
    return (context.get('params') or {}).get('project_id')


@dataclass
class EnableApisAction:
    """Enable required service APIs that are not already enabled."""
    name: str
    timeout: int = 300

    def run(self, config: EnvConfig, context: dict) -> ActionResult:
        start = time.time()

        project = _project_from_context(context)
        if not project:
            return ActionResult(
                success=False,
                message=f"[{self.name}] No project_id in context (run the validate phase first)",
                duration=time.time() - start
            )

        if not config.required_apis:
            return ActionResult(success=True, message="No APIs required", duration=time.time() - start)

        env = credential_env(context)
        rc, out, err = run_command(
            ['gcloud', 'services', 'list', '--enabled', f'--project={project}',
             '--format=value(config.name)'],
            timeout=120,
            env=env
        )
        if rc != 0:
            return ActionResult(
                success=False,
                message=f"Cannot list enabled services for {project}: {err.strip()}",
                duration=time.time() - start
            )

        enabled = {line.strip() for line in out.splitlines() if line.strip()}
        missing = [api for api in config.required_apis if api not in enabled]
        if not missing:
            return ActionResult(
                success=True,
                message=f"APIs already enabled: {', '.join(config.required_apis)}",
                duration=time.time() - start
            )

        logger.info(f"[{self.name}] Enabling {', '.join(missing)} on {project}...")
        rc, out, err = run_command(
            ['gcloud', 'services', 'enable', *missing, f'--project={project}', '--quiet'],
            timeout=self.timeout,
            env=env
        )
        if rc != 0:
            return ActionResult(
                success=False,
                message=f"Failed to enable {', '.join(missing)}: {err.strip()}",
                duration=time.time() - start
            )

        return ActionResult(
            success=True,
            message=f"Enabled {', '.join(missing)}",
            duration=time.time() - start
        )


@dataclass
class VerifyNetworkAction:
    """Compare the live network and subnets with the desired graph."""
    name: str
    timeout: int = 120

    def run(self, config: EnvConfig, context: dict) -> ActionResult:
        start = time.time()

        try:
            params = EnvParams.from_mapping(context.get('params') or {}, source='context')
        except ConfigError as e:
            return ActionResult(
                success=False,
                message=f"[{self.name}] No validated parameters in context: {e}",
                duration=time.time() - start
            )

        graph = build_graph(params)
        env = credential_env(context)
        project = params.project_id
        vpc = graph.network.name

        rc, network, err = run_json_command(
            ['gcloud', 'compute', 'networks', 'describe', vpc,
             f'--project={project}', '--format=json'],
            timeout=self.timeout,
            env=env
        )
        if rc != 0 or not isinstance(network, dict):
            return ActionResult(
                success=False,
                message=f"Network {vpc} not found in {project}: {err.strip()}",
                duration=time.time() - start
            )

        problems = []
        if network.get('autoCreateSubnetworks', False):
            problems.append(f"{vpc} is in auto mode (expected custom mode)")

        rc, subnets, err = run_json_command(
            ['gcloud', 'compute', 'networks', 'subnets', 'list',
             f'--network={vpc}', f'--project={project}', '--format=json'],
            timeout=self.timeout,
            env=env
        )
        if rc != 0 or not isinstance(subnets, list):
            return ActionResult(
                success=False,
                message=f"Cannot list subnets of {vpc}: {err.strip()}",
                duration=time.time() - start
            )

        live = {s.get('name'): s for s in subnets}
        for desired in graph.subnets:
            actual = live.pop(desired.name, None)
            if actual is None:
                problems.append(f"missing subnet {desired.name}")
                continue
            if actual.get('ipCidrRange') != desired.cidr:
                problems.append(f"{desired.name} range {actual.get('ipCidrRange')} != {desired.cidr}")
            region = str(actual.get('region', '')).rsplit('/', 1)[-1]
            if region != desired.region:
                problems.append(f"{desired.name} region {region} != {desired.region}")
        if live:
            problems.append(f"unexpected subnet(s): {', '.join(sorted(live))}")

        if problems:
            return ActionResult(
                success=False,
                message=f"Network {vpc} does not match graph: " + '; '.join(problems),
                duration=time.time() - start
            )

        return ActionResult(
            success=True,
            message=f"{vpc} has {len(graph.subnets)} subnets matching the graph",
            duration=time.time() - start,
            context_updates={'verified_network': vpc}
        )


def _identity_target(config: EnvConfig) -> dict:
    """Provider components plus the bootstrap project (raises AuthError)."""
    target = parse_provider(config.workload_identity_provider)
    if not config.identity_project:
        raise AuthError("E400", "identity.project_id is required for bootstrap")
    if not config.repository:
        raise AuthError("E400", "identity.repository is required for bootstrap")
    target['project'] = config.identity_project
    return target


def attribute_condition(attribute: str, repository: str) -> str:
    """CEL condition admitting exactly one repository."""
    return f"assertion.{attribute} == '{repository}'"


def principal_set(target: dict, attribute: str, repository: str) -> str:
    """Principal set for all identities of the repository."""
    return (
        f"principalSet://iam.googleapis.com/projects/{target['project_number']}"
        f"/locations/{target['location']}/workloadIdentityPools/{target['pool']}"
        f"/attribute.{attribute}/{repository}"
    )


@dataclass
class CreateIdentityPoolAction:
    """Create the workload identity pool if it does not exist."""
    name: str

    def run(self, config: EnvConfig, context: dict) -> ActionResult:
        start = time.time()
        try:
            target = _identity_target(config)
        except AuthError as e:
            return ActionResult(success=False, message=str(e), duration=time.time() - start)

        base = ['gcloud', 'iam', 'workload-identity-pools']
        scope = [f"--project={target['project']}", f"--location={target['location']}"]

        rc, _, _ = run_command(base + ['describe', target['pool'], *scope, '--format=json'], timeout=60)
        if rc == 0:
            return ActionResult(
                success=True,
                message=f"Pool {target['pool']} already exists",
                duration=time.time() - start
            )

        logger.info(f"[{self.name}] Creating pool {target['pool']} in {target['project']}...")
        rc, _, err = run_command(
            base + ['create', target['pool'], *scope, '--display-name=CI pipelines'],
            timeout=120
        )
        if rc != 0:
            return ActionResult(
                success=False,
                message=f"Failed to create pool {target['pool']}: {err.strip()}",
                duration=time.time() - start
            )
        return ActionResult(success=True, message=f"Created pool {target['pool']}", duration=time.time() - start)


@dataclass
class CreateOidcProviderAction:
    """Create (or re-scope) the OIDC provider with the repository condition."""
    name: str
    issuer_uri: str = GITHUB_ISSUER

    def run(self, config: EnvConfig, context: dict) -> ActionResult:
        start = time.time()
        try:
            target = _identity_target(config)
        except AuthError as e:
            return ActionResult(success=False, message=str(e), duration=time.time() - start)

        attr = config.trust_attribute
        condition = attribute_condition(attr, config.repository)
        base = ['gcloud', 'iam', 'workload-identity-pools', 'providers']
        scope = [
            f"--project={target['project']}",
            f"--location={target['location']}",
            f"--workload-identity-pool={target['pool']}",
        ]

        rc, existing, _ = run_json_command(base + ['describe', target['provider'], *scope, '--format=json'], timeout=60)
        if rc == 0 and isinstance(existing, dict):
            if existing.get('attributeCondition') == condition:
                return ActionResult(
                    success=True,
                    message=f"Provider {target['provider']} already scoped to {config.repository}",
                    duration=time.time() - start
                )
            logger.info(f"[{self.name}] Updating attribute condition on {target['provider']}...")
            verb = 'update-oidc'
            extra = [f'--attribute-condition={condition}']
        else:
            logger.info(f"[{self.name}] Creating OIDC provider {target['provider']}...")
            verb = 'create-oidc'
            extra = [
                f'--issuer-uri={self.issuer_uri}',
                f'--attribute-mapping=google.subject=assertion.sub,attribute.{attr}=assertion.{attr}',
                f'--attribute-condition={condition}',
            ]

        rc, _, err = run_command(base + [verb, target['provider'], *scope, *extra], timeout=120)
        if rc != 0:
            return ActionResult(
                success=False,
                message=f"gcloud {verb} {target['provider']} failed: {err.strip()}",
                duration=time.time() - start
            )
        return ActionResult(
            success=True,
            message=f"Provider {target['provider']} scoped to {condition}",
            duration=time.time() - start
        )


@dataclass
class BindServiceAccountAction:
    """Grant the repository's principal set impersonation of the service account."""
    name: str

    def run(self, config: EnvConfig, context: dict) -> ActionResult:
        start = time.time()
        try:
            target = _identity_target(config)
        except AuthError as e:
            return ActionResult(success=False, message=str(e), duration=time.time() - start)

        if not config.service_account:
            return ActionResult(
                success=False,
                message="identity.service_account is required for bootstrap",
                duration=time.time() - start
            )

        member = principal_set(target, config.trust_attribute, config.repository)
        logger.info(f"[{self.name}] Binding {WORKLOAD_IDENTITY_USER_ROLE} on {config.service_account}...")
        # add-iam-policy-binding is idempotent
        rc, _, err = run_command(
            ['gcloud', 'iam', 'service-accounts', 'add-iam-policy-binding', config.service_account,
             f'--role={WORKLOAD_IDENTITY_USER_ROLE}',
             f'--member={member}',
             '--condition=None', '--quiet', '--format=none'],
            timeout=120
        )
        if rc != 0:
            return ActionResult(
                success=False,
                message=f"Failed to bind {config.service_account}: {err.strip()}",
                duration=time.time() - start
            )
        return ActionResult(
            success=True,
            message=f"{member} may impersonate {config.service_account}",
            duration=time.time() - start
        )
