"""Identity bootstrap scenario.

One-time setup of the workload identity pool, its OIDC provider scoped to a
single repository, and the service-account binding the pipelines impersonate.
Runs with the operator's own gcloud credentials, so there is no authenticate
phase. Every step checks for existing resources and can be re-run.
"""

from actions import (
    CreateIdentityPoolAction,
    CreateOidcProviderAction,
    BindServiceAccountAction,
)
from config import EnvConfig
from scenarios import register_scenario


@register_scenario
class IdentityBootstrap:
    """Create the identity binding used by CI pipelines."""

    name = 'identity-bootstrap'
    description = 'Create workload identity pool, OIDC provider and SA binding'
    requires_auth = False
    requires_engine = False
    requires_gcloud = True
    requires_confirmation = False

    def get_phases(self, config: EnvConfig) -> list[tuple[str, object, str]]:
        return [
            ('pool', CreateIdentityPoolAction(name='identity-pool'),
             'Ensure workload identity pool'),
            ('provider', CreateOidcProviderAction(name='oidc-provider'),
             'Ensure OIDC provider with repository condition'),
            ('binding', BindServiceAccountAction(name='sa-binding'),
             'Grant repository impersonation of service account'),
        ]
