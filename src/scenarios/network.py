"""Network lifecycle scenarios.

Each scenario drives the engine against one environment: authenticate,
resolve parameters, validate them, then render/init/plan and apply or destroy.
Run locally with --skip authenticate to use ambient gcloud credentials.
"""

from actions import (
    AuthenticateAction,
    MaterializeParamsAction,
    ValidateParamsAction,
    EnableApisAction,
    RenderGraphAction,
    EngineInitAction,
    EnginePlanAction,
    EngineApplyAction,
    EngineDestroyAction,
    VerifyNetworkAction,
)
from config import EnvConfig
from scenarios import register_scenario


def _prepare_phases() -> list[tuple]:
    """Phases shared by every network scenario up to validation."""
    return [
        ('authenticate', AuthenticateAction(name='authenticate'),
         'Exchange OIDC token for cloud credential'),
        ('materialize', MaterializeParamsAction(name='materialize-params'),
         'Resolve parameter file'),
        ('validate', ValidateParamsAction(name='validate-params'),
         'Validate parameters'),
    ]


def _engine_phases() -> list[tuple]:
    return [
        ('render', RenderGraphAction(name='render-graph'),
         'Render network graph'),
        ('init', EngineInitAction(name='engine-init'),
         'Initialize engine working directory'),
    ]


@register_scenario
class NetworkPlan:
    """Show pending changes without applying them."""

    name = 'network-plan'
    description = 'Plan network changes for an environment'
    requires_auth = True
    requires_engine = True
    requires_gcloud = False
    requires_confirmation = False

    def get_phases(self, config: EnvConfig) -> list[tuple[str, object, str]]:
        return [
            *_prepare_phases(),
            *_engine_phases(),
            ('plan', EnginePlanAction(name='engine-plan'),
             'Compute execution plan'),
        ]


@register_scenario
class NetworkApply:
    """Converge the environment's network to the graph."""

    name = 'network-apply'
    description = 'Plan and apply network for an environment'
    requires_auth = True
    requires_engine = True
    requires_gcloud = True
    requires_confirmation = False

    def get_phases(self, config: EnvConfig) -> list[tuple[str, object, str]]:
        return [
            *_prepare_phases(),
            ('enable_apis', EnableApisAction(name='enable-apis'),
             'Enable required service APIs'),
            *_engine_phases(),
            ('plan', EnginePlanAction(name='engine-plan'),
             'Compute execution plan'),
            ('apply', EngineApplyAction(name='engine-apply'),
             'Apply network graph'),
        ]


@register_scenario
class NetworkDestroy:
    """Remove the environment's network and subnets."""

    name = 'network-destroy'
    description = 'Destroy network for an environment'
    requires_auth = True
    requires_engine = True
    requires_gcloud = False
    requires_confirmation = True

    def get_phases(self, config: EnvConfig) -> list[tuple[str, object, str]]:
        return [
            *_prepare_phases(),
            *_engine_phases(),
            ('destroy', EngineDestroyAction(name='engine-destroy'),
             'Destroy network graph'),
        ]


@register_scenario
class NetworkRoundtrip:
    """Full lifecycle check against a disposable environment.

    Applies, verifies the live network, re-plans expecting no changes,
    destroys, then recreates and verifies again before the final destroy.
    """

    name = 'network-roundtrip'
    description = 'Apply, verify, idempotence check, destroy, recreate, destroy'
    requires_auth = True
    requires_engine = True
    requires_gcloud = True
    requires_confirmation = True

    def get_phases(self, config: EnvConfig) -> list[tuple[str, object, str]]:
        return [
            *_prepare_phases(),
            ('enable_apis', EnableApisAction(name='enable-apis'),
             'Enable required service APIs'),
            *_engine_phases(),
            ('apply', EngineApplyAction(name='engine-apply'),
             'Apply network graph'),
            ('verify', VerifyNetworkAction(name='verify-network'),
             'Verify network matches graph'),
            ('verify_idempotent', EnginePlanAction(name='engine-replan', expect_no_changes=True),
             'Re-plan expecting no changes'),
            ('destroy', EngineDestroyAction(name='engine-destroy'),
             'Destroy network graph'),
            ('recreate', EngineApplyAction(name='engine-reapply'),
             'Re-apply network graph'),
            ('verify_recreate', VerifyNetworkAction(name='verify-recreated'),
             'Verify recreated network'),
            ('cleanup', EngineDestroyAction(name='engine-cleanup'),
             'Destroy network graph'),
        ]
