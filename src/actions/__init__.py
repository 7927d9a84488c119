"""Reusable pipeline actions."""

from actions.auth import AuthenticateAction
from actions.params import MaterializeParamsAction, ValidateParamsAction
from actions.terraform import (
    RenderGraphAction,
    EngineInitAction,
    EnginePlanAction,
    EngineApplyAction,
    EngineDestroyAction,
)
from actions.gcloud import (
    EnableApisAction,
    VerifyNetworkAction,
    CreateIdentityPoolAction,
    CreateOidcProviderAction,
    BindServiceAccountAction,
)

__all__ = [
    'AuthenticateAction',
    'MaterializeParamsAction',
    'ValidateParamsAction',
    'RenderGraphAction',
    'EngineInitAction',
    'EnginePlanAction',
    'EngineApplyAction',
    'EngineDestroyAction',
    'EnableApisAction',
    'VerifyNetworkAction',
    'CreateIdentityPoolAction',
    'CreateOidcProviderAction',
    'BindServiceAccountAction',
]
