"""Authentication action for pipeline runs."""

import logging
import os
import time
from dataclasses import dataclass
from typing import Mapping, Optional

from common import ACCESS_TOKEN_KEY, ActionResult
from config import EnvConfig
from oidc import AuthError, authenticate

logger = logging.getLogger(__name__)


@dataclass
class AuthenticateAction:
    """Exchange the run's OIDC token for a short-lived cloud credential.

    Failure is terminal for the run; the orchestrator stops on it and
    nothing is retried.
    """
    name: str
    environ: Optional[Mapping[str, str]] = None  # Defaults to os.environ

    def run(self, config: EnvConfig, context: dict) -> ActionResult:
        start = time.time()

        if not config.identity_configured:
            return ActionResult(
                success=False,
                message=(
                    f"Authorization failed: identity not configured for '{config.name}' "
                    f"(identity.workload_identity_provider, service_account, repository in site.yaml)"
                ),
                duration=time.time() - start
            )

        try:
            credential = authenticate(
                provider=config.workload_identity_provider,
                service_account=config.service_account,
                repository=config.repository,
                attribute=config.trust_attribute,
                environ=self.environ if self.environ is not None else os.environ,
            )
        except AuthError as e:
            logger.error(f"[{self.name}] {e}")
            return ActionResult(
                success=False,
                message=f"Authorization failed: {e}",
                duration=time.time() - start
            )

        return ActionResult(
            success=True,
            message=f"Authenticated as {credential.service_account}",
            duration=time.time() - start,
            context_updates={
                ACCESS_TOKEN_KEY: credential.access_token,
                'service_account': credential.service_account,
                'credential_expires': credential.expire_time,
            }
        )
