"""Parameter-set actions: materialize and validate."""

import logging
import os
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from common import ActionResult
from config import ConfigError, EnvConfig
from params import load_params, params_from_secrets, validate_params, write_tfvars

logger = logging.getLogger(__name__)


def create_temp_tfvars(env_name: str) -> Path:
    """Create a unique, owner-only temporary file for materialized tfvars.

    The file is created in the system temp dir with a unique name.
    Caller is responsible for cleanup.
    """
    fd, path = tempfile.mkstemp(prefix=f'tfvars-{env_name}-', suffix='.tfvars')
    os.close(fd)  # Close fd since we'll write via write_tfvars
    return Path(path)


@dataclass
class MaterializeParamsAction:
    """Resolve the parameter file for the run.

    Uses the committed site-config/envs/{env}.tfvars when present (source
    'auto' or 'committed'); otherwise writes one from secrets immediately
    before use. Sets tfvars_path in context.
    """
    name: str
    source: Optional[str] = None  # Overrides config.params_source
    secrets: Optional[Mapping[str, str]] = None  # Defaults to os.environ

    def run(self, config: EnvConfig, context: dict) -> ActionResult:
        start = time.time()
        source = context.get('params_source') or self.source or config.params_source
        committed = config.tfvars_path

        if source in ('auto', 'committed') and committed.exists():
            logger.info(f"[{self.name}] Using committed parameters: {committed}")
            return ActionResult(
                success=True,
                message=f"Using committed {committed.name}",
                duration=time.time() - start,
                context_updates={'tfvars_path': str(committed), 'params_origin': 'committed'}
            )

        if source == 'committed':
            return ActionResult(
                success=False,
                message=f"Committed parameter file not found: {committed}",
                duration=time.time() - start
            )

        secrets = self.secrets if self.secrets is not None else os.environ
        tfvars_path = None
        try:
            params = params_from_secrets(config.name, secrets)
            tfvars_path = create_temp_tfvars(config.name)
            write_tfvars(params, tfvars_path)
        except (ConfigError, OSError) as e:
            if tfvars_path and tfvars_path.exists():
                tfvars_path.unlink()
            return ActionResult(
                success=False,
                message=f"Parameter materialization failed: {e}",
                duration=time.time() - start
            )

        logger.info(f"[{self.name}] Materialized parameters from secrets: {tfvars_path}")
        return ActionResult(
            success=True,
            message="Materialized parameters from secrets",
            duration=time.time() - start,
            context_updates={
                'tfvars_path': str(tfvars_path),
                'params_origin': 'secrets',
                '_tfvars_cleanup': str(tfvars_path),
            }
        )


@dataclass
class ValidateParamsAction:
    """Load and validate the parameter file before any remote call."""
    name: str
    check_overlap: Optional[bool] = None  # Overrides config.cidr_overlap_check

    def run(self, config: EnvConfig, context: dict) -> ActionResult:
        start = time.time()

        tfvars_path = context.get('tfvars_path')
        if not tfvars_path:
            return ActionResult(
                success=False,
                message=f"[{self.name}] No parameter file in context (tfvars_path)",
                duration=time.time() - start
            )

        try:
            params = load_params(Path(tfvars_path))
        except ConfigError as e:
            return ActionResult(
                success=False,
                message=f"Invalid parameters: {e}",
                duration=time.time() - start
            )

        check_overlap = config.cidr_overlap_check if self.check_overlap is None else self.check_overlap
        errors = validate_params(params, check_overlap=check_overlap)
        if errors:
            return ActionResult(
                success=False,
                message="Invalid parameters: " + '; '.join(errors),
                duration=time.time() - start
            )

        if not check_overlap:
            logger.info(f"[{self.name}] CIDR overlap check disabled, relying on API validation")

        return ActionResult(
            success=True,
            message=f"Parameters valid for project {params.project_id} ({params.region})",
            duration=time.time() - start,
            context_updates={'params': params.to_mapping()}
        )
