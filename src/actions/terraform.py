"""Execution engine actions (terraform / tofu).

All actions run in the environment's state directory (.states/{env}), where
RenderGraphAction writes main.tf.json. TF_DATA_DIR points at a data/
subdirectory so provider plugins and backend metadata stay per environment.
"""

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from common import ActionResult, credential_env, run_command
from config import EnvConfig
from graph import backend_config, write_workspace

logger = logging.getLogger(__name__)

# terraform plan -detailed-exitcode
PLAN_NO_CHANGES = 0
PLAN_HAS_CHANGES = 2


def _engine_env(config: EnvConfig, context: dict) -> dict:
    """Subprocess environment: credential + per-environment data dir."""
    data_dir = config.state_dir / 'data'
    data_dir.mkdir(parents=True, exist_ok=True)
    env = credential_env(context)
    env['TF_DATA_DIR'] = str(data_dir)
    env['TF_IN_AUTOMATION'] = '1'
    return env


def _tfvars_arg(context: dict) -> Optional[str]:
    """Return -var-file argument from context, or None when missing."""
    tfvars_path = context.get('tfvars_path')
    if not tfvars_path or not Path(tfvars_path).exists():
        return None
    return f'-var-file={tfvars_path}'


def _missing_workspace(config: EnvConfig, name: str, start: float) -> Optional[ActionResult]:
    """Fail when the graph has not been rendered yet."""
    if (config.state_dir / 'main.tf.json').exists():
        return None
    return ActionResult(
        success=False,
        message=f"[{name}] No rendered graph in {config.state_dir} (run the render phase first)",
        duration=time.time() - start
    )


@dataclass
class RenderGraphAction:
    """Write the network graph as main.tf.json for the engine."""
    name: str

    def run(self, config: EnvConfig, context: dict) -> ActionResult:
        start = time.time()
        backend = backend_config(config)
        path = write_workspace(config.state_dir, backend)
        backend_kind = next(iter(backend))
        logger.info(f"[{self.name}] Rendered graph: {path} (backend: {backend_kind})")
        return ActionResult(
            success=True,
            message=f"Rendered {path.name} ({backend_kind} state)",
            duration=time.time() - start,
            context_updates={'workdir': str(config.state_dir)}
        )


@dataclass
class EngineInitAction:
    """Run <engine> init in the environment's working directory."""
    name: str
    timeout: Optional[int] = None

    def run(self, config: EnvConfig, context: dict) -> ActionResult:
        start = time.time()
        if failure := _missing_workspace(config, self.name, start):
            return failure

        logger.info(f"[{self.name}] Running {config.engine_binary} init...")
        cmd = [config.engine_binary, 'init', '-input=false', '-no-color']
        rc, out, err = run_command(
            cmd,
            cwd=config.state_dir,
            timeout=self.timeout or config.timeout_init,
            env=_engine_env(config, context)
        )
        if rc != 0:
            return ActionResult(
                success=False,
                message=f"{config.engine_binary} init failed: {err.strip() or out.strip()}",
                duration=time.time() - start
            )

        return ActionResult(
            success=True,
            message=f"{config.engine_binary} init completed",
            duration=time.time() - start
        )


@dataclass
class EnginePlanAction:
    """Run <engine> plan and record whether changes are pending.

    A no-op diff is success. With expect_no_changes, a pending diff fails the
    phase (used to verify that a repeated apply would be a no-op).
    """
    name: str
    expect_no_changes: bool = False
    timeout: Optional[int] = None

    def run(self, config: EnvConfig, context: dict) -> ActionResult:
        start = time.time()
        if failure := _missing_workspace(config, self.name, start):
            return failure

        var_file = _tfvars_arg(context)
        if not var_file:
            return ActionResult(
                success=False,
                message=f"[{self.name}] No parameter file in context (tfvars_path)",
                duration=time.time() - start
            )

        logger.info(f"[{self.name}] Running {config.engine_binary} plan...")
        cmd = [config.engine_binary, 'plan', '-input=false', '-no-color', var_file, '-detailed-exitcode']
        rc, out, err = run_command(
            cmd,
            cwd=config.state_dir,
            timeout=self.timeout or config.timeout_plan,
            env=_engine_env(config, context)
        )

        if rc == PLAN_NO_CHANGES:
            logger.info(f"[{self.name}] No changes. Infrastructure matches the graph.")
            return ActionResult(
                success=True,
                message="No changes",
                duration=time.time() - start,
                context_updates={'plan_has_changes': False}
            )

        if rc == PLAN_HAS_CHANGES:
            summary = _plan_summary(out)
            logger.info(f"[{self.name}] {summary}")
            if self.expect_no_changes:
                return ActionResult(
                    success=False,
                    message=f"Expected no changes but plan reports: {summary}",
                    duration=time.time() - start,
                    context_updates={'plan_has_changes': True}
                )
            return ActionResult(
                success=True,
                message=summary,
                duration=time.time() - start,
                context_updates={'plan_has_changes': True}
            )

        return ActionResult(
            success=False,
            message=f"{config.engine_binary} plan failed: {err.strip() or out.strip()}",
            duration=time.time() - start
        )


def _plan_summary(output: str) -> str:
    """Extract the 'Plan: N to add...' line from plan output."""
    for line in output.splitlines():
        if line.strip().startswith('Plan:'):
            return line.strip()
    return 'Changes pending'


@dataclass
class EngineApplyAction:
    """Run <engine> apply -auto-approve and publish outputs to context."""
    name: str
    timeout: Optional[int] = None

    def run(self, config: EnvConfig, context: dict) -> ActionResult:
        start = time.time()
        if failure := _missing_workspace(config, self.name, start):
            return failure

        var_file = _tfvars_arg(context)
        if not var_file:
            return ActionResult(
                success=False,
                message=f"[{self.name}] No parameter file in context (tfvars_path)",
                duration=time.time() - start
            )

        env = _engine_env(config, context)
        logger.info(f"[{self.name}] Running {config.engine_binary} apply...")
        cmd = [config.engine_binary, 'apply', '-input=false', '-no-color', var_file, '-auto-approve']
        rc, out, err = run_command(
            cmd,
            cwd=config.state_dir,
            timeout=self.timeout or config.timeout_apply,
            env=env
        )
        if rc != 0:
            return ActionResult(
                success=False,
                message=f"{config.engine_binary} apply failed: {err.strip() or out.strip()}",
                duration=time.time() - start
            )

        context_updates = {}
        rc, out, err = run_command(
            [config.engine_binary, 'output', '-json', '-no-color'],
            cwd=config.state_dir,
            timeout=config.timeout_init,
            env=env
        )
        if rc == 0:
            try:
                outputs = json.loads(out or '{}')
                context_updates = {
                    key: value.get('value')
                    for key, value in outputs.items()
                    if isinstance(value, dict)
                }
            except json.JSONDecodeError:
                logger.warning(f"[{self.name}] Could not parse {config.engine_binary} output -json")
        else:
            logger.warning(f"[{self.name}] {config.engine_binary} output failed: {err.strip()}")

        network = context_updates.get('network_name', '')
        return ActionResult(
            success=True,
            message=f"Apply completed for {config.name}" + (f" ({network})" if network else ''),
            duration=time.time() - start,
            context_updates=context_updates
        )


@dataclass
class EngineDestroyAction:
    """Run <engine> destroy -auto-approve. Removes the network and all subnets."""
    name: str
    timeout: Optional[int] = None

    def run(self, config: EnvConfig, context: dict) -> ActionResult:
        start = time.time()
        if failure := _missing_workspace(config, self.name, start):
            return failure

        # Local state: no state file means nothing was ever applied here
        state_file = config.state_dir / 'terraform.tfstate'
        if not config.has_remote_state and not state_file.exists():
            return ActionResult(
                success=True,
                message=f"No state found for {config.name} at {state_file}, nothing to destroy",
                duration=time.time() - start
            )

        var_file = _tfvars_arg(context)
        if not var_file:
            return ActionResult(
                success=False,
                message=f"[{self.name}] No parameter file in context (tfvars_path)",
                duration=time.time() - start
            )

        logger.info(f"[{self.name}] Running {config.engine_binary} destroy...")
        cmd = [config.engine_binary, 'destroy', '-input=false', '-no-color', var_file, '-auto-approve']
        rc, out, err = run_command(
            cmd,
            cwd=config.state_dir,
            timeout=self.timeout or config.timeout_apply,
            env=_engine_env(config, context)
        )
        if rc != 0:
            return ActionResult(
                success=False,
                message=f"{config.engine_binary} destroy failed: {err.strip() or out.strip()}",
                duration=time.time() - start
            )

        return ActionResult(
            success=True,
            message=f"Destroy completed for {config.name}",
            duration=time.time() - start
        )
