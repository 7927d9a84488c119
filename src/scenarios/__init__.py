"""Scenario definitions and orchestration."""

import logging
import time
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

from config import EnvConfig
from reporting import RunReport

logger = logging.getLogger(__name__)


@runtime_checkable
class Scenario(Protocol):
    """Protocol for scenario definitions.

    Class attributes:
        name: Scenario identifier (e.g., 'network-apply')
        description: Human-readable description
        requires_auth: If True, pre-flight checks identity settings (default: True)
        requires_engine: If True, pre-flight checks the engine and parameters (default: True)
        requires_gcloud: If True, pre-flight checks the gcloud CLI (default: False)
        requires_confirmation: If True, CLI asks before running unless --yes (default: False)
    """
    name: str
    description: str

    def get_phases(self, config: EnvConfig) -> list[tuple[str, Any, str]]:
        """Return list of (phase_name, action, description) tuples."""
        ...


class Orchestrator:
    """Runs scenario phases in order, stopping at the first failure."""

    def __init__(
        self,
        scenario: Scenario,
        config: EnvConfig,
        report_dir: Path,
        skip_phases: Optional[list[str]] = None,
        timeout: Optional[int] = None,
        dry_run: bool = False
    ):
        self.scenario = scenario
        self.config = config
        self.report_dir = report_dir
        self.skip_phases = skip_phases or []
        self.timeout = timeout  # Overall scenario timeout in seconds
        self.dry_run = dry_run
        self.report = RunReport(env=config.name, report_dir=report_dir, scenario=scenario.name)
        self.context: dict[str, Any] = {}

    def preview(self) -> bool:
        """Show what would be executed without running. Returns True."""
        phases = self.scenario.get_phases(self.config)

        print("")
        print("═══════════════════════════════════════════════════════════════")
        print(f"  DRY-RUN: {self.scenario.name}")
        print(f"  Environment: {self.config.name}")
        print(f"  Engine: {self.config.engine_binary} (state: {self.config.state_dir})")
        print("═══════════════════════════════════════════════════════════════")
        print("")

        print("Phases to execute:")
        phase_count = 0
        skip_count = 0

        for phase_name, action, description in phases:
            action_type = type(action).__name__
            if phase_name in self.skip_phases:
                print(f"  [SKIP] {phase_name}: {description}")
                print(f"         Action: {action_type}")
                skip_count += 1
            else:
                print(f"  [ OK ] {phase_name}: {description}")
                print(f"         Action: {action_type}")
                if hasattr(action, 'name'):
                    print(f"         Name: {action.name}")
                if getattr(action, 'expect_no_changes', False):
                    print("         Expects: no changes")
                if getattr(action, 'timeout', None):
                    print(f"         Timeout: {action.timeout}s")
                phase_count += 1
            print("")

        print("═══════════════════════════════════════════════════════════════")
        print(f"  Summary: {phase_count} phases to execute, {skip_count} to skip")
        if self.timeout:
            print(f"  Timeout: {self.timeout}s")
        print("  Mode: DRY-RUN (no changes made)")
        print("═══════════════════════════════════════════════════════════════")
        print("")
        print("Remove --dry-run to execute the scenario.")
        print("")

        return True

    def run(self) -> bool:
        """Run all phases. Returns True if all passed."""
        if self.dry_run:
            return self.preview()

        timeout_msg = f" (timeout: {self.timeout}s)" if self.timeout else ""
        logger.info(f"Starting scenario '{self.scenario.name}' for environment: {self.config.name}{timeout_msg}")
        self.report.start()

        phases = self.scenario.get_phases(self.config)
        all_passed = True
        start_time = time.time()

        try:
            for phase_name, action, description in phases:
                # Check timeout before starting each phase
                if self.timeout:
                    elapsed = time.time() - start_time
                    if elapsed >= self.timeout:
                        logger.error(f"Scenario timeout ({self.timeout}s) exceeded after {elapsed:.1f}s")
                        self.report.fail_phase(phase_name, f"Timeout exceeded ({elapsed:.1f}s >= {self.timeout}s)", 0)
                        all_passed = False
                        break

                if phase_name in self.skip_phases:
                    logger.info(f"Skipping phase: {phase_name}")
                    self.report.skip_phase(phase_name, description)
                    continue

                logger.info(f"Running phase: {phase_name} - {description}")
                self.report.start_phase(phase_name, description)

                try:
                    result = action.run(self.config, self.context)
                    if result.success:
                        logger.info(f"Phase {phase_name} passed")
                        self.report.pass_phase(phase_name, result.message, result.duration)
                        self.context.update(result.context_updates or {})
                    else:
                        logger.error(f"Phase {phase_name} failed: {result.message}")
                        self.report.fail_phase(phase_name, result.message, result.duration)
                        all_passed = False
                        if not result.continue_on_failure:
                            break
                except Exception as e:
                    logger.exception(f"Phase {phase_name} raised exception")
                    self.report.fail_phase(phase_name, str(e), 0)
                    all_passed = False
                    break
        finally:
            self._cleanup()

        total_time = time.time() - start_time
        logger.info(f"Scenario completed in {total_time:.1f}s")
        self.report.finish(all_passed)
        return all_passed

    def _cleanup(self):
        """Remove parameter files materialized from secrets."""
        tfvars = self.context.pop('_tfvars_cleanup', None)
        if tfvars and Path(tfvars).exists():
            Path(tfvars).unlink()
            logger.debug(f"Removed materialized parameters: {tfvars}")


# Registry of available scenarios
_scenarios: dict[str, type[Scenario]] = {}


def register_scenario(cls: type[Scenario]) -> type[Scenario]:
    """Decorator to register a scenario class."""
    _scenarios[cls.name] = cls
    return cls


def get_scenario(name: str) -> Scenario:
    """Get a scenario instance by name."""
    if name not in _scenarios:
        available = list(_scenarios.keys())
        raise ValueError(f"Unknown scenario: {name}. Available: {available}")
    return _scenarios[name]()


def list_scenarios() -> list[str]:
    """List available scenario names."""
    return sorted(_scenarios.keys())


# Import scenarios to trigger registration
from scenarios import network  # noqa: E402, F401
from scenarios import identity  # noqa: E402, F401
