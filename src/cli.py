#!/usr/bin/env python3
"""CLI entry point for vpc-driver.

Noun-action subcommands:
- network: Network lifecycle (plan/apply/destroy/test/render)
- params: Environment parameter sets (list/show/validate/materialize)
- identity: Federated identity setup (bootstrap)
- scenario: Run any registered scenario by name (run/list)

Examples:
    ./run.sh network plan -E dev
    ./run.sh network apply -E prod --params-from-secrets --yes
    ./run.sh params validate --all
"""

import argparse
import json
import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Optional

from config import ConfigError, get_base_dir, list_envs, load_env_config
from graph import backend_config, build_graph, render_terraform, write_workspace
from params import (
    EnvParams,
    cross_env_overlaps,
    format_tfvars,
    load_params,
    params_from_secrets,
    validate_params,
    write_tfvars,
)
from reporting import serializable_context
from scenarios import Orchestrator, get_scenario, list_scenarios
from validation import validate_readiness, run_preflight_checks, format_preflight_results

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "network": "Network lifecycle (plan/apply/destroy/test/render)",
    "params": "Environment parameter sets (list/show/validate/materialize)",
    "identity": "Federated identity setup (bootstrap)",
    "scenario": "Standalone scenario workflows (run/list)",
}

# network <action> -> scenario
NETWORK_ACTIONS = {
    "plan": "network-plan",
    "apply": "network-apply",
    "destroy": "network-destroy",
    "test": "network-roundtrip",
}

IDENTITY_ACTIONS = {
    "bootstrap": "identity-bootstrap",
}

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'


def get_version():
    """Get version from git tags (do not use hardcoded VERSION constant)."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format=LOG_FORMAT,
    datefmt=LOG_DATEFMT
)
logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool = False, json_output: bool = False):
    """Apply --verbose and --json-output to the root logger."""
    if json_output:
        # Remove existing handlers and redirect to stderr
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"vpc-driver {get_version()}")
    print()
    print("Usage: ./run.sh <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run './run.sh <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  ./run.sh network plan -E dev")
    print("  ./run.sh network apply -E dev --yes")
    print("  ./run.sh network destroy -E prod --params-from-secrets")
    print("  ./run.sh params validate --all")
    print("  ./run.sh identity bootstrap -E dev")


# -----------------------------------------------------------------------------
# Scenario execution
# -----------------------------------------------------------------------------

def _scenario_parser(prog: str, description: str) -> argparse.ArgumentParser:
    """Build the option parser shared by every scenario-running command."""
    envs = list_envs()
    parser = argparse.ArgumentParser(prog=prog, description=description)
    parser.add_argument(
        '--env', '-E',
        help=f'Target environment. Available: {", ".join(envs) if envs else "none configured"}'
    )
    parser.add_argument(
        '--report-dir', '-r',
        type=Path,
        default=get_base_dir() / 'reports',
        help='Directory for run reports'
    )
    parser.add_argument(
        '--skip', '-s',
        action='append',
        default=[],
        help='Phases to skip (can be repeated), e.g. --skip authenticate for local runs'
    )
    parser.add_argument(
        '--list-phases',
        action='store_true',
        help='List phases for the scenario and exit'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging'
    )
    parser.add_argument(
        '--context-file', '-C',
        type=Path,
        help='Save/load scenario context to file for chained runs (e.g., apply then test)'
    )
    parser.add_argument(
        '--timeout', '-t',
        type=int,
        help='Overall scenario timeout in seconds. Checked between phases (does not interrupt running phases).'
    )
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt for destructive scenarios'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Show what would be executed without running actions'
    )
    parser.add_argument(
        '--preflight',
        action='store_true',
        help='Run preflight checks only (no scenario execution)'
    )
    parser.add_argument(
        '--skip-preflight',
        action='store_true',
        help='Skip preflight checks before scenario execution'
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs go to stderr)'
    )
    parser.add_argument(
        '--params-from-secrets',
        action='store_true',
        help='Materialize parameters from {ENV}_* secrets even if a committed tfvars file exists'
    )
    return parser


def _setup_context(args, orchestrator) -> Optional[int]:
    """Populate orchestrator context from CLI arguments.

    Returns:
        exit_code on error, None on success.
    """
    # Load context from file if specified and exists
    if args.context_file and args.context_file.exists():
        try:
            with open(args.context_file, encoding="utf-8") as f:
                loaded_context = json.load(f)
            orchestrator.context.update(loaded_context)
            logger.info(f"Loaded context from {args.context_file}: {list(loaded_context.keys())}")
        except json.JSONDecodeError as e:
            print(f"Error: Invalid JSON in context file {args.context_file}: {e}")
            return 1
        except OSError as e:
            print(f"Error reading context file {args.context_file}: {e}")
            return 1

    if args.params_from_secrets:
        orchestrator.context['params_source'] = 'secrets'

    return None


def _handle_results(args, orchestrator, success: bool) -> int:
    """Handle JSON output, context saving, and return exit code."""
    if args.json_output:
        report_data = orchestrator.report.to_dict(orchestrator.context)
        print(json.dumps(report_data, indent=2))

    # Private keys (credential, temp files) are never written
    if args.context_file:
        try:
            saved = serializable_context(orchestrator.context)
            with open(args.context_file, 'w', encoding="utf-8") as f:
                json.dump(saved, f, indent=2)
            logger.info(f"Saved context to {args.context_file}: {list(saved.keys())}")
        except OSError as e:
            logger.warning(f"Failed to save context to {args.context_file}: {e}")

    return 0 if success else 1


def _print_errors(title: str, errors: list[str]):
    print(f"\n{title}:")
    for error in errors:
        # Indent multi-line errors
        for i, line in enumerate(error.split('\n')):
            prefix = "  ✗ " if i == 0 else "    "
            print(f"{prefix}{line}")


def run_scenario(scenario_name: str, argv: list, prog: str) -> int:
    """Parse scenario options and run the named scenario.

    Args:
        scenario_name: Registered scenario name
        argv: Remaining command line arguments
        prog: Program name for usage output (e.g., 'run.sh network apply')

    Returns:
        Exit code
    """
    scenario = get_scenario(scenario_name)
    parser = _scenario_parser(prog, scenario.description)
    args = parser.parse_args(argv)

    _configure_logging(args.verbose, args.json_output)

    # Handle --preflight mode (standalone check, no scenario)
    if args.preflight:
        label = f"environment '{args.env}'" if args.env else "all environments"
        logger.info(f"Running preflight checks for {label}")
        success, results = run_preflight_checks(env=args.env, verbose=args.verbose)
        print(format_preflight_results(label, results))
        return 0 if success else 1

    if not args.env:
        envs = list_envs()
        print(f"Error: --env is required for '{prog}'")
        print(f"Available environments: {', '.join(envs) if envs else 'none configured'}")
        return 1

    try:
        config = load_env_config(args.env)
    except ConfigError as e:
        print(f"Error: {e}")
        return 1

    if args.params_from_secrets:
        config.params_source = 'secrets'

    if args.list_phases:
        print(f"Phases for scenario '{scenario_name}':")
        for name, _action, desc in scenario.get_phases(config):
            print(f"  {name}: {desc}")
        return 0

    # Pre-flight validation (skip for --skip-preflight, --dry-run)
    if not args.skip_preflight and not args.dry_run:
        errors = validate_readiness(config, type(scenario), skip_phases=args.skip, environ=dict(os.environ))
        if errors:
            _print_errors("Pre-flight validation failed", errors)
            print("\nUse --skip-preflight to bypass these checks")
            print()
            return 1
        logger.info("Pre-flight validation passed")

    orchestrator = Orchestrator(
        scenario=scenario,
        config=config,
        report_dir=args.report_dir,
        skip_phases=args.skip,
        timeout=args.timeout,
        dry_run=args.dry_run
    )

    exit_code = _setup_context(args, orchestrator)
    if exit_code is not None:
        return exit_code

    # Check for confirmation on destructive scenarios
    if getattr(scenario, 'requires_confirmation', False) and not args.yes and not args.dry_run:
        print(f"\nWARNING: '{scenario_name}' destroys cloud resources.")
        print(f"Environment: {config.name}")
        print("\nThis action cannot be undone.")
        response = input("Continue? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return 1

    success = orchestrator.run()
    return _handle_results(args, orchestrator, success)


# -----------------------------------------------------------------------------
# Noun handlers
# -----------------------------------------------------------------------------

def _action_usage(noun: str, actions: dict) -> None:
    print(f"Usage: ./run.sh {noun} <action> -E <env> [options]")
    print()
    print("Actions:")
    for action, desc in actions.items():
        print(f"  {action:<12} {desc}")
    print()
    print(f"Run './run.sh {noun} <action> --help' for action-specific options.")


def dispatch_network(argv: list) -> int:
    """Dispatch 'network' noun to the matching scenario or to render."""
    actions = {
        "plan": "Show pending changes",
        "apply": "Converge network to the graph",
        "destroy": "Destroy network and subnets",
        "test": "Apply, verify, idempotence check, destroy, recreate, destroy",
        "render": "Print or write the Terraform JSON graph",
    }
    if not argv or argv[0].startswith('-'):
        _action_usage("network", actions)
        return 1 if not argv else 0

    action, rest = argv[0], argv[1:]
    if action in NETWORK_ACTIONS:
        return run_scenario(NETWORK_ACTIONS[action], rest, prog=f'run.sh network {action}')
    if action == "render":
        return render_main(rest)

    print(f"Error: Unknown network action '{action}'")
    print(f"Available actions: {', '.join(actions)}")
    return 1


def dispatch_identity(argv: list) -> int:
    """Dispatch 'identity' noun."""
    actions = {"bootstrap": "Create workload identity pool, OIDC provider and SA binding"}
    if not argv or argv[0].startswith('-'):
        _action_usage("identity", actions)
        return 1 if not argv else 0

    action, rest = argv[0], argv[1:]
    if action in IDENTITY_ACTIONS:
        return run_scenario(IDENTITY_ACTIONS[action], rest, prog=f'run.sh identity {action}')

    print(f"Error: Unknown identity action '{action}'")
    print(f"Available actions: {', '.join(actions)}")
    return 1


def dispatch_scenario(argv: list) -> int:
    """Dispatch 'scenario run <name>' and 'scenario list'."""
    if not argv or argv[0] in ('list', '--help', '-h'):
        print("Available scenarios:")
        for name in list_scenarios():
            print(f"  {name:24} {get_scenario(name).description}")
        if not argv:
            print("\nUsage: ./run.sh scenario run <name> -E <env> [options]")
        return 0

    if argv[0] != 'run':
        print(f"Error: Unknown scenario action '{argv[0]}'")
        print("Available actions: run, list")
        return 1

    if len(argv) < 2 or argv[1].startswith('-'):
        print("Usage: ./run.sh scenario run <name> -E <env> [options]")
        print("\nRun './run.sh scenario list' to list available scenarios.")
        return 1

    name = argv[1]
    if name not in list_scenarios():
        print(f"Error: Unknown scenario '{name}'")
        print(f"Available scenarios: {', '.join(list_scenarios())}")
        return 1

    return run_scenario(name, argv[2:], prog=f'run.sh scenario run {name}')


def render_main(argv: list) -> int:
    """Print the Terraform JSON graph, or write it with -o."""
    parser = argparse.ArgumentParser(prog='run.sh network render',
                                     description='Render the network graph as Terraform JSON')
    parser.add_argument('--env', '-E', required=True, help='Environment (selects the state backend)')
    parser.add_argument('--output', '-o', type=Path, help='Directory to write main.tf.json into')
    args = parser.parse_args(argv)

    try:
        config = load_env_config(args.env)
    except ConfigError as e:
        print(f"Error: {e}")
        return 1

    backend = backend_config(config)
    if args.output:
        path = write_workspace(args.output, backend)
        print(f"Wrote {path}")
    else:
        print(json.dumps(render_terraform(backend), indent=2, sort_keys=True))
    return 0


def _resolve_params(config, from_secrets: bool = False) -> tuple[EnvParams, str]:
    """Load an environment's parameters from the committed file or secrets.

    Raises:
        ConfigError: If neither source is usable
    """
    if not from_secrets and config.params_source != 'secrets' and config.tfvars_path.exists():
        return load_params(config.tfvars_path), str(config.tfvars_path)
    if config.params_source == 'committed' and not from_secrets:
        raise ConfigError(f"Committed parameter file not found: {config.tfvars_path}")
    return params_from_secrets(config.name, os.environ), 'secrets'


def params_main(argv: list) -> int:
    """Dispatch 'params' noun (list/show/validate/materialize)."""
    actions = {
        "list": "List environments and their parameter source",
        "show": "Show an environment's parameters and resulting graph",
        "validate": "Validate parameters (-E <env> or --all)",
        "materialize": "Write a tfvars file from {ENV}_* secrets",
    }
    if not argv or argv[0].startswith('-'):
        _action_usage("params", actions)
        return 1 if not argv else 0

    action, rest = argv[0], argv[1:]
    parser = argparse.ArgumentParser(prog=f'run.sh params {action}', description=actions.get(action))
    if action == 'list':
        pass
    elif action == 'show':
        parser.add_argument('--env', '-E', required=True)
        parser.add_argument('--params-from-secrets', action='store_true')
        parser.add_argument('--json', action='store_true', help='Print the graph as JSON')
    elif action == 'validate':
        target = parser.add_mutually_exclusive_group(required=True)
        target.add_argument('--env', '-E')
        target.add_argument('--all', action='store_true', help='Validate every environment')
        parser.add_argument('--params-from-secrets', action='store_true')
    elif action == 'materialize':
        parser.add_argument('--env', '-E', required=True)
        parser.add_argument('--output', '-o', type=Path,
                            help='Output path (default: site-config/envs/<env>.tfvars)')
        parser.add_argument('--force', action='store_true', help='Overwrite an existing file')
    else:
        print(f"Error: Unknown params action '{action}'")
        print(f"Available actions: {', '.join(actions)}")
        return 1
    args = parser.parse_args(rest)

    try:
        if action == 'list':
            return _params_list()
        if action == 'show':
            return _params_show(args)
        if action == 'validate':
            return _params_validate(args)
        return _params_materialize(args)
    except ConfigError as e:
        print(f"Error: {e}")
        return 1


def _params_list() -> int:
    envs = list_envs()
    if not envs:
        print("No environments configured")
        return 0
    print("Environments:")
    for name in envs:
        config = load_env_config(name)
        if config.params_source != 'secrets' and config.tfvars_path.exists():
            source = f"committed ({config.tfvars_path.name})"
        else:
            source = f"secrets ({name.upper().replace('-', '_')}_*)"
        print(f"  {name:16} {source}")
    return 0


def _params_show(args) -> int:
    config = load_env_config(args.env)
    params, origin = _resolve_params(config, args.params_from_secrets)
    graph = build_graph(params)

    if args.json:
        print(json.dumps({'source': origin, 'params': params.to_mapping(), 'graph': graph.to_dict()}, indent=2))
        return 0

    print(f"# {config.name} ({origin})")
    print(format_tfvars(params.to_mapping()))
    print(f"Network: {graph.network.name} (project {graph.network.project}, custom mode)")
    for subnet in graph.subnets:
        print(f"  {subnet.name:18} {subnet.cidr:18} {subnet.region}")
    return 0


def _params_validate(args) -> int:
    envs = list_envs() if args.all else [args.env]
    if not envs:
        print("No environments configured")
        return 1

    failed = False
    loaded = {}
    for name in envs:
        try:
            config = load_env_config(name)
            params, origin = _resolve_params(config, args.params_from_secrets)
        except ConfigError as e:
            print(f"✗ {name}: {e}")
            failed = True
            continue
        errors = validate_params(params, check_overlap=config.cidr_overlap_check)
        if errors:
            failed = True
            print(f"✗ {name} ({origin}):")
            for error in errors:
                print(f"    {error}")
        else:
            loaded[name] = params
            print(f"✓ {name} ({origin})")

    for warning in cross_env_overlaps(loaded):
        print(f"! {warning}")

    return 1 if failed else 0


def _params_materialize(args) -> int:
    config = load_env_config(args.env)
    output = args.output or config.tfvars_path
    if output.exists() and not args.force:
        print(f"Error: {output} already exists (use --force to overwrite)")
        return 1

    params = params_from_secrets(config.name, os.environ)
    output.parent.mkdir(parents=True, exist_ok=True)
    write_tfvars(params, output)
    print(f"Wrote {output}")
    return 0


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler.

    Args:
        noun: The noun command (e.g., "network", "params")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if noun == "network":
        return dispatch_network(argv)
    if noun == "params":
        return params_main(argv)
    if noun == "identity":
        return dispatch_identity(argv)
    if noun == "scenario":
        return dispatch_scenario(argv)

    print(f"Error: Noun '{noun}' not yet implemented")
    return 1


def main():
    """CLI entry point: dispatch to noun-action handlers."""
    if len(sys.argv) == 1:
        print_usage()
        return 0

    first_arg = sys.argv[1]
    if first_arg in ('--version', '-V'):
        print(f"vpc-driver {get_version()}")
        return 0
    if first_arg in ('--help', '-h'):
        print_usage()
        return 0
    if first_arg in NOUN_COMMANDS:
        return dispatch_noun(first_arg, sys.argv[2:])

    print(f"Error: Unknown command '{first_arg}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
