#!/usr/bin/env python3
"""CLI entry point for deploy-driver.

Noun-style subcommands:
- serve:     Realtime WebSocket server (sessions, rooms, liveness)
- plan:      Generate config from a template, run init + plan
- apply:     Apply the saved plan of a deployment
- destroy:   Destroy a deployment's infrastructure
- drift:     Compare a deployment against real infrastructure
- state:     Show the resources recorded in a deployment's state
- preflight: Check tool, working directories and template source
"""

import argparse
import asyncio
import json
import logging
import sys
from importlib import metadata
from pathlib import Path
from typing import Optional

from common import DRIVER, STDERR, LogLine
from config import ConfigError, DriverConfig, load_config
from orchestrator import DeploymentConfig, JsonFileStore, OrchestratorError
from orchestrator.executor import DeploymentOrchestrator
from resolver import ResolverError, create_template_repository
from server import Broadcaster, RealtimeServer
from tfstate import StateParseError
from tfstate.service import StateService
from validation import format_preflight_results, run_preflight_checks

COMMANDS = {
    "serve": "Run the realtime WebSocket server",
    "plan": "Generate configuration and create a plan",
    "apply": "Apply the saved plan",
    "destroy": "Destroy deployed infrastructure",
    "drift": "Detect drift against real infrastructure",
    "state": "Show resources in state",
    "preflight": "Check tool, directories and template source",
}

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

# Configure logging
logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
logger = logging.getLogger(__name__)


def get_version() -> str:
    try:
        return metadata.version('deploy-driver')
    except metadata.PackageNotFoundError:
        return 'dev'


class ConsoleNotifier:
    """Prints operation output as it streams; used instead of a broadcaster."""

    def __init__(self, quiet: bool = False):
        self.quiet = quiet

    def notify_deployment_update(self, deployment_id: str, status: str, details: Optional[dict] = None) -> int:
        logger.info(f"Deployment {deployment_id} is now {status}")
        return 1

    def send_operation_log(self, operation_id: str, line: LogLine) -> int:
        if self.quiet:
            return 0
        if line.stream == DRIVER:
            print(f"==> {line.text}")
        elif line.stream == STDERR:
            print(line.text, file=sys.stderr)
        else:
            print(line.text)
        return 1

    def send_to_room(self, room, message) -> int:
        return 0


def _common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with options shared by every command."""
    parser = argparse.ArgumentParser(prog=f'deploy-driver {verb}', description=description)
    parser.add_argument(
        '--config', '-c',
        type=Path,
        help='Path to deploy-driver.yaml (default: $DEPLOY_DRIVER_CONFIG or ./deploy-driver.yaml)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs go to stderr)',
    )
    return parser


def _name_parser(verb: str, description: str) -> argparse.ArgumentParser:
    parser = _common_parser(verb, description)
    parser.add_argument('--name', '-n', required=True, help='Deployment name')
    return parser


def _configure_logging(args) -> None:
    if args.json_output:
        # Remove existing handlers and redirect to stderr
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
        root_logger.addHandler(stderr_handler)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def parse_vars(values: Optional[list[str]]) -> dict:
    """Parse repeated KEY=VALUE options; values that are JSON are decoded.

    Raises:
        ValueError: If an item has no '='
    """
    result = {}
    for item in values or []:
        if '=' not in item:
            raise ValueError(f"Invalid variable '{item}', expected KEY=VALUE")
        key, value = item.split('=', 1)
        try:
            result[key] = json.loads(value)
        except json.JSONDecodeError:
            result[key] = value
    return result


def _load(args) -> DriverConfig:
    return load_config(args.config)


def _build_orchestrator(config: DriverConfig, notifier) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(
        config=config,
        templates=create_template_repository(config),
        store=JsonFileStore(config.state_dir),
        notifier=notifier,
    )


def _report_operation(args, op) -> int:
    if args.json_output:
        print(json.dumps(op.to_dict(), indent=2))
    else:
        print(f"\n{op.kind} {op.deployment_id}: {op.status} (operation {op.id})")
    return 0 if op.status == 'success' else 1


def _run_operation(args, request) -> int:
    """Start an operation with request(orchestrator), wait and report."""
    config = _load(args)
    orchestrator = _build_orchestrator(config, ConsoleNotifier(quiet=args.json_output))

    async def run():
        operation_id = await request(orchestrator)
        return await orchestrator.wait(operation_id)

    op = asyncio.run(run())
    return _report_operation(args, op)


def plan_main(argv: list) -> int:
    parser = _name_parser('plan', COMMANDS['plan'])
    parser.add_argument('--template', '-t', required=True, help='Template id')
    parser.add_argument('--environment', '-e', default='dev', help='Environment label (default: dev)')
    parser.add_argument(
        '--var',
        action='append',
        metavar='KEY=VALUE',
        help='Template variable (repeatable): --var instance_type=t3.micro',
    )
    args = parser.parse_args(argv)
    _configure_logging(args)

    request = DeploymentConfig(
        name=args.name,
        template_id=args.template,
        environment=args.environment,
        variables=parse_vars(args.var),
    )
    return _run_operation(args, lambda orchestrator: orchestrator.plan(request))


def apply_main(argv: list) -> int:
    parser = _name_parser('apply', COMMANDS['apply'])
    args = parser.parse_args(argv)
    _configure_logging(args)
    return _run_operation(args, lambda orchestrator: orchestrator.apply(args.name))


def destroy_main(argv: list) -> int:
    parser = _name_parser('destroy', COMMANDS['destroy'])
    parser.add_argument('--yes', '-y', action='store_true', help='Skip confirmation prompt')
    args = parser.parse_args(argv)
    _configure_logging(args)

    if not args.yes:
        print(f"\nWARNING: this destroys all infrastructure of deployment '{args.name}'.")
        response = input("Continue? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return 1
    return _run_operation(args, lambda orchestrator: orchestrator.destroy(args.name))


def drift_main(argv: list) -> int:
    parser = _name_parser('drift', COMMANDS['drift'])
    args = parser.parse_args(argv)
    _configure_logging(args)

    config = _load(args)
    orchestrator = _build_orchestrator(config, ConsoleNotifier(quiet=args.json_output))
    result = asyncio.run(orchestrator.detect_drift(args.name))

    if args.json_output:
        print(json.dumps(result.to_dict(), indent=2))
    elif result.status == 'completed':
        summary = result.summary
        print(f"\nDrift check for {args.name}: {summary.drifted_resources} of "
              f"{summary.total_resources} resources drifted")
        for change in result.changed_resources:
            print(f"  {'/'.join(change.actions):<15} {change.address}")
    else:
        print(f"\nDrift check for {args.name} failed: {result.error}")
    return 0 if result.status == 'completed' else 1


def state_main(argv: list) -> int:
    parser = _name_parser('state', COMMANDS['state'])
    args = parser.parse_args(argv)
    _configure_logging(args)

    config = _load(args)
    state = StateService(config).get_state(args.name)
    if state is None:
        print(f"No state for {args.name} (never applied)")
        return 0

    if args.json_output:
        print(json.dumps({
            'serial': state.serial,
            'terraform_version': state.terraform_version,
            'resources': [
                {'address': r.address, 'provider': r.provider, 'instances': len(r.instances)}
                for r in state.resources
            ],
            'outputs': {k: (None if v.sensitive else v.value) for k, v in state.outputs.items()},
        }, indent=2))
        return 0

    print(f"State of {args.name} (serial {state.serial}, {state.terraform_version}):")
    for resource in state.resources:
        print(f"  {resource.address}")
    for key, output in state.outputs.items():
        print(f"  output {key} = {'<sensitive>' if output.sensitive else output.value}")
    return 0


def serve_main(argv: list) -> int:
    parser = _common_parser('serve', COMMANDS['serve'])
    parser.add_argument('--bind', help='Address to bind to')
    parser.add_argument('--port', '-p', type=int, help='Port to listen on')
    args = parser.parse_args(argv)
    _configure_logging(args)

    config = _load(args)
    if args.bind:
        config.server.bind = args.bind
    if args.port is not None:
        config.server.port = args.port

    broadcaster = Broadcaster(config.server)
    orchestrator = _build_orchestrator(config, broadcaster)
    recovered = orchestrator.recover_interrupted()
    if recovered:
        logger.warning(f"Marked {len(recovered)} interrupted operation(s) as error")

    asyncio.run(RealtimeServer(broadcaster).serve_forever())
    return 0


def preflight_main(argv: list) -> int:
    parser = _common_parser('preflight', COMMANDS['preflight'])
    args = parser.parse_args(argv)
    _configure_logging(args)

    config = _load(args)
    logger.info("Running preflight checks")
    success, results = run_preflight_checks(config)
    if args.json_output:
        print(json.dumps({'success': success, 'results': results}, indent=2))
    else:
        print(format_preflight_results(results))
    return 0 if success else 1


HANDLERS = {
    "serve": serve_main,
    "plan": plan_main,
    "apply": apply_main,
    "destroy": destroy_main,
    "drift": drift_main,
    "state": state_main,
    "preflight": preflight_main,
}


def print_usage():
    """Print top-level usage showing commands."""
    print(f"deploy-driver {get_version()}")
    print()
    print("Usage: deploy-driver <command> [options]")
    print()
    print("Commands:")
    for name, desc in COMMANDS.items():
        print(f"  {name:<12} {desc}")
    print()
    print("Run 'deploy-driver <command> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  deploy-driver plan -n web-1 -t ec2-instance --var instance_type=t3.micro")
    print("  deploy-driver apply -n web-1")
    print("  deploy-driver drift -n web-1")
    print("  deploy-driver serve --port 5000")


def main(argv: Optional[list] = None) -> int:
    """CLI entry point: dispatch to command handlers."""
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        print_usage()
        return 0
    if argv[0] in ('--version', '-V'):
        print(f"deploy-driver {get_version()}")
        return 0
    if argv[0] in ('--help', '-h'):
        print_usage()
        return 0

    command = argv[0]
    handler = HANDLERS.get(command)
    if handler is None:
        print(f"Error: Unknown command '{command}'")
        print_usage()
        return 1

    try:
        return handler(argv[1:])
    except (ConfigError, ResolverError, OrchestratorError, StateParseError, ValueError) as e:
        print(f"Error: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
