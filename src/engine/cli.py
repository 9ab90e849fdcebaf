"""CLI handlers for the reconciliation verbs.

Usage:
    shipyard-driver apply -b <blueprint> [--dry-run] [--json-output] [--verbose]
    shipyard-driver destroy [--dry-run] [--yes] [--json-output]
    shipyard-driver plan -b <blueprint> [--json-output]
    shipyard-driver list [--json-output]
    shipyard-driver status [--json-output]
    shipyard-driver validate -b <blueprint> [--verbose]
"""

import argparse
import json
import logging
import signal
import sys
from contextlib import contextmanager
from pathlib import Path

from blueprint import load_blueprint
from config import ConfigError, load_config
from engine.errors import DriverError
from engine.graph import ResourceGraph
from engine.scheduler import RunResult, Scheduler
from engine.state import Plan

logger = logging.getLogger(__name__)


def _common_parser(verb: str, blueprint: bool = False) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'shipyard-driver {verb}',
        description=f'{verb.capitalize()} resources',
    )
    if blueprint:
        parser.add_argument(
            '--blueprint', '-b',
            required=True,
            type=Path,
            help='Path to blueprint file (YAML or JSON)',
        )
    parser.add_argument(
        '--config', '-c',
        type=Path,
        help='Path to driver config (default: $SHIPYARD_HOME/config.yaml)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    return parser


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _load_scheduler(args) -> Scheduler:
    """Load driver config and wire a scheduler.

    Raises:
        SystemExit: On config or provider plugin errors
    """
    try:
        config = load_config(args.config)
        return Scheduler.from_config(config)
    except ConfigError as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)
    except (ImportError, AttributeError, TypeError, ValueError) as e:
        print(f"Error loading provider: {e}", file=sys.stderr)
        sys.exit(1)


def _load_declarations(args) -> list:
    """Load resource declarations from --blueprint.

    Raises:
        SystemExit: On unreadable or malformed blueprints
    """
    try:
        return load_blueprint(args.blueprint)
    except (ConfigError, DriverError) as e:
        print(f"Error loading blueprint: {e}", file=sys.stderr)
        sys.exit(1)


@contextmanager
def _cancel_on_interrupt(scheduler: Scheduler):
    """Turn the first SIGINT into a scheduler cancellation.

    A second SIGINT falls through to the default handler.
    """
    previous = signal.getsignal(signal.SIGINT)

    def _handler(signum, frame):
        scheduler.cancel()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _emit_json(verb: str, data: dict) -> None:
    """Emit structured JSON output."""
    print(json.dumps({'verb': verb, **data}, indent=2))


def _plan_to_dict(plan: Plan) -> dict:
    return {
        'to_create': [r.reference for r in plan.to_create],
        'to_update': [r.reference for r in plan.to_update],
        'to_destroy': [r.reference for r in plan.to_destroy],
        'unchanged': [r.reference for r in plan.unchanged],
    }


def _preview_plan(title: str, plan: Plan, graph: ResourceGraph) -> None:
    """Preview planned operations."""
    print("")
    print("=" * 65)
    print(f"  {title}")
    print(f"  {plan.summary()}")
    print("=" * 65)
    print("")
    for resource in plan.to_destroy:
        print(f"  - {resource.reference}")
    for marker, resources in (('~', plan.to_update), ('+', plan.to_create)):
        for resource in resources:
            level = graph.get_node(resource.reference).level
            print(f"  {marker} [{level}] {resource.reference}")
    for resource in plan.unchanged:
        suffix = " (disabled)" if resource.disabled else ""
        print(f"    {resource.reference}{suffix}")
    print("")


def _preview_destroy(graph: ResourceGraph) -> None:
    """Preview destroy operations."""
    print("")
    print("=" * 65)
    print(f"  DRY-RUN DESTROY: {len(graph)} resources")
    print("=" * 65)
    print("")
    for node in graph.destroy_order():
        print(f"  [{node.level}] {node.reference}: destroy")
    print("")


def _report(verb: str, result: RunResult, json_output: bool) -> int:
    if json_output:
        _emit_json(verb, result.to_dict())
    elif not result.success:
        print(str(result.error), file=sys.stderr)
    return 0 if result.success else 1


def apply_main(argv: list) -> int:
    """Handle 'apply' verb."""
    parser = _common_parser('apply', blueprint=True)
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview operations without executing',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    scheduler = _load_scheduler(args)
    declarations = _load_declarations(args)

    try:
        if args.dry_run:
            graph = scheduler.validate(declarations)
            plan = scheduler.plan(declarations)
            if args.json_output:
                _emit_json('apply', {'dry_run': True, **_plan_to_dict(plan)})
            else:
                _preview_plan(f"DRY-RUN APPLY: {args.blueprint}", plan, graph)
            return 0

        logger.info(f"Applying blueprint {args.blueprint}")
        with _cancel_on_interrupt(scheduler):
            result = scheduler.apply(declarations)
    except DriverError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return _report('apply', result, args.json_output)


def destroy_main(argv: list) -> int:
    """Handle 'destroy' verb."""
    parser = _common_parser('destroy')
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview operations without executing',
    )
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    scheduler = _load_scheduler(args)

    if args.dry_run:
        try:
            _preview_destroy(scheduler.store.load())
        except DriverError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        return 0

    # Confirmation for destructive operation
    if not args.yes:
        print(f"\nWARNING: This will destroy every resource in {scheduler.store.path}.")
        print("This action cannot be undone.")
        response = input("Continue? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return 1

    logger.info(f"Destroying resources from {scheduler.store.path}")
    try:
        with _cancel_on_interrupt(scheduler):
            result = scheduler.destroy()
    except DriverError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return _report('destroy', result, args.json_output)


def plan_main(argv: list) -> int:
    """Handle 'plan' verb."""
    parser = _common_parser('plan', blueprint=True)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    scheduler = _load_scheduler(args)
    declarations = _load_declarations(args)

    try:
        graph = scheduler.validate(declarations)
        plan = scheduler.plan(declarations)
    except DriverError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json_output:
        _emit_json('plan', _plan_to_dict(plan))
    else:
        _preview_plan(f"PLAN: {args.blueprint}", plan, graph)
    return 0


def list_main(argv: list) -> int:
    """Handle 'list' verb: addressable handles of the current environment."""
    parser = _common_parser('list')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    scheduler = _load_scheduler(args)
    try:
        scheduler.store.load()
    except DriverError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    handles = scheduler.store.list_addressable()

    if args.json_output:
        _emit_json('list', {'handles': handles})
    else:
        for handle in handles:
            print(handle)
    return 0


def status_main(argv: list) -> int:
    """Handle 'status' verb: probe live status of persisted resources."""
    parser = _common_parser('status')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    scheduler = _load_scheduler(args)
    try:
        statuses = scheduler.probe()
    except DriverError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.json_output:
        _emit_json('status', {'resources': {h: s.value for h, s in statuses.items()}})
    elif not statuses:
        print("No resources in state")
    else:
        width = max(len(h) for h in statuses)
        for handle, status in statuses.items():
            print(f"  {handle:<{width}}  {status}")
    return 0


def validate_main(argv: list) -> int:
    """Handle 'validate' verb.

    Builds the dependency graph without touching state or providers:
    names, types, references, cycles and provider availability.
    """
    parser = _common_parser('validate', blueprint=True)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    scheduler = _load_scheduler(args)
    declarations = _load_declarations(args)

    try:
        graph = scheduler.validate(declarations)
    except DriverError as e:
        print(f"Blueprint {args.blueprint} is invalid:", file=sys.stderr)
        print(f"  ✗ {e}", file=sys.stderr)
        return 1

    for level, nodes in enumerate(graph.levels()):
        logger.debug(f"Level {level}: {', '.join(n.reference for n in nodes)}")

    count = len(graph)
    levels = graph.max_level + 1 if count else 0
    print(f"Blueprint {args.blueprint} is valid "
          f"({count} resource{'s' if count != 1 else ''} in {levels} level{'s' if levels != 1 else ''})")
    return 0
