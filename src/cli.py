#!/usr/bin/env python3
"""CLI entry point for shipyard-driver.

Verbs:
- apply: Create or update resources from a blueprint
- destroy: Tear down every resource in state
- plan: Preview what apply would do
- list: Print addressable handles
- status: Probe live status of resources
- validate: Check a blueprint without touching anything
"""

import logging
import sys
from importlib.metadata import PackageNotFoundError, version

VERB_COMMANDS = {
    "apply": "Create or update resources from a blueprint",
    "destroy": "Tear down every resource in state",
    "plan": "Preview what apply would do",
    "list": "Print addressable handles of the environment",
    "status": "Probe live status of resources",
    "validate": "Check a blueprint without touching anything",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def get_version() -> str:
    """Get installed package version."""
    try:
        return version('shipyard-driver')
    except PackageNotFoundError:
        return 'dev'


def print_usage():
    """Print top-level usage showing verbs."""
    print(f"shipyard-driver {get_version()}")
    print()
    print("Usage: shipyard-driver <verb> [options]")
    print()
    print("Commands:")
    for verb, desc in VERB_COMMANDS.items():
        print(f"  {verb:<12} {desc}")
    print()
    print("Run 'shipyard-driver <verb> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  shipyard-driver validate -b blueprint.yaml")
    print("  shipyard-driver apply -b blueprint.yaml")
    print("  shipyard-driver destroy --yes")


def dispatch_verb(verb: str, argv: list) -> int:
    """Dispatch to the verb-specific handler.

    Args:
        verb: The verb (e.g., "apply")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    from engine import cli as engine_cli

    handlers = {
        "apply": engine_cli.apply_main,
        "destroy": engine_cli.destroy_main,
        "plan": engine_cli.plan_main,
        "list": engine_cli.list_main,
        "status": engine_cli.status_main,
        "validate": engine_cli.validate_main,
    }
    rc: int = handlers[verb](argv)
    return rc


def main(argv: list | None = None) -> int:
    """CLI entry point."""
    if argv is None:
        argv = sys.argv[1:]

    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0
    if argv[0] == '--version':
        print(f"shipyard-driver {get_version()}")
        return 0

    verb = argv[0]
    if verb not in VERB_COMMANDS:
        print(f"Error: Unknown command '{verb}'")
        print_usage()
        return 1

    return dispatch_verb(verb, argv[1:])


if __name__ == '__main__':
    sys.exit(main())
