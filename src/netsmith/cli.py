#!/usr/bin/env python3
"""netsmith operator CLI.

Usage:
    netsmith [--settings FILE] detect
    netsmith [--settings FILE] show {status,interfaces,firewall,dhcp,leases,routes}
    netsmith [--settings FILE] apply [--config FILE] [--dry-run] [--only SUBSYSTEM ...]
    netsmith [--settings FILE] preview [--config FILE]

Environment variables:
    NETSMITH_CONFIG=/etc/netsmith/netsmith.yaml   Settings file
    NETSMITH_LOG_LEVEL=DEBUG                       Console log level
"""
import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

import yaml

from .config.settings import load_settings
from .config_engine.engine import SUBSYSTEMS, Engine
from .config_engine.schema import to_dict
from .errors import NetsmithError
from .store import IntentStore
from .utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

SHOW_TARGETS = ("status", "interfaces", "firewall", "dhcp", "leases", "routes")


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _read_document(path: Path) -> dict[str, Any]:
    with open(path) as f:
        document = yaml.safe_load(f) or {}
    if not isinstance(document, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return document


def cmd_detect(engine: Engine, args: argparse.Namespace) -> int:
    _print_json(to_dict(engine.detect()))
    return 0


def cmd_show(engine: Engine, args: argparse.Namespace) -> int:
    target = args.target
    if target == "status":
        _print_json(engine.status())
    elif target == "interfaces":
        _print_json(to_dict(engine.interfaces.live_state()))
    elif target == "firewall":
        _print_json(to_dict(engine.firewall.live_state()))
    elif target == "dhcp":
        _print_json(to_dict(engine.dhcp.live_state()))
    elif target == "leases":
        _print_json([to_dict(lease) for lease in engine.dhcp.get_leases()])
    elif target == "routes":
        _print_json({
            "status": engine.routing.routing_status(),
            "routes": [to_dict(route) for route in engine.routing.list_routes()],
        })
    return 0


def cmd_apply(engine: Engine, args: argparse.Namespace) -> int:
    if args.config:
        engine.load(_read_document(args.config))

    subsystems = tuple(args.only) if args.only else SUBSYSTEMS
    results = engine.apply(subsystems, dry_run=args.dry_run)

    failed = 0
    for result in results:
        status = "OK" if result.success else "FAIL"
        changed = " (changed)" if result.changed else ""
        logger.info(f"  {result.backend}: {status}{changed}")
        for command in result.commands_executed:
            logger.info(f"    $ {command}")
        for warning in result.warnings:
            logger.warning(f"    {warning}")
        if args.dry_run and result.diff:
            print(result.diff)
        if not result.success:
            failed += 1
            logger.error(f"    Error: {result.error}")
            if result.stderr:
                logger.error(f"    {result.stderr.strip()}")

    return 1 if failed else 0


def cmd_preview(engine: Engine, args: argparse.Namespace) -> int:
    if not args.config:
        print(engine.preview())
        return 0

    document = _read_document(args.config)
    scratch = Engine(engine.settings, executor=engine.executor, store=IntentStore("sqlite://"))
    with scratch:
        scratch.load(document)
        sections = tuple(name for name in ("interfaces", "firewall", "dhcp") if name in document)
        print(scratch.preview(sections))
    return 0


COMMANDS = {
    "detect": cmd_detect,
    "show": cmd_show,
    "apply": cmd_apply,
    "preview": cmd_preview,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="netsmith",
        description="Reconcile interfaces, firewall and DHCP on a Linux router",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Which backends would be used on this host
    netsmith detect

    # Load a declared configuration and show what would change
    netsmith preview --config router.yaml

    # Apply it
    netsmith apply --config router.yaml
""",
    )
    parser.add_argument(
        "--settings",
        type=Path,
        help="netsmith.yaml settings file (default: search path)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("detect", help="Show the detected backends")

    show = sub.add_parser("show", help="Show live state")
    show.add_argument("target", choices=SHOW_TARGETS)

    apply = sub.add_parser("apply", help="Apply stored intent to the host")
    apply.add_argument("--config", type=Path, help="Load this configuration document first")
    apply.add_argument("--dry-run", action="store_true", help="Diff only, write nothing")
    apply.add_argument("--only", nargs="+", choices=SUBSYSTEMS, help="Subsystems to apply")

    preview = sub.add_parser("preview", help="Diff intent against live state")
    preview.add_argument("--config", type=Path, help="Preview this document instead of stored intent")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the netsmith CLI."""
    args = build_parser().parse_args(argv)

    setup_logging(console_level=logging.DEBUG if args.verbose else None)

    try:
        settings = load_settings(args.settings)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        logger.error(f"Failed to load settings: {e}")
        return 2

    try:
        with Engine(settings) as engine:
            return COMMANDS[args.command](engine, args)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    except (NetsmithError, OSError, ValueError, yaml.YAMLError) as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
