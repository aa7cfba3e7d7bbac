"""
Command-line interface for the ReportMate agent.

This module provides the CLI entry point: it parses arguments, sets up the
logging context, converts termination signals into SystemExit so helper
processes are torn down, and runs one collection, diagnostic or
configuration command.
"""

import argparse
import logging
import signal
import sys
from typing import List, Optional

from ..api import TransmissionClient
from ..collection import CollectionOrchestrator, RunOptions
from ..config import ConfigurationManager, describe_snapshot
from ..config.defaults import client_version
from ..models.config import ConfigSource
from ..osquery import QueryEngine
from ..system.identity import derive_device_id, get_host_facts, get_serial_number, has_required_privileges
from ..validation import (
    ConfigurationError,
    FatalConfigurationError,
    QueryExecutionError,
    ValidationError,
    handle_cli_error,
    handle_subprocess_error,
)
from .console import LoggingContext, print_outcome, print_section

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reportmate",
        description="Collect device inventory with osquery and send it to the ReportMate API.",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Increase verbosity (-v warnings, -vv info, -vvv debug)")
    parser.add_argument("--force", action="store_true",
                        help="Collect even if the last collection is within the interval")

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--collect-only", action="store_true", help="Collect and cache, do not transmit")
    mode.add_argument("--transmit-only", action="store_true", help="Transmit cached data without collecting")

    modules = parser.add_mutually_exclusive_group()
    modules.add_argument("--run-module", type=str, help="Run a single module")
    modules.add_argument("--run-modules", type=str, help="Run a comma-separated list of modules")

    parser.add_argument("--device-id", type=str, help="Override the device identifier")
    parser.add_argument("--api-url", type=str, help="Override the API URL")
    parser.add_argument("--api-key", type=str, help="API key written by --configure")

    command = parser.add_mutually_exclusive_group()
    command.add_argument("--test", action="store_true", help="Check osquery and API connectivity, then exit")
    command.add_argument("--info", action="store_true", help="Show system and configuration information, then exit")
    command.add_argument("--configure", action="store_true",
                         help="Write --api-url (and --api-key, --device-id) to the system configuration")
    return parser


def _raise_system_exit(signum, frame) -> None:
    raise SystemExit(128 + signum)


def create_orchestrator(manager: ConfigurationManager) -> CollectionOrchestrator:
    return CollectionOrchestrator(manager)


def run_collection(manager: ConfigurationManager, args: argparse.Namespace) -> int:
    if not has_required_privileges():
        raise FatalConfigurationError("ReportMate must run as root to read device data and write the cache")

    modules: Optional[List[str]] = None
    if args.run_module:
        modules = [args.run_module]
    elif args.run_modules:
        modules = args.run_modules.split(",")

    options = RunOptions(
        force=args.force,
        collect_only=args.collect_only,
        transmit_only=args.transmit_only,
        modules=modules,
        device_id=args.device_id,
        api_url=args.api_url,
    )
    outcome = create_orchestrator(manager).run(options)
    print_outcome(outcome)
    return outcome.exit_code


def run_test_mode(manager: ConfigurationManager, args: argparse.Namespace) -> int:
    """osquery and API health diagnostics."""
    if args.api_url:
        manager.set_override("ApiUrl", args.api_url)
    snapshot = manager.snapshot
    healthy = True

    with QueryEngine(snapshot) as engine:
        try:
            version = engine.get_version()
        except QueryExecutionError as e:
            handle_subprocess_error(e, f"{snapshot.osquery_path} --version", reraise=False, logger=logger)
            version = "unavailable"
            healthy = False

    api_status = "not configured"
    if snapshot.api_url:
        with TransmissionClient(snapshot) as client:
            api_ok = client.check_health()
        api_status = "reachable" if api_ok else "unreachable"
        healthy = healthy and api_ok
    else:
        healthy = False

    print_section("DIAGNOSTICS", {
        "osquery": f"{snapshot.osquery_path} ({version})",
        "API URL": snapshot.api_url or "NONE",
        "API health": api_status,
        "Configuration source": manager.configuration_source("ApiUrl").name.lower(),
    })
    print(f"{'SUCCESS' if healthy else 'FAILED'}: diagnostics {'passed' if healthy else 'found problems'}")
    return 0 if healthy else 1


def run_info_mode(manager: ConfigurationManager) -> int:
    snapshot = manager.snapshot
    serial = get_serial_number()
    facts = get_host_facts()
    print_section("SYSTEM", {
        "Client version": client_version(),
        "Serial number": serial,
        "Device ID": snapshot.device_id or derive_device_id(serial),
        **facts,
    })
    print_section("CONFIGURATION SOURCES", {
        "Precedence": "defaults < user file < system file < managed profile < environment < overrides",
        "API URL from": manager.configuration_source("ApiUrl").name.lower(),
        **{source: ", ".join(sorted(values)) for source, values in manager.source_values().items()},
    })
    print_section("EFFECTIVE CONFIGURATION", describe_snapshot(snapshot))
    return 0


def run_configure(manager: ConfigurationManager, args: argparse.Namespace) -> int:
    if not args.api_url:
        raise ValidationError("--configure requires --api-url", field_name="--api-url")
    if not has_required_privileges():
        raise FatalConfigurationError("Writing the system configuration requires root")
    path = manager.set_system_configuration(args.api_url, api_key=args.api_key, device_id=args.device_id)
    print(f"SUCCESS: configuration written to {path}")
    return 0


def main_cli(argv: Optional[List[str]] = None) -> None:
    """
    Main command-line entry point.

    Raises:
        SystemExit: Always, with the run's exit code (non-zero on failure)
    """
    args = build_parser().parse_args(argv)
    context = LoggingContext(args.verbose)
    previous_handlers = {
        sig: signal.signal(sig, _raise_system_exit) for sig in (signal.SIGTERM, signal.SIGINT)
    }
    exit_code = 1
    try:
        manager = ConfigurationManager()
        if manager.configuration_source("LogLevel") is not ConfigSource.DEFAULTS:
            context.set_log_level(manager.snapshot.log_level)
        logger.info(f"ReportMate {client_version()} starting (verbosity: {context.description})")

        if args.info:
            exit_code = run_info_mode(manager)
        elif args.test:
            exit_code = run_test_mode(manager, args)
        elif args.configure:
            exit_code = run_configure(manager, args)
        else:
            exit_code = run_collection(manager, args)
    except FatalConfigurationError as e:
        print(f"FAILED: {e}")
        handle_cli_error(e, "startup", exit_code=1, logger=logger)
    except (ValidationError, ConfigurationError) as e:
        print(f"FAILED: {e}")
        handle_cli_error(e, "argument validation", exit_code=2, logger=logger)
    finally:
        for sig, handler in previous_handlers.items():
            signal.signal(sig, handler)
        context.close()
    sys.exit(exit_code)


if __name__ == "__main__":
    main_cli()
