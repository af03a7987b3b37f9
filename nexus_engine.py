#!/usr/bin/env python3
"""Nexus lifecycle engine - lead scoring and contact automation.

Single entry point for the scheduler process.

Usage:
    python nexus_engine.py --orchestrator   # Run the scheduler loop (headless)
    python nexus_engine.py --tick           # Run decay + workflow + sequence once
    python nexus_engine.py --status         # Show provider readiness
    python nexus_engine.py --version        # Show version
"""

import argparse
import logging
import sys
from typing import Optional

from nexus import __version__
from nexus.core.config import get_config, validate_config
from nexus.core.logging import get_logger, setup_logging


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the Nexus lifecycle engine.

    Returns:
        Exit code (0 = success, non-zero = error)
    """
    parser = argparse.ArgumentParser(
        description="Nexus lifecycle engine - lead scoring and contact automation"
    )
    parser.add_argument(
        "--orchestrator",
        action="store_true",
        help="Run the background scheduler (headless mode)",
    )
    parser.add_argument(
        "--tick",
        action="store_true",
        help="Run one decay scan, workflow tick and sequence tick, then exit",
    )
    parser.add_argument("--version", action="store_true", help="Show version and exit")
    parser.add_argument(
        "--status",
        action="store_true",
        help="Show service readiness report and exit",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args(argv)

    if args.version:
        print(f"Nexus lifecycle engine v{__version__}")
        return 0

    config = get_config()
    debug = args.debug or config.debug

    # Initialize logging
    setup_logging(
        log_dir=config.log_path,
        console_level=logging.DEBUG if debug else logging.INFO,
        to_file=args.orchestrator,
    )
    logger = get_logger("main")
    logger.info(f"Nexus lifecycle engine v{__version__} starting...")

    # Validate configuration
    issues = validate_config(config)
    for issue in issues:
        if issue.startswith("CRITICAL:"):
            logger.error(f"Configuration: {issue}")
        else:
            logger.warning(f"Configuration issue: {issue}")

    from nexus.core.services import get_service_registry

    registry = get_service_registry()
    registry.log_status()

    # --status: print readiness report and exit
    if args.status:
        report = registry.readiness_report()
        print(f"\nNexus lifecycle engine v{__version__} - Service Readiness\n")
        print(report.summary)
        if issues:
            print(f"\nConfiguration issues ({len(issues)}):")
            for issue in issues:
                print(f"  ! {issue}")
        print()
        return 0

    if not (args.tick or args.orchestrator):
        parser.print_help()
        return 0

    from nexus.core.exceptions import NexusError
    from nexus.runtime import build_runtime

    try:
        runtime = build_runtime(config)
    except NexusError as e:
        logger.error(f"Failed to start engine: {e}")
        return 1

    try:
        if args.tick:
            logger.info("Running one scheduler pass...")
            decay = runtime.decay.run_once()
            workflows = runtime.workflows.tick()
            sequences = runtime.sequences.tick()
            logger.info(
                "Scheduler pass complete",
                extra={
                    "context": {
                        "decayed": decay.decayed,
                        "decay_errors": decay.errors,
                        "workflows_resumed": workflows.resumed,
                        "sequences_resumed": sequences.resumed,
                    }
                },
            )
            return 0

        logger.info("Starting orchestrator (headless)...")
        orchestrator = runtime.build_orchestrator()
        orchestrator.run_headless()
        return 0
    finally:
        runtime.close()
        logger.info("Nexus lifecycle engine shutdown complete")


if __name__ == "__main__":
    sys.exit(main())
