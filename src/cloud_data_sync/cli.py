"""
Command line entry point for bucket synchronization.

Usage:
    cloud-data-sync generate-config --config config.yaml
    cloud-data-sync run --config config.yaml --once
    cloud-data-sync run --config config.yaml --interval 600
    cloud-data-sync status --config config.yaml
"""

import argparse
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

from .config import BackendRegistry, ConfigManager
from .driver import SyncDriver
from .engine import MappingResult, SyncEngine
from .exceptions import CloudSyncError
from .metadata_store import MetadataStore
from .utils.logging import get_logger, setup_logging

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("config.yaml")


def print_results(results: List[MappingResult]) -> None:
    """Print per-mapping sync results."""
    print("\nSync Results:")
    for result in results:
        counts = result.counts
        print(f"  {result.mapping_key}: {result.status.value}")
        print(
            f"    Synced: {counts.synced}  Skipped: {counts.skipped}  "
            f"Errors: {counts.errors}"
        )
        print(
            f"    Removed: {counts.removed}  Delete errors: {counts.delete_errors}  "
            f"Pruned: {counts.pruned}"
        )
        if result.error_message:
            print(f"    Error: {result.error_message}")


def install_signal_handlers(cancel_event: threading.Event) -> None:
    """Set the cancellation event on SIGINT/SIGTERM."""
    def handler(signum, frame):
        logger.info(f"Received signal {signal.Signals(signum).name}, shutting down...")
        cancel_event.set()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def run_sync_loop(
    driver: SyncDriver,
    mappings,
    interval_seconds: Optional[float],
    cancel_event: threading.Event,
) -> bool:
    """
    Run synchronization once, or repeatedly until cancelled.

    Args:
        driver: Configured SyncDriver
        mappings: Mappings to synchronize
        interval_seconds: Delay between runs; None runs once
        cancel_event: Cancellation signal, also wakes the interval wait

    Returns:
        True if every mapping of the last run succeeded
    """
    while True:
        results = driver.sync_all(mappings, cancel_event=cancel_event)
        print_results(results)
        succeeded = len(results) == len(mappings) and all(r.succeeded for r in results)

        if interval_seconds is None or cancel_event.is_set():
            return succeeded

        logger.info(f"Next synchronization in {interval_seconds} seconds")
        if cancel_event.wait(interval_seconds):
            logger.info("Shutdown requested, stopping periodic synchronization")
            return succeeded


def generate_config_command(args) -> int:
    """Execute generate-config command."""
    try:
        ConfigManager.save_default_config(args.config)
    except OSError as e:
        logger.error(f"Failed to generate configuration: {e}")
        return 1

    print(f"Default configuration written to {args.config}")
    return 0


def run_command(args) -> int:
    """Execute run command."""
    try:
        config = ConfigManager.load(args.config)
    except (OSError, CloudSyncError) as e:
        logger.error(f"Failed to load configuration: {e}")
        return 1

    interval = None
    if not args.once:
        interval = args.interval if args.interval is not None else config.sync.interval_seconds
        if interval <= 0:
            logger.error(f"Interval must be positive, got {interval}")
            return 1

    try:
        store = MetadataStore.open(config.database_path)
    except (OSError, CloudSyncError) as e:
        logger.error(f"Failed to open metadata store: {e}")
        return 1

    cancel_event = threading.Event()
    install_signal_handlers(cancel_event)

    try:
        try:
            backends = BackendRegistry.from_config(config)
        except Exception as e:
            logger.error(f"Failed to initialize storage providers: {e}")
            return 1

        try:
            engine = SyncEngine(
                store,
                max_workers=config.sync.max_workers,
                strict_target_listing=config.sync.strict_target_listing,
            )
            driver = SyncDriver(store, backends, engine)
            succeeded = run_sync_loop(driver, config.mappings, interval, cancel_event)
        finally:
            backends.close_all()
    finally:
        store.close()

    return 0 if succeeded else 1


def status_command(args) -> int:
    """Execute status command."""
    try:
        config = ConfigManager.load(args.config)
        with MetadataStore.open(config.database_path) as store:
            counts = store.count_by_status()
    except (OSError, CloudSyncError) as e:
        logger.error(f"Failed to get status: {e}")
        return 1

    print("\nSync Status:")
    for mapping in config.mappings:
        by_status = counts.get(mapping.key, {})
        total = sum(by_status.values())
        print(f"  {mapping.key}: {total} objects")
        for status, count in sorted(by_status.items()):
            print(f"    {status}: {count}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cloud-data-sync",
        description="One-way incremental synchronization between storage buckets",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_PATH})",
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Also write logs to this file",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command")

    generate = subparsers.add_parser("generate-config", help="Write a default configuration file")
    generate.set_defaults(func=generate_config_command)

    run = subparsers.add_parser("run", help="Synchronize all configured mappings")
    run.add_argument("--once", action="store_true", help="Run a single synchronization and exit")
    run.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Seconds between synchronizations (default: sync.interval_seconds or 300)",
    )
    run.set_defaults(func=run_command)

    status = subparsers.add_parser("status", help="Show stored sync record counts")
    status.set_defaults(func=status_command)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(log_file=args.log_file, verbose=args.verbose)

    if not args.command:
        parser.print_help()
        return 1

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
