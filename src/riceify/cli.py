#!/usr/bin/env python3
"""Riceify command line.

Usage:
    riceify [--config PATH] [-v] save NAME
    riceify [--config PATH] [-v] apply NAME
    riceify [--config PATH] [-v] restore
    riceify [--config PATH] [-v] profiles
    riceify [--config PATH] [-v] cache-status
    riceify [--config PATH] [-v] clear-cache
    riceify [--config PATH] [-v] gc

Exit codes:
    0    success, or nothing to change
    1    rolled back, invalid request or unreadable files
    2    rollback incomplete, manual intervention required
    3    another switch is in progress
    130  interrupted
"""
import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from .config import RiceifySettings, load_settings
from .engine import (
    AuditObserver,
    Busy,
    CancellationToken,
    EngineContext,
    LoggingObserver,
    RiceifyError,
    RollbackIncomplete,
    SwitchEngine,
    SwitchResult,
    SwitchState,
)
from .utils import setup_audit_logging, setup_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ROLLBACK_INCOMPLETE = 2
EXIT_BUSY = 3
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="riceify",
        description="Switch between saved sets of dotfiles",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Capture the files declared for a profile
    riceify save dark-theme

    # Switch to it (a backup of the outgoing files is kept)
    riceify apply dark-theme

    # Undo the last switch
    riceify restore

Environment:
    RICEIFY_CONFIG      Settings file
    RICEIFY_HOME        Data directory (default: ~/.riceify)
    RICEIFY_LOG_LEVEL   Console log level
""",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Settings file (default: searched, see RICEIFY_CONFIG)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    commands = parser.add_subparsers(dest="command", required=True)
    save = commands.add_parser("save", help="Capture a profile from the live files")
    save.add_argument("name", help="Profile name")
    apply = commands.add_parser("apply", help="Make a saved profile live")
    apply.add_argument("name", help="Profile name")
    commands.add_parser("restore", help="Revert the last switch")
    commands.add_parser("profiles", help="List saved profiles")
    commands.add_parser("cache-status", help="Show hash cache statistics")
    commands.add_parser("clear-cache", help="Forget every cached hash")
    commands.add_parser("gc", help="Remove content no saved profile references")
    return parser


def exit_code_for(result: SwitchResult) -> int:
    if result.success:
        return EXIT_OK
    if result.state == SwitchState.FAILED and result.unrestored:
        return EXIT_ROLLBACK_INCOMPLETE
    if result.cancelled:
        return EXIT_INTERRUPTED
    return EXIT_FAILED


def report(result: SwitchResult) -> None:
    if result.success:
        if result.no_change:
            logger.info(f"{result.kind.value} '{result.profile}': nothing to change")
        else:
            logger.info(
                f"{result.kind.value} '{result.profile}' done "
                f"(v{result.version}, {len(result.touched) or len(result.changed)} files)"
            )
        return

    logger.error(f"{result.kind.value} '{result.profile}' ended in {result.state.value}")
    for path, error in sorted(result.errors.items()):
        logger.error(f"  {path}: {error}")
    if result.unrestored:
        logger.critical("Files NOT restored, fix these by hand:")
        for path in result.unrestored:
            logger.critical(f"  {path}")


async def run_switch(engine: SwitchEngine, command: str, name: Optional[str]) -> SwitchResult:
    """Run one transaction; Ctrl-C requests a cooperative cancel."""
    cancel = CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.cancel)
    except (NotImplementedError, RuntimeError):
        # not on the main thread, or no signal support
        pass
    try:
        if command == "save":
            return await engine.save(name, cancel=cancel)
        if command == "apply":
            return await engine.apply(name, cancel=cancel)
        return await engine.restore_previous(cancel=cancel)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def run_command(args: argparse.Namespace, settings: RiceifySettings) -> int:
    engine = SwitchEngine(EngineContext(settings, observers=[LoggingObserver(), AuditObserver()]))
    try:
        if args.command == "profiles":
            active = engine.store.active_profile()
            for name in engine.store.list_profiles():
                marker = "*" if name == active else " "
                versions = engine.store.list_versions(name)
                print(f"{marker} {name} (v{versions[-1]})")
            return EXIT_OK

        if args.command == "cache-status":
            print(json.dumps(engine.cache_status().to_dict(), indent=2))
            return EXIT_OK

        if args.command == "clear-cache":
            count = engine.clear_cache()
            logger.info(f"Cleared {count} cache entries")
            return EXIT_OK

        if args.command == "gc":
            removed = engine.store.garbage_collect()
            print(f"Removed {removed} unreferenced blobs")
            return EXIT_OK

        engine.store.clear_stale_staging()
        result = asyncio.run(run_switch(engine, args.command, getattr(args, "name", None)))
        report(result)
        return exit_code_for(result)
    finally:
        engine.close()


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the riceify CLI."""
    args = build_parser().parse_args(argv)

    setup_logging(level=logging.DEBUG if args.verbose else None)

    try:
        settings = load_settings(args.config)
        setup_audit_logging(str(settings.home))
        return run_command(args, settings)
    except Busy as e:
        logger.error(str(e))
        return EXIT_BUSY
    except RollbackIncomplete as e:
        logger.critical(str(e))
        return EXIT_ROLLBACK_INCOMPLETE
    except RiceifyError as e:
        logger.error(str(e))
        return EXIT_FAILED
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
