#!/usr/bin/env python3
"""datmerge - Entry Point"""

from __future__ import annotations

import argparse
import faulthandler
import logging
import os
import sys
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path

from mod_manager import ModManager


def setup_logging(log_dir: str | Path | None = None) -> tuple[logging.Logger, Path]:
    if log_dir is None:
        log_dir = Path(os.environ.get("APPDATA", Path.home())) / "datmerge"
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "datmerge.log"

    handler = RotatingFileHandler(
        log_file,
        maxBytes=1 * 1024 * 1024,  # 1 MB
        backupCount=2,
        encoding="utf-8",
    )
    handler.setFormatter(
        logging.Formatter("%(asctime)s  %(levelname)-8s  %(name)s  %(message)s")
    )

    # Engine modules log under their own names; collect them all in one file
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    logger = logging.getLogger("datmerge")
    return logger, log_dir


def install_crash_handler(logger: logging.Logger, log_dir: Path):
    # Python-level unhandled exceptions
    def handle_exception(exc_type, exc_value, exc_tb):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)
            return
        logger.critical(
            "Unhandled exception:\n%s",
            "".join(traceback.format_exception(exc_type, exc_value, exc_tb)),
        )
        sys.__excepthook__(exc_type, exc_value, exc_tb)

    sys.excepthook = handle_exception

    # C-level crashes: faulthandler cannot go through logging after a crash
    crash_file = log_dir / "crash.log"
    faulthandler.enable(open(crash_file, "w"), all_threads=True)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="datmerge", description="Merge mods into game data containers"
    )
    parser.add_argument(
        "--game-dir",
        default=os.environ.get("DATMERGE_GAME_DIR"),
        help="install root (default: $DATMERGE_GAME_DIR)",
    )
    parser.add_argument("--scratch-dir", help="working directory for extraction")
    parser.add_argument("--log-dir", help="directory for datmerge.log")

    sub = parser.add_subparsers(dest="command", required=True)

    setup = sub.add_parser("setup", help="record the baseline of a fresh install root")
    setup.add_argument("--migrate", action="store_true",
                       help="fold patch-tier system files into the base tier")
    setup.add_argument("--force", action="store_true", help="rebuild an existing manifest")

    sub.add_parser("list", help="list installed mods")
    sub.add_parser("check", help="report missing containers or configuration")

    install = sub.add_parser("install", help="install a mod bundle")
    install.add_argument("bundle")
    install.add_argument("--allow-conflicts", action="store_true",
                         help="install even if another mod owns the same files")

    uninstall = sub.add_parser("uninstall", help="remove an installed mod")
    uninstall.add_argument("name")

    sub.add_parser("reconcile", help="resynchronize the manifest with the containers")

    migrate = sub.add_parser("migrate", help="move patch-tier system files to the base tier")
    migrate.add_argument("paths", nargs="*", help="logical paths or hash names (default: all)")

    provenance = sub.add_parser("provenance", help="show who owns a logical path")
    provenance.add_argument("path")

    args = parser.parse_args(argv)
    if not args.game_dir:
        parser.error("--game-dir is required (or set DATMERGE_GAME_DIR)")
    return args


def _list_mods(manager: ModManager) -> tuple[bool, str]:
    mods = manager.installed()
    if not mods:
        return True, "No mods installed"
    for mod in mods:
        version = f" {mod.version}" if mod.version else ""
        author = f" by {mod.author}" if mod.author else ""
        manager.log(
            f"{mod.name}{version}{author}: {len(mod.entries)} file(s), "
            f"{len(mod.nested_entries)} nested file(s)"
        )
    return True, f"{len(mods)} mod(s) installed"


def _check(manager: ModManager) -> tuple[bool, str]:
    issues = manager.validate_paths()
    for issue in issues:
        manager.log(f"  {issue}")
    return not issues, "OK" if not issues else f"{len(issues)} issue(s) found"


def _provenance(manager: ModManager, path: str) -> tuple[bool, str]:
    if not manager.is_configured():
        return False, "Not configured; run setup first"
    provenance = manager.provenance_of(path)
    if provenance is None:
        return False, f"{path}: not tracked"
    return True, f"{path}: {provenance.value}"


def run(args: argparse.Namespace, log_callback=None) -> int:
    manager = ModManager(args.game_dir, scratch_dir=args.scratch_dir, log_callback=log_callback)

    if args.command == "setup":
        ok, msg = manager.setup(migrate=args.migrate, force=args.force)
    elif args.command == "list":
        ok, msg = _list_mods(manager)
    elif args.command == "check":
        ok, msg = _check(manager)
    elif args.command == "install":
        ok, msg = manager.install_mod(args.bundle, allow_conflicts=args.allow_conflicts)
    elif args.command == "uninstall":
        ok, msg = manager.uninstall_mod(args.name)
    elif args.command == "reconcile":
        ok, msg = manager.reconcile()
    elif args.command == "migrate":
        ok, msg = manager.migrate_to_base(args.paths or None)
    elif args.command == "provenance":
        ok, msg = _provenance(manager, args.path)
    else:
        raise ValueError(f"Unknown command: {args.command}")

    manager.log(msg)
    return 0 if ok else 1


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logger, log_dir = setup_logging(args.log_dir)
    install_crash_handler(logger, log_dir)
    logger.info("datmerge %s on %s", args.command, args.game_dir)

    def log_callback(msg: str):
        logger.info(msg)
        print(msg)

    return run(args, log_callback)


if __name__ == "__main__":
    sys.exit(main())
