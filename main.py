#!/usr/bin/env python3
"""Valheim Mod Sync entry point."""

import argparse
import faulthandler
import logging
import sys
import traceback
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

from errors import ConfigError
from mod_sync import ModSync, check_environment, log_section
from sync_settings import APP_VERSION, load_settings

LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(message)s"


def setup_logging(log_file: Path, clear: bool = False) -> logging.Logger:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    if clear:
        log_file.write_text(
            f"Log file cleared at {datetime.now():%Y-%m-%d %H:%M:%S}\n", encoding="utf-8"
        )

    handler = RotatingFileHandler(
        log_file,
        maxBytes=1 * 1024 * 1024,  # 1 MB
        backupCount=2,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter(LOG_FORMAT))

    logger = logging.getLogger()
    logger.setLevel(logging.INFO)
    logger.addHandler(handler)
    logger.addHandler(console)
    return logger


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

    sys.excepthook = handle_exception

    # C-level crashes: faulthandler writes to a separate file because it
    # can't use Python logging machinery after a crash
    crash_file = log_dir / "crash.log"
    faulthandler.enable(open(crash_file, "w"), all_threads=True)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Sync Valheim server mods with mods.json and Thunderstore"
    )
    parser.add_argument("--config", help="JSON settings file (a .local.json sibling overrides it)")
    parser.add_argument("--manifest", dest="manifest_path")
    parser.add_argument("--installation-root", dest="installation_root")
    parser.add_argument("--plugins-dir", dest="plugins_dir")
    parser.add_argument("--backup-dir", dest="backup_dir")
    parser.add_argument("--registry-url", dest="registry_base_url")
    parser.add_argument("--api-delay", dest="api_delay_seconds", type=float)
    parser.add_argument("--download-delay", dest="download_delay_seconds", type=float)
    parser.add_argument("--log-file", dest="log_file")
    parser.add_argument(
        "--recheck-deprecated",
        action="store_const",
        const=True,
        default=None,
        help="Query the registry for mods already marked deprecated",
    )
    parser.add_argument(
        "-c", "--clear-logs", action="store_true", help="Clear the log file before starting"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    return parser.parse_args(argv)


SETTING_FLAGS = (
    "manifest_path",
    "installation_root",
    "plugins_dir",
    "backup_dir",
    "registry_base_url",
    "api_delay_seconds",
    "download_delay_seconds",
    "log_file",
    "recheck_deprecated",
)


def main(argv: list[str] | None = None, crash_handler: bool = True) -> int:
    args = parse_args(argv)
    overrides = {key: getattr(args, key) for key in SETTING_FLAGS}

    try:
        settings = load_settings(args.config, overrides)
    except ConfigError as exc:
        # Logging is not configured yet without a valid log_file
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    try:
        logger = setup_logging(settings.log_file, clear=args.clear_logs)
    except OSError as exc:
        print(f"ERROR: Could not open log file {settings.log_file}: {exc}", file=sys.stderr)
        return 1
    if crash_handler:
        install_crash_handler(logger, settings.log_file.parent)

    log_section(f"Valheim Mod Sync {APP_VERSION} started")
    logger.info("Installation root: %s", settings.installation_root)
    logger.info("Manifest: %s", settings.manifest_path)

    try:
        check_environment(settings)
        report = ModSync(settings).run()
    except ConfigError as exc:
        logger.error("ERROR: %s", exc)
        logger.error("ERROR: Mods installation failed")
        return 1

    if report.failures:
        logger.warning("Mods ready, %d mod(s) could not be synced", len(report.failures))
    else:
        logger.info("Mods ready")
    log_section("Script Completed Successfully")
    return 0


if __name__ == "__main__":
    sys.exit(main())
