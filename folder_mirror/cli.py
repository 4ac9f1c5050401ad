"""Command line entry point for folder-mirror."""

import argparse
import json
import logging
import sys
from typing import Any

from folder_mirror import create_supervisor
from folder_mirror.config import ConfigError, Settings, set_settings
from folder_mirror.services.log_service import get_log_service
from folder_mirror.services.s3_service import FatalSetupError

logger = logging.getLogger("folder_mirror")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

COMMANDS = ("run", "events")
GLOBAL_OPTIONS = ("--config", "--log-level")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="folder-mirror",
        description="Continuously mirror a local folder into an S3 bucket.",
    )
    parser.add_argument(
        "--config",
        help="JSON settings file, otherwise folder_mirror.json in the current folder is used",
    )
    parser.add_argument("--log-level", default="INFO", help="logging level (default: INFO)")

    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="scan and upload forever (default)")
    _add_run_arguments(run)

    events = sub.add_parser("events", help="print recent sync events")
    events.add_argument("--date", help="only events from this day (YYYY-MM-DD)")
    events.add_argument("--level", help="INFO, WARNING or ERROR")
    events.add_argument("--category", help="app, scan, upload, cycle or ledger")
    events.add_argument("--event", help="only this event name, e.g. file_upload_failed")
    events.add_argument("--limit", type=int, default=50)

    return parser


def _add_run_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--threads", type=int, dest="upload_threads", help="upload threads count")
    parser.add_argument("--source", dest="source_folder", help="source folder to upload")
    parser.add_argument("--bucket", dest="target_bucket", help="target S3 bucket")
    parser.add_argument("--target", dest="target_folder", help="target folder (key prefix) in bucket")
    parser.add_argument(
        "--in-memory",
        dest="in_memory",
        action="store_const",
        const=True,
        help="hold file content in memory between hashing and upload",
    )
    parser.add_argument(
        "--upload-log",
        dest="upload_log",
        help="file that completed uploads (path, hash, size, ...) are appended to",
    )
    parser.add_argument(
        "--skip-uploaded",
        dest="skip_uploaded_log",
        help="previously written upload log used to skip uploaded files; may equal --upload-log",
    )
    parser.add_argument(
        "--folder-ready-marker-file",
        dest="folder_ready_marker_file",
        help="only upload folders containing (or below a folder containing) this file",
    )
    parser.add_argument("--aws-profile", dest="aws_profile")
    parser.add_argument("--aws-region", dest="aws_region")
    parser.add_argument("--endpoint-url", dest="endpoint_url", help="S3-compatible endpoint")
    parser.add_argument(
        "--max-cycles", type=int, help="stop after this many cycles (default: run forever)"
    )


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stdout,
    )


def settings_from_args(args: argparse.Namespace) -> Settings:
    """Load the settings file and apply the command line overrides."""
    settings = Settings(args.config)
    overrides: dict[str, Any] = {
        key: getattr(args, key, None)
        for key in (
            "upload_threads",
            "source_folder",
            "target_bucket",
            "target_folder",
            "in_memory",
            "upload_log",
            "skip_uploaded_log",
            "folder_ready_marker_file",
            "aws_profile",
            "aws_region",
            "endpoint_url",
        )
    }
    settings.override(overrides)
    return settings


def run_command(args: argparse.Namespace) -> int:
    try:
        settings = settings_from_args(args)
        set_settings(settings)
        supervisor = create_supervisor(settings)
    except ConfigError as e:
        logger.error("%s", e)
        return 1

    try:
        supervisor.run(max_cycles=getattr(args, "max_cycles", None))
    except FatalSetupError as e:
        logger.error("Upload failed: %s", e)
        return 1
    return 0


def events_command(args: argparse.Namespace) -> int:
    try:
        set_settings(Settings(args.config))
    except ConfigError as e:
        logger.error("%s", e)
        return 1
    for entry in get_log_service().read_log_entries(
        date=args.date,
        level=args.level,
        category=args.category,
        limit=args.limit,
        event=args.event,
    ):
        print(json.dumps(entry, default=str))
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    argv = _insert_default_command(list(sys.argv[1:] if argv is None else argv))
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        if args.command == "events":
            return events_command(args)
        return run_command(args)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        return 130


def _insert_default_command(argv: list[str]) -> list[str]:
    """Place "run" after the global options unless a command or help is given.

    Global options may be written as "--config FILE" or "--config=FILE".
    """
    i = 0
    while i < len(argv):
        option, has_value, _ = argv[i].partition("=")
        if option not in GLOBAL_OPTIONS:
            break
        i += 1 if has_value else 2
    if i < len(argv) and argv[i] in (*COMMANDS, "-h", "--help"):
        return argv
    return argv[:i] + ["run"] + argv[i:]


if __name__ == "__main__":
    sys.exit(main())
