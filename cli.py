#!/usr/bin/env python3
# cli.py
"""
TidyRun - Command-Line Interface
================================
This script provides a command-line interface to the TidyRun engine.
It uses an action-based command structure to clearly define the desired
operation. Folder locations are read from `config.json`; flags override the
per-run options.

--------------------
COMMANDS
--------------------
  organize   Sort a folder into category folders, or regroup a series folder.
  undo       Reverse the last real run (or the run given with --run-id).
  logs       Show the most recent operation log records.
  dirs       Show the well-known folders ('downloads', 'videos', ...).

Type `python cli.py [command] --help` for more information on a specific command.
"""

import argparse
import json
import os
import sys
import logging
from pathlib import Path

from tidyrun import (APP_NAME, Config, OrganizeOptions, UndoOptions, TidyRunError, __version__, app_data_dir,
                     home_dir, list_default_directories, organize, read_logs, setup_logging, undo_last_run)

def get_config_path() -> Path:
    # Portable mode: a config.json next to the script wins.
    portable_path = Path(__file__).resolve().parent / "config.json"
    if portable_path.exists(): return portable_path
    return app_data_dir(home_dir()) / "config.json"

def resolve_target(raw: str) -> Path:
    """'downloads', 'videos', ... map to the well-known folders; anything else is a path."""
    defaults = list_default_directories()
    key = raw.strip().lower()
    if key in defaults: return defaults[key]
    return Path(os.path.abspath(os.path.expanduser(raw.strip())))

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=f"{APP_NAME} Folder Organizer", formatter_class=argparse.RawTextHelpFormatter)
    parser.add_argument("--config", type=str, default=None, help="Path to the configuration file.")
    parser.add_argument("--version", action="version", version=f"{APP_NAME} CLI {__version__}")
    parser.add_argument("--quiet", action="store_true", help="Only write the diagnostic log file, not the console.")

    subparsers = parser.add_subparsers(dest='command', required=True, help="The action to perform.")

    organize_parser = subparsers.add_parser('organize', help="Sort a folder into category folders or regroup a series folder.")
    organize_parser.add_argument("--target-dir", type=str, required=True, help="Folder to organize, or one of: downloads, documents, pictures, videos, desktop, series.")
    organize_parser.add_argument("--dry-run", action="store_true", help="Preview actions without moving files.")
    organize_parser.add_argument("--move-media", action="store_true", help="In a downloads folder, send videos/images to the system Videos/Pictures folders.")
    organize_parser.add_argument("--include-ext", type=str, default="", help='Comma-separated extensions to process exclusively (e.g., "mp4,mkv").')
    organize_parser.add_argument("--exclude-ext", type=str, default="", help='Comma-separated extensions to leave alone (e.g., "log,tmp").')
    organize_parser.add_argument("--exclude-name", type=str, default="", help='Comma-separated file names to leave alone.')
    organize_parser.add_argument("--run-id", type=str, help="Use this run id instead of a generated one.")

    undo_parser = subparsers.add_parser('undo', help="Reverse the last real run.")
    undo_parser.add_argument("--run-id", type=str, help="Undo this run instead of the latest one.")
    undo_parser.add_argument("--dry-run", action="store_true", help="Preview the undo without moving files.")
    undo_parser.add_argument("--remove-empty-dirs", action="store_true", help="Remove folders left empty by the undo.")

    logs_parser = subparsers.add_parser('logs', help="Show the most recent operation log records.")
    logs_parser.add_argument("--limit", type=int, default=20, help="Number of records to show (max 1000).")

    subparsers.add_parser('dirs', help="Show the well-known folders.")
    return parser

def report_outcomes(preview):
    for o in preview:
        line = f"[{o.status.value:<7}] {o.action.value:<5} {o.source} -> {o.destination}"
        if o.message and o.status.value == "error": line += f" ({o.message})"
        logging.info(line)

def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    config_path = Path(args.config) if args.config else get_config_path()
    cfg = Config.load(config_path)

    setup_logging(log_file=app_data_dir(home_dir()) / "tidyrun.log", log_to_console=not args.quiet)

    if not config_path.exists():
        logging.info(f"No configuration found, writing defaults to '{config_path}'.")
        cfg.save(config_path)

    is_valid, message = cfg.validate()
    if not is_valid:
        logging.error(f"Configuration error: {message}")
        return 1

    try:
        if args.command == 'organize':
            options = OrganizeOptions(dry_run=args.dry_run, move_to_system_folders=args.move_media,
                                      include_extensions=args.include_ext, exclude_extensions=args.exclude_ext,
                                      exclude_names=args.exclude_name, run_id=args.run_id)
            if args.dry_run: logging.info("DRY RUN MODE - No files will be moved or directories created.")
            result = organize(resolve_target(args.target_dir), options, cfg)
            report_outcomes(result.preview)
            logging.info(f"Run {result.run_id}: processed {result.processed_count}, skipped {result.skipped_count}, errors {result.error_count}")
            return 0 if result.error_count == 0 else 2
        if args.command == 'undo':
            result = undo_last_run(UndoOptions(dry_run=args.dry_run, run_id=args.run_id, remove_empty_dirs=args.remove_empty_dirs), cfg)
            report_outcomes(result.preview)
            logging.info(result.message)
            return 0 if result.error_count == 0 else 2
        if args.command == 'logs':
            for record in read_logs(args.limit, cfg):
                print(json.dumps(record.to_dict(), ensure_ascii=False))
            return 0
        if args.command == 'dirs':
            for name, path in list_default_directories().items():
                print(f"{name:<10} {path}")
            return 0
    except TidyRunError as e:
        logging.error(f"Error: {e}")
        return 1
    except KeyboardInterrupt:
        logging.info("Operation cancelled by user.")
        return 130
    except Exception as e:
        logging.error(f"A fatal error occurred: {e}", exc_info=True)
        return 1
    return 1

if __name__ == "__main__":
    sys.exit(main())
