"""
Command line interface for sdesync.

Commands:
- status: Set the sync status of one fact in a document cache
- sync: Bulk synchronize a project (or one document) with the mapping service
- clear: Back up and remove structured data caches
- backup: Back up the caches of a project
- report: Diff the last backup against the current caches
- render: Print a document with cached values applied
- save: Merge an edited document into its cache
- tables: Synchronize the external tables of a document
"""

import argparse
import logging
import sys
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Optional

from sdesync import __version__
from sdesync.cache.report import format_sync_message, format_sync_report
from sdesync.config import load_config
from sdesync.errors import SdeSyncError


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    """
    Register all sdesync subcommands.

    Args:
        subparsers: The subparsers action from the main parser
    """
    # sdesync status <project> <document> <fact> <status>
    status_parser = subparsers.add_parser(
        "status",
        help="Set the sync status of a fact",
        description="Set the sync status of one fact in the cache of one document",
    )
    status_parser.add_argument("project", help="Project id")
    status_parser.add_argument("document", help="Data file name, e.g. section1.xml")
    status_parser.add_argument("fact_id", help="Fact id")
    status_parser.add_argument("status", help="New status, e.g. 200-ok")

    # sdesync sync <project>
    sync_parser = subparsers.add_parser(
        "sync",
        help="Synchronize caches with the mapping service",
        description="Resolve all facts of a project in one bulk lookup and update the caches",
    )
    sync_parser.add_argument("project", help="Project id")
    sync_parser.add_argument(
        "--document",
        metavar="FILE",
        help="Only synchronize this data file",
    )
    sync_parser.add_argument(
        "--prune",
        action="store_true",
        help="Remove cache entries no document references",
    )
    sync_parser.add_argument(
        "--no-backup",
        action="store_true",
        help="Skip the backup taken before syncing",
    )
    sync_parser.add_argument(
        "--report",
        action="store_true",
        help="Write the before/after sync report when done",
    )

    # sdesync clear <project>
    clear_parser = subparsers.add_parser(
        "clear",
        help="Remove structured data caches (backed up first)",
    )
    clear_parser.add_argument("project", help="Project id")
    clear_parser.add_argument(
        "--document",
        metavar="FILE",
        action="append",
        help="Only clear the cache of this data file (repeatable)",
    )

    # sdesync backup <project>
    backup_parser = subparsers.add_parser("backup", help="Back up the caches of a project")
    backup_parser.add_argument("project", help="Project id")

    # sdesync report <project>
    report_parser = subparsers.add_parser(
        "report",
        help="Show changes since the last backup",
    )
    report_parser.add_argument("project", help="Project id")
    report_parser.add_argument(
        "--no-write",
        action="store_true",
        help="Do not store the report in the project log folder",
    )

    # sdesync render <project> <document>
    render_parser = subparsers.add_parser(
        "render",
        help="Print a document with cached values applied",
    )
    render_parser.add_argument("project", help="Project id")
    render_parser.add_argument("document", help="Data file name")
    render_parser.add_argument("--lang", default="all", help="Language to render (default: all)")

    # sdesync save <project> <document> --lang <lang>
    save_parser = subparsers.add_parser(
        "save",
        help="Merge an edited document into its cache",
    )
    save_parser.add_argument("project", help="Project id")
    save_parser.add_argument("document", help="Data file name")
    save_parser.add_argument("--lang", required=True, help="Language that was edited")
    save_parser.add_argument(
        "--file",
        metavar="PATH",
        help="Edited document to store first (default: reconcile the file on disk)",
    )
    save_parser.add_argument("--rebuild", action="store_true", help="Rebuild the cache from scratch")
    save_parser.add_argument("--prune", action="store_true", help="Drop unreferenced cache entries")

    # sdesync tables <project> <document>
    tables_parser = subparsers.add_parser(
        "tables",
        help="Synchronize external tables of a document",
    )
    tables_parser.add_argument("project", help="Project id")
    tables_parser.add_argument("document", help="Data file name")
    tables_parser.add_argument("--lang", default="all", help="Language to process (default: all)")
    tables_parser.add_argument("--write", action="store_true", help="Store the updated document")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sdesync",
        description="Structured data element cache synchronization",
    )
    parser.add_argument("--version", action="version", version=f"sdesync {__version__}")
    parser.add_argument("--config", metavar="PATH", help="Config file (default: ~/.sdesync/config.json)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Commands")
    register_commands(subparsers)
    return parser


def handle_command(args: argparse.Namespace) -> int:
    """
    Dispatch a parsed command to SdeService.

    Args:
        args: Parsed command line arguments

    Returns:
        Process exit code
    """
    from sdesync.service import SdeService

    service = SdeService(config=load_config(args.config))

    if args.command == "status":
        found = service.update_status(args.project, args.document, args.fact_id, args.status)
        if not found:
            print(f"Fact {args.fact_id} not found in the cache of {args.document}", file=sys.stderr)
            return 1
        print(f"{args.fact_id}: {args.status}")

    elif args.command == "sync":
        stats = service.sync_project(
            args.project,
            prune_unreferenced=args.prune,
            backup=not args.no_backup,
            data_references=[args.document] if args.document else None,
        )
        print(format_sync_message(stats, verbose=args.verbose))
        if args.report and not args.no_backup:
            report = service.create_sync_report(args.project)
            print()
            print(format_sync_report(report))

    elif args.command == "clear":
        removed = service.remove_caches(args.project, args.document)
        print(f"Removed {len(removed)} caches (backup in {service.backups.backup_folder(args.project)})")

    elif args.command == "backup":
        copies = service.backups.backup(args.project)
        print(f"Backed up {len(copies)} caches to {service.backups.backup_folder(args.project)}")

    elif args.command == "report":
        report = service.create_sync_report(args.project, write=not args.no_write)
        print(format_sync_report(report))

    elif args.command == "render":
        root = service.render_document(args.project, args.document, args.lang)
        print(ET.tostring(root, encoding="unicode"))

    elif args.command == "save":
        content = Path(args.file).read_bytes() if args.file else None
        result = service.save_document(
            args.project,
            args.document,
            args.lang,
            content=content,
            rebuild_from_scratch=args.rebuild,
            prune_unreferenced=args.prune,
        )
        _print_reconcile_result(result)

    elif args.command == "tables":
        results = service.sync_external_tables(args.project, args.document, args.lang, write=args.write)
        _print_table_results(results)

    else:
        print("Error: No command specified", file=sys.stderr)
        print("Usage: sdesync {status|sync|clear|backup|report|render|save|tables}", file=sys.stderr)
        return 1

    return 0


def _print_reconcile_result(result) -> None:
    if not result.changed:
        print("Cache already up to date")
        return
    action = "Created" if result.created else "Updated"
    print(f"{action} {result.cache_path.name}")
    print(f"  added: {len(result.added)}, updated: {len(result.updated)}, removed: {len(result.removed)}")
    if result.duplicates_collapsed:
        print(f"  duplicate entries collapsed: {result.duplicates_collapsed}")


def _print_table_results(results: dict[str, str]) -> None:
    if not results:
        print("No external tables found")
        return
    for table_id, status in results.items():
        print(f"  {table_id}: {status}")


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return handle_command(args)
    except SdeSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
