#!/usr/bin/env python3
"""Validate a Nightscout migration (Atlas -> self-hosted) and write a report.

Each side of the comparison is one of:

    atlas   a remote MongoDB (``mongodb+srv://...``)
    local   the Docker Compose stack on this host (``mongodb://localhost...``)
    file    a mongodump directory (``./nightscout-export-.../nightscout``)

VALIDATION PIPELINE
===================

::

    step_prechecks()      Docker daemon / Compose services (local target)
          |               (ERROR here stops the run)
          v
    step_connectivity()   ping both databases, or stat the dump directory
          v
    step_data_integrity() per-collection counts, critical-collection rules
          v
    step_performance()    query time, dataSize, index count on entries
          v
    step_security()       credentials / default passwords / bind address
          v
    step_application()    container, /api/v1/status, recent entries
          v
    write_report()        migration-reports/migration-validation-<ts>.txt

Every check records exactly one SUCCESS / WARNING / ERROR in a
:class:`~validation_checks.CheckLog`.  Warnings never block; the process
exits 1 iff at least one ERROR was recorded.

Database sides are queried directly with PyMongo.  File sides are counted
by decoding the dumped ``.bson`` (or ``.bson.gz``) files.

Usage
-----
::

    python validate_migration.py --source atlas --target local \\
        --source-uri 'mongodb+srv://...' --target-uri 'mongodb://localhost:27017'
    python validate_migration.py --source file --target local \\
        --source-uri ./export/nightscout --target-uri 'mongodb://localhost:27017'
"""

import argparse
import gzip
import re
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import requests
from bson import decode_file_iter
from bson.errors import InvalidBSON
from dotenv import load_dotenv
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from docker_stack import (
    NIGHTSCOUT_CONTAINER,
    container_running,
    docker_running,
    services_up,
)
from nightscout_api import DEFAULT_URL, NightscoutAPI
from ops_common import _banner, _redact_uri, database_name_from_uri, info, warn
from validation_checks import CheckLog, Status

SIDE_TYPES = ("atlas", "local", "file")

ALL_COLLECTIONS = ("entries", "treatments", "devicestatus", "profile", "food", "activity")
CRITICAL_COLLECTIONS = ("entries", "treatments", "devicestatus")

DEFAULT_REPORT_DIR = Path("./migration-reports")
SLOW_QUERY_THRESHOLD_S = 1.0
SERVER_SELECTION_TIMEOUT_MS = 5000


@dataclass
class ValidationOptions:
    """Everything one validation run needs."""

    source_type: str
    target_type: str
    source_uri: str
    target_uri: str
    verify_data: bool = True
    verify_performance: bool = True
    verify_security: bool = True
    generate_report: bool = True
    report_dir: Path = DEFAULT_REPORT_DIR
    nightscout_url: str = DEFAULT_URL


# ---------------------------------------------------------------------------
# Counting
# ---------------------------------------------------------------------------

def _client(uri: str) -> MongoClient:
    return MongoClient(uri, serverSelectionTimeoutMS=SERVER_SELECTION_TIMEOUT_MS)


def ping(uri: str) -> bool:
    """True if the server behind *uri* answers the ``ping`` command.

    An unparseable URI or an SRV record that does not resolve counts as
    unreachable.
    """
    try:
        client = _client(uri)
    except PyMongoError:
        return False
    try:
        client.admin.command("ping")
        return True
    except PyMongoError:
        return False
    finally:
        client.close()


def count_collections_db(uri: str, database: str,
                         collections=ALL_COLLECTIONS) -> dict[str, int] | None:
    """Document count per collection, or None if the server is unreachable.

    A collection that cannot be counted is reported as 0.
    """
    try:
        client = _client(uri)
    except PyMongoError:
        return None
    try:
        client.admin.command("ping")
    except PyMongoError:
        client.close()
        return None
    counts: dict[str, int] = {}
    try:
        db = client[database]
        for name in collections:
            try:
                counts[name] = db[name].count_documents({})
            except PyMongoError:
                counts[name] = 0
    finally:
        client.close()
    return counts


def _count_bson_file(path: Path) -> int:
    opener = gzip.open if path.suffix == ".gz" else open
    with opener(path, "rb") as fh:
        return sum(1 for _ in decode_file_iter(fh))


def count_collections_files(export_dir: Path, database: str = "nightscout",
                            collections=ALL_COLLECTIONS) -> dict[str, int] | None:
    """Document count per collection from a mongodump directory.

    *export_dir* may be the per-database directory or the dump root that
    contains it.  A collection without a dump file counts as 0.  Returns
    None if any dump file is truncated or corrupt.
    """
    if (export_dir / database).is_dir():
        export_dir = export_dir / database
    counts: dict[str, int] = {}
    for name in collections:
        counts[name] = 0
        for candidate in (export_dir / f"{name}.bson", export_dir / f"{name}.bson.gz"):
            if candidate.is_file():
                try:
                    counts[name] = _count_bson_file(candidate)
                except (InvalidBSON, OSError, EOFError) as exc:
                    warn(f"Could not read dump file {candidate}: {exc}")
                    return None
                break
    return counts


def collection_counts(side_type: str, uri: str) -> dict[str, int] | None:
    if side_type == "file":
        path = Path(uri)
        return count_collections_files(path) if path.is_dir() else None
    return count_collections_db(uri, database_name_from_uri(uri))


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

def step_prechecks(opts: ValidationOptions, log: CheckLog) -> bool:
    """Docker checks for a local target.  Returns False if the run must stop."""
    info("Step 1: Pre-validation checks")
    if opts.target_type == "local":
        if not docker_running():
            log.error("Docker is not running")
            return False
        if not services_up():
            log.warning("Nightscout containers are not running")
    log.success("Pre-validation checks completed")
    return True


def _check_side(label: str, side_type: str, uri: str, log: CheckLog) -> None:
    if side_type == "file":
        if Path(uri).is_dir():
            log.success(f"{label} export directory exists: {uri}")
        else:
            log.error(f"{label} export directory not found: {uri}")
    elif ping(uri):
        log.success(f"{label} database connection successful")
    else:
        log.error(f"{label} database connection failed")


def step_connectivity(opts: ValidationOptions, log: CheckLog) -> None:
    info("Step 2: Connection validation")
    _check_side("Source", opts.source_type, opts.source_uri, log)
    _check_side("Target", opts.target_type, opts.target_uri, log)


def compare_counts(source: dict[str, int], target: dict[str, int],
                   log: CheckLog) -> None:
    """Record the per-collection and critical-collection comparisons."""
    mismatched = [c for c in ALL_COLLECTIONS if source.get(c, 0) != target.get(c, 0)]
    for name in mismatched:
        log.warning(
            f"Collection '{name}' count differs "
            f"(source: {source.get(name, 0)}, target: {target.get(name, 0)})"
        )
    if not mismatched:
        log.success("Collection counts match between source and target")

    for name in CRITICAL_COLLECTIONS:
        src, dst = source.get(name, 0), target.get(name, 0)
        if src > 0 and dst == 0:
            log.error(f"Critical collection '{name}' is empty in target but has data in source")
        elif src == 0 and dst > 0:
            log.warning(f"Critical collection '{name}' has data in target but is empty in source")
        else:
            log.success(f"Critical collection '{name}' validated")


def step_data_integrity(opts: ValidationOptions, log: CheckLog) -> None:
    info("Step 3: Data integrity verification")
    info("Getting source collection counts...")
    source = collection_counts(opts.source_type, opts.source_uri)
    info("Getting target collection counts...")
    target = collection_counts(opts.target_type, opts.target_uri)
    if source is None or target is None:
        side = "source" if source is None else "target"
        log.error(f"Could not read collection counts from {side}")
        return
    info(f"Source counts: {source}")
    info(f"Target counts: {target}")
    compare_counts(source, target, log)


def step_performance(opts: ValidationOptions, log: CheckLog) -> None:
    info("Step 4: Performance validation")
    if opts.target_type == "file":
        log.warning("Performance validation skipped for file-based target")
        return

    client = None
    try:
        client = _client(opts.target_uri)
        db = client[database_name_from_uri(opts.target_uri)]
        start = time.perf_counter()
        db.entries.find_one()
        elapsed = time.perf_counter() - start
        data_size = db.command("dbstats").get("dataSize", 0)
        index_count = len(list(db.entries.list_indexes()))
    except PyMongoError as exc:
        log.warning(f"Performance checks could not run: {exc}")
        return
    finally:
        if client is not None:
            client.close()

    if elapsed < SLOW_QUERY_THRESHOLD_S:
        log.success(f"Query performance is acceptable ({elapsed:.3f}s)")
    else:
        log.warning(f"Query performance may be slow ({elapsed:.3f}s)")
    if data_size > 0:
        log.success(f"Database has data (size: {int(data_size)} bytes)")
    else:
        log.warning("Database appears to be empty")
    if index_count > 1:
        log.success(f"Indexes are present ({index_count} indexes on entries collection)")
    else:
        log.warning(f"Limited indexes found ({index_count} indexes on entries collection)")


def step_security(opts: ValidationOptions, log: CheckLog) -> None:
    """Heuristics on the target URI only; nothing is probed over the network."""
    info("Step 5: Security validation")
    if opts.target_type == "file":
        log.warning("Security validation skipped for file-based target")
        return

    uri = opts.target_uri
    if re.search(r"mongodb://[^:]+:[^@]+@", uri):
        log.success("Target database has authentication configured")
    else:
        log.warning("Target database may not have authentication configured")

    if ":password@" in uri or ":admin@" in uri:
        log.warning("Target database may be using default credentials")
    else:
        log.success("Target database is not using obvious default credentials")

    if "localhost" in uri or "127.0.0.1" in uri:
        log.success("Target database is accessible only locally")
    else:
        log.warning("Target database may be accessible from external networks")


def step_application(opts: ValidationOptions, log: CheckLog,
                     api: NightscoutAPI | None = None) -> None:
    info("Step 6: Nightscout-specific validation")
    if opts.target_type != "local":
        return
    if not container_running(NIGHTSCOUT_CONTAINER):
        log.warning("Nightscout container is not running")
        return
    log.success("Nightscout container is running")

    api = api or NightscoutAPI(opts.nightscout_url)
    info("Testing Nightscout API...")
    if api.status_code() != 200:
        log.error("Nightscout API is not responding")
        return
    log.success("Nightscout API is responding")

    try:
        entries = api.recent_entries(1)
    except requests.RequestException:
        entries = []
    if entries:
        log.success("Nightscout has recent data entries")
    else:
        log.warning("Nightscout has no recent data entries")


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def report_path(report_dir: Path, now: datetime | None = None) -> Path:
    now = now or datetime.now()
    return report_dir / f"migration-validation-{now:%Y%m%d_%H%M%S}.txt"


def write_report(log: CheckLog, opts: ValidationOptions, path: Path) -> Path:
    """Write the plain-text validation report to *path*.

    Returns:
        *path*, for chaining.
    """
    counts = log.counts()
    errors, warnings = counts[Status.ERROR], counts[Status.WARNING]
    lines = [
        "Nightscout Migration Validation Report",
        "=" * 38,
        f"Date: {datetime.now():%Y-%m-%d %H:%M:%S}",
        f"Source: {opts.source_type} ({_redact_uri(opts.source_uri)})",
        f"Target: {opts.target_type} ({_redact_uri(opts.target_uri)})",
        "",
        "Validation Summary",
        "=" * 18,
        *log.render_lines(),
        "",
        "Summary Statistics",
        "=" * 18,
        f"Total checks: {log.total}",
        f"Successful: {counts[Status.SUCCESS]}",
        f"Warnings: {warnings}",
        f"Errors: {errors}",
        "",
    ]
    if errors == 0:
        lines += ["Migration validation PASSED",
                  "The migration appears to be successful."]
    else:
        lines += ["Migration validation FAILED",
                  "Please address the errors before proceeding."]
    if warnings:
        lines += ["", "Warnings detected",
                  "Consider addressing these warnings for optimal performance."]

    lines += ["", "Recommendations", "=" * 15]
    if errors:
        lines += ["- Address all errors before using the migrated system",
                  "- Verify data integrity manually if needed",
                  "- Check network connectivity and authentication"]
    if warnings:
        lines += ["- Review warnings for potential issues",
                  "- Consider performance optimization if needed",
                  "- Verify security configuration"]
    if not errors and not warnings:
        lines += ["- Monitor the system for any issues",
                  "- Set up regular backups (ns-backup)",
                  "- Consider implementing monitoring"]

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------

def run_validation(opts: ValidationOptions, log: CheckLog | None = None) -> CheckLog:
    """Run every enabled step and return the populated log."""
    log = log or CheckLog()
    path = report_path(opts.report_dir)

    _banner("Nightscout Migration Validation")
    print(f"  Source: {opts.source_type} ({_redact_uri(opts.source_uri)})")
    print(f"  Target: {opts.target_type} ({_redact_uri(opts.target_uri)})")
    if opts.generate_report:
        print(f"  Report: {path}")

    if not step_prechecks(opts, log):
        return log
    step_connectivity(opts, log)
    if opts.verify_data:
        step_data_integrity(opts, log)
    if opts.verify_performance:
        step_performance(opts, log)
    if opts.verify_security:
        step_security(opts, log)
    step_application(opts, log)

    if opts.generate_report:
        info("Step 7: Generating validation report")
        write_report(log, opts, path)
        log.success(f"Validation report generated: {path}")
    return log


def main(argv: list[str] | None = None) -> None:
    """Entry point for ``ns-validate-migration``."""
    load_dotenv()
    parser = argparse.ArgumentParser(description="Validate a Nightscout migration")
    parser.add_argument("--source", choices=SIDE_TYPES, default="atlas",
                        help="Source type (default: atlas)")
    parser.add_argument("--target", choices=SIDE_TYPES, default="local",
                        help="Target type (default: local)")
    parser.add_argument("--source-uri", required=True,
                        help="Source connection string or export directory")
    parser.add_argument("--target-uri", required=True,
                        help="Target connection string or export directory")
    parser.add_argument("--no-data-verify", action="store_true",
                        help="Skip data integrity verification")
    parser.add_argument("--no-performance", action="store_true",
                        help="Skip performance validation")
    parser.add_argument("--no-security", action="store_true",
                        help="Skip security validation")
    parser.add_argument("--no-report", action="store_true",
                        help="Skip report generation")
    parser.add_argument("--report-dir", type=Path, default=DEFAULT_REPORT_DIR,
                        help="Report directory (default: ./migration-reports)")
    parser.add_argument("--nightscout-url", default=DEFAULT_URL,
                        help="Nightscout base URL for the application check")
    args = parser.parse_args(argv)

    opts = ValidationOptions(
        source_type=args.source,
        target_type=args.target,
        source_uri=args.source_uri,
        target_uri=args.target_uri,
        verify_data=not args.no_data_verify,
        verify_performance=not args.no_performance,
        verify_security=not args.no_security,
        generate_report=not args.no_report,
        report_dir=args.report_dir,
        nightscout_url=args.nightscout_url,
    )
    log = run_validation(opts)

    _banner("Validation Summary")
    log.print_summary()
    counts = log.counts()
    if log.has_errors:
        print(f"\n  Migration validation failed! Address the "
              f"{counts[Status.ERROR]} errors before proceeding.")
    else:
        print("\n  Migration validation completed successfully!")
        if counts[Status.WARNING]:
            print(f"  {counts[Status.WARNING]} warnings detected; review them for "
                  "potential improvements.")
    sys.exit(log.exit_code())


if __name__ == "__main__":
    main()
