#!/usr/bin/env python3
"""Scheduled and manual backups of a Docker Compose Nightscout deployment.

A backup is one directory (later one archive) under ``--backup-dir``::

    nightscout-backup-<schedule>-YYYYmmdd_HHMMSS/
        admin/ nightscout/ ...      mongodump --gzip of the whole instance
        config/
            .env
            docker-compose.yml
            .cloudflared/           tunnel config and credentials, if present
        volumes/
            <volume>/data.tar.gz    one tarball per Docker volume named *nightscout*

followed by optional compression (``.tar.gz``), encryption (``.enc``,
``openssl enc -aes-256-cbc`` with a key kept next to the backups),
verification and retention cleanup.  A plain-text report
``backup-report-<timestamp>.txt`` is written next to each backup.

Retention
---------
``--retention N`` keeps daily backups N days, weekly backups 7*N days and
monthly backups 30*N days.  Manual backups are never removed.

Typical crontab::

    0 3 * * *  cd /opt/nightscout && ns-backup --schedule daily --yes
    0 4 * * 0  cd /opt/nightscout && ns-backup --schedule weekly --encrypt --yes
"""

import argparse
import os
import re
import shutil
import socket
import subprocess
import sys
import tarfile
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from dotenv import load_dotenv

import env_file
from docker_stack import (
    MONGO_CONTAINER,
    MONGO_SERVICE,
    compose,
    compose_command,
    copy_from_container,
    docker_running,
    mongo_auth_args,
    mongo_ping,
    services_up,
)
from ops_common import (
    _banner,
    _run,
    confirm,
    error,
    generate_secret,
    info,
    missing_commands,
    ok,
    warn,
)

SCHEDULES = ("manual", "daily", "weekly", "monthly")
RETENTION_MULTIPLIER = {"daily": 1, "weekly": 7, "monthly": 30}

DEFAULT_BACKUP_DIR = Path("/opt/nightscout/backups")
DEFAULT_RETENTION_DAYS = 7
MIN_FREE_BYTES = 1024 ** 3
KEY_FILE_NAME = ".encryption_key"
LOGGER_TAG = "nightscout-backup"

_BACKUP_RE = re.compile(r"^nightscout-backup-(daily|weekly|monthly)-\d{8}_\d{6}")


@dataclass
class BackupOptions:
    schedule: str = "manual"
    retention_days: int = DEFAULT_RETENTION_DAYS
    encrypt: bool = False
    compress: bool = True
    verify: bool = True
    notify_success: bool = False
    notify_failure: bool = True
    backup_dir: Path = DEFAULT_BACKUP_DIR
    env_path: Path = env_file.DEFAULT_ENV_PATH
    compose_file: Path = Path("docker-compose.yml")
    tunnel_dir: Path = Path.home() / ".cloudflared"
    assume_yes: bool = False


def backup_name(schedule: str, now: datetime | None = None) -> str:
    now = now or datetime.now()
    return f"nightscout-backup-{schedule}-{now:%Y%m%d_%H%M%S}"


def _size(path: Path) -> int:
    if path.is_file():
        return path.stat().st_size
    return sum(p.stat().st_size for p in path.rglob("*") if p.is_file())


def _human(num: float) -> str:
    for unit in ("B", "K", "M", "G"):
        if num < 1024:
            return f"{num:.0f}{unit}" if unit == "B" else f"{num:.1f}{unit}"
        num /= 1024
    return f"{num:.1f}T"


# ---------------------------------------------------------------------------
# Backup steps
# ---------------------------------------------------------------------------

def dump_database(dest: Path, stamp: str, password: str | None) -> None:
    """mongodump inside the container, then ``docker cp`` the dump to *dest*.

    The temporary dump inside the container is removed afterwards.

    Raises:
        subprocess.CalledProcessError: If the dump or the copy fails.
    """
    container_dir = f"/data/db/backup_{stamp}"
    compose("exec", "-T", MONGO_SERVICE, "mongodump", *mongo_auth_args(password),
            f"--out={container_dir}", "--gzip")
    ok("MongoDB backup created successfully")
    try:
        copy_from_container(MONGO_CONTAINER, container_dir, dest)
    finally:
        compose("exec", "-T", MONGO_SERVICE, "rm", "-rf", container_dir,
                check=False, quiet=True)
    ok("Backup copied from container")


def backup_config_files(dest: Path, env_path: Path, compose_file: Path,
                        tunnel_dir: Path) -> list[str]:
    """Copy configuration into ``dest/config``.

    Returns:
        Names of the items that could not be copied.
    """
    config_dir = dest / "config"
    config_dir.mkdir(parents=True, exist_ok=True)
    failed = []
    for src in (env_path, compose_file):
        try:
            shutil.copy2(src, config_dir / src.name)
        except OSError:
            warn(f"Could not copy {src}")
            failed.append(src.name)
    if tunnel_dir.is_dir():
        try:
            shutil.copytree(tunnel_dir, config_dir / tunnel_dir.name, dirs_exist_ok=True)
        except OSError:
            warn("Could not copy Cloudflare config")
            failed.append(tunnel_dir.name)
    return failed


def nightscout_volumes() -> list[str]:
    result = _run(["docker", "volume", "ls", "--format", "{{.Name}}"], quiet=True)
    if result.returncode != 0:
        return []
    return [v for v in result.stdout.split() if "nightscout" in v]


def backup_volumes(dest: Path) -> list[str]:
    """Tar every Nightscout Docker volume with a throwaway alpine container.

    Returns:
        Names of the volumes backed up successfully.
    """
    volumes = nightscout_volumes()
    if not volumes:
        info("No Nightscout volumes found")
        return []
    done = []
    for volume in volumes:
        target = (dest / "volumes" / volume).resolve()
        target.mkdir(parents=True, exist_ok=True)
        result = _run([
            "docker", "run", "--rm",
            "-v", f"{volume}:/data",
            "-v", f"{target}:/backup",
            "alpine", "tar", "czf", "/backup/data.tar.gz", "-C", "/data", ".",
        ])
        if result.returncode == 0:
            ok(f"Volume {volume} backed up")
            done.append(volume)
        else:
            warn(f"Failed to backup volume {volume}")
    return done


def compress(path: Path) -> Path:
    """Replace directory *path* with ``<path>.tar.gz``."""
    archive = path.with_name(f"{path.name}.tar.gz")
    with tarfile.open(archive, "w:gz") as tar:
        tar.add(path, arcname=path.name)
    shutil.rmtree(path)
    return archive


def encrypt(path: Path, key_file: Path) -> Path:
    """Encrypt *path* to ``<path>.enc`` and delete the plaintext.

    A new key is generated in *key_file* the first time.

    Raises:
        subprocess.CalledProcessError: If openssl fails.
    """
    if not key_file.exists():
        key_file.write_text(generate_secret(32) + "\n", encoding="utf-8")
        key_file.chmod(0o600)
        warn(f"New encryption key generated: {key_file}")
        warn("Keep this key secure - you'll need it to restore backups")
    encrypted = path.with_name(f"{path.name}.enc")
    _run([
        "openssl", "enc", "-aes-256-cbc", "-salt",
        "-in", str(path), "-out", str(encrypted),
        "-pass", f"file:{key_file}",
    ], check=True)
    path.unlink()
    return encrypted


def verify(path: Path) -> bool:
    """True if *path* exists, is non-empty and, for a ``.tar.gz``, is readable."""
    if not path.exists() or _size(path) == 0:
        return False
    if path.name.endswith(".tar.gz"):
        try:
            with tarfile.open(path, "r:gz") as tar:
                tar.getmembers()
        except (tarfile.TarError, OSError):
            return False
    return True


def expired_backups(backup_dir: Path, retention_days: int,
                    now: float | None = None) -> list[Path]:
    """Scheduled backups older than their schedule's retention window.

    Age is counted in whole days, like ``find -mtime +N``.  Manual backups
    and unrelated files are never selected.
    """
    now = time.time() if now is None else now
    expired = []
    for entry in sorted(backup_dir.iterdir()):
        match = _BACKUP_RE.match(entry.name)
        if not match:
            continue
        limit = retention_days * RETENTION_MULTIPLIER[match.group(1)]
        age_days = int((now - entry.stat().st_mtime) // 86400)
        if age_days > limit:
            expired.append(entry)
    return expired


def cleanup_old_backups(backup_dir: Path, retention_days: int,
                        now: float | None = None) -> list[Path]:
    removed = expired_backups(backup_dir, retention_days, now)
    for entry in removed:
        if entry.is_dir():
            shutil.rmtree(entry)
        else:
            entry.unlink()
        info(f"Removed old backup: {entry.name}")
    return removed


def _container_status() -> str:
    if not compose_command():
        return "(docker compose not available)"
    return compose("ps", check=False, quiet=True).stdout.rstrip()


def write_report(report_path: Path, opts: BackupOptions, backup_file: Path) -> Path:
    usage = shutil.disk_usage(opts.backup_dir)
    lines = [
        "Nightscout Backup Report",
        "=" * 24,
        f"Date: {datetime.now():%Y-%m-%d %H:%M:%S}",
        f"Schedule: {opts.schedule}",
        f"Backup file: {backup_file.name}",
        f"Backup size: {_human(_size(backup_file))}",
        f"Backup location: {backup_file}",
        f"Encrypted: {str(opts.encrypt).lower()}",
        f"Compressed: {str(opts.compress).lower()}",
        f"Verified: {str(opts.verify).lower()}",
        "",
        "System Information:",
        f"  Hostname: {socket.gethostname()}",
        f"  Disk usage: {usage.used * 100 // usage.total}%",
        f"  Available space: {_human(usage.free)}",
        "",
        "Container Status:",
        _container_status(),
        "",
        "Backup Contents:",
    ]
    if backup_file.name.endswith(".tar.gz"):
        with tarfile.open(backup_file, "r:gz") as tar:
            lines += tar.getnames()[:20]
    report_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return report_path


def notify(message: str) -> None:
    """Send *message* to syslog via ``logger``; print it if logger is missing."""
    if missing_commands(["logger"]):
        info(message)
        return
    _run(["logger", "-t", LOGGER_TAG, message], quiet=True)


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------

def _continue_anyway(opts: BackupOptions) -> None:
    if opts.assume_yes:
        return
    if not confirm("Continue anyway?"):
        sys.exit(1)


def run_backup(opts: BackupOptions, now: datetime | None = None) -> Path:
    """Create one backup.  Returns the final backup path.

    Raises:
        SystemExit: On a failed precondition or step.
    """
    now = now or datetime.now()
    stamp = f"{now:%Y%m%d_%H%M%S}"
    name = backup_name(opts.schedule, now)
    opts.backup_dir.mkdir(parents=True, exist_ok=True)
    backup_path = opts.backup_dir / name

    _banner("Nightscout Backup")
    print(f"  Schedule:         {opts.schedule}")
    print(f"  Backup directory: {opts.backup_dir}")
    print(f"  Backup name:      {name}")
    print(f"  Retention:        {opts.retention_days} days")

    info("Step 1: Pre-backup checks")
    if not docker_running():
        sys.exit("Docker is not running")
    if not services_up():
        warn("Nightscout containers are not running")
        _continue_anyway(opts)
    free = shutil.disk_usage(opts.backup_dir).free
    if free < MIN_FREE_BYTES:
        warn(f"Low disk space: {free // (1024 * 1024)}MB available")
        _continue_anyway(opts)
    password = ""
    if opts.env_path.exists():
        password = env_file.read_env(opts.env_path).get("MONGO_INITDB_ROOT_PASSWORD", "")
    if not password:
        sys.exit(f"MongoDB password not found in {opts.env_path}")
    if not mongo_ping(password):
        sys.exit("MongoDB container is not accessible")
    ok("Pre-backup checks completed")

    info("Step 2: Creating MongoDB backup")
    try:
        dump_database(backup_path, stamp, password)
    except subprocess.CalledProcessError as exc:
        error((exc.stderr or "").strip())
        sys.exit("MongoDB backup failed")

    info("Step 3: Backing up configuration files")
    backup_config_files(backup_path, opts.env_path, opts.compose_file, opts.tunnel_dir)
    ok("Configuration files backed up")

    info("Step 4: Backing up Docker volumes")
    backup_volumes(backup_path)

    backup_file = backup_path
    if opts.compress:
        info("Step 5: Compressing backup")
        backup_file = compress(backup_path)
        ok("Backup compressed successfully")

    if opts.encrypt:
        info("Step 6: Encrypting backup")
        try:
            backup_file = encrypt(backup_file, opts.backup_dir / KEY_FILE_NAME)
        except subprocess.CalledProcessError as exc:
            error((exc.stderr or "").strip())
            sys.exit("Backup encryption failed")
        ok("Backup encrypted successfully")

    if opts.verify:
        info("Step 7: Verifying backup")
        info(f"Backup size: {_human(_size(backup_file))}")
        if not verify(backup_file):
            sys.exit("Backup verification failed")
        ok("Backup verification passed")

    info("Step 8: Cleaning up old backups")
    cleanup_old_backups(opts.backup_dir, opts.retention_days)
    ok("Old backups cleaned up")

    info("Step 9: Generating backup report")
    report = write_report(opts.backup_dir / f"backup-report-{stamp}.txt", opts, backup_file)
    ok(f"Backup report generated: {report}")

    if opts.notify_success:
        notify(f"Nightscout backup completed successfully: {backup_file.name}")

    _banner("Backup completed successfully!")
    print(f"  Backup location: {backup_file}")
    print(f"  Backup size:     {_human(_size(backup_file))}")
    print(f"  Report:          {report}")
    if opts.encrypt:
        warn("This backup is encrypted. Keep the encryption key secure!")
        print(f"    Encryption key: {opts.backup_dir / KEY_FILE_NAME}")
    return backup_file


def main(argv: list[str] | None = None) -> None:
    """Entry point for ``ns-backup``."""
    load_dotenv()
    parser = argparse.ArgumentParser(description="Back up a Nightscout deployment")
    parser.add_argument("--schedule", choices=SCHEDULES, default="manual",
                        help="Backup schedule (default: manual)")
    parser.add_argument("--retention", type=int, default=DEFAULT_RETENTION_DAYS,
                        help="Days to keep daily backups (default: 7)")
    parser.add_argument("--encrypt", action="store_true", help="Encrypt the backup")
    parser.add_argument("--no-compress", action="store_true", help="Disable compression")
    parser.add_argument("--no-verify", action="store_true", help="Skip verification")
    parser.add_argument("--notify-success", action="store_true",
                        help="Log a syslog message on success")
    parser.add_argument("--no-notify-failure", action="store_true",
                        help="Do not log a syslog message on failure")
    parser.add_argument("--backup-dir", type=Path,
                        default=Path(os.environ.get("BACKUP_DIR", DEFAULT_BACKUP_DIR)),
                        help="Backup directory (default: /opt/nightscout/backups)")
    parser.add_argument("--env-file", type=Path, default=env_file.DEFAULT_ENV_PATH,
                        help="Nightscout environment file (default: .env)")
    parser.add_argument("--yes", action="store_true",
                        help="Continue past warnings without prompting (for cron)")
    args = parser.parse_args(argv)

    compress_backup = not args.no_compress
    if args.encrypt and not compress_backup:
        warn("Encryption works on a single archive; compressing anyway")
        compress_backup = True

    opts = BackupOptions(
        schedule=args.schedule,
        retention_days=args.retention,
        encrypt=args.encrypt,
        compress=compress_backup,
        verify=not args.no_verify,
        notify_success=args.notify_success,
        notify_failure=not args.no_notify_failure,
        backup_dir=args.backup_dir,
        env_path=args.env_file,
        assume_yes=args.yes,
    )
    try:
        run_backup(opts)
    except SystemExit as exc:
        if exc.code not in (None, 0) and opts.notify_failure:
            notify(f"Nightscout backup FAILED: {exc.code}")
        raise


if __name__ == "__main__":
    main()
