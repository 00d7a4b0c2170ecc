"""Tests for backup naming, archiving, retention and the backup driver."""

import os
import tarfile
from datetime import datetime
from unittest.mock import patch

import pytest

from nightscout_backup import (
    BackupOptions,
    backup_config_files,
    backup_name,
    cleanup_old_backups,
    compress,
    encrypt,
    expired_backups,
    main,
    notify,
    run_backup,
    verify,
)

DAY = 86400
NOW = 1_700_000_000.0


def _aged(path, days, is_dir=False):
    if is_dir:
        path.mkdir()
    else:
        path.write_bytes(b"data")
    stamp = NOW - days * DAY
    os.utime(path, (stamp, stamp))
    return path


class TestNaming:

    def test_backup_name(self):
        assert backup_name("daily", datetime(2024, 3, 9, 3, 0, 5)) == \
            "nightscout-backup-daily-20240309_030005"


class TestRetention:

    def test_daily_weekly_monthly_windows(self, tmp_path):
        _aged(tmp_path / "nightscout-backup-daily-20240101_030000.tar.gz", 8)
        _aged(tmp_path / "nightscout-backup-daily-20240105_030000.tar.gz", 3)
        _aged(tmp_path / "nightscout-backup-weekly-20231201_030000.tar.gz.enc", 50)
        _aged(tmp_path / "nightscout-backup-weekly-20231215_030000.tar.gz", 40)
        _aged(tmp_path / "nightscout-backup-monthly-20230101_030000.tar.gz", 200)
        expired = [p.name for p in expired_backups(tmp_path, 7, now=NOW)]
        assert expired == [
            "nightscout-backup-daily-20240101_030000.tar.gz",
            "nightscout-backup-weekly-20231201_030000.tar.gz.enc",
        ]

    def test_whole_day_boundary(self, tmp_path):
        # 7 days and 23 hours counts as 7 whole days: kept with retention 7.
        path = tmp_path / "nightscout-backup-daily-20240101_030000"
        path.mkdir()
        stamp = NOW - 7 * DAY - 23 * 3600
        os.utime(path, (stamp, stamp))
        assert expired_backups(tmp_path, 7, now=NOW) == []

    def test_manual_and_unrelated_files_are_kept(self, tmp_path):
        _aged(tmp_path / "nightscout-backup-manual-20200101_000000.tar.gz", 1000)
        _aged(tmp_path / "backup-report-20200101_000000.txt", 1000)
        _aged(tmp_path / ".encryption_key", 1000)
        assert expired_backups(tmp_path, 1, now=NOW) == []

    def test_cleanup_removes_files_and_directories(self, tmp_path):
        old_dir = _aged(tmp_path / "nightscout-backup-daily-20240101_030000", 30, is_dir=True)
        old_file = _aged(tmp_path / "nightscout-backup-daily-20240102_030000.tar.gz", 30)
        keep = _aged(tmp_path / "nightscout-backup-daily-20240120_030000.tar.gz", 1)
        removed = cleanup_old_backups(tmp_path, 7, now=NOW)
        assert set(removed) == {old_dir, old_file}
        assert not old_dir.exists()
        assert not old_file.exists()
        assert keep.exists()


class TestArchive:

    def test_compress_replaces_directory(self, tmp_path):
        backup = tmp_path / "nightscout-backup-manual-20240101_000000"
        (backup / "config").mkdir(parents=True)
        (backup / "config" / ".env").write_text("TZ=UTC\n")
        archive = compress(backup)
        assert archive.name == "nightscout-backup-manual-20240101_000000.tar.gz"
        assert not backup.exists()
        with tarfile.open(archive, "r:gz") as tar:
            assert "nightscout-backup-manual-20240101_000000/config/.env" in tar.getnames()

    def test_verify(self, tmp_path):
        backup = tmp_path / "b"
        backup.mkdir()
        (backup / "f").write_text("x")
        assert verify(compress(backup))

    def test_verify_rejects_corrupt_archive(self, tmp_path):
        bad = tmp_path / "b.tar.gz"
        bad.write_bytes(b"not a gzip file")
        assert not verify(bad)

    def test_verify_rejects_missing_or_empty(self, tmp_path):
        assert not verify(tmp_path / "absent.tar.gz")
        empty = tmp_path / "empty.enc"
        empty.write_bytes(b"")
        assert not verify(empty)

    def test_verify_accepts_non_empty_directory(self, tmp_path):
        (tmp_path / "d").mkdir()
        (tmp_path / "d" / "x").write_text("1")
        assert verify(tmp_path / "d")

    @patch("nightscout_backup._run")
    def test_encrypt_creates_key_once(self, mock_run, tmp_path):
        archive = tmp_path / "b.tar.gz"
        archive.write_bytes(b"payload")
        key = tmp_path / ".encryption_key"

        encrypted = encrypt(archive, key)
        assert encrypted == tmp_path / "b.tar.gz.enc"
        assert not archive.exists()
        assert key.stat().st_mode & 0o777 == 0o600
        cmd = mock_run.call_args[0][0]
        assert cmd[:4] == ["openssl", "enc", "-aes-256-cbc", "-salt"]
        assert cmd[-2:] == ["-pass", f"file:{key}"]

        first_key = key.read_text()
        archive.write_bytes(b"again")
        encrypt(archive, key)
        assert key.read_text() == first_key


class TestConfigFiles:

    def test_copies_env_compose_and_tunnel_dir(self, tmp_path):
        env = tmp_path / ".env"
        env.write_text("A=1\n")
        compose_file = tmp_path / "docker-compose.yml"
        compose_file.write_text("services: {}\n")
        tunnel = tmp_path / ".cloudflared"
        tunnel.mkdir()
        (tunnel / "config.yml").write_text("tunnel: x\n")
        dest = tmp_path / "backup"

        assert backup_config_files(dest, env, compose_file, tunnel) == []
        assert (dest / "config" / ".env").read_text() == "A=1\n"
        assert (dest / "config" / ".cloudflared" / "config.yml").exists()

    def test_reports_missing_files(self, tmp_path):
        failed = backup_config_files(tmp_path / "backup", tmp_path / ".env",
                                     tmp_path / "docker-compose.yml", tmp_path / "none")
        assert failed == [".env", "docker-compose.yml"]


class TestNotify:

    @patch("nightscout_backup._run")
    @patch("nightscout_backup.missing_commands", return_value=[])
    def test_uses_logger(self, _missing, mock_run):
        notify("done")
        mock_run.assert_called_once_with(
            ["logger", "-t", "nightscout-backup", "done"], quiet=True)

    @patch("nightscout_backup._run")
    @patch("nightscout_backup.missing_commands", return_value=["logger"])
    def test_falls_back_to_console(self, _missing, mock_run, capsys):
        notify("done")
        mock_run.assert_not_called()
        assert "done" in capsys.readouterr().out


class TestRunBackup:

    @patch("nightscout_backup.docker_running", return_value=False)
    def test_docker_down(self, _docker, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            run_backup(BackupOptions(backup_dir=tmp_path))
        assert exc_info.value.code == "Docker is not running"

    @patch("nightscout_backup.services_up", return_value=True)
    @patch("nightscout_backup.docker_running", return_value=True)
    def test_missing_password(self, _docker, _services, tmp_path):
        opts = BackupOptions(backup_dir=tmp_path / "b", env_path=tmp_path / ".env",
                             assume_yes=True)
        with pytest.raises(SystemExit) as exc_info:
            run_backup(opts)
        assert "MongoDB password not found" in exc_info.value.code

    @patch("nightscout_backup.write_report")
    @patch("nightscout_backup.backup_volumes", return_value=[])
    @patch("nightscout_backup.dump_database")
    @patch("nightscout_backup.mongo_ping", return_value=True)
    @patch("nightscout_backup.services_up", return_value=True)
    @patch("nightscout_backup.docker_running", return_value=True)
    def test_full_run(self, _docker, _services, _ping, mock_dump, _volumes,
                      mock_report, tmp_path):
        env = tmp_path / ".env"
        env.write_text("MONGO_INITDB_ROOT_PASSWORD=supersecret\n")
        compose_file = tmp_path / "docker-compose.yml"
        compose_file.write_text("services: {}\n")
        mock_dump.side_effect = lambda dest, stamp, password: \
            (dest / "nightscout").mkdir(parents=True)
        backup_dir = tmp_path / "backups"
        opts = BackupOptions(schedule="daily", backup_dir=backup_dir, env_path=env,
                             compose_file=compose_file, tunnel_dir=tmp_path / "none",
                             assume_yes=True)

        result = run_backup(opts, now=datetime(2024, 3, 9, 3, 0, 0))
        assert result == backup_dir / "nightscout-backup-daily-20240309_030000.tar.gz"
        assert result.is_file()
        assert mock_dump.call_args[0][2] == "supersecret"
        mock_report.assert_called_once()


class TestMain:

    @patch("nightscout_backup.notify")
    @patch("nightscout_backup.run_backup", side_effect=SystemExit("MongoDB backup failed"))
    def test_failure_is_notified(self, _run, mock_notify, tmp_path):
        with pytest.raises(SystemExit):
            main(["--backup-dir", str(tmp_path)])
        mock_notify.assert_called_once_with("Nightscout backup FAILED: MongoDB backup failed")

    @patch("nightscout_backup.notify")
    @patch("nightscout_backup.run_backup")
    def test_encrypt_forces_compression(self, mock_run, _notify, tmp_path):
        main(["--backup-dir", str(tmp_path), "--encrypt", "--no-compress"])
        opts = mock_run.call_args[0][0]
        assert opts.encrypt and opts.compress
