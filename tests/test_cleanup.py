"""Tests for the teardown script."""

import subprocess
from unittest.mock import patch

import pytest

import nightscout_cleanup
from nightscout_cleanup import _decide, _remove, matching, remove_generated_files


def _completed(stdout="", returncode=0):
    return subprocess.CompletedProcess([], returncode, stdout, "")


class TestMatching:

    def test_filters_by_name(self):
        names = ["nightscout_nightscout_mongo_data", "other_volume", "nightscout_network"]
        assert matching(names) == ["nightscout_nightscout_mongo_data", "nightscout_network"]

    def test_nothing_matches(self):
        assert matching(["bridge", "host", "none"]) == []


class TestRemove:

    @patch("nightscout_cleanup._run")
    def test_removes_only_matching(self, mock_run):
        mock_run.side_effect = [
            _completed("nightscout_mongo_data\npostgres_data\n"),
            _completed(),
        ]
        _remove("volumes", ["docker", "volume", "ls"], ["docker", "volume", "rm"])
        assert mock_run.call_args_list[1].args[0] == \
            ["docker", "volume", "rm", "nightscout_mongo_data"]

    @patch("nightscout_cleanup._run", return_value=_completed("bridge\nhost\n"))
    def test_nothing_to_remove(self, mock_run):
        _remove("networks", ["docker", "network", "ls"], ["docker", "network", "rm"])
        assert mock_run.call_count == 1


class TestGeneratedFiles:

    def test_removes_existing(self, tmp_path):
        env = tmp_path / ".env"
        env.write_text("A=1\n")
        override = tmp_path / "docker-compose.cloudflare.yml"
        assert remove_generated_files(env, override) == [env]
        assert not env.exists()


class TestDecide:

    @pytest.mark.parametrize("flag, assume_yes, answer, expected", [
        (True, False, None, True),
        (True, True, None, True),
        (False, True, None, False),
        (False, False, True, True),
        (False, False, False, False),
    ])
    def test_decide(self, flag, assume_yes, answer, expected):
        with patch("nightscout_cleanup.confirm", return_value=answer) as mock_confirm:
            assert _decide(flag, assume_yes, "Remove?") is expected
        assert mock_confirm.called == (answer is not None)


class TestMain:

    @patch("nightscout_cleanup.confirm", return_value=False)
    def test_cancelled(self, _confirm, tmp_path):
        env = tmp_path / ".env"
        env.write_text("A=1\n")
        with pytest.raises(SystemExit):
            nightscout_cleanup.main(["--env-file", str(env)])
        assert env.exists()

    @patch("nightscout_cleanup.BINARY_PATH")
    @patch("nightscout_cleanup.remove_service")
    @patch("nightscout_cleanup.remove_docker_resources")
    @patch("nightscout_cleanup.shutil.which", return_value="/usr/bin/docker")
    def test_yes_keeps_tunnel_dir(self, _which, mock_docker, _service, mock_binary,
                                  tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        mock_binary.exists.return_value = False
        env = tmp_path / ".env"
        env.write_text("A=1\n")
        tunnel = tmp_path / ".cloudflared"
        tunnel.mkdir()
        nightscout_cleanup.main(["--env-file", str(env), "--tunnel-dir", str(tunnel), "--yes"])
        mock_docker.assert_called_once()
        assert not env.exists()
        assert tunnel.is_dir()

    @patch("nightscout_cleanup.load_dotenv")
    @patch("nightscout_cleanup.confirm", return_value=False)
    def test_loads_dotenv(self, _confirm, mock_load, tmp_path):
        with pytest.raises(SystemExit):
            nightscout_cleanup.main(["--env-file", str(tmp_path / ".env")])
        mock_load.assert_called_once_with()
