"""Tests for the Docker / Compose wrappers (no Docker needed)."""

import json
import subprocess
from unittest.mock import MagicMock, call, patch

import pytest

import docker_stack
from docker_stack import (
    compose,
    compose_command,
    count_documents,
    mongo_auth_args,
    mongo_shell_eval,
    parse_compose_ps,
    restore_in_container,
    service_states,
)


def _completed(stdout="", returncode=0):
    return subprocess.CompletedProcess([], returncode, stdout, "")


@pytest.fixture(autouse=True)
def _fresh_compose_lookup():
    compose_command.cache_clear()
    yield
    compose_command.cache_clear()


class TestComposeCommand:

    @patch("docker_stack._succeeds", return_value=True)
    @patch("docker_stack.missing_commands", return_value=[])
    def test_prefers_plugin(self, _missing, _succeeds):
        assert compose_command() == ("docker", "compose")

    @patch("docker_stack._succeeds", return_value=False)
    @patch("docker_stack.missing_commands", return_value=[])
    def test_falls_back_to_standalone(self, _missing, _succeeds):
        assert compose_command() == ("docker-compose",)

    @patch("docker_stack.missing_commands", side_effect=lambda cmds: list(cmds))
    def test_none_installed(self, _missing):
        assert compose_command() == ()

    @patch("docker_stack.missing_commands", side_effect=lambda cmds: list(cmds))
    def test_compose_exits_when_missing(self, _missing):
        with pytest.raises(SystemExit):
            compose("ps")

    @patch("docker_stack.missing_commands", side_effect=lambda cmds: list(cmds))
    def test_service_states_without_compose(self, _missing):
        assert service_states() == {}


class TestParseComposePs:

    def test_json_array(self):
        text = json.dumps([{"Service": "mongo", "State": "running"}])
        assert parse_compose_ps(text) == [{"Service": "mongo", "State": "running"}]

    def test_json_lines(self):
        text = "\n".join([
            json.dumps({"Service": "nightscout", "State": "running"}),
            json.dumps({"Service": "mongo", "State": "exited"}),
        ])
        assert [s["Service"] for s in parse_compose_ps(text)] == ["nightscout", "mongo"]

    def test_empty(self):
        assert parse_compose_ps("  \n") == []

    @patch("docker_stack.compose")
    @patch("docker_stack.compose_command", return_value=("docker", "compose"))
    def test_service_states(self, _cmd, mock_compose):
        mock_compose.return_value = _completed(
            '{"Service": "nightscout", "State": "Running"}\n'
            '{"Service": "mongo", "State": "exited"}\n')
        assert service_states() == {"nightscout": "running", "mongo": "exited"}
        assert docker_stack.services_up()


class TestMongoShell:

    def test_auth_args(self):
        assert mongo_auth_args("") == []
        assert mongo_auth_args("pw") == [
            "--username", "root", "--password", "pw", "--authenticationDatabase", "admin"]

    @patch("docker_stack.compose")
    def test_falls_back_to_legacy_shell(self, mock_compose):
        mock_compose.side_effect = [_completed(returncode=127), _completed("1\n")]
        assert mongo_shell_eval("db.adminCommand('ping').ok", "pw") == "1"
        shells = [c.args[3] for c in mock_compose.call_args_list]
        assert shells == ["mongosh", "mongo"]

    @patch("docker_stack.compose", return_value=_completed(returncode=1))
    def test_all_shells_fail(self, _compose):
        assert mongo_shell_eval("1") is None

    @patch("docker_stack.mongo_shell_eval", return_value="some banner\n42")
    def test_count_documents_takes_last_line(self, _eval):
        assert count_documents("entries", "nightscout", "pw") == 42

    @patch("docker_stack.mongo_shell_eval", return_value="not a number")
    def test_count_documents_unparseable(self, _eval):
        assert count_documents("entries", "nightscout") is None


class TestRestore:

    @patch("docker_stack.compose")
    def test_database_dir(self, mock_compose):
        restore_in_container("/tmp/import_data", "nightscout", "pw")
        args = mock_compose.call_args.args
        assert args[:4] == ("exec", "-T", "mongo", "mongorestore")
        assert "--db=nightscout" in args
        assert "--drop" in args
        assert args[-1] == "/tmp/import_data"

    @patch("docker_stack.compose")
    def test_oplog_replay(self, mock_compose):
        restore_in_container("/tmp/import_data", "cgm", None, drop=False, oplog=True)
        args = mock_compose.call_args.args
        assert "--oplogReplay" in args
        assert "--nsInclude=cgm.*" in args
        assert "--drop" not in args
        assert "--username" not in args


class TestWaits:

    @patch("ops_common.time.sleep")
    def test_wait_for_nightscout(self, mock_sleep):
        api = MagicMock()
        api.is_up.side_effect = [False, True]
        assert docker_stack.wait_for_nightscout(api, attempts=3, interval=5)
        mock_sleep.assert_has_calls([call(5), call(5)])
