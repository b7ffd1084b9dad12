"""Unit tests for the contactcache CLI (processes and signals are mocked)."""

import signal
from unittest.mock import MagicMock, patch

import pytest

from conftest import make_entry
from contactcache import cli
from contactcache.daemon import DaemonConfigStore
from contactcache.errors import BridgeUnavailable
from contactcache.models import DaemonConfig, DaemonStatus, ScoredContact


@pytest.fixture
def config_store(tmp_path):
    store = DaemonConfigStore(tmp_path / "daemon-config.json")
    with patch('contactcache.cli.DaemonConfigStore', return_value=store):
        yield store


@pytest.fixture
def supervisor():
    sup = MagicMock()
    sup.live_pid.return_value = None
    with patch('contactcache.cli.ProcessSupervisor', return_value=sup):
        yield sup


class TestMain:
    def test_no_command_prints_help(self, capsys):
        assert cli.main([]) == 1
        assert "usage" in capsys.readouterr().out.lower()


class TestStart:
    def test_already_running(self, supervisor, capsys):
        supervisor.live_pid.return_value = 4242
        assert cli.main(["start"]) == 1
        assert "already running (PID 4242)" in capsys.readouterr().out

    @patch('contactcache.cli.time.sleep')
    @patch('contactcache.cli.subprocess.Popen')
    def test_launches_detached_daemon(self, mock_popen, mock_sleep, supervisor, capsys):
        process = MagicMock(pid=4242)
        process.poll.return_value = None
        mock_popen.return_value = process
        supervisor.live_pid.side_effect = [None, None, 4242]

        assert cli.main(["start"]) == 0

        args, kwargs = mock_popen.call_args
        assert args[0][1:] == ["-m", "contactcache.daemon"]
        assert kwargs["start_new_session"] is True
        assert "Daemon started (PID 4242)" in capsys.readouterr().out

    @patch('contactcache.cli.time.sleep')
    @patch('contactcache.cli.subprocess.Popen')
    def test_reports_early_exit(self, mock_popen, mock_sleep, supervisor, capsys):
        process = MagicMock(pid=4242, returncode=1)
        process.poll.return_value = 1
        mock_popen.return_value = process

        assert cli.main(["start"]) == 1
        assert "exited during startup" in capsys.readouterr().out


class TestStop:
    def test_not_running(self, supervisor, capsys):
        assert cli.main(["stop"]) == 1
        assert "not running" in capsys.readouterr().out

    @patch('contactcache.cli.pid_alive', return_value=False)
    @patch('contactcache.cli.os.killpg')
    def test_sends_sigterm_to_group(self, mock_killpg, mock_alive, supervisor):
        supervisor.live_pid.return_value = 4242

        assert cli.main(["stop"]) == 0

        mock_killpg.assert_called_once_with(4242, signal.SIGTERM)
        supervisor.clear_marker.assert_called_once()

    @patch('contactcache.cli.time.sleep')
    @patch('contactcache.cli.pid_alive', return_value=True)
    @patch('contactcache.cli.os.killpg')
    def test_force_kill_when_stuck(self, mock_killpg, mock_alive, mock_sleep, supervisor):
        supervisor.live_pid.return_value = 4242

        assert cli.main(["stop"]) == 0

        assert mock_killpg.call_args_list[-1][0] == (4242, signal.SIGKILL)

    @patch('contactcache.cli.os.killpg', side_effect=ProcessLookupError)
    def test_already_dead(self, mock_killpg, supervisor):
        supervisor.live_pid.return_value = 4242
        assert cli.main(["stop"]) == 0
        supervisor.clear_marker.assert_called_once()


class TestStatus:
    @patch('contactcache.cli.daemon_status')
    def test_not_running(self, mock_status, capsys):
        mock_status.return_value = DaemonStatus(
            running=False, next_update="not scheduled (daemon not running)", config=DaemonConfig()
        )
        assert cli.main(["status"]) == 1
        out = capsys.readouterr().out
        assert "Daemon not running" in out
        assert "never updated" in out

    @patch('contactcache.cli.daemon_status')
    def test_running_json(self, mock_status, capsys):
        mock_status.return_value = DaemonStatus(
            running=True, pid=4242, cache_age_hours=2.5, stale=False,
            contacts_count=10, next_update="in 21h 30m", config=DaemonConfig(),
        )
        assert cli.main(["status", "--json"]) == 0
        out = capsys.readouterr().out
        assert '"pid": 4242' in out
        assert '"contacts_count": 10' in out


class TestUpdate:
    @patch('contactcache.cli.refresh_now', return_value=(True, "Cache updated: 3 contacts, 4 capabilities"))
    def test_success(self, mock_refresh, capsys):
        assert cli.main(["update"]) == 0
        assert "3 contacts" in capsys.readouterr().out

    @patch('contactcache.cli.refresh_now', return_value=(False, "Cache refresh failed: (-1743)"))
    def test_failure(self, mock_refresh):
        assert cli.main(["update"]) == 1


class TestConfig:
    def test_show_all(self, config_store, supervisor, capsys):
        assert cli.main(["config"]) == 0
        assert '"update_interval_hours": 24' in capsys.readouterr().out

    def test_get_key(self, config_store, supervisor, capsys):
        assert cli.main(["config", "get", "enabled"]) == 0
        assert capsys.readouterr().out.strip() == "True"

    def test_get_unknown_key(self, config_store, supervisor):
        assert cli.main(["config", "get", "colour"]) == 1

    def test_set_persists(self, config_store, supervisor):
        assert cli.main(["config", "set", "update_interval_hours", "6"]) == 0
        assert config_store.load().update_interval_hours == 6

    @patch('contactcache.cli.os.kill')
    def test_set_notifies_running_daemon(self, mock_kill, config_store, supervisor):
        supervisor.live_pid.return_value = 4242
        assert cli.main(["config", "set", "log_level", "debug"]) == 0
        mock_kill.assert_called_once_with(4242, signal.SIGHUP)

    def test_set_invalid_value(self, config_store, supervisor, capsys):
        assert cli.main(["config", "set", "update_interval_hours", "0"]) == 1
        assert "Error" in capsys.readouterr().out
        assert config_store.load().update_interval_hours == 24

    def test_set_missing_value(self, config_store, supervisor):
        assert cli.main(["config", "set", "enabled"]) == 1


class TestLookups:
    @patch('contactcache.cli.ContactsService')
    def test_find(self, mock_service, capsys):
        mock_service.return_value.find_contact.return_value = make_entry(
            "Ana Samat", "+16175551234", emails=["ana@example.com"]
        )
        assert cli.main(["find", "ana"]) == 0
        out = capsys.readouterr().out
        assert "Ana Samat" in out
        assert "+16175551234" in out

    @patch('contactcache.cli.ContactsService')
    def test_find_missing(self, mock_service):
        mock_service.return_value.find_contact.return_value = None
        assert cli.main(["find", "zed"]) == 1

    @patch('contactcache.cli.ContactsService')
    def test_find_bridge_down(self, mock_service, capsys):
        mock_service.return_value.find_contact.side_effect = BridgeUnavailable("(-1743)")
        assert cli.main(["find", "ana"]) == 1
        assert "Error" in capsys.readouterr().out

    @patch('contactcache.cli.ContactsService')
    def test_matches(self, mock_service, capsys):
        mock_service.return_value.find_best_matches.return_value = [
            ScoredContact(entry=make_entry("Ana Samat", "+16175551234"), score=90),
        ]
        assert cli.main(["matches", "ana", "--limit", "3"]) == 0
        mock_service.return_value.find_best_matches.assert_called_once_with("ana", 3)
        assert "Ana Samat" in capsys.readouterr().out

    @patch('contactcache.cli.ContactsService')
    def test_phone(self, mock_service, capsys):
        mock_service.return_value.find_contact_by_phone.return_value = "Ana Samat"
        assert cli.main(["phone", "617-555-1234"]) == 0
        assert capsys.readouterr().out.strip() == "Ana Samat"
