from unittest import mock

import pytest

from gpushare.log_tailer import Tailer


def _fake_process(wait_value=-9):
    process = mock.Mock()
    process.poll.return_value = None
    process.wait.return_value = wait_value
    return process


def test_start_runs_tail_from_first_line():
    process = _fake_process(wait_value=-9)
    with mock.patch("subprocess.Popen", return_value=process) as popen:
        tailer = Tailer("/tmp/control.log")
        tailer.start()
        status = tailer.stop()
    assert popen.call_args[0][0] == ["tail", "-n", "+1", "-f", "/tmp/control.log"]
    assert status == -9


def test_stop_kills_and_returns_wait_status():
    process = _fake_process(wait_value=-9)
    with mock.patch("subprocess.Popen", return_value=process):
        tailer = Tailer("log")
        tailer.start()
        status = tailer.stop()
    assert status == -9
    assert process.kill.call_count == 1


def test_stop_does_not_kill_finished_process():
    process = _fake_process(wait_value=0)
    process.poll.return_value = 0
    with mock.patch("subprocess.Popen", return_value=process):
        tailer = Tailer("log")
        tailer.start()
        assert tailer.stop() == 0
    assert process.kill.call_count == 0


def test_stop_without_start_returns_none():
    assert Tailer("log").stop() is None


def test_start_failure_is_raised():
    with mock.patch("subprocess.Popen", side_effect=FileNotFoundError("tail")):
        with pytest.raises(FileNotFoundError):
            Tailer("log").start()


def test_context_manager_starts_and_stops():
    process = _fake_process()
    with mock.patch("subprocess.Popen", return_value=process) as popen:
        with Tailer("log") as tailer:
            assert tailer.filename == "log"
    assert popen.call_count == 1
    assert process.kill.call_count == 1