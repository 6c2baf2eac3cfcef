"""Tests for the MountSupervisor state machine and teardown ladder."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from servemount.config import MountConfig
from servemount.models import MountState, ReadyResult
from servemount.supervisor import InvalidTransition, MountSupervisor


@pytest.fixture
def popen():
    """Stand-in for the spawned mount command."""
    with patch("servemount.supervisor.subprocess.Popen") as mock_popen:
        mock_popen.return_value = MagicMock(pid=4242)
        yield mock_popen


@pytest.fixture
def supervisor(fast_config, fake_monitor, fake_poller, popen) -> MountSupervisor:
    return MountSupervisor(fast_config, monitor=fake_monitor, poller=fake_poller)


@pytest.fixture
def mount_dir(tmp_path: Path) -> Path:
    path = tmp_path / "mnt"
    path.mkdir()
    return path


class TestStart:
    def test_start_spawns_detached(self, supervisor, popen, mount_dir):
        handle = supervisor.start(["rclone", "mount", "r:", str(mount_dir)], mount_dir)
        assert supervisor.state is MountState.STARTING
        assert handle.controller_id == 4242
        assert handle.mount_path == mount_dir
        kwargs = popen.call_args.kwargs
        assert kwargs["start_new_session"] is True

    def test_start_twice_is_invalid(self, supervisor, mount_dir):
        supervisor.start(["m"], mount_dir)
        with pytest.raises(InvalidTransition):
            supervisor.start(["m"], mount_dir)

    def test_spawn_failure_fails(self, fast_config, fake_monitor, fake_poller, mount_dir):
        supervisor = MountSupervisor(fast_config, monitor=fake_monitor, poller=fake_poller)
        with patch("servemount.supervisor.subprocess.Popen", side_effect=FileNotFoundError):
            handle = supervisor.start(["no-such-mount-tool"], mount_dir)
        assert handle.controller_id is None
        assert supervisor.state is MountState.FAILED
        assert supervisor.wait_until_ready() is ReadyResult.DEAD
        assert supervisor.stop() is True
        assert supervisor.state is MountState.STOPPED


class TestWaitUntilReady:
    def test_ready(self, supervisor, fake_poller, mount_dir):
        supervisor.start(["m"], mount_dir)
        assert supervisor.wait_until_ready() is ReadyResult.READY
        assert supervisor.state is MountState.READY
        assert fake_poller.wait_calls == [(4242, mount_dir, 5)]

    @pytest.mark.parametrize(
        "result", [ReadyResult.DEAD, ReadyResult.TIMED_OUT, ReadyResult.CANCELLED]
    )
    def test_not_ready_fails(self, supervisor, fake_poller, mount_dir, result):
        fake_poller.ready_result = result
        supervisor.start(["m"], mount_dir)
        assert supervisor.wait_until_ready() is result
        assert supervisor.state is MountState.FAILED

    def test_wait_before_start_is_invalid(self, supervisor):
        with pytest.raises(InvalidTransition):
            supervisor.wait_until_ready()


class TestStop:
    def test_stop_before_start(self, supervisor):
        assert supervisor.stop() is True
        assert supervisor.state is MountState.STOPPED

    def test_dead_controller_is_noop(self, supervisor, fake_monitor, fake_poller, mount_dir):
        supervisor.start(["m"], mount_dir)
        supervisor.wait_until_ready()
        fake_monitor.alive = False
        assert supervisor.stop() is True
        assert fake_poller.unmount_calls == 0
        assert fake_monitor.terminate_calls == 0
        assert supervisor.state is MountState.STOPPED

    def test_clean_unmount(self, supervisor, fake_monitor, fake_poller, mount_dir):
        fake_poller.unmount_works_on = 1
        supervisor.start(["m"], mount_dir)
        supervisor.wait_until_ready()
        assert supervisor.stop() is True
        assert fake_poller.unmount_calls == 1
        assert fake_monitor.terminate_calls == 0

    def test_retry_unmount(self, supervisor, fake_monitor, fake_poller, mount_dir):
        fake_poller.unmount_works_on = 2
        supervisor.start(["m"], mount_dir)
        supervisor.wait_until_ready()
        assert supervisor.stop() is True
        assert fake_poller.unmount_calls == 2
        assert fake_monitor.terminate_calls == 0

    def test_escalates_to_terminate(self, supervisor, fake_monitor, fake_poller, mount_dir):
        supervisor.start(["m"], mount_dir)
        supervisor.wait_until_ready()
        assert supervisor.stop() is True
        assert fake_poller.unmount_calls == 2
        assert fake_monitor.terminate_calls == 1

    def test_unkillable_controller(self, supervisor, fake_monitor, fake_poller, mount_dir):
        fake_monitor.dies_on_terminate = False
        supervisor.start(["m"], mount_dir, owns_directory=True)
        supervisor.wait_until_ready()
        assert supervisor.stop() is False
        assert fake_monitor.terminate_calls == 1
        assert supervisor.state is MountState.STOPPED
        # The directory of a mount that may still be live is left alone.
        assert mount_dir.exists()

    def test_two_phase_ladder(self, fast_config, fake_monitor, fake_poller, popen, mount_dir):
        config = fast_config.model_copy(update={"teardown_phases": 2})
        supervisor = MountSupervisor(config, monitor=fake_monitor, poller=fake_poller)
        supervisor.start(["m"], mount_dir)
        supervisor.wait_until_ready()
        assert supervisor.stop() is True
        assert fake_poller.unmount_calls == 1
        assert fake_monitor.terminate_calls == 1

    def test_not_mounted_skips_unmount(self, supervisor, fake_monitor, fake_poller, mount_dir):
        fake_poller.ready_result = ReadyResult.TIMED_OUT
        fake_poller.mounted = False
        supervisor.start(["m"], mount_dir)
        supervisor.wait_until_ready()
        assert supervisor.stop() is True
        assert fake_poller.unmount_calls == 0
        assert fake_monitor.terminate_calls == 1

    def test_not_mounted_terminates_without_waiting(self, fake_monitor, fake_poller, popen,
                                                    mount_dir):
        config = MountConfig(stop_timeout=3, poll_interval=0.01)
        supervisor = MountSupervisor(config, monitor=fake_monitor, poller=fake_poller)
        fake_poller.ready_result = ReadyResult.TIMED_OUT
        fake_poller.mounted = False
        fake_monitor.dies_on_terminate = False
        supervisor.start(["m"], mount_dir)
        supervisor.wait_until_ready()

        waits = []
        original = supervisor._wait_for_exit

        def record(timeout):
            waits.append((timeout, fake_monitor.terminate_calls))
            return original(timeout)

        with patch.object(supervisor, "_wait_for_exit", side_effect=record):
            assert supervisor.stop() is False

        # A single phase, and the process was already signalled before it.
        assert waits == [(pytest.approx(1.0), 1)]
        assert fake_poller.unmount_calls == 0

    def test_stop_from_failed(self, supervisor, fake_monitor, fake_poller, mount_dir):
        fake_poller.ready_result = ReadyResult.DEAD
        fake_monitor.alive = False
        supervisor.start(["m"], mount_dir)
        supervisor.wait_until_ready()
        assert supervisor.stop() is True
        assert supervisor.state is MountState.STOPPED

    def test_stop_is_latched(self, supervisor, fake_monitor, fake_poller, mount_dir):
        fake_monitor.dies_on_terminate = False
        supervisor.start(["m"], mount_dir)
        supervisor.wait_until_ready()
        assert supervisor.stop() is False
        assert supervisor.stop() is False
        assert fake_monitor.terminate_calls == 1
        assert fake_poller.unmount_calls == 2

    def test_removes_owned_directory(self, supervisor, fake_poller, mount_dir):
        fake_poller.unmount_works_on = 1
        supervisor.start(["m"], mount_dir, owns_directory=True)
        supervisor.wait_until_ready()
        assert supervisor.stop() is True
        assert not mount_dir.exists()

    def test_keeps_caller_directory(self, supervisor, fake_poller, mount_dir):
        fake_poller.unmount_works_on = 1
        supervisor.start(["m"], mount_dir, owns_directory=False)
        supervisor.wait_until_ready()
        assert supervisor.stop() is True
        assert mount_dir.exists()

    def test_non_empty_owned_directory_fails_cleanup(self, supervisor, fake_poller, mount_dir):
        fake_poller.unmount_works_on = 1
        (mount_dir / "leftover").write_text("x")
        supervisor.start(["m"], mount_dir, owns_directory=True)
        supervisor.wait_until_ready()
        assert supervisor.stop() is False
        assert (mount_dir / "leftover").exists()

    def test_interrupted_teardown_still_stops(self, supervisor, fake_poller, mount_dir):
        supervisor.start(["m"], mount_dir)
        supervisor.wait_until_ready()
        with patch.object(fake_poller, "unmount", side_effect=KeyboardInterrupt):
            with pytest.raises(KeyboardInterrupt):
                supervisor.stop()
        assert supervisor.state is MountState.STOPPED
        assert supervisor.stop() is False


class TestPhaseTiming:
    def test_phase_budget_is_split(self, fake_monitor, fake_poller, popen, mount_dir):
        config = MountConfig(stop_timeout=0.6, poll_interval=0.01)
        supervisor = MountSupervisor(config, monitor=fake_monitor, poller=fake_poller)
        waits = []
        original = supervisor._wait_for_exit

        def record(timeout):
            waits.append(timeout)
            return original(timeout)

        supervisor.start(["m"], mount_dir)
        supervisor.wait_until_ready()
        with patch.object(supervisor, "_wait_for_exit", side_effect=record):
            supervisor.stop()
        assert waits == [pytest.approx(0.2)] * 3
