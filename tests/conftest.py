"""Shared test fixtures for servemount."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import List, Optional

import pytest

from servemount import CONFIG_ENV
from servemount.config import MountConfig
from servemount.models import ReadyResult
from servemount.mount_poller import MountPoller
from servemount.process_monitor import ProcessMonitor


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the user's real config file and environment out of every test."""
    monkeypatch.delenv(CONFIG_ENV, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))


@pytest.fixture
def fast_config() -> MountConfig:
    """Config with short timeouts so teardown ladders finish quickly."""
    return MountConfig(
        ready_timeout=5,
        stop_timeout=0.3,
        poll_interval=0.01,
        mount_check_timeout=1,
    )


# ---------------------------------------------------------------------------
# Fake collaborators for the state machine
# ---------------------------------------------------------------------------


class FakeMonitor:
    """Controller that stays alive until told otherwise."""

    def __init__(self) -> None:
        self.alive = True
        self.dies_on_terminate = True
        self.terminate_calls = 0

    def track(self, process) -> int:
        return process.pid

    def is_alive(self, controller_id: Optional[int]) -> bool:
        return controller_id is not None and self.alive

    def terminate(self, controller_id: Optional[int]) -> None:
        self.terminate_calls += 1
        if self.dies_on_terminate:
            self.alive = False


class FakePoller:
    """Mount that is mounted until a configured unmount attempt succeeds.

    Args:
        monitor: Controller killed when the unmount takes effect.
        unmount_works_on: 1-based unmount attempt that makes the controller
            exit; None means unmounting never helps (busy mount).
    """

    def __init__(self, monitor: FakeMonitor, unmount_works_on: Optional[int] = None) -> None:
        self.monitor = monitor
        self.mounted = True
        self.ready_result = ReadyResult.READY
        self.unmount_works_on = unmount_works_on
        self.unmount_calls = 0
        self.wait_calls: List[tuple] = []

    def is_mounted(self, path) -> bool:
        return self.mounted

    def wait_for_ready(self, controller_id, path, timeout, token=None) -> ReadyResult:
        self.wait_calls.append((controller_id, path, timeout))
        return self.ready_result

    def unmount(self, path) -> bool:
        self.unmount_calls += 1
        if self.unmount_works_on is not None and self.unmount_calls >= self.unmount_works_on:
            self.mounted = False
            self.monitor.alive = False
            return True
        return False


@pytest.fixture
def fake_monitor() -> FakeMonitor:
    return FakeMonitor()


@pytest.fixture
def fake_poller(fake_monitor: FakeMonitor) -> FakePoller:
    return FakePoller(fake_monitor)


# ---------------------------------------------------------------------------
# A real "mount" process for end-to-end runs
# ---------------------------------------------------------------------------

FAKE_MOUNT_SCRIPT = '''\
import pathlib
import sys
import time

mountpoint = pathlib.Path(sys.argv[1])
flag = pathlib.Path(sys.argv[2]) / (mountpoint.name + ".mounted")
mode = sys.argv[3]

if mode == "exit":
    sys.exit(1)
if mode == "hang":
    time.sleep(60)
    sys.exit(0)

content = mountpoint / "data.txt"
if mode == "populated":
    content.write_text("hello from the mount")
flag.touch()
while flag.exists():
    time.sleep(0.02)
if content.exists():
    content.unlink()
'''


class FlagPoller(MountPoller):
    """Treats a flag file next to the mount as "mounted"; unmount deletes it."""

    def __init__(self, flag_dir: Path, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.flag_dir = flag_dir

    def _flag(self, path) -> Path:
        return self.flag_dir / (Path(path).name + ".mounted")

    def is_mounted(self, path) -> bool:
        return self._flag(path).exists()

    def unmount(self, path) -> bool:
        flag = self._flag(path)
        if flag.exists():
            flag.unlink()
            return True
        return False


@pytest.fixture
def flag_dir(tmp_path: Path) -> Path:
    flags = tmp_path / "flags"
    flags.mkdir()
    return flags


@pytest.fixture
def fake_mount_script(tmp_path: Path) -> Path:
    script = tmp_path / "fake_mount.py"
    script.write_text(FAKE_MOUNT_SCRIPT, encoding="utf-8")
    return script


@pytest.fixture
def mount_command(fake_mount_script: Path, flag_dir: Path):
    """Build a fake mount command for a given mode.

    Modes: ``populated`` (mounts with one file), ``empty`` (mounts with no
    files), ``exit`` (dies before mounting), ``hang`` (never mounts).
    """

    def _build(mode: str = "populated") -> List[str]:
        return [sys.executable, str(fake_mount_script), "MOUNTPOINT", str(flag_dir), mode]

    return _build


@pytest.fixture
def flag_supervisor_factory(flag_dir: Path):
    """Supervisor factory wiring a real ProcessMonitor to a FlagPoller."""
    from servemount.supervisor import MountSupervisor

    created = []

    def _factory(config: MountConfig) -> MountSupervisor:
        monitor = ProcessMonitor(process_group=config.process_group)
        poller = FlagPoller(
            flag_dir,
            monitor,
            poll_interval=config.poll_interval,
            check_timeout=config.mount_check_timeout,
        )
        supervisor = MountSupervisor(config, monitor=monitor, poller=poller)
        created.append(supervisor)
        return supervisor

    _factory.created = created
    return _factory
