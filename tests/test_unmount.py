import pytest

from cardrescue.core import unmount
from cardrescue.core.unmount import SystemMountOps, UnmountCoordinator, UnmountStep
from cardrescue.errors import UnmountError

from fakes import FakeMountOps


def test_nothing_mounted_is_a_noop():
    ops = FakeMountOps()
    report = UnmountCoordinator(ops).release("/dev/sdb")

    assert report.noop
    assert not report.degraded
    assert ops.calls == []


def test_graceful_unmount():
    ops = FakeMountOps(["/media/card"])
    report = UnmountCoordinator(ops).release("/dev/sdb")

    assert report.steps == {"/media/card": UnmountStep.GRACEFUL}
    assert ops.calls == [("umount", "/media/card")]
    assert ops.mounted == []


def test_busy_mount_kills_holders_before_lazy():
    ops = FakeMountOps(["/media/card"], refuse={"/media/card": 1})
    report = UnmountCoordinator(ops).release("/dev/sdb")

    assert report.steps["/media/card"] is UnmountStep.KILL_AND_RETRY
    assert not report.degraded
    assert ops.calls == [("umount", "/media/card"), ("kill", "/media/card"),
                         ("umount", "/media/card")]


def test_lazy_unmount_is_degraded():
    ops = FakeMountOps(["/media/card"], refuse={"/media/card": 2})
    report = UnmountCoordinator(ops).release("/dev/sdb")

    assert report.steps["/media/card"] is UnmountStep.LAZY
    assert report.degraded
    assert ops.calls[-1] == ("lazy", "/media/card")


def test_every_partition_gets_its_own_ladder():
    ops = FakeMountOps(["/media/card/inner", "/media/card"], refuse={"/media/card": 1})
    report = UnmountCoordinator(ops).release("/dev/sdb")

    assert report.steps == {
        "/media/card/inner": UnmountStep.GRACEFUL,
        "/media/card": UnmountStep.KILL_AND_RETRY,
    }


def test_failed_ladder_raises():
    ops = FakeMountOps(["/media/card"], refuse={"/media/card": 3})
    with pytest.raises(UnmountError):
        UnmountCoordinator(ops).release("/dev/sdb")
    assert ops.mounted == ["/media/card"]


def test_remount_after_release_is_detected():
    class Sticky(FakeMountOps):
        def unmount(self, mountpoint, lazy=False):
            self.calls.append(("umount", mountpoint))
            return True

    with pytest.raises(UnmountError):
        UnmountCoordinator(Sticky(["/media/card"])).release("/dev/sdb")


@pytest.mark.parametrize("mounted", [["/"], ["/media/card", "/"], ["/home/"]])
def test_device_backing_a_system_mount_is_left_alone(mounted):
    ops = FakeMountOps(mounted)
    with pytest.raises(UnmountError):
        UnmountCoordinator(ops).release("/dev/sda")
    assert ops.calls == []
    assert ops.mounted == mounted


class FakeProcess:
    def __init__(self, pid, cwd, files=()):
        self.pid = pid
        self.info = {"pid": pid, "name": f"proc{pid}"}
        self._cwd = cwd
        self._files = [type("OpenFile", (), {"path": path})() for path in files]
        self.terminated = False

    def open_files(self):
        return self._files

    def cwd(self):
        return self._cwd

    def terminate(self):
        self.terminated = True

    def kill(self):
        self.terminated = True


@pytest.fixture
def processes(monkeypatch):
    procs = [FakeProcess(101, "/home/user"), FakeProcess(102, "/", ["/var/log/syslog"]),
             FakeProcess(103, "/tmp", ["/media/card/DCIM/IMG_0001.JPG"]),
             FakeProcess(104, "/media/card")]
    monkeypatch.setattr(unmount.psutil, "process_iter", lambda attrs=None: iter(procs))
    monkeypatch.setattr(unmount.psutil, "wait_procs",
                        lambda procs, timeout=None: (list(procs), []))
    return procs


def test_kill_holders_only_touches_processes_under_the_mount(processes):
    assert SystemMountOps().kill_holders("/media/card") == 2
    assert [p.pid for p in processes if p.terminated] == [103, 104]


def test_kill_holders_refuses_root(processes):
    with pytest.raises(UnmountError):
        SystemMountOps().kill_holders("/")
    assert not any(p.terminated for p in processes)
