import pytest

from cardrescue.core.fsck import FilesystemChecker
from cardrescue.errors import CardRescueError, ConfigurationError

from fakes import FakeRunner, result


def test_check_is_read_only():
    runner = FakeRunner()
    FilesystemChecker(runner).check("/dev/sdb1", "exfat")
    assert runner.calls == [["fsck.exfat", "-n", "/dev/sdb1"]]


def test_repair():
    runner = FakeRunner()
    FilesystemChecker(runner).repair("/dev/sdb1", "vfat")
    assert runner.calls == [["fsck.vfat", "-y", "/dev/sdb1"]]


def test_unknown_filesystem():
    with pytest.raises(ConfigurationError):
        FilesystemChecker.program("zfs")


def test_remount_sets_owner(tmp_path):
    runner = FakeRunner()
    FilesystemChecker(runner).remount("/dev/sdb1", str(tmp_path / "card"), 1000, 1000)
    assert runner.calls == [["mount", "-o", "uid=1000,gid=1000,umask=0022", "/dev/sdb1",
                             str(tmp_path / "card")]]
    assert (tmp_path / "card").is_dir()


def test_remount_failure(tmp_path):
    runner = FakeRunner({"mount": lambda cmd: result(cmd, 32, stderr="wrong fs type")})
    with pytest.raises(CardRescueError):
        FilesystemChecker(runner).remount("/dev/sdb1", str(tmp_path), 1000, 1000)
