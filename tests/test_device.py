import pytest

from cardrescue.core.device import DeviceResolver, list_block_devices, parent_disk
from cardrescue.errors import InvalidDeviceError, ResolutionError

from fakes import FakeRunner, Partition, result

LSBLK = "NAME   SIZE FSTYPE MOUNTPOINT LABEL\nsdb   29.7G\n└─sdb1 29.7G exfat /media/card CANON"

MOUNTS = [
    Partition("/dev/sda2", "/", "ext4", "rw"),
    Partition("/dev/sdb1", "/media/card", "exfat", "rw"),
    Partition("tmpfs", "/run/user/1000", "tmpfs", "rw"),
]


def resolver(partitions=MOUNTS, block_check=lambda path: True):
    runner = FakeRunner({"lsblk": lambda cmd: result(cmd, stdout=LSBLK)})
    return DeviceResolver(runner, partitions=lambda all=True: list(partitions),
                          block_check=block_check)


def test_mountpoint_maps_to_its_device():
    assert resolver().device_for_mountpoint("/media/card") == "/dev/sdb1"


@pytest.mark.parametrize("path", ["/media/unplugged", "/home/user", "/media/card/DCIM"])
def test_path_that_is_not_a_mount_point_does_not_resolve(path):
    # a card that dropped off leaves its directory on the root filesystem
    with pytest.raises(ResolutionError) as info:
        resolver().resolve(mountpoint=path)
    assert "sdb1" in info.value.listing


def test_device_for_path_uses_deepest_mount():
    assert resolver().device_for_path("/media/card/DCIM/100CANON") == "/dev/sdb1"
    assert resolver().device_for_path("/home/user") == "/dev/sda2"
    assert resolver().device_for_path("/run/user/1000/x") is None


def test_non_device_mount_fails_with_listing():
    with pytest.raises(ResolutionError) as info:
        resolver().device_for_mountpoint("/run/user/1000")
    assert "sdb1" in info.value.listing


def test_no_device_and_no_mountpoint():
    with pytest.raises(ResolutionError):
        resolver().resolve()


def test_resolve_through_mountpoint():
    mounts = [Partition("/dev/null", "/media/card", "vfat", "rw")]
    assert resolver(mounts).resolve(mountpoint="/media/card") == "/dev/null"


def test_regular_file_is_not_a_block_device(tmp_path):
    card = tmp_path / "card.img"
    card.write_bytes(b"\0" * 512)
    with pytest.raises(InvalidDeviceError):
        DeviceResolver(FakeRunner()).resolve(device=str(card))


def test_missing_device():
    with pytest.raises(InvalidDeviceError):
        resolver().resolve(device="/dev/does-not-exist")


def test_parent_disk(tmp_path):
    (tmp_path / "devices" / "sdb" / "sdb1").mkdir(parents=True)
    (tmp_path / "devices" / "sdb" / "sdb1" / "partition").write_text("1\n")
    sys_block = tmp_path / "class"
    sys_block.mkdir()
    (sys_block / "sdb1").symlink_to(tmp_path / "devices" / "sdb" / "sdb1")
    (sys_block / "sdb").symlink_to(tmp_path / "devices" / "sdb")

    assert parent_disk("/dev/sdb1", sys_block) == "/dev/sdb"
    assert parent_disk("/dev/sdb", sys_block) == "/dev/sdb"


def test_list_block_devices_uses_lsblk():
    runner = FakeRunner({"lsblk": lambda cmd: result(cmd, stdout=LSBLK)})
    assert list_block_devices(runner) == LSBLK
    assert runner.calls[0][:2] == ["lsblk", "-o"]
