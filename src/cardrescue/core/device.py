"""
Device Resolver.

Maps a mount point to the block device behind it, or validates a device
path given directly. Pure lookup and validation, nothing is modified.
"""

import os
import stat
import logging
from pathlib import Path
from typing import Callable, List, Optional

import psutil

from ..errors import InvalidDeviceError, ResolutionError
from ..utils import CommandRunner, format_bytes, run_command

logger = logging.getLogger(__name__)

LSBLK_COLUMNS = "NAME,SIZE,FSTYPE,MOUNTPOINT,LABEL"


def list_block_devices(runner: CommandRunner = run_command) -> str:
    """
    Current block-device listing for the operator.

    Uses lsblk when available, otherwise a table built from the mount table.
    """
    result = runner(["lsblk", "-o", LSBLK_COLUMNS])
    if result.success and result.stdout.strip():
        return result.stdout.rstrip()

    rows = [f"{'DEVICE':<20} {'SIZE':>10} {'FSTYPE':<8} MOUNTPOINT"]
    for partition in psutil.disk_partitions(all=False):
        try:
            size = format_bytes(psutil.disk_usage(partition.mountpoint).total)
        except OSError:
            size = "?"
        rows.append(f"{partition.device:<20} {size:>10} {partition.fstype:<8} "
                    f"{partition.mountpoint}")
    return "\n".join(rows)


def is_block_device(path: str) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


def parent_disk(device: str, sys_block: Path = Path("/sys/class/block")) -> str:
    """
    Whole-disk device for a partition (/dev/sdb1 -> /dev/sdb,
    /dev/mmcblk0p1 -> /dev/mmcblk0). Non-partitions are returned unchanged.
    """
    name = Path(os.path.realpath(device)).name
    entry = sys_block / name
    if not (entry / "partition").exists():
        return device
    parent = Path(os.path.realpath(entry)).parent.name
    return f"/dev/{parent}"


class DeviceResolver:
    """Resolve and validate the Target Device"""

    def __init__(self, runner: CommandRunner = run_command,
                 partitions: Callable[..., List] = psutil.disk_partitions,
                 block_check: Callable[[str], bool] = is_block_device):
        self.runner = runner
        self.partitions = partitions
        self.block_check = block_check

    def resolve(self, device: Optional[str] = None, mountpoint: Optional[str] = None,
                whole_disk: bool = False) -> str:
        """
        Produce a validated block-device path.

        Args:
            device: Explicit device path, takes precedence
            mountpoint: Mount point (or any path below one) to resolve
            whole_disk: Map a partition to its parent disk

        Raises:
            ResolutionError: If the mount point has no backing device
            InvalidDeviceError: If the result is not a block device
        """
        if device is None:
            if mountpoint is None:
                raise ResolutionError("No device or mount point given",
                                      listing=list_block_devices(self.runner))
            device = self.device_for_mountpoint(mountpoint)

        if whole_disk:
            device = parent_disk(device)

        self.validate(device)
        logger.info(f"Target device: {device}")
        return device

    def device_for_mountpoint(self, mountpoint: str) -> str:
        """
        Block device mounted exactly at mountpoint, using the live mount table.

        A path that is not itself a mount point (e.g. a card that dropped off
        and left its empty directory behind) does not resolve, so it can
        never silently map to the filesystem that contains it.
        """
        target = os.path.realpath(mountpoint)
        match = None
        for partition in self.partitions(all=True):
            if partition.mountpoint == target:
                match = partition

        if match is None or not match.device.startswith("/dev/"):
            raise ResolutionError(f"{mountpoint} is not the mount point of a block device",
                                  listing=list_block_devices(self.runner))
        logger.debug(f"{mountpoint} is mounted from {match.device} ({match.fstype})")
        return match.device

    def device_for_path(self, path: str) -> Optional[str]:
        """Block device holding path (deepest containing mount), None if unknown"""
        target = os.path.realpath(path)
        best = None
        for partition in self.partitions(all=True):
            mp = partition.mountpoint
            if target == mp or target.startswith(mp.rstrip("/") + "/"):
                if best is None or len(mp) > len(best.mountpoint):
                    best = partition
        if best is None or not best.device.startswith("/dev/"):
            return None
        return best.device

    def validate(self, device: str) -> None:
        if not os.path.exists(device):
            raise InvalidDeviceError(f"{device} does not exist")
        if not self.block_check(device):
            raise InvalidDeviceError(f"{device} is not a block device")
