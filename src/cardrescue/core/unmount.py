"""
Unmount Coordinator.

Makes sure the target device has no active mounts before it is imaged.
Each mount point goes through a fixed escalation ladder:

    GRACEFUL        umount <mp>
    KILL_AND_RETRY  terminate processes holding <mp>, then umount <mp>
    LAZY            umount -l <mp>   (degraded: release is deferred)

A step only runs if the one before it failed. If every step fails the
pipeline stops with UnmountError.
"""

import os
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List

import psutil

from .device import parent_disk
from ..errors import UnmountError
from ..utils import CommandRunner, run_command

logger = logging.getLogger(__name__)


class UnmountStep(Enum):
    GRACEFUL = "graceful"
    KILL_AND_RETRY = "kill_and_retry"
    LAZY = "lazy"


LADDER = (UnmountStep.GRACEFUL, UnmountStep.KILL_AND_RETRY, UnmountStep.LAZY)

# Never unmounted or cleared of processes, whatever device they belong to
SYSTEM_MOUNTS = frozenset(["/", "/boot", "/boot/efi", "/etc", "/home", "/opt", "/root",
                           "/srv", "/usr", "/var"])


def is_system_mount(mountpoint: str) -> bool:
    return os.path.normpath(mountpoint) in SYSTEM_MOUNTS


@dataclass
class UnmountReport:
    """Which ladder step released each mount point"""
    device: str
    steps: Dict[str, UnmountStep] = field(default_factory=dict)

    @property
    def noop(self) -> bool:
        return not self.steps

    @property
    def degraded(self) -> bool:
        return UnmountStep.LAZY in self.steps.values()


class MountOps:
    """Collaborator interface for the mount table and unmount primitives"""

    def mountpoints(self, device: str) -> List[str]:
        raise NotImplementedError

    def unmount(self, mountpoint: str, lazy: bool = False) -> bool:
        raise NotImplementedError

    def kill_holders(self, mountpoint: str) -> int:
        raise NotImplementedError


class SystemMountOps(MountOps):
    """Mount operations on the live system: psutil for lookups, umount(8) to detach"""

    def __init__(self, runner: CommandRunner = run_command, kill_timeout: float = 3.0):
        self.runner = runner
        self.kill_timeout = kill_timeout

    def mountpoints(self, device: str) -> List[str]:
        """Mount points of device and of every partition on it, deepest first"""
        target = os.path.realpath(device)
        found = []
        for partition in psutil.disk_partitions(all=True):
            if not partition.device.startswith("/dev/"):
                continue
            source = os.path.realpath(partition.device)
            if source == target or parent_disk(source) == target:
                found.append(partition.mountpoint)
        return sorted(set(found), key=len, reverse=True)

    def unmount(self, mountpoint: str, lazy: bool = False) -> bool:
        cmd = ["umount", "-l", mountpoint] if lazy else ["umount", mountpoint]
        result = self.runner(cmd)
        if not result.success:
            logger.warning(f"{' '.join(cmd)} failed: {result.stderr.strip()}")
        return result.success

    def kill_holders(self, mountpoint: str) -> int:
        """
        Terminate every process with an open file or working directory under
        mountpoint. Processes still alive after kill_timeout are killed.

        Returns:
            Number of processes signalled

        Raises:
            UnmountError: If mountpoint is a system mount such as /
        """
        if is_system_mount(mountpoint):
            raise UnmountError(f"Refusing to terminate processes under system mount {mountpoint}",
                               "Pass the card's own device with --device "
                               "(see 'cardrescue devices').")
        prefix = mountpoint.rstrip("/") + "/"
        holders = []
        for proc in psutil.process_iter(["pid", "name"]):
            if proc.pid == os.getpid():
                continue
            try:
                paths = [f.path for f in proc.open_files()]
                paths.append(proc.cwd())
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
            if any(p == mountpoint or p.startswith(prefix) for p in paths):
                holders.append(proc)

        for proc in holders:
            logger.warning(f"Terminating {proc.info['name']} (pid {proc.pid}) "
                           f"holding {mountpoint}")
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(holders, timeout=self.kill_timeout)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass
        psutil.wait_procs(alive, timeout=self.kill_timeout)
        return len(holders)


class UnmountCoordinator:
    """Detach every mount of a device, escalating per mount point"""

    def __init__(self, ops: MountOps):
        self.ops = ops

    def release(self, device: str) -> UnmountReport:
        """
        Guarantee device has zero active mounts.

        Returns:
            UnmountReport; report.degraded is set if a lazy unmount was needed

        Raises:
            UnmountError: If a mount point survives the whole ladder, or
                the device backs a system mount (it is not a removable card)
        """
        report = UnmountReport(device)
        mounted = self.ops.mountpoints(device)
        if not mounted:
            logger.info(f"No partitions of {device} are mounted")
            return report

        system = [mp for mp in mounted if is_system_mount(mp)]
        if system:
            raise UnmountError(f"{device} holds system mount(s) {', '.join(system)}; "
                               f"it is not a removable card",
                               "Check the device with 'cardrescue devices' and pass the card "
                               "with --device.")

        logger.info(f"Unmounting {len(mounted)} mount point(s) of {device}: "
                    f"{', '.join(mounted)}")
        for mountpoint in mounted:
            report.steps[mountpoint] = self._detach(mountpoint)

        remaining = self.ops.mountpoints(device)
        if remaining:
            raise UnmountError(f"{device} is still mounted at {', '.join(remaining)}")

        if report.degraded:
            logger.warning(f"{device} was lazily unmounted; it is accessible for imaging "
                           f"but programs may still hold files open")
        return report

    def _detach(self, mountpoint: str) -> UnmountStep:
        for step in LADDER:
            if self._attempt(step, mountpoint):
                logger.info(f"Unmounted {mountpoint} ({step.value})")
                return step
            logger.info(f"{step.value} unmount of {mountpoint} failed")
        raise UnmountError(f"Failed to unmount {mountpoint}")

    def _attempt(self, step: UnmountStep, mountpoint: str) -> bool:
        if step is UnmountStep.GRACEFUL:
            return self.ops.unmount(mountpoint)
        if step is UnmountStep.KILL_AND_RETRY:
            killed = self.ops.kill_holders(mountpoint)
            logger.info(f"Signalled {killed} process(es) holding {mountpoint}")
            return self.ops.unmount(mountpoint)
        return self.ops.unmount(mountpoint, lazy=True)
