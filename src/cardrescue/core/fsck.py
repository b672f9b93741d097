"""
Filesystem check and remount for a camera card that mounts badly.

check() never modifies the filesystem; repair() does and must only run
after the operator has confirmed it.
"""

import logging
from pathlib import Path

from ..errors import ConfigurationError, CardRescueError
from ..utils import CommandResult, CommandRunner, run_command

logger = logging.getLogger(__name__)

# fstype as reported by the mount table -> checker program
FSCK_PROGRAMS = {
    "exfat": "fsck.exfat",
    "vfat": "fsck.vfat",
    "msdos": "fsck.vfat",
    "fat": "fsck.vfat",
    "ext4": "fsck.ext4",
}


class FilesystemChecker:
    def __init__(self, runner: CommandRunner = run_command):
        self.runner = runner

    @staticmethod
    def program(fstype: str) -> str:
        try:
            return FSCK_PROGRAMS[fstype.lower()]
        except KeyError:
            raise ConfigurationError(f"No filesystem checker known for {fstype!r}",
                                     f"Supported types: {', '.join(sorted(FSCK_PROGRAMS))}")

    def check(self, device: str, fstype: str) -> CommandResult:
        """Non-destructive check; a non-zero exit just means errors were found"""
        result = self.runner([self.program(fstype), "-n", device])
        logger.info(f"Check of {device} exited {result.returncode}")
        for line in result.output.splitlines():
            logger.info(f"fsck: {line}")
        return result

    def repair(self, device: str, fstype: str) -> CommandResult:
        result = self.runner([self.program(fstype), "-y", device])
        logger.info(f"Repair of {device} exited {result.returncode}")
        for line in result.output.splitlines():
            logger.info(f"fsck: {line}")
        return result

    def remount(self, device: str, mountpoint: str, uid: int, gid: int,
                umask: str = "0022") -> None:
        """
        Mount device on mountpoint so files belong to uid/gid.

        Raises:
            CardRescueError: If mount fails
        """
        Path(mountpoint).mkdir(parents=True, exist_ok=True)
        options = f"uid={uid},gid={gid},umask={umask}"
        result = self.runner(["mount", "-o", options, device, mountpoint])
        if not result.success:
            raise CardRescueError(f"mount of {device} on {mountpoint} failed: "
                                  f"{result.stderr.strip()}",
                                  "Check the device node still exists and re-run.")
        logger.info(f"Remounted {device} on {mountpoint} ({options})")
