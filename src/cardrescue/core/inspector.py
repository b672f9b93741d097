"""
Partition Inspector.

Reports the partition/filesystem layout inside a disk image for the
operator's sanity check. Nothing downstream depends on the result, so
every failure here is logged as an InspectionWarning and swallowed.
"""

import json
import logging
from pathlib import Path
from typing import FrozenSet, List

from .partition_parser import PartitionInfo, PartitionTableParser
from ..errors import InspectionWarning
from ..utils import CommandRunner, run_command

logger = logging.getLogger(__name__)


class PartitionInspector:
    """Attach the image as a loop device with partition scanning, list, detach"""

    def __init__(self, runner: CommandRunner = run_command,
                 capabilities: FrozenSet[str] = frozenset({"losetup", "lsblk"})):
        self.runner = runner
        self.capabilities = capabilities

    def inspect(self, image_path: Path) -> List[PartitionInfo]:
        """
        List partitions found in the image. Never raises.

        Falls back to reading the partition table directly when the loop
        device tools are not installed.
        """
        try:
            if {"losetup", "lsblk"} <= self.capabilities:
                partitions = self._inspect_loopback(Path(image_path))
            else:
                logger.info("losetup/lsblk not available, parsing the partition table directly")
                partitions = self._inspect_table(Path(image_path))
        except InspectionWarning as e:
            logger.warning(f"Partition inspection failed: {e}")
            return []

        if not partitions:
            logger.warning(f"No partitions recognised in {image_path}; carving does not need them")
        for part in partitions:
            logger.info(f"Partition {part.name}: {part.size} bytes, "
                        f"fstype={part.fstype or 'unknown'}")
        return partitions

    def _inspect_loopback(self, image_path: Path) -> List[PartitionInfo]:
        attach = self.runner(["losetup", "--show", "-f", "-P", "-r", str(image_path)])
        loopdev = attach.stdout.strip()
        if not attach.success or not loopdev:
            raise InspectionWarning(f"losetup could not attach {image_path}: "
                                    f"{attach.stderr.strip()}")
        logger.info(f"Associated loop device: {loopdev}")

        try:
            listing = self.runner(["lsblk", "-J", "-b", "-o", "NAME,SIZE,FSTYPE,MOUNTPOINT",
                                   loopdev])
            if not listing.success:
                raise InspectionWarning(f"lsblk failed on {loopdev}: {listing.stderr.strip()}")
            return self.parse_lsblk(listing.stdout)
        finally:
            detach = self.runner(["losetup", "-d", loopdev])
            if not detach.success:
                logger.warning(f"Could not detach {loopdev}: {detach.stderr.strip()}")

    def _inspect_table(self, image_path: Path) -> List[PartitionInfo]:
        try:
            return PartitionTableParser(str(image_path)).parse()
        except OSError as e:
            raise InspectionWarning(f"Cannot read {image_path}: {e}")

    @staticmethod
    def parse_lsblk(output: str) -> List[PartitionInfo]:
        """Children of the loop device from `lsblk -J -b` output"""
        try:
            devices = json.loads(output).get("blockdevices", [])
        except (ValueError, AttributeError) as e:
            raise InspectionWarning(f"Unparseable lsblk output: {e}")

        partitions = []
        for dev in devices:
            # A table-less image has no children; report the loop device itself
            for child in dev.get("children") or [dev]:
                partitions.append(PartitionInfo(
                    name=child.get("name", ""),
                    size=int(child.get("size") or 0),
                    fstype=child.get("fstype") or "",
                    mountpoint=child.get("mountpoint") or "",
                ))
        return partitions
