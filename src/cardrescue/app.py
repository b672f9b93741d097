"""
CardRescue - Central Application Controller

Coordinates the photo recovery pipeline for a failing removable device:
resolve the device, unmount it, image it resumably, inspect the image's
partitions and carve files from it with every available engine.

Author: CardRescue Development Team
Version: 1.0.0
"""

import os
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from .config import RescueConfig
from .core.carving import CarveSummary, CarvingDispatcher, CarvingEngine, default_engines
from .core.device import DeviceResolver, parent_disk
from .core.fsck import FilesystemChecker
from .core.health import HealthReport, HeaderHealthChecker
from .core.imager import Imager, ProgressCallback, select_imager
from .core.inspector import PartitionInspector
from .core.partition_parser import PartitionInfo
from .core.progress_map import ProgressMap
from .core.unmount import MountOps, SystemMountOps, UnmountCoordinator, UnmountReport
from .errors import ConfigurationError, ImagingError, OperatorAbort
from .utils import CommandRunner, detect_capabilities, device_size, format_bytes, free_bytes, \
    run_command

# (message, token) -> True if the operator typed token
Confirm = Callable[[str, str], bool]


def _refuse(message: str, token: str) -> bool:
    return False


class RecoverySession:
    """
    One imaging attempt, possibly spanning several invocations. The map at
    map_path is what makes it resumable.
    """

    def __init__(self, config: RescueConfig, device: str, run_type: str):
        self.device = device
        self.run_type = run_type
        self.output_dir = config.require_output_dir()
        self.image_path = config.image_path
        self.map_path = config.map_path
        self.retry_passes = config.retry_passes
        self.created_at = datetime.now()

    @property
    def resumable(self) -> bool:
        return self.map_path.exists()

    def to_dict(self) -> Dict[str, Any]:
        """Convert session to dictionary for serialization"""
        return {
            "device": self.device,
            "run_type": self.run_type,
            "output_dir": str(self.output_dir),
            "image_path": str(self.image_path),
            "map_path": str(self.map_path),
            "retry_passes": self.retry_passes,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class RescueReport:
    session: RecoverySession
    unmount: UnmountReport
    progress: ProgressMap
    partitions: List[PartitionInfo] = field(default_factory=list)
    summary: CarveSummary = field(default_factory=CarveSummary)

    @property
    def degraded(self) -> bool:
        return self.unmount.degraded or self.progress.bad_bytes > 0


def setup_logging(config: RescueConfig, run_type: str) -> logging.Logger:
    """
    Configure logging with a run transcript.

    The transcript goes to <outdir>/<run-type>_run.log when an output
    directory is configured; warnings and errors also go to the console.

    Returns:
        The package logger
    """
    log_level = getattr(logging, config.log_level.upper())

    logger = logging.getLogger("cardrescue")
    logger.setLevel(log_level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    if config.output_dir is not None:
        log_file = config.log_path(run_type)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


class CardRescueApp:
    """
    Main application class coordinating the recovery pipeline.

    Every collaborator can be injected, which is how the tests replace
    devices, mounts and external tools with fakes.
    """

    def __init__(self, config: RescueConfig,
                 capabilities: Optional[FrozenSet[str]] = None,
                 runner: CommandRunner = run_command,
                 confirm: Confirm = _refuse,
                 resolver: Optional[DeviceResolver] = None,
                 mount_ops: Optional[MountOps] = None,
                 imager: Optional[Imager] = None,
                 inspector: Optional[PartitionInspector] = None,
                 engines: Optional[List[CarvingEngine]] = None):
        self.config = config
        self.capabilities = detect_capabilities() if capabilities is None else capabilities
        self.runner = runner
        self.confirm = confirm
        self.resolver = resolver or DeviceResolver(runner)
        self.mount_ops = mount_ops or SystemMountOps(runner, kill_timeout=config.kill_timeout)
        self._imager = imager
        self.inspector = inspector or PartitionInspector(runner, self.capabilities)
        self.engines = default_engines(config) if engines is None else engines
        self.logger = logging.getLogger("cardrescue.app")

    @property
    def imager(self) -> Imager:
        if self._imager is None:
            self._imager = select_imager(self.config, self.capabilities, self.runner)
        return self._imager

    # Stage 1

    def resolve_device(self, whole_disk: bool = False) -> str:
        return self.resolver.resolve(self.config.device, self.config.mountpoint,
                                     whole_disk=whole_disk)

    # Stage 2

    def release_device(self, device: str) -> UnmountReport:
        return UnmountCoordinator(self.mount_ops).release(device)

    # Stage 3

    def confirm_destination(self, device: str) -> None:
        """
        Mandatory gate before imaging: the output directory must not live on
        the device and the operator must confirm space and separate media.

        Raises:
            ImagingError: If the output directory is on the device itself
            OperatorAbort: If the operator does not type 'yes'
        """
        outdir = self.config.require_output_dir()
        outdir.mkdir(parents=True, exist_ok=True)

        out_device = self.resolver.device_for_path(str(outdir))
        target = os.path.realpath(device)
        if out_device and target in (os.path.realpath(out_device), parent_disk(out_device)):
            raise ImagingError(f"Output directory {outdir} is on {device}, the device being imaged",
                               "Choose an output directory on a different drive.")

        try:
            size = device_size(device)
        except OSError as e:
            raise ImagingError(f"Cannot open {device} for reading: {e}")
        already = 0
        if self.config.image_path.exists():
            already = self.config.image_path.stat().st_blocks * 512
        available = free_bytes(outdir)

        message = (f"Make sure {outdir} is on a different drive and has at least "
                   f"{format_bytes(max(size - already, 0))} free "
                   f"(available: {format_bytes(available) if available is not None else 'unknown'}). "
                   f"Type 'yes' to continue")
        if available is not None and available < size - already:
            self.logger.warning(f"Only {format_bytes(available)} free on {outdir}, "
                                f"the image needs {format_bytes(size - already)} more")
        if not self.confirm(message, "yes"):
            raise OperatorAbort("Aborted by operator at the destination check")

    def image(self, device: str, progress_callback: Optional[ProgressCallback] = None
              ) -> ProgressMap:
        session = RecoverySession(self.config, device, "image")
        self.logger.info(f"Image: {session.image_path}  Mapfile: {session.map_path}")
        progress = self.imager.image(device, session.image_path, session.map_path,
                                     session.retry_passes, progress_callback)
        self.logger.info(f"Imaging finished: {format_bytes(progress.finished_bytes)} recovered, "
                         f"{format_bytes(progress.bad_bytes)} bad, "
                         f"{format_bytes(progress.untried_bytes)} untried")
        return progress

    # Stage 4

    def inspect(self) -> List[PartitionInfo]:
        return self.inspector.inspect(self.config.image_path)

    # Stage 5

    def carve(self) -> CarveSummary:
        image_path = self.config.image_path
        if not image_path.exists():
            raise ImagingError(f"No disk image at {image_path}",
                               "Run 'cardrescue image' first.")
        dispatcher = CarvingDispatcher(self.engines, self.capabilities, self.runner,
                                       parallel=self.config.parallel_engines)
        return dispatcher.dispatch(image_path, self.config.require_output_dir())

    def run(self, progress_callback: Optional[ProgressCallback] = None,
            whole_disk: bool = False) -> RescueReport:
        """
        Full pipeline: resolve, confirm, unmount, confirm, image, inspect, carve.

        Raises:
            CardRescueError: On any fatal condition; recovered state is kept
        """
        device = self.resolve_device(whole_disk=whole_disk)
        session = RecoverySession(self.config, device, "rescue")
        self.logger.info(f"Session: {session.to_dict()}")

        self.confirm_destination(device)
        unmount = self.release_device(device)

        command = f"{self.imager.name} {device} -> {session.image_path} (map {session.map_path})"
        if not self.confirm(f"Ready to image: {command}. Type 'go' to start", "go"):
            raise OperatorAbort("Quit before imaging")

        progress = self.image(device, progress_callback)
        partitions = self.inspect()
        summary = self.carve()
        return RescueReport(session, unmount, progress, partitions, summary)

    # Companion operations

    def check_headers(self, root: Path, extensions=None) -> HealthReport:
        checker = HeaderHealthChecker(extensions) if extensions else HeaderHealthChecker()
        report = checker.scan(root)
        reports_dir = self.config.reports_dir or Path.home() / "recovery_reports"
        checker.write_report(report, reports_dir)
        return report

    def fix_mount(self, mountpoint: str, fstype: Optional[str] = None) -> UnmountReport:
        """
        Unmount, check, optionally repair and remount a card with the
        configured owner.

        Raises:
            ConfigurationError: If owner_uid/owner_gid are not configured
        """
        if self.config.owner_uid is None or self.config.owner_gid is None:
            raise ConfigurationError("owner_uid and owner_gid are required to remount",
                                     "Set them in the config file or pass --uid/--gid.")

        device = self.resolver.device_for_mountpoint(mountpoint)
        if fstype is None:
            fstype = self._mounted_fstype(mountpoint)
        self.resolver.validate(device)

        report = self.release_device(device)
        self.resolver.validate(device)

        checker = FilesystemChecker(self.runner)
        checker.check(device, fstype)
        if self.confirm("If the report shows fixable errors, type 'repair' to fix them "
                        "(may modify the filesystem), or anything else to skip", "repair"):
            checker.repair(device, fstype)
        else:
            self.logger.info("Skipping repair step")

        checker.remount(device, mountpoint, self.config.owner_uid, self.config.owner_gid,
                        self.config.umask)
        return report

    def _mounted_fstype(self, mountpoint: str) -> str:
        target = os.path.realpath(mountpoint)
        for partition in self.resolver.partitions(all=True):
            if partition.mountpoint == target:
                return partition.fstype
        raise ConfigurationError(f"Cannot tell the filesystem type of {mountpoint}",
                                 "Pass --fstype explicitly.")
