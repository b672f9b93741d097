"""
Imager Module.

Copies a failing device into an image file, recording per-range results in
a ddrescue-style mapfile so interrupted runs resume where they stopped.

Two implementations share the Imager interface:
- BuiltinImager: pure Python, direct (uncached) reads, cluster-sized copy
  pass followed by sector-sized retry passes over bad ranges.
- DdrescueImager: drives GNU ddrescue with the same image/map paths.
"""

import os
import mmap
import re
import errno
import logging
import time
from pathlib import Path
from typing import Callable, FrozenSet, Optional

from .progress_map import ProgressMap, Status
from ..config import RescueConfig
from ..errors import ImagingError
from ..utils import CommandRunner, device_size, format_bytes, run_command

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressMap], None]

WRITE_REMEDIATION = "Free space on the output drive, then re-run to resume."

# cursor movement ddrescue uses to redraw its status screen
ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")


class DeviceSource:
    """
    Read-only access to a block device (or image file) by offset.

    With direct=True the device is opened with O_DIRECT so reads bypass the
    page cache and every read actually touches the medium. Kernels or
    filesystems that refuse O_DIRECT get a cached fallback.
    """

    def __init__(self, path: str, direct: bool = True, sector_size: int = 512):
        self.path = path
        self.sector_size = sector_size
        self.direct = direct and hasattr(os, "O_DIRECT") and hasattr(os, "preadv")
        self._fd = self._open()
        self.size = os.lseek(self._fd, 0, os.SEEK_END)

    def _open(self) -> int:
        if self.direct:
            try:
                return os.open(self.path, os.O_RDONLY | os.O_DIRECT)
            except OSError as e:
                if e.errno != errno.EINVAL:
                    raise
                logger.warning(f"{self.path} does not support direct I/O, using cached reads")
                self.direct = False
        return os.open(self.path, os.O_RDONLY)

    def read(self, offset: int, length: int) -> bytes:
        """
        Read exactly length bytes at offset.

        Raises:
            OSError: On a media error or a short read
        """
        if self.direct:
            # O_DIRECT needs a page-aligned buffer and a sector-multiple length
            aligned = -(-length // self.sector_size) * self.sector_size
            buf = mmap.mmap(-1, aligned)
            try:
                n = os.preadv(self._fd, [buf], offset)
                data = buf[:min(n, length)]
            finally:
                buf.close()
        else:
            data = os.pread(self._fd, length, offset)

        if len(data) < length:
            raise OSError(errno.EIO, f"Short read at offset {offset}: {len(data)} of {length}")
        return data

    def close(self) -> None:
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None


class Imager:
    """Interface: image(device, image_path, map_path, retry_passes) -> ProgressMap"""

    name = "imager"

    def image(self, device: str, image_path: Path, map_path: Path, retry_passes: int,
              progress_callback: Optional[ProgressCallback] = None) -> ProgressMap:
        raise NotImplementedError


def _check_progress(progress: ProgressMap, device: str) -> ProgressMap:
    if progress.finished_bytes == 0:
        raise ImagingError(f"No data could be read from {device}")
    if progress.bad_bytes:
        logger.warning(f"{format_bytes(progress.bad_bytes)} of {device} remain unreadable "
                       f"({len(progress.bad_ranges())} bad ranges)")
    return progress


class BuiltinImager(Imager):
    """
    Resumable imaging in pure Python.

    The copy pass reads every untried range in cluster_size steps. A cluster
    that fails is marked bad as a whole and the pass moves on. Each retry
    pass then re-reads only bad ranges, one sector at a time, so the good
    sectors inside a failed cluster are still recovered.
    """

    name = "builtin"

    def __init__(self, cluster_size: int = 64 * 1024, sector_size: int = 512,
                 direct_io: bool = True, map_save_interval: float = 30.0,
                 source_factory: Optional[Callable[[str], DeviceSource]] = None):
        self.cluster_size = cluster_size
        self.sector_size = sector_size
        self.direct_io = direct_io
        self.map_save_interval = map_save_interval
        self.source_factory = source_factory or (
            lambda path: DeviceSource(path, direct=direct_io, sector_size=sector_size))

    def image(self, device: str, image_path: Path, map_path: Path, retry_passes: int,
              progress_callback: Optional[ProgressCallback] = None) -> ProgressMap:
        image_path, map_path = Path(image_path), Path(map_path)

        try:
            source = self.source_factory(device)
        except OSError as e:
            raise ImagingError(f"Cannot open {device} for reading: {e}")

        try:
            size = source.size
            if size <= 0:
                raise ImagingError(f"Cannot determine the size of {device}")

            progress, resumed = ProgressMap.load_or_create(map_path, size)
            logger.info(f"Imaging {device} ({format_bytes(size)}) -> {image_path}"
                        f"{' (resumed)' if resumed else ''}")

            fd = self._open_image(image_path, size)
            self._last_save = time.monotonic()
            try:
                self._copy_pass(source, fd, progress, map_path, progress_callback)
                passes = 0
                while progress.bad_ranges() and (retry_passes < 0 or passes < retry_passes):
                    passes += 1
                    self._retry_pass(passes, source, fd, progress, map_path, progress_callback)
                progress.current_status = "+"
            finally:
                self._close_image(fd, progress, map_path, device)
        finally:
            source.close()

        return _check_progress(progress, device)

    def _open_image(self, image_path: Path, size: int) -> int:
        image_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(image_path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise ImagingError(f"Cannot open image file {image_path}: {e}")

        current = os.fstat(fd).st_size
        if current > size:
            os.close(fd)
            raise ImagingError(
                f"{image_path} is {current} bytes, larger than the {size} byte device",
                "The image belongs to a different device. Use another output directory.")
        if current < size:
            # Sparse: never-read ranges read back as zeros
            try:
                os.ftruncate(fd, size)
            except OSError as e:
                os.close(fd)
                raise ImagingError(f"Cannot extend {image_path} to {size} bytes: {e}",
                                   WRITE_REMEDIATION)
        return fd

    def _close_image(self, fd: int, progress: ProgressMap, map_path: Path, device: str) -> None:
        """Flush and close the image, then save the map that describes it"""
        try:
            try:
                os.fsync(fd)
            finally:
                os.close(fd)
            progress.save(map_path, comment=f"Source: {device}")
        except OSError as e:
            raise ImagingError(f"Could not flush the image or save {map_path}: {e}",
                               WRITE_REMEDIATION)

    def _copy_pass(self, source, fd, progress, map_path, callback) -> None:
        untried = progress.ranges_with(Status.UNTRIED)
        if not untried:
            return
        logger.info(f"Copy pass: {format_bytes(progress.untried_bytes)} untried")
        progress.current_status = "?"
        failed = 0

        for r in untried:
            pos = r.pos
            while pos < r.end:
                length = min(self.cluster_size, r.end - pos)
                if not self._transfer(source, fd, progress, pos, length):
                    failed += length
                pos += length
                self._maybe_save(fd, progress, map_path)
                if callback:
                    callback(progress)

        if failed:
            logger.warning(f"Copy pass: {format_bytes(failed)} unreadable, marked bad")

    def _retry_pass(self, number, source, fd, progress, map_path, callback) -> None:
        bad = progress.bad_ranges()
        logger.info(f"Retry pass {number}: {len(bad)} bad ranges, "
                    f"{format_bytes(progress.bad_bytes)}")
        progress.current_status = "-"
        progress.current_pass = number + 1
        recovered = 0

        for r in bad:
            pos = r.pos
            while pos < r.end:
                length = min(self.sector_size, r.end - pos)
                if self._transfer(source, fd, progress, pos, length):
                    recovered += length
                pos += length
                self._maybe_save(fd, progress, map_path)
                if callback:
                    callback(progress)

        logger.info(f"Retry pass {number}: recovered {format_bytes(recovered)}")

    def _transfer(self, source, fd, progress: ProgressMap, pos: int, length: int) -> bool:
        progress.current_pos = pos
        try:
            data = source.read(pos, length)
        except OSError as e:
            logger.debug(f"Read error at 0x{pos:X}+0x{length:X}: {e}")
            progress.mark(pos, length, Status.BAD)
            return False

        try:
            os.pwrite(fd, data, pos)
        except OSError as e:
            # the range stays as it was in the map, so a re-run reads it again
            raise ImagingError(f"Writing the image failed at offset 0x{pos:X}: {e}",
                               WRITE_REMEDIATION)
        progress.mark(pos, length, Status.FINISHED)
        return True

    def _maybe_save(self, fd, progress: ProgressMap, map_path: Path) -> None:
        now = time.monotonic()
        if now - self._last_save < self.map_save_interval:
            return
        # Data first, then the map that claims it
        try:
            os.fsync(fd)
            progress.save(map_path)
        except OSError as e:
            raise ImagingError(f"Could not flush the image or save {map_path}: {e}",
                               WRITE_REMEDIATION)
        self._last_save = now


class DdrescueImager(Imager):
    """Imaging through GNU ddrescue: ddrescue -d -r<N> <device> <image> <map>"""

    name = "ddrescue"

    def __init__(self, runner: CommandRunner = run_command, direct_io: bool = True,
                 size_probe: Callable[[str], int] = device_size):
        self.runner = runner
        self.direct_io = direct_io
        self.size_probe = size_probe
        self._last_line = None

    def _log_line(self, line: str) -> None:
        # status redraws repeat the same lines every second
        line = ANSI_ESCAPE.sub("", line).rstrip()
        if line and line != self._last_line:
            logger.info(f"ddrescue: {line}")
        self._last_line = line

    def command(self, device: str, image_path: Path, map_path: Path, retry_passes: int):
        cmd = ["ddrescue"]
        if self.direct_io:
            cmd.append("-d")
        cmd += [f"-r{retry_passes}", device, str(image_path), str(map_path)]
        return cmd

    def image(self, device: str, image_path: Path, map_path: Path, retry_passes: int,
              progress_callback: Optional[ProgressCallback] = None) -> ProgressMap:
        image_path, map_path = Path(image_path), Path(map_path)
        image_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            size = self.size_probe(device)
        except OSError as e:
            raise ImagingError(f"Cannot open {device} for reading: {e}")

        cmd = self.command(device, image_path, map_path, retry_passes)
        logger.info(f"Running: {' '.join(cmd)}")
        result = self.runner(cmd, on_line=self._log_line)
        if not result.success:
            raise ImagingError(f"ddrescue exited with status {result.returncode}")

        if not map_path.exists():
            raise ImagingError(f"ddrescue did not write a mapfile at {map_path}")
        progress = ProgressMap.load(map_path)

        try:
            with open(image_path, 'ab') as f:
                if f.tell() < size:
                    f.truncate(size)
        except OSError as e:
            raise ImagingError(f"Cannot extend {image_path} to {size} bytes: {e}",
                               WRITE_REMEDIATION)

        if progress_callback:
            progress_callback(progress)
        return _check_progress(progress, device)


def select_imager(config: RescueConfig, capabilities: FrozenSet[str],
                  runner: CommandRunner = run_command) -> Imager:
    """
    Pick the imager named in the configuration.

    "auto" prefers ddrescue when it is installed and falls back to the
    built-in imager otherwise.
    """
    choice = config.imager
    if choice == "auto":
        choice = "ddrescue" if "ddrescue" in capabilities else "builtin"

    if choice == "ddrescue":
        if "ddrescue" not in capabilities:
            raise ImagingError("ddrescue is not installed",
                               "Install GNU ddrescue or set imager to 'builtin'.")
        return DdrescueImager(runner, direct_io=config.direct_io)

    return BuiltinImager(cluster_size=config.cluster_size,
                         sector_size=config.sector_size,
                         direct_io=config.direct_io,
                         map_save_interval=config.map_save_interval)
