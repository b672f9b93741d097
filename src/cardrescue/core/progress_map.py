"""
Progress Map.

Sector-range recovery status for one imaging session, stored in the GNU
ddrescue mapfile format so a map written here can be resumed by ddrescue
and the other way round.

    # current_pos  current_status  current_pass
    0x00000000     ?               1
    #      pos        size  status
    0x00000000  0x00400000  +
    0x00400000  0x00100000  -
    0x00500000  0x00300000  ?

Ranges are kept sorted, disjoint, merged with equal-status neighbours and
together cover [0, size).
"""

import os
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from ..errors import ImagingError

logger = logging.getLogger(__name__)


class Status(Enum):
    """Block status characters, as used by ddrescue"""
    UNTRIED = "?"
    NON_TRIMMED = "*"
    NON_SCRAPED = "/"
    BAD = "-"
    FINISHED = "+"

    @property
    def is_bad(self) -> bool:
        return self in (Status.NON_TRIMMED, Status.NON_SCRAPED, Status.BAD)


# current_status values allowed on the first data line
PHASE_CHARS = "?*/-FG+"


@dataclass(frozen=True)
class MapRange:
    pos: int
    size: int
    status: Status

    @property
    def end(self) -> int:
        return self.pos + self.size

    def __str__(self) -> str:
        return f"0x{self.pos:08X}  0x{self.size:08X}  {self.status.value}"


class ProgressMap:
    """Ordered list of (range, status) records for one device extent"""

    def __init__(self, size: int, ranges: Optional[List[MapRange]] = None,
                 current_pos: int = 0, current_status: str = "?", current_pass: int = 1):
        self.size = size
        if ranges is None:
            ranges = [MapRange(0, size, Status.UNTRIED)] if size > 0 else []
        self._ranges = self._merge(sorted(ranges, key=lambda r: r.pos))
        self.current_pos = current_pos
        self.current_status = current_status
        self.current_pass = current_pass
        self.validate()

    @classmethod
    def load(cls, path: Path) -> "ProgressMap":
        """
        Parse a ddrescue-format mapfile.

        Raises:
            ImagingError: If the file is unreadable or malformed
        """
        try:
            with open(path, 'r') as f:
                lines = [line.strip() for line in f]
        except OSError as e:
            raise ImagingError(f"Cannot read mapfile {path}: {e}")

        data = [line for line in lines if line and not line.startswith('#')]
        if not data:
            raise ImagingError(f"Mapfile {path} has no status line")

        try:
            header = data[0].split()
            if len(header) not in (2, 3) or header[1] not in PHASE_CHARS:
                raise ValueError(f"bad status line {data[0]!r}")
            current_pos = int(header[0], 0)
            current_pass = int(header[2]) if len(header) == 3 else 1

            ranges = []
            for line in data[1:]:
                pos, size, status = line.split()
                ranges.append(MapRange(int(pos, 0), int(size, 0), Status(status)))
        except ValueError as e:
            raise ImagingError(f"Malformed mapfile {path}: {e}")

        extent = max((r.end for r in ranges), default=0)
        try:
            return cls(extent, ranges, current_pos, header[1], current_pass)
        except ValueError as e:
            raise ImagingError(f"Inconsistent mapfile {path}: {e}")

    @classmethod
    def load_or_create(cls, path: Path, size: int) -> Tuple["ProgressMap", bool]:
        """
        Reuse the map at path if there is one, otherwise start a fresh one.

        Returns:
            (map, resumed)

        Raises:
            ImagingError: If an existing map describes a different extent
        """
        path = Path(path)
        if not path.exists() or path.stat().st_size == 0:
            return cls(size), False

        progress = cls.load(path)
        if progress.size != size:
            raise ImagingError(
                f"Mapfile {path} covers {progress.size} bytes but the device has {size}",
                "The mapfile belongs to a different device. Use another output "
                "directory or image name for this device.")
        logger.info(f"Resuming from {path}: {progress.finished_bytes} bytes already recovered")
        return progress, True

    def save(self, path: Path, comment: str = "") -> None:
        """Write the map atomically so a crash never leaves a torn file"""
        path = Path(path)
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, 'w') as f:
            f.write(self.format(comment))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    def format(self, comment: str = "") -> str:
        lines = ["# Mapfile. Created by cardrescue",
                 f"# Saved: {datetime.now().isoformat(timespec='seconds')}"]
        if comment:
            lines.append(f"# {comment}")
        lines.append("# current_pos  current_status  current_pass")
        lines.append(f"0x{self.current_pos:08X}     {self.current_status}               "
                     f"{self.current_pass}")
        lines.append("#      pos        size  status")
        lines.extend(str(r) for r in self._ranges)
        return "\n".join(lines) + "\n"

    # Queries

    @property
    def ranges(self) -> List[MapRange]:
        return list(self._ranges)

    def __iter__(self) -> Iterator[MapRange]:
        return iter(list(self._ranges))

    def ranges_with(self, *statuses: Status) -> List[MapRange]:
        return [r for r in self._ranges if r.status in statuses]

    def bad_ranges(self) -> List[MapRange]:
        return [r for r in self._ranges if r.status.is_bad]

    def bytes_with(self, *statuses: Status) -> int:
        return sum(r.size for r in self._ranges if r.status in statuses)

    @property
    def finished_bytes(self) -> int:
        return self.bytes_with(Status.FINISHED)

    @property
    def bad_bytes(self) -> int:
        return sum(r.size for r in self._ranges if r.status.is_bad)

    @property
    def untried_bytes(self) -> int:
        return self.bytes_with(Status.UNTRIED)

    def status_at(self, pos: int) -> Status:
        for r in self._ranges:
            if r.pos <= pos < r.end:
                return r.status
        raise IndexError(f"Position {pos} outside map extent {self.size}")

    # Updates

    def mark(self, pos: int, size: int, status: Status) -> None:
        """Set the status of [pos, pos + size), splitting and merging ranges"""
        if size <= 0:
            return
        end = pos + size
        if pos < 0 or end > self.size:
            raise ValueError(f"Range {pos}+{size} outside map extent {self.size}")

        updated = []
        for r in self._ranges:
            if r.end <= pos or r.pos >= end:
                updated.append(r)
                continue
            if r.pos < pos:
                updated.append(MapRange(r.pos, pos - r.pos, r.status))
            if r.end > end:
                updated.append(MapRange(end, r.end - end, r.status))
        updated.append(MapRange(pos, size, status))
        self._ranges = self._merge(sorted(updated, key=lambda r: r.pos))

    def validate(self) -> None:
        """
        Check the ranges are disjoint and cover [0, size).

        Raises:
            ValueError: On a gap, overlap or empty range
        """
        expected = 0
        for r in self._ranges:
            if r.size <= 0:
                raise ValueError(f"empty range at 0x{r.pos:X}")
            if r.pos != expected:
                raise ValueError(f"range at 0x{r.pos:X} does not follow 0x{expected:X}")
            expected = r.end
        if expected != self.size:
            raise ValueError(f"ranges end at 0x{expected:X}, extent is 0x{self.size:X}")

    @staticmethod
    def _merge(ranges: List[MapRange]) -> List[MapRange]:
        merged: List[MapRange] = []
        for r in ranges:
            if merged and merged[-1].status == r.status and merged[-1].end == r.pos:
                last = merged.pop()
                r = MapRange(last.pos, last.size + r.size, r.status)
            merged.append(r)
        return merged
