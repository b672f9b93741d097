"""
Image header health check.

Classifies existing image files as OK or BAD by comparing their first
bytes with the magic number of the format their extension claims. Only
the magic-length prefix is read, nothing beyond it affects the verdict.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Magic number by claimed extension
MAGIC_BY_EXTENSION: Dict[str, bytes] = {
    '.jpg': b'\xFF\xD8\xFF',
    '.jpeg': b'\xFF\xD8\xFF',
    '.png': b'\x89PNG\r\n\x1a\n',
    '.gif': b'GIF8',
    '.tif': b'II*\x00',
    '.tiff': b'II*\x00',
}

JPEG_ONLY = ('.jpg', '.jpeg')


@dataclass
class HealthReport:
    ok: List[Path] = field(default_factory=list)
    bad: List[Tuple[Path, str]] = field(default_factory=list)  # (path, header hex)
    report_path: Optional[Path] = None

    @property
    def ok_count(self) -> int:
        return len(self.ok)

    @property
    def bad_count(self) -> int:
        return len(self.bad)


def read_header(path: Path, length: int) -> bytes:
    """First length bytes of path, empty if it cannot be read"""
    try:
        with open(path, 'rb') as f:
            return f.read(length)
    except OSError as e:
        logger.debug(f"Cannot read {path}: {e}")
        return b''


def classify(path: Path) -> Tuple[bool, str]:
    """
    Check one file against the magic number of its extension.

    Returns:
        (is_ok, header_hex)
    """
    magic = MAGIC_BY_EXTENSION[path.suffix.lower()]
    header = read_header(path, len(magic))
    return header == magic, header.hex()


class HeaderHealthChecker:
    """Two-bucket header check over a directory tree"""

    def __init__(self, extensions: Iterable[str] = JPEG_ONLY):
        self.extensions = tuple(ext.lower() for ext in extensions)
        unknown = [ext for ext in self.extensions if ext not in MAGIC_BY_EXTENSION]
        if unknown:
            raise ValueError(f"No magic number known for: {', '.join(unknown)}")

    def scan(self, root: Path) -> HealthReport:
        report = HealthReport()
        for path in sorted(Path(root).rglob('*')):
            if not path.is_file() or path.suffix.lower() not in self.extensions:
                continue
            is_ok, header_hex = classify(path)
            if is_ok:
                report.ok.append(path)
            else:
                report.bad.append((path, header_hex))
        logger.info(f"Header check of {root}: {report.ok_count} OK, {report.bad_count} BAD")
        return report

    def write_report(self, report: HealthReport, reports_dir: Path) -> Path:
        """Save OK:/BAD: lines to reports_dir/jpg_health_<timestamp>.txt"""
        reports_dir = Path(reports_dir)
        reports_dir.mkdir(parents=True, exist_ok=True)
        out = reports_dir / f"jpg_health_{datetime.now().strftime('%Y%m%d_%H%M%S')}.txt"
        with open(out, 'w') as f:
            for path in report.ok:
                f.write(f"OK:{path}\n")
            for path, header_hex in report.bad:
                f.write(f"BAD:{path} ({header_hex})\n")
        report.report_path = out
        return out
