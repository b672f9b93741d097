import struct
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, List, Optional, Set


@dataclass
class CarvedFile:
    path: Path
    kind: str
    offset: int
    size: int
    complete: bool  # False when no footer was found within max_size


class FileCarver:
    """
    File Carving Engine.
    Scans a raw disk image for the start signatures of camera file formats
    and saves whatever lies between a header and its footer, without any
    filesystem metadata. Used as the built-in carver when no external
    carving tool is installed.

    Output files are named after the sector they start at
    (f<sector>.<ext>), so carving the same image twice gives the same names.
    """

    SECTOR_SIZE = 512

    # Signatures of what a camera card typically holds
    SIGNATURES = {
        'jpg': {
            'headers': (b'\xFF\xD8\xFF\xE0', b'\xFF\xD8\xFF\xE1', b'\xFF\xD8\xFF\xDB'),
            'footer': b'\xFF\xD9',
            # EXIF (APP1) carries a whole thumbnail JPEG, footer included
            'skip_segments': True,
            'max_size': 50 * 1024 * 1024,  # large sensor JPEGs reach 20MB+
            'min_size': 4096,
        },
        'png': {
            'headers': (b'\x89PNG\r\n\x1a\n',),
            'footer': b'IEND\xAE\x42\x60\x82',
            'max_size': 50 * 1024 * 1024,
            'min_size': 100,
        },
        'cr2': {
            # TIFF little-endian header followed by the CR2 magic at offset 8
            'headers': (b'II*\x00\x10\x00\x00\x00CR',),
            'footer': None,
            'max_size': 60 * 1024 * 1024,
            'min_size': 1024 * 1024,
        },
        'tif': {
            # Also covers NEF/ARW/DNG, which are TIFF containers
            'headers': (b'II*\x00\x08\x00\x00\x00', b'MM\x00*\x00\x00\x00\x08'),
            'footer': None,
            'max_size': 60 * 1024 * 1024,
            'min_size': 4096,
        },
    }

    # Aliases accepted in carve_types
    ALIASES = {'jpeg': 'jpg', 'tiff': 'tif', 'nef': 'tif', 'arw': 'tif', 'dng': 'tif'}

    CHUNK_SIZE = 8 * 1024 * 1024
    # Overlap so a header straddling a chunk boundary is still seen
    OVERLAP = 64
    # Without a footer, only this much is kept
    HEADLESS_READ = 32 * 1024 * 1024

    def __init__(self, image_path: str, output_dir: str):
        self.image_path = Path(image_path)
        self.output_dir = Path(output_dir)
        self.logger = logging.getLogger(__name__)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def select(self, file_types: Optional[Iterable[str]]) -> Dict[str, dict]:
        """Signatures for the requested kinds, all of them when None"""
        if not file_types:
            return dict(self.SIGNATURES)
        selected = {}
        for ft in file_types:
            kind = ft.lower().strip('.')
            kind = self.ALIASES.get(kind, kind)
            if kind in self.SIGNATURES:
                selected[kind] = self.SIGNATURES[kind]
            else:
                self.logger.warning(f"No carving signature for {ft!r}, skipped")
        return selected

    def carve(self, file_types: Optional[Iterable[str]] = None) -> List[CarvedFile]:
        """
        Carve the whole image.

        Args:
            file_types: Kinds to look for (e.g. ['jpg', 'cr2']); None for all

        Returns:
            One CarvedFile per saved file, in image order

        Raises:
            OSError: If the image cannot be read or output cannot be written
        """
        signatures = self.select(file_types)
        if not signatures:
            return []

        self.logger.info(f"Carving {', '.join(signatures)} from {self.image_path}")
        found: Dict[int, str] = {}

        with open(self.image_path, 'rb') as f:
            total_size = f.seek(0, 2)
            offset = 0
            reported = 0
            while offset < total_size:
                f.seek(offset)
                window = f.read(self.CHUNK_SIZE + self.OVERLAP)
                if not window:
                    break
                for kind, sig in signatures.items():
                    for start in self._find_headers(window, sig['headers']):
                        # Headers in the overlap belong to the next chunk
                        if start < self.CHUNK_SIZE:
                            found.setdefault(offset + start, kind)
                offset += self.CHUNK_SIZE

                percent = min(100, offset * 100 // total_size)
                if percent >= reported + 10:
                    self.logger.info(f"Carving scan: {percent}% ({len(found)} candidates)")
                    reported = percent

            carved = []
            for start in sorted(found):
                item = self._carve_one(f, start, found[start])
                if item is not None:
                    carved.append(item)

        self.logger.info(f"Carving complete: {len(carved)} of {len(found)} candidates saved")
        return carved

    @staticmethod
    def _find_headers(window: bytes, headers) -> Set[int]:
        starts = set()
        for header in headers:
            idx = window.find(header)
            while idx != -1:
                starts.add(idx)
                idx = window.find(header, idx + 1)
        return starts

    def _carve_one(self, f: BinaryIO, start: int, kind: str) -> Optional[CarvedFile]:
        sig = self.SIGNATURES[kind]
        data, complete = self._extract(f, start, sig['footer'], sig['max_size'],
                                       sig.get('skip_segments', False))
        if len(data) < sig['min_size']:
            return None
        if not complete and not self._looks_valid(data):
            return None

        out_file = self.output_dir / f"f{start // self.SECTOR_SIZE:08d}.{kind}"
        with open(out_file, 'wb') as out:
            out.write(data)
        if not complete:
            self.logger.debug(f"No footer for {kind} at 0x{start:X}, saved {len(data)} bytes")
        return CarvedFile(out_file, kind, start, len(data), complete)

    def _extract(self, f: BinaryIO, start: int, footer: Optional[bytes], max_size: int,
                 skip_segments: bool = False):
        """Bytes from start up to and including footer; (data, footer_found)"""
        f.seek(start)
        if footer is None:
            return f.read(min(max_size, self.HEADLESS_READ)), True

        chunk = f.read(max_size)
        end = chunk.find(footer, self._segments_end(chunk) if skip_segments else 0)
        if end == -1:
            # Truncated file, possibly still partially viewable
            return chunk, False
        return chunk[:end + len(footer)], True

    @staticmethod
    def _segments_end(data: bytes) -> int:
        """
        Offset just past the JPEG marker segments (APPn, tables) that precede
        the scan data. Each segment is FF <marker> <big-endian length>, the
        length counting itself but not the marker.
        """
        pos = 2  # SOI
        while pos + 4 <= len(data) and data[pos] == 0xFF:
            marker = data[pos + 1]
            if marker == 0xDA:  # SOS, entropy-coded data follows
                break
            length = struct.unpack_from('>H', data, pos + 2)[0]
            if length < 2:
                break
            pos += 2 + length
        return min(pos, len(data))

    @staticmethod
    def _looks_valid(data: bytes) -> bool:
        """
        Reject runs of zeros or filler: never-read image ranges come back as
        zeros and would otherwise be saved as huge broken files.
        """
        if len(data) < 1024:
            return False
        return len(set(data[:4096])) >= 10
