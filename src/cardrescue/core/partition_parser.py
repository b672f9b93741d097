import struct
import logging
from dataclasses import dataclass
from typing import BinaryIO, List, Optional


@dataclass
class PartitionInfo:
    name: str
    size: int
    fstype: str
    mountpoint: str = ""
    offset: Optional[int] = None


# (offset within the boot sector/superblock area, magic, fstype)
FS_MAGICS = [
    (3, b'EXFAT   ', 'exfat'),
    (3, b'NTFS    ', 'ntfs'),
    (82, b'FAT32   ', 'vfat'),
    (54, b'FAT16   ', 'vfat'),
    (54, b'FAT12   ', 'vfat'),
    (1024 + 56, b'\x53\xef', 'ext4'),
]

# GPT as written by every partitioning tool: 128 entries of 128 bytes
GPT_MAX_ENTRIES = 128
GPT_MAX_ENTRY_SIZE = 4096


def probe_fstype(f: BinaryIO, offset: int) -> str:
    """Identify the filesystem starting at offset by its magic bytes."""
    f.seek(offset)
    head = f.read(2048)
    for magic_offset, magic, fstype in FS_MAGICS:
        if head[magic_offset:magic_offset + len(magic)] == magic:
            return fstype
    return ''


class PartitionTableParser:
    """Parses MBR and GPT partition tables straight from an image file."""

    def __init__(self, image_path: str):
        self.image_path = image_path
        self.logger = logging.getLogger(__name__)

    def parse(self) -> List[PartitionInfo]:
        """
        Auto-detect and parse the partition table.

        Raises:
            OSError: If the image cannot be read
        """
        with open(self.image_path, 'rb') as f:
            f.seek(0, 2)
            image_size = f.tell()

            # Cards formatted without a table ("superfloppy") start with a
            # filesystem boot sector, which also ends in 0x55AA
            fstype = probe_fstype(f, 0)
            if fstype:
                self.logger.info(f"No partition table, whole image is {fstype}")
                return [PartitionInfo('image', image_size, fstype, offset=0)]

            # GPT header at LBA 1 (512-byte sectors assumed)
            f.seek(512)
            gpt_header = f.read(512)
            if gpt_header[:8] == b'EFI PART':
                self.logger.info("Found GPT Partition Table")
                return self.parse_gpt(f, gpt_header)

            # MBR signature 0x55AA at offset 510
            f.seek(0)
            mbr = f.read(512)
            if mbr[510:512] == b'\x55\xaa':
                self.logger.info("Found MBR Partition Table")
                return self.parse_mbr(f, mbr)

        return []

    def parse_mbr(self, f: BinaryIO, mbr_data: bytes) -> List[PartitionInfo]:
        partitions = []
        # 4 partition entries of 16 bytes each, starting at offset 446
        for i in range(4):
            entry = mbr_data[446 + i * 16:446 + (i + 1) * 16]
            part_type = entry[4]
            lba_start = struct.unpack('<I', entry[8:12])[0]
            num_sectors = struct.unpack('<I', entry[12:16])[0]

            if part_type != 0 and num_sectors > 0:
                offset = lba_start * 512
                partitions.append(PartitionInfo(
                    name=f'p{i + 1}',
                    size=num_sectors * 512,
                    fstype=probe_fstype(f, offset),
                    offset=offset,
                ))
        return partitions

    def parse_gpt(self, f: BinaryIO, header_data: bytes) -> List[PartitionInfo]:
        partitions = []

        # Partition entries LBA at 72, entry count at 80, entry size at 84
        part_entry_lba = struct.unpack('<Q', header_data[72:80])[0]
        num_entries = struct.unpack('<I', header_data[80:84])[0]
        entry_size = struct.unpack('<I', header_data[84:88])[0]

        # A damaged header must not drive a huge read or an endless loop
        if entry_size < 128 or entry_size > GPT_MAX_ENTRY_SIZE or entry_size % 128:
            self.logger.warning(f"GPT header has an invalid entry size ({entry_size}), "
                                f"ignoring the table")
            return partitions
        if num_entries > GPT_MAX_ENTRIES:
            self.logger.warning(f"GPT header claims {num_entries} entries, "
                                f"reading the first {GPT_MAX_ENTRIES}")
            num_entries = GPT_MAX_ENTRIES

        image_size = f.seek(0, 2)
        if part_entry_lba * 512 >= image_size:
            self.logger.warning(f"GPT entries at LBA {part_entry_lba} lie beyond the image")
            return partitions

        f.seek(part_entry_lba * 512)
        data = f.read(num_entries * entry_size)

        for i in range(num_entries):
            entry = data[i * entry_size:(i + 1) * entry_size]
            if len(entry) < 48 or entry[:16] == b'\x00' * 16:
                continue

            first_lba = struct.unpack('<Q', entry[32:40])[0]
            last_lba = struct.unpack('<Q', entry[40:48])[0]
            if last_lba >= first_lba:
                offset = first_lba * 512
                partitions.append(PartitionInfo(
                    name=f'p{i + 1}',
                    size=(last_lba - first_lba + 1) * 512,
                    fstype=probe_fstype(f, offset),
                    offset=offset,
                ))

        return partitions
