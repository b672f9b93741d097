import json
import struct

from cardrescue.core.inspector import PartitionInspector
from cardrescue.core.partition_parser import PartitionTableParser

from fakes import FakeRunner, result

TOOLS = frozenset({"losetup", "lsblk"})

LSBLK_JSON = json.dumps({"blockdevices": [{
    "name": "loop7", "size": 31914983424, "fstype": None, "mountpoint": None,
    "children": [{"name": "loop7p1", "size": 31912886272, "fstype": "exfat",
                  "mountpoint": None}],
}]})


def losetup(command):
    if "--show" in command:
        return result(command, stdout="/dev/loop7\n")
    return result(command)


def test_loopback_listing_and_detach():
    runner = FakeRunner({"losetup": losetup,
                         "lsblk": lambda cmd: result(cmd, stdout=LSBLK_JSON)})

    partitions = PartitionInspector(runner, TOOLS).inspect("sdcard.img")

    assert [(p.name, p.fstype) for p in partitions] == [("loop7p1", "exfat")]
    assert runner.calls[0] == ["losetup", "--show", "-f", "-P", "-r", "sdcard.img"]
    assert runner.calls[-1] == ["losetup", "-d", "/dev/loop7"]


def test_detach_even_when_listing_fails():
    runner = FakeRunner({"losetup": losetup,
                         "lsblk": lambda cmd: result(cmd, 32, stderr="boom")})

    assert PartitionInspector(runner, TOOLS).inspect("sdcard.img") == []
    assert runner.calls[-1] == ["losetup", "-d", "/dev/loop7"]


def test_attach_failure_is_not_fatal():
    runner = FakeRunner({"losetup": lambda cmd: result(cmd, 1, stderr="permission denied")})

    assert PartitionInspector(runner, TOOLS).inspect("sdcard.img") == []
    assert runner.programs() == ["losetup"]


def test_unparseable_lsblk_output():
    runner = FakeRunner({"losetup": losetup, "lsblk": lambda cmd: result(cmd, stdout="{oops")})
    assert PartitionInspector(runner, TOOLS).inspect("sdcard.img") == []


def test_table_less_image_reports_loop_device():
    output = json.dumps({"blockdevices": [{"name": "loop7", "size": "4096",
                                           "fstype": "vfat", "mountpoint": None}]})
    partitions = PartitionInspector.parse_lsblk(output)
    assert [(p.name, p.size, p.fstype) for p in partitions] == [("loop7", 4096, "vfat")]


def mbr_image(path):
    mbr = bytearray(512)
    mbr[446 + 4] = 0x0C
    mbr[446 + 8:446 + 16] = struct.pack("<II", 2048, 4096)
    mbr[510:512] = b"\x55\xaa"
    boot = bytearray(512)
    boot[82:90] = b"FAT32   "
    with open(path, "wb") as f:
        f.write(mbr)
        f.seek(2048 * 512)
        f.write(boot)
        f.truncate((2048 + 4096) * 512)


def test_partition_table_fallback_without_tools(tmp_path):
    image = tmp_path / "sdcard.img"
    mbr_image(image)
    runner = FakeRunner()

    partitions = PartitionInspector(runner, frozenset()).inspect(image)

    assert runner.calls == []
    assert len(partitions) == 1
    assert partitions[0].name == "p1"
    assert partitions[0].size == 4096 * 512
    assert partitions[0].offset == 2048 * 512
    assert partitions[0].fstype == "vfat"


def test_superfloppy_card(tmp_path):
    image = tmp_path / "sdcard.img"
    boot = bytearray(4096)
    boot[3:11] = b"EXFAT   "
    boot[510:512] = b"\x55\xaa"
    image.write_bytes(bytes(boot))

    partitions = PartitionTableParser(str(image)).parse()
    assert [(p.name, p.fstype) for p in partitions] == [("image", "exfat")]


def test_missing_image_is_not_fatal(tmp_path):
    assert PartitionInspector(FakeRunner(), frozenset()).inspect(tmp_path / "none.img") == []


def gpt_image(path, num_entries, entry_size, entries_lba=2, partitions=()):
    header = bytearray(512)
    header[:8] = b"EFI PART"
    header[72:88] = struct.pack("<QII", entries_lba, num_entries, entry_size)
    with open(path, "wb") as f:
        f.seek(512)
        f.write(header)
        for i, (first_lba, last_lba) in enumerate(partitions):
            entry = bytearray(128)
            entry[:16] = b"\xAF" * 16
            entry[32:48] = struct.pack("<QQ", first_lba, last_lba)
            f.seek(entries_lba * 512 + i * 128)
            f.write(entry)
        f.truncate(4096 * 512)


def test_gpt_with_garbage_entry_size_is_ignored(tmp_path):
    image = tmp_path / "sdcard.img"
    gpt_image(image, num_entries=0xFFFFFFFF, entry_size=0)
    assert PartitionTableParser(str(image)).parse() == []


def test_gpt_entry_count_is_capped(tmp_path):
    image = tmp_path / "sdcard.img"
    gpt_image(image, num_entries=0xFFFFFFFF, entry_size=128, partitions=[(34, 2081)])

    partitions = PartitionTableParser(str(image)).parse()
    assert [(p.name, p.offset, p.size) for p in partitions] == [("p1", 34 * 512, 2048 * 512)]


def test_gpt_entries_beyond_the_image_are_ignored(tmp_path):
    image = tmp_path / "sdcard.img"
    gpt_image(image, num_entries=128, entry_size=128, entries_lba=2 ** 62)
    assert PartitionTableParser(str(image)).parse() == []
