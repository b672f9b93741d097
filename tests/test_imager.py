import errno
import logging
import os

import pytest

from cardrescue.config import RescueConfig
from cardrescue.core import imager as imager_module
from cardrescue.core.imager import BuiltinImager, DdrescueImager, DeviceSource, select_imager
from cardrescue.core.progress_map import ProgressMap, Status
from cardrescue.errors import ImagingError

from fakes import FakeRunner, FakeSource, pattern, result

MiB = 1024 * 1024


def make_imager(source, **kwargs):
    return BuiltinImager(cluster_size=64 * 1024, sector_size=512, direct_io=False,
                         source_factory=lambda path: source, **kwargs)


def paths(tmp_path):
    return tmp_path / "sdcard.img", tmp_path / "sdcard.map"


def test_clean_device_is_copied_completely(tmp_path):
    image, mapfile = paths(tmp_path)
    source = FakeSource(1 * MiB)

    progress = make_imager(source).image("/dev/sdb", image, mapfile, retry_passes=3)

    assert progress.finished_bytes == 1 * MiB
    assert image.read_bytes() == source.data
    assert ProgressMap.load(mapfile).ranges == progress.ranges
    assert source.closed


def test_bad_region_then_resume_reads_only_bad_region(tmp_path):
    image, mapfile = paths(tmp_path)
    bad = (4 * MiB, 5 * MiB)

    first = FakeSource(8 * MiB, bad=[bad])
    progress = make_imager(first).image("/dev/sdb", image, mapfile, retry_passes=1)

    assert progress.bad_bytes == 1 * MiB
    assert [(r.pos, r.size, r.status) for r in progress] == [
        (0, 4 * MiB, Status.FINISHED),
        (4 * MiB, 1 * MiB, Status.BAD),
        (5 * MiB, 3 * MiB, Status.FINISHED),
    ]
    assert image.stat().st_size == 8 * MiB

    # The card behaves on the second attempt
    second = FakeSource(8 * MiB)
    progress = make_imager(second).image("/dev/sdb", image, mapfile, retry_passes=1)

    assert second.reads
    assert all(bad[0] <= offset and offset + length <= bad[1]
               for offset, length in second.reads)
    assert progress.finished_bytes == 8 * MiB
    assert image.read_bytes() == second.data


def test_interrupted_run_resumes_from_map(tmp_path):
    image, mapfile = paths(tmp_path)
    source = FakeSource(4 * MiB, interrupt_at=2 * MiB)

    with pytest.raises(KeyboardInterrupt):
        make_imager(source).image("/dev/sdb", image, mapfile, retry_passes=0)

    saved = ProgressMap.load(mapfile)
    assert saved.finished_bytes == 2 * MiB
    assert saved.untried_bytes == 2 * MiB

    resumed = FakeSource(4 * MiB)
    progress = make_imager(resumed).image("/dev/sdb", image, mapfile, retry_passes=0)

    assert min(offset for offset, _ in resumed.reads) == 2 * MiB
    assert progress.finished_bytes == 4 * MiB
    assert image.read_bytes() == resumed.data


def test_retry_passes_recover_sectors_inside_failed_cluster(tmp_path):
    image, mapfile = paths(tmp_path)
    # One bad sector in the middle of a cluster
    source = FakeSource(1 * MiB, bad=[(70 * 512, 71 * 512)])

    progress = make_imager(source).image("/dev/sdb", image, mapfile, retry_passes=1)

    assert progress.bad_bytes == 512
    assert progress.finished_bytes == 1 * MiB - 512


def test_zero_retry_passes_leaves_bad_ranges(tmp_path):
    image, mapfile = paths(tmp_path)
    source = FakeSource(1 * MiB, bad=[(0, 512)])

    progress = make_imager(source).image("/dev/sdb", image, mapfile, retry_passes=0)

    assert progress.bad_bytes == 64 * 1024
    assert progress.status_at(0) is Status.BAD


def test_infinite_retries_stop_when_nothing_is_bad(tmp_path):
    image, mapfile = paths(tmp_path)
    source = FakeSource(1 * MiB, bad=[(MiB // 2, MiB // 2 + 4096)], fail_budget=10)

    progress = make_imager(source).image("/dev/sdb", image, mapfile, retry_passes=-1)

    assert progress.bad_bytes == 0
    assert progress.finished_bytes == 1 * MiB
    assert image.read_bytes() == source.data


def test_image_size_matches_device_with_bad_tail(tmp_path):
    image, mapfile = paths(tmp_path)
    source = FakeSource(1 * MiB, bad=[(MiB - 4096, MiB)])

    make_imager(source).image("/dev/sdb", image, mapfile, retry_passes=1)

    assert image.stat().st_size == 1 * MiB


def test_unreadable_device_is_an_error(tmp_path):
    image, mapfile = paths(tmp_path)
    source = FakeSource(256 * 1024, bad=[(0, 256 * 1024)])

    with pytest.raises(ImagingError):
        make_imager(source).image("/dev/sdb", image, mapfile, retry_passes=1)
    assert ProgressMap.load(mapfile).bad_bytes == 256 * 1024


def test_map_for_another_device_is_refused(tmp_path):
    image, mapfile = paths(tmp_path)
    ProgressMap(2 * MiB).save(mapfile)

    with pytest.raises(ImagingError):
        make_imager(FakeSource(1 * MiB)).image("/dev/sdb", image, mapfile, retry_passes=0)
    assert not image.exists()


def test_larger_existing_image_is_refused(tmp_path):
    image, mapfile = paths(tmp_path)
    image.write_bytes(b"\0" * (2 * MiB))

    with pytest.raises(ImagingError):
        make_imager(FakeSource(1 * MiB)).image("/dev/sdb", image, mapfile, retry_passes=0)
    assert image.stat().st_size == 2 * MiB


def test_unopenable_device(tmp_path):
    image, mapfile = paths(tmp_path)

    def refuse(path):
        raise OSError(errno.ENOENT, "No such file or directory")

    imager = BuiltinImager(direct_io=False, source_factory=refuse)
    with pytest.raises(ImagingError):
        imager.image("/dev/sdz", image, mapfile, retry_passes=0)


def test_device_source_reads_regular_file(tmp_path):
    card = tmp_path / "card.bin"
    card.write_bytes(pattern(4096))

    source = DeviceSource(str(card), direct=False)
    try:
        assert source.size == 4096
        assert source.read(512, 512) == pattern(4096)[512:1024]
        with pytest.raises(OSError):
            source.read(4000, 512)
    finally:
        source.close()


def test_builtin_imager_on_regular_file(tmp_path):
    card = tmp_path / "card.bin"
    card.write_bytes(pattern(256 * 1024))
    image, mapfile = paths(tmp_path)

    progress = BuiltinImager(direct_io=False).image(str(card), image, mapfile, retry_passes=0)

    assert progress.finished_bytes == 256 * 1024
    assert image.read_bytes() == card.read_bytes()


def ddrescue_writing(map_text):
    def handler(command):
        with open(command[-1], "w") as f:
            f.write(map_text)
        return result(command, stdout="Finished")
    return handler


def test_ddrescue_imager(tmp_path):
    image, mapfile = paths(tmp_path)
    map_text = "0x0 + 1\n0x00000000 0x00100000 +\n0x00100000 0x00001000 -\n"
    runner = FakeRunner({"ddrescue": ddrescue_writing(map_text)})

    imager = DdrescueImager(runner, direct_io=True, size_probe=lambda device: 0x101000)
    progress = imager.image("/dev/sdb", image, mapfile, retry_passes=3)

    assert runner.calls == [["ddrescue", "-d", "-r3", "/dev/sdb", str(image), str(mapfile)]]
    assert progress.bad_bytes == 0x1000
    assert image.stat().st_size == 0x101000


def test_ddrescue_failure(tmp_path):
    image, mapfile = paths(tmp_path)
    runner = FakeRunner({"ddrescue": lambda cmd: result(cmd, 1, stderr="cannot open")})

    imager = DdrescueImager(runner, direct_io=False, size_probe=lambda device: 4096)
    with pytest.raises(ImagingError):
        imager.image("/dev/sdb", image, mapfile, retry_passes=3)
    assert runner.calls[0][:2] == ["ddrescue", "-r3"]


def test_ddrescue_output_is_logged_as_it_streams(tmp_path, caplog):
    image, mapfile = paths(tmp_path)
    map_text = "0x0 + 1\n0x00000000 0x00001000 +\n"
    status = "rescued: 4096 B\nrescued: 4096 B\n\x1b[2Aipos: 0 B\nFinished"

    def handler(command):
        ddrescue_writing(map_text)(command)
        return result(command, stdout=status)

    streamed = []

    def runner(command, on_line=None, **kwargs):
        streamed.append(on_line)
        return FakeRunner({"ddrescue": handler})(command, on_line=on_line)

    caplog.set_level(logging.INFO, logger="cardrescue")
    DdrescueImager(runner, size_probe=lambda device: 4096).image(
        "/dev/sdb", image, mapfile, retry_passes=1)

    assert streamed[0] is not None
    lines = [r.getMessage() for r in caplog.records if r.getMessage().startswith("ddrescue: ")]
    assert lines == ["ddrescue: rescued: 4096 B", "ddrescue: ipos: 0 B", "ddrescue: Finished"]


def test_full_output_drive_is_an_imaging_error(tmp_path, monkeypatch):
    image, mapfile = paths(tmp_path)

    def no_space(fd, data, offset):
        raise OSError(errno.ENOSPC, os.strerror(errno.ENOSPC))

    monkeypatch.setattr(imager_module.os, "pwrite", no_space)
    with pytest.raises(ImagingError) as info:
        make_imager(FakeSource(256 * 1024)).image("/dev/sdb", image, mapfile, retry_passes=0)

    assert "free space" in info.value.remediation.lower()
    # the map is saved and claims nothing that was not written
    assert ProgressMap.load(mapfile).finished_bytes == 0


def test_image_that_cannot_be_extended_is_an_imaging_error(tmp_path, monkeypatch):
    image, mapfile = paths(tmp_path)

    def no_space(fd, length):
        raise OSError(errno.ENOSPC, os.strerror(errno.ENOSPC))

    monkeypatch.setattr(imager_module.os, "ftruncate", no_space)
    with pytest.raises(ImagingError) as info:
        make_imager(FakeSource(256 * 1024)).image("/dev/sdb", image, mapfile, retry_passes=0)
    assert "free space" in info.value.remediation.lower()


def test_select_imager():
    config = RescueConfig()
    assert isinstance(select_imager(config, frozenset({"ddrescue"})), DdrescueImager)
    assert isinstance(select_imager(config, frozenset()), BuiltinImager)
    assert isinstance(select_imager(RescueConfig(imager="builtin"), frozenset({"ddrescue"})),
                      BuiltinImager)
    with pytest.raises(ImagingError):
        select_imager(RescueConfig(imager="ddrescue"), frozenset())
