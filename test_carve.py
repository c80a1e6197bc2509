"""
Test the carve reconstructor and the full recovery pipeline against a
synthetic ext-like disk image with a fragmented GIF.
This proves plans are sized, ordered and applied correctly.
"""
import os
import json
import struct
import tempfile
import shutil
import threading
from unittest.mock import patch

import pytest

from gifcarve.carver import (
    CarveJob, OutputCounter, build_plan, execute_plan, render_script,
    write_plan_script, run_plan_script,
)
from gifcarve.errors import ResolverError
from gifcarve.extents import ExtentList, parse_extent_report
from gifcarve.manager import RecoveryManager, CarveConfig
from gifcarve.mmap_reader import DiskReader
from gifcarve.resolver import InodeResolver

BLOCK = 4096
TOTAL_BLOCKS = 64


def block_pattern(index):
    """Recognisable content for block `index`."""
    return bytes([index % 251]) * BLOCK


def build_test_image(path, gif_blocks=(37,), bad_slots=(1, 2, 3)):
    """
    64-block image, 4 KiB blocks. Slot 0 covers the whole image;
    `bad_slots` point far past the end so their superblock read fails.
    """
    img = bytearray()
    for i in range(TOTAL_BLOCKS):
        img += block_pattern(i)

    img[0:512] = b"\x00" * 512
    struct.pack_into("<II", img, 446 + 8, 0, TOTAL_BLOCKS * BLOCK // 512)
    for slot in bad_slots:
        struct.pack_into("<II", img, 446 + slot * 16 + 8, 0x00FFFFFF, 16)
    img[510:512] = b"\x55\xAA"

    sb = 1024
    img[sb:sb + 4096] = b"\x00" * 4096
    img[sb + 24] = 2                                   # 1024 << 2 = 4096
    struct.pack_into("<I", img, sb + 32, TOTAL_BLOCKS)
    struct.pack_into("<H", img, sb + 56, 0xEF53)

    for b in gif_blocks:
        img[b * BLOCK:b * BLOCK + 6] = b"GIF89a"

    with open(path, "wb") as f:
        f.write(img)
    return bytes(img)


class FakeResolver(InodeResolver):
    """Answers from tables instead of debugfs."""

    def __init__(self, owners, reports):
        self.owners = owners
        self.reports = reports
        self.calls = []

    def resolve_inode(self, block):
        self.calls.append(("icheck", block))
        return self.owners.get(block)

    def list_extents(self, inode):
        self.calls.append(("stat", inode))
        if inode not in self.reports:
            raise ResolverError(f"no report for {inode}")
        return parse_extent_report(self.reports[inode])


def _job(report, output_id=0, device="/dev/sdz"):
    return CarveJob(output_id, parse_extent_report(report), BLOCK, device)


def test_plan_layout():
    print("── Test: recovery plan ──")
    job = _job("BLOCKS:\n(0-3):100-103, (IND):104, (4-9):105-110\n(10-10):300-300\n\n")
    plan = build_plan(job, "/out")

    assert job.total_blocks == 11
    assert plan.init_blocks == 10
    assert plan.init_bytes == 10 * BLOCK
    assert plan.output_path == os.path.join("/out", "recovery_0.gif")
    ops = [(op.read_offset_blocks, op.write_offset_blocks, op.block_count)
           for op in plan.operations]
    assert ops == [(100, 0, 4), (105, 4, 6), (300, 10, 1)]
    assert all(op.source_device == "/dev/sdz" for op in plan.operations)
    assert plan.is_consistent()
    print("  ✅ recovery plan: PASS")


def test_plan_skips_duplicates_but_sizes_with_them():
    job = _job("BLOCKS:\n(0-3):100-103, (4-5):100-101, (6-7):200-201\n\n")
    plan = build_plan(job, "/out")
    assert job.total_blocks == 8
    assert plan.init_blocks == 7
    assert [(op.read_offset_blocks, op.write_offset_blocks) for op in plan.operations] \
        == [(100, 0), (200, 4)]
    assert plan.copied_blocks == 6
    assert plan.is_consistent()


def test_plan_with_no_blocks():
    plan = build_plan(_job("BLOCKS:\n\n"), "/out")
    assert plan.init_blocks == 0
    assert plan.operations == []


def test_zero_fill_before_copies():
    """totalBlocks = 11 → exactly 10 blocks of zeros when nothing is copied."""
    tmpdir = tempfile.mkdtemp(prefix="test_zero_")
    try:
        src = os.path.join(tmpdir, "src.img")
        with open(src, "wb") as f:
            f.write(b"\xFF" * BLOCK)
        job = CarveJob(0, ExtentList(total_block_count=11), BLOCK, src)
        plan = build_plan(job, tmpdir)
        with DiskReader.open(src) as reader:
            assert execute_plan(plan, reader) == 0
        with open(plan.output_path, "rb") as f:
            data = f.read()
        assert len(data) == 10 * BLOCK
        assert data == b"\x00" * (10 * BLOCK)
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_execute_plan_reassembles_fragments():
    print("── Test: plan execution ──")
    tmpdir = tempfile.mkdtemp(prefix="test_exec_")
    try:
        img_path = os.path.join(tmpdir, "disk.img")
        build_test_image(img_path)
        # duplicate start 40 inflates the total by one block
        job = _job("BLOCKS:\n(0-1):40-41, (2-2):44-44, (3-3):40-40\n\n", device=img_path)
        plan = build_plan(job, tmpdir)
        assert plan.init_blocks == 3

        with DiskReader.open(img_path) as reader:
            copied = execute_plan(plan, reader)
        assert copied == 3 * BLOCK

        with open(plan.output_path, "rb") as f:
            data = f.read()
        assert len(data) == 3 * BLOCK
        assert data == block_pattern(40) + block_pattern(41) + block_pattern(44)
        print("  ✅ plan execution: PASS")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_copy_past_device_end_is_short_not_fatal():
    tmpdir = tempfile.mkdtemp(prefix="test_exec_short_")
    try:
        src = os.path.join(tmpdir, "src.img")
        with open(src, "wb") as f:
            f.write(block_pattern(0) + block_pattern(1))
        job = CarveJob(0, parse_extent_report("BLOCKS:\n(0-2):1-3\n\n"), BLOCK, src)
        plan = build_plan(job, tmpdir)
        with DiskReader.open(src) as reader:
            assert execute_plan(plan, reader) == BLOCK
        with open(plan.output_path, "rb") as f:
            data = f.read()
        # 2 zero blocks from the fill, first one overwritten by block 1
        assert data == block_pattern(1) + b"\x00" * BLOCK
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_plan_script():
    job = _job("BLOCKS:\n(0-3):100-103, (4-9):105-110\n\n", output_id=7)
    job.hit_block = 100
    job.inode = 12
    plan = build_plan(job, "/out dir")
    lines = render_script(plan).splitlines()

    assert lines[0] == "#!/bin/bash"
    dd = [ln for ln in lines if "dd " in ln]
    assert dd[0] == "dd if=/dev/zero of='/out dir/recovery_7.gif' bs=4096 count=9"
    assert dd[1] == ("dd if=/dev/sdz of='/out dir/recovery_7.gif' bs=4096 "
                     "skip=100 seek=0 count=4 conv=notrunc")
    assert dd[2].endswith("skip=105 seek=4 count=6 conv=notrunc")
    assert len(dd) == 3
    assert all(ln.startswith("sudo dd") for ln in render_script(plan, use_sudo=True).splitlines()
               if "dd " in ln)

    tmpdir = tempfile.mkdtemp(prefix="test_script_")
    try:
        path = write_plan_script(plan, os.path.join(tmpdir, job.script_name))
        assert os.path.basename(path) == "recovery_7.sh"
        assert os.access(path, os.X_OK)
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_output_counter():
    counter = OutputCounter()
    assert [counter.next_id() for _ in range(3)] == [0, 1, 2]
    assert counter.peek == 3

    shared = OutputCounter(100)
    seen = []
    lock = threading.Lock()

    def grab():
        for _ in range(200):
            v = shared.next_id()
            with lock:
                seen.append(v)

    threads = [threading.Thread(target=grab) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert sorted(seen) == list(range(100, 900))


def test_file_carving():
    """End to end: sweep → resolver → plan → artifact → report."""
    print("── Test: file carving ──")
    tmpdir = tempfile.mkdtemp(prefix="recovery_test_")
    img_path = os.path.join(tmpdir, "test_disk.img")
    out_dir = os.path.join(tmpdir, "recovered")
    try:
        build_test_image(img_path, gif_blocks=(37, 50))
        resolver = FakeResolver(
            owners={37: 12},   # block 50 has no owner
            reports={12: "BLOCKS:\n(0-1):37-38, (IND):39, (2-3):45-46\n\n"},
        )
        manager = RecoveryManager(CarveConfig(output_dir=out_dir), resolver=resolver)
        seen = []
        manager.set_hit_callback(seen.append)
        session = manager.scan(img_path)

        assert len(session.partitions) == 4
        assert session.partitions[0].block_size == BLOCK
        assert session.partitions[0].total_blocks == TOTAL_BLOCKS
        assert session.partitions[0].looks_like_ext
        # Slots 1-3 point past the end: superblock unreadable, partition skipped
        assert all(p.error for p in session.partitions[1:])
        assert len(session.errors) == 3

        assert [(h.block, h.status) for h in session.hits] == \
            [(37, "recovered"), (50, "no-inode")]
        assert seen == session.hits
        rec = session.hits[0]
        assert rec.inode == 12
        assert rec.output_id == 0
        assert rec.total_blocks == 4
        assert rec.copied_blocks == 4

        with open(rec.output_path, "rb") as f:
            data = f.read()
        expected = (
            b"GIF89a" + block_pattern(37)[6:] + block_pattern(38)
            + block_pattern(45) + block_pattern(46)
        )
        assert data == expected
        assert os.path.exists(os.path.join(out_dir, "recovery_0.sh"))
        assert manager.counter.peek == 1
        assert ("stat", 12) in resolver.calls

        report_path = manager.export_report_json()
        with open(report_path) as f:
            report = json.load(f)
        assert report["summary"]["hits"] == 2
        assert report["hits"][0]["output_path"] == rec.output_path
        print("  ✅ file carving: PASS")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_rescan_advances_output_ids():
    tmpdir = tempfile.mkdtemp(prefix="recovery_rescan_")
    try:
        img_path = os.path.join(tmpdir, "disk.img")
        build_test_image(img_path)
        resolver = FakeResolver({37: 5}, {5: "BLOCKS:\n(0-0):37-37\n\n"})
        config = CarveConfig(output_dir=tmpdir, execute="none")
        manager = RecoveryManager(config, resolver=resolver)

        session = manager.scan(img_path)
        first = session.hits[0]
        # planned hits are not counted as recovered artifacts
        assert session.recovered == []
        assert session.planned == [first]
        second = manager.scan(img_path).hits[0]
        assert (first.output_id, second.output_id) == (0, 1)
        assert first.status == second.status == "planned"
        # plan-only mode writes scripts, not artifacts
        assert os.path.exists(first.script_path)
        assert not os.path.exists(first.output_path)
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_script_mode_matches_python_mode():
    """Running the dd script rebuilds the same bytes as the in-process copy."""
    if shutil.which("bash") is None or shutil.which("dd") is None:
        pytest.skip("bash and dd are required")
    tmpdir = tempfile.mkdtemp(prefix="recovery_script_")
    try:
        img_path = os.path.join(tmpdir, "disk.img")
        build_test_image(img_path)
        # duplicate start 37 and an indirect block in the same report
        report = "BLOCKS:\n(0-1):37-38, (IND):39, (2-3):45-46\n(4-4):37-37, (5-6):60-61\n\n"

        outputs = {}
        for mode in ("python", "script"):
            out_dir = os.path.join(tmpdir, mode)
            resolver = FakeResolver({37: 12}, {12: report})
            manager = RecoveryManager(
                CarveConfig(output_dir=out_dir, execute=mode), resolver=resolver,
            )
            rec = manager.scan(img_path).hits[0]
            assert rec.status == "recovered"
            assert rec.total_blocks == 7
            assert rec.duplicate_extents == 1
            with open(rec.output_path, "rb") as f:
                outputs[mode] = f.read()

        assert outputs["script"] == outputs["python"]
        expected = (
            b"GIF89a" + block_pattern(37)[6:] + block_pattern(38)
            + block_pattern(45) + block_pattern(46)
            + block_pattern(60) + block_pattern(61)
        )
        assert outputs["python"] == expected
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_run_plan_script_reports_failure():
    if shutil.which("bash") is None:
        pytest.skip("bash is required")
    tmpdir = tempfile.mkdtemp(prefix="recovery_badscript_")
    try:
        ok_path = os.path.join(tmpdir, "ok.sh")
        bad_path = os.path.join(tmpdir, "bad.sh")
        with open(ok_path, "w") as f:
            f.write("#!/bin/bash\nexit 0\n")
        with open(bad_path, "w") as f:
            f.write("#!/bin/bash\necho 'dd: cannot open' >&2\nexit 3\n")

        assert run_plan_script(ok_path) is True
        assert run_plan_script(bad_path) is False
        assert run_plan_script(os.path.join(tmpdir, "missing.sh")) is False
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_failed_script_marks_hit():
    tmpdir = tempfile.mkdtemp(prefix="recovery_scriptfail_")
    try:
        img_path = os.path.join(tmpdir, "disk.img")
        build_test_image(img_path)
        resolver = FakeResolver({37: 12}, {12: "BLOCKS:\n(0-0):37-37\n\n"})
        manager = RecoveryManager(
            CarveConfig(output_dir=tmpdir, execute="script"), resolver=resolver,
        )
        with patch("gifcarve.manager.run_plan_script", return_value=False):
            session = manager.scan(img_path)
        assert session.hits[0].status == "script-failed"
        assert session.recovered == []
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_unusable_block_size_skips_partition():
    """A garbage size exponent skips the slot instead of sweeping huge blocks."""
    tmpdir = tempfile.mkdtemp(prefix="recovery_exp_")
    try:
        img_path = os.path.join(tmpdir, "disk.img")
        build_test_image(img_path)
        with open(img_path, "r+b") as f:
            f.seek(1024 + 24)
            f.write(bytes([30]))
        resolver = FakeResolver({37: 12}, {12: "BLOCKS:\n(0-0):37-37\n\n"})
        manager = RecoveryManager(CarveConfig(output_dir=tmpdir), resolver=resolver)
        session = manager.scan(img_path)

        assert "exponent 30" in session.partitions[0].error
        assert session.partitions[0].hits == 0
        assert session.hits == []
        assert resolver.calls == []
        assert len(session.errors) == 4
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_plan_only_without_scripts_rejected():
    try:
        RecoveryManager(CarveConfig(execute="none", write_scripts=False))
    except ValueError:
        pass
    else:
        raise AssertionError("a run that writes nothing was accepted")


def test_resolver_error_abandons_hit_only():
    tmpdir = tempfile.mkdtemp(prefix="recovery_reserr_")
    try:
        img_path = os.path.join(tmpdir, "disk.img")
        build_test_image(img_path, gif_blocks=(20, 30))
        resolver = FakeResolver({20: 7, 30: 8}, {8: "BLOCKS:\n(0-0):30-30\n\n"})
        manager = RecoveryManager(CarveConfig(output_dir=tmpdir), resolver=resolver)
        session = manager.scan(img_path)
        assert [h.status for h in session.hits] == ["resolver-error", "recovered"]
        assert session.hits[1].output_id == 0
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_unreadable_mbr():
    tmpdir = tempfile.mkdtemp(prefix="recovery_mbr_")
    try:
        img_path = os.path.join(tmpdir, "tiny.img")
        with open(img_path, "wb") as f:
            f.write(b"\x00" * 100)
        manager = RecoveryManager(CarveConfig(output_dir=tmpdir), resolver=FakeResolver({}, {}))
        session = manager.scan(img_path)
        assert session.partitions == []
        assert session.hits == []
        assert session.errors and "MBR" in session.errors[0]
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_missing_device_raises():
    tmpdir = tempfile.mkdtemp(prefix="recovery_nodev_")
    try:
        manager = RecoveryManager(CarveConfig(output_dir=tmpdir), resolver=FakeResolver({}, {}))
        try:
            manager.scan(os.path.join(tmpdir, "nope.img"))
        except OSError:
            pass
        else:
            raise AssertionError("missing device accepted")
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def main():
    print("=" * 60)
    print("  GIF Carver - Test Suite")
    print("=" * 60)
    test_plan_layout()
    test_plan_skips_duplicates_but_sizes_with_them()
    test_plan_with_no_blocks()
    test_zero_fill_before_copies()
    test_execute_plan_reassembles_fragments()
    test_copy_past_device_end_is_short_not_fatal()
    test_plan_script()
    test_output_counter()
    test_file_carving()
    test_rescan_advances_output_ids()
    test_script_mode_matches_python_mode()
    test_run_plan_script_reports_failure()
    test_failed_script_marks_hit()
    test_unusable_block_size_skips_partition()
    test_plan_only_without_scripts_rejected()
    test_resolver_error_abandons_hit_only()
    test_unreadable_mbr()
    test_missing_device_raises()
    print()
    print("=" * 60)
    print("  ALL TESTS PASSED ✅")
    print("=" * 60)


if __name__ == "__main__":
    main()
