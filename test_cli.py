"""
Test the command-line entry point: flag validation and how a finished
scan reports a recovery log that can't be written.
"""
import os
import sys
import tempfile
import shutil
from unittest.mock import patch

import main as cli
from test_carve import build_test_image


def _run_main(argv):
    with patch.object(sys, "argv", ["gifcarve"] + argv):
        try:
            cli.main()
        except SystemExit as e:
            return e.code
    raise AssertionError("main() returned without exiting")


def test_plan_only_without_scripts_rejected():
    print("── Test: CLI flags ──")
    assert _run_main(["disk.img", "--plan-only", "--no-scripts"]) == 2
    print("  ✅ CLI flags: PASS")


def test_report_write_failure_keeps_exit_zero():
    """A finished scan exits 0 even if recovery_log.json can't be written."""
    tmpdir = tempfile.mkdtemp(prefix="test_cli_")
    try:
        img_path = os.path.join(tmpdir, "disk.img")
        build_test_image(img_path, gif_blocks=())
        out_dir = os.path.join(tmpdir, "out")
        with patch("gifcarve.manager.RecoveryManager.export_report_json",
                   side_effect=OSError("No space left on device")) as export:
            code = _run_main([img_path, "-o", out_dir])
        assert code == 0
        assert export.call_count == 1
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def test_missing_device_exit_code():
    tmpdir = tempfile.mkdtemp(prefix="test_cli_nodev_")
    try:
        code = _run_main([os.path.join(tmpdir, "nope.img"), "-o", tmpdir, "--no-report"])
        assert code == 1
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


def main():
    test_plan_only_without_scripts_rejected()
    test_report_write_failure_keeps_exit_zero()
    test_missing_device_exit_code()
    print("ALL TESTS PASSED ✅")


if __name__ == "__main__":
    main()
