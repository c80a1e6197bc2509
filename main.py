#!/usr/bin/env python3
"""
GIF Carver - Entry Point.

Usage:
    sudo python main.py /dev/sdb                 # scan + recover
    sudo python main.py disk.img -o out --plan-only
    sudo python main.py /dev/sdb --resolver tsk --workers 0
"""

import os
import sys
import time
import logging
import argparse
import platform

from gifcarve import __version__ as APP_VERSION


def _setup_logging(verbose: bool, log_file: str):
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        handlers=handlers,
    )


def cli_mode(args) -> int:
    from gifcarve.errors import AllocationError
    from gifcarve.manager import RecoveryManager, CarveConfig, HitRecord

    print("=" * 60)
    print(f"  GIF Carver  v{APP_VERSION}")
    print("  Block-aligned GIF recovery from raw devices")
    print("=" * 60)
    print()

    execute = "none" if args.plan_only else args.execute
    config = CarveConfig(
        output_dir=args.output,
        resolver=args.resolver,
        use_sudo=args.sudo,
        resolver_timeout=args.timeout,
        workers=args.workers,
        execute=execute,
        write_scripts=not args.no_scripts,
        use_mmap=not args.no_mmap,
    )

    print(f"Device:     {args.device}")
    print(f"Output:     {os.path.abspath(config.output_dir)}")
    print(f"Resolver:   {config.resolver}")
    print(f"Mode:       {'Plan only' if execute == 'none' else 'Recover (' + execute + ')'}")
    print()

    if platform.system() in ("Darwin", "Linux") and os.geteuid() != 0:
        print("⚠️  WARNING: Not running as root.")
        print("   Raw devices and debugfs usually need: sudo python main.py ...")
        print()

    manager = RecoveryManager(config)

    def on_hit(rec: HitRecord):
        if rec.output_path:
            print(f"  block {rec.block:>10d}  inode {rec.inode:>8d}  "
                  f"{rec.status:<14s} {rec.output_path}")
        else:
            print(f"  block {rec.block:>10d}  {rec.status:<14s} {rec.error}")

    manager.set_hit_callback(on_hit)

    print("⚡ Scanning...")
    start = time.time()
    try:
        session = manager.scan(args.device)
    except OSError as e:
        logging.getLogger("main").error("Failed to open device %s: %s", args.device, e)
        return 1
    except AllocationError as e:
        logging.getLogger("main").error("Scan aborted: %s", e)
        return 2
    except KeyboardInterrupt:
        manager.cancel()
        print("\n  Aborted.")
        return 130
    elapsed = time.time() - start

    print()
    print("─" * 60)
    for p in session.partitions:
        if p.error:
            print(f"  slot {p.slot}: {p.error}")
        else:
            fs = "ext" if p.looks_like_ext else "unknown fs"
            print(f"  slot {p.slot}: lba {p.lba_start}, {p.total_blocks} × "
                  f"{p.block_size} B ({fs}), {p.hits} hit(s)")
    print("─" * 60)

    print(f"\n{'=' * 60}")
    print(f"  Done in {elapsed:.1f}s - {len(session.hits)} hit(s), "
          f"{len(session.recovered)} artifact(s), {len(session.planned)} plan(s) only")
    print(f"{'=' * 60}")

    if not args.no_report:
        try:
            path = manager.export_report_json()
            print(f"  Log: {path}")
        except OSError as e:
            logging.getLogger("main").error("Failed to write recovery log: %s", e)
    print()
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Recover GIF files from a raw block device or disk image.")
    parser.add_argument("device", help="Block device or disk image")
    parser.add_argument("-o", "--output", default="recovered", help="Output directory")
    parser.add_argument("--resolver", choices=("debugfs", "tsk"), default="debugfs",
                        help="Inode resolver backend")
    parser.add_argument("--sudo", action="store_true",
                        help="Prefix debugfs and dd commands with sudo")
    parser.add_argument("--timeout", type=float, default=30.0,
                        help="Seconds allowed per debugfs call")
    parser.add_argument("-j", "--workers", type=int, default=1,
                        help="Sweep processes (0 = auto, 1 = sequential)")
    parser.add_argument("--execute", choices=("python", "script"), default="python",
                        help="Apply plans in-process or by running the dd script")
    parser.add_argument("--plan-only", action="store_true",
                        help="Write recovery scripts without running them")
    parser.add_argument("--no-scripts", action="store_true",
                        help="Don't write recovery_<n>.sh plan scripts")
    parser.add_argument("--no-mmap", action="store_true", help="Use buffered reads")
    parser.add_argument("--no-report", action="store_true",
                        help="Don't write recovery_log.json")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--log-file", default="", help="Also log to this file")
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    args = parser.parse_args()
    if args.plan_only and args.no_scripts:
        parser.error("--plan-only with --no-scripts would produce nothing")

    _setup_logging(args.verbose, args.log_file)
    sys.exit(cli_mode(args))


if __name__ == "__main__":
    main()
