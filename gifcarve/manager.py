"""
Recovery Manager - orchestrates partitions, sweep, resolver and carving.

Flow per device:
  MBR → (per slot) superblock → block sweep → (per hit) inode →
  extent report → recovery plan → artifact

Failure policy:
  • MBR unreadable          → nothing to scan, session ends with an error
  • superblock unreadable   → that partition is skipped
  • block size exponent > 7 → that partition is skipped
  • block short read        → that block is skipped (scanner)
  • resolver miss / error   → that hit is abandoned
  • AllocationError         → propagates, whole scan aborts
"""

import os
import json
import time
import logging
import threading
from dataclasses import dataclass, field, asdict
from typing import Optional, Callable

from .errors import AllocationError, DeviceReadError, ResolverError
from .mmap_reader import DiskReader
from .partition import PartitionEntry, read_partition_table
from .filesystem import FilesystemGeometry, read_geometry
from .scanner import SignatureHit, iter_hits
from .parallel import ParallelScanConfig, scan_parallel
from .resolver import InodeResolver, DebugfsResolver
from .carver import (
    CarveJob, OutputCounter, build_plan,
    write_plan_script, run_plan_script, execute_plan,
)

logger = logging.getLogger(__name__)

EXECUTE_MODES = ("python", "script", "none")
RESOLVERS = ("debugfs", "tsk")


@dataclass
class CarveConfig:
    """Configuration for a recovery run."""
    output_dir: str = "."
    resolver: str = "debugfs"           # "debugfs" or "tsk"
    use_sudo: bool = False              # prefix debugfs / dd with sudo
    resolver_timeout: float = 30.0      # seconds per debugfs call
    workers: int = 1                    # 0 = auto, 1 = sequential
    execute: str = "python"             # "python", "script" or "none"
    write_scripts: bool = True
    use_mmap: bool = True
    report_name: str = "recovery_log.json"


@dataclass
class HitRecord:
    """Outcome of one signature hit."""
    partition_slot: int
    block: int
    signature: str
    status: str = "pending"     # recovered / planned / no-inode / resolver-error
    inode: int = 0
    output_id: int = -1
    output_path: str = ""
    script_path: str = ""
    total_blocks: int = 0
    copied_blocks: int = 0
    duplicate_extents: int = 0
    error: str = ""


@dataclass
class PartitionReport:
    slot: int
    lba_start: int
    sector_count: int
    block_size: int = 0
    total_blocks: int = 0
    looks_like_ext: bool = False
    error: str = ""
    hits: int = 0


@dataclass
class ScanSession:
    """Represents a complete scan session."""
    device_path: str
    output_dir: str
    start_time: float = 0.0
    end_time: float = 0.0
    partitions: list[PartitionReport] = field(default_factory=list)
    hits: list[HitRecord] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    was_cancelled: bool = False

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    @property
    def recovered(self) -> list[HitRecord]:
        return [h for h in self.hits if h.status == "recovered"]

    @property
    def planned(self) -> list[HitRecord]:
        return [h for h in self.hits if h.status == "planned"]

    @property
    def summary(self) -> dict:
        by_status: dict[str, int] = {}
        for h in self.hits:
            by_status[h.status] = by_status.get(h.status, 0) + 1
        return {
            "partitions": len(self.partitions),
            "hits": len(self.hits),
            "by_status": by_status,
            "duration": f"{self.duration:.1f}s",
        }


class RecoveryManager:
    """High-level coordinator for GIF recovery on one device at a time."""

    def __init__(
        self,
        config: Optional[CarveConfig] = None,
        resolver: Optional[InodeResolver] = None,
        counter: Optional[OutputCounter] = None,
    ):
        self.config = config or CarveConfig()
        if self.config.execute not in EXECUTE_MODES:
            raise ValueError(f"execute must be one of {EXECUTE_MODES}")
        if self.config.resolver not in RESOLVERS:
            raise ValueError(f"resolver must be one of {RESOLVERS}")
        if self.config.execute == "none" and not self.config.write_scripts:
            raise ValueError('execute="none" without write_scripts would produce nothing')
        self._resolver = resolver
        self.counter = counter or OutputCounter()
        self.current_session: Optional[ScanSession] = None
        self._cancel = threading.Event()
        self._on_hit: Optional[Callable[[HitRecord], None]] = None

    def set_hit_callback(self, cb: Optional[Callable[[HitRecord], None]]):
        self._on_hit = cb

    def cancel(self):
        self._cancel.set()

    # ─── Scan ─────────────────────────────────────────────────

    def scan(self, device_path: str) -> ScanSession:
        """
        Scan every partition slot of `device_path` and recover each hit.

        Raises OSError if the device can't be opened and AllocationError
        if an output artifact can't be created.
        """
        self._cancel.clear()
        session = ScanSession(device_path, self.config.output_dir, start_time=time.time())
        self.current_session = session

        try:
            os.makedirs(self.config.output_dir, exist_ok=True)
        except OSError as e:
            raise AllocationError(f"Cannot create {self.config.output_dir}: {e}") from e

        with DiskReader.open(device_path, use_mmap=self.config.use_mmap) as reader:
            try:
                partitions = read_partition_table(reader)
            except DeviceReadError as e:
                logger.error("%s", e)
                session.errors.append(str(e))
                session.end_time = time.time()
                return session

            resolver = self._resolver or self._make_resolver(device_path, session)
            try:
                for part in partitions:
                    if self._cancel.is_set():
                        session.was_cancelled = True
                        break
                    self._scan_partition(reader, part, resolver, session)
            finally:
                if resolver is not None and resolver is not self._resolver:
                    resolver.close()

        if self._cancel.is_set():
            session.was_cancelled = True
        session.end_time = time.time()
        logger.info("Scan finished: %s", session.summary)
        return session

    def _make_resolver(self, device_path: str, session: ScanSession) -> Optional[InodeResolver]:
        if self.config.resolver == "tsk":
            from .tsk_resolver import TskResolver
            try:
                return TskResolver(device_path)
            except ResolverError as e:
                logger.error("TSK resolver unavailable: %s", e)
                session.errors.append(str(e))
                return None
        return DebugfsResolver(
            device_path,
            use_sudo=self.config.use_sudo,
            timeout=self.config.resolver_timeout,
        )

    def _scan_partition(self, reader, part: PartitionEntry, resolver, session: ScanSession):
        report = PartitionReport(part.slot, part.lba_start, part.sector_count)
        session.partitions.append(report)

        try:
            geometry = read_geometry(reader, part.byte_offset)
        except DeviceReadError as e:
            logger.error("Partition slot %d: %s", part.slot, e)
            report.error = str(e)
            session.errors.append(f"slot {part.slot}: {e}")
            return

        report.block_size = geometry.block_size
        report.total_blocks = geometry.total_blocks
        report.looks_like_ext = geometry.looks_like_ext

        if not geometry.has_sane_block_size:
            msg = (f"block size exponent {geometry.size_exponent} "
                   f"(block_size={geometry.block_size}) is not usable, partition skipped")
            logger.error("Partition slot %d: %s", part.slot, msg)
            report.error = msg
            session.errors.append(f"slot {part.slot}: {msg}")
            return

        for hit in self._partition_hits(reader, geometry):
            report.hits += 1
            record = self._recover_hit(reader, part, hit, geometry, resolver)
            session.hits.append(record)
            if self._on_hit:
                self._on_hit(record)
            if self._cancel.is_set():
                break

    def _partition_hits(self, reader, geometry: FilesystemGeometry):
        if self.config.workers != 1 and reader.path:
            return scan_parallel(
                reader.path, geometry.total_blocks, geometry.block_size,
                ParallelScanConfig(
                    num_workers=self.config.workers,
                    use_mmap=self.config.use_mmap,
                ),
            )
        return iter_hits(
            reader, geometry.total_blocks, geometry.block_size, cancel=self._cancel,
        )

    # ─── Per-hit recovery ─────────────────────────────────────

    def _recover_hit(
        self,
        reader,
        part: PartitionEntry,
        hit: SignatureHit,
        geometry: FilesystemGeometry,
        resolver: Optional[InodeResolver],
    ) -> HitRecord:
        record = HitRecord(part.slot, hit.block_index, hit.signature.header.decode("ascii"))

        if resolver is None:
            record.status = "resolver-error"
            record.error = "no resolver"
            return record

        try:
            inode = resolver.resolve_inode(hit.block_index)
        except ResolverError as e:
            logger.warning("Block %d: %s", hit.block_index, e)
            record.status = "resolver-error"
            record.error = str(e)
            return record

        if inode is None:
            logger.warning("Block %d: no owning inode, recovery abandoned", hit.block_index)
            record.status = "no-inode"
            return record
        record.inode = inode

        try:
            extents = resolver.list_extents(inode)
        except ResolverError as e:
            logger.warning("Inode %d: %s", inode, e)
            record.status = "resolver-error"
            record.error = str(e)
            return record

        job = CarveJob(
            output_id=self.counter.next_id(),
            extents=extents,
            block_size=geometry.block_size,
            source_device=reader.path,
            hit_block=hit.block_index,
            inode=inode,
        )
        plan = build_plan(job, self.config.output_dir)
        record.output_id = job.output_id
        record.output_path = plan.output_path
        record.total_blocks = job.total_blocks
        record.copied_blocks = plan.copied_blocks
        record.duplicate_extents = len(extents.duplicates)

        if self.config.write_scripts or self.config.execute == "script":
            script_path = os.path.join(self.config.output_dir, job.script_name)
            try:
                write_plan_script(plan, script_path, use_sudo=self.config.use_sudo)
            except OSError as e:
                raise AllocationError(f"Cannot write {script_path}: {e}") from e
            record.script_path = script_path

        if self.config.execute == "python":
            execute_plan(plan, reader)
            record.status = "recovered"
        elif self.config.execute == "script":
            ok = run_plan_script(record.script_path)
            record.status = "recovered" if ok else "script-failed"
        else:
            record.status = "planned"
        return record

    # ─── Reporting ────────────────────────────────────────────

    def export_report_json(self, filepath: Optional[str] = None) -> str:
        if not self.current_session:
            return ""
        s = self.current_session
        if filepath is None:
            filepath = os.path.join(s.output_dir, self.config.report_name)
        report = {
            "device": s.device_path,
            "date": time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(s.start_time)),
            "duration": f"{s.duration:.1f}s",
            "cancelled": s.was_cancelled,
            "summary": s.summary,
            "partitions": [asdict(p) for p in s.partitions],
            "hits": [asdict(h) for h in s.hits],
            "errors": s.errors,
        }
        with open(filepath, "w") as f:
            json.dump(report, f, indent=2, default=str)
        return filepath
