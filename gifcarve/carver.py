"""
Carve Reconstructor - extent list → recovery plan → output artifact.

A plan has two parts, applied strictly in order:

1.  Zero-fill: create the artifact as (total_blocks - 1) * block_size
    zero bytes. The "- 1" is a fixed sizing policy of the recovery format
    and is left as-is. The last copy usually extends the file past it.
2.  Copies: one CopyOperation per effective extent, in report order.
    Read offsets come from the extent start; write offsets start at 0
    and advance by each extent's block count, so no two copies ever
    touch the same output region.

Plans are written out as bash scripts (dd commands) before they run, so
an operator can audit or edit them. They can then be applied in-process
(default), by running the script, or not at all.
"""

import os
import shlex
import logging
import subprocess
import threading
from dataclasses import dataclass, field

from .errors import AllocationError
from .extents import ExtentList

logger = logging.getLogger(__name__)

ZERO_CHUNK = 1024 * 1024   # zero-fill write size
COPY_CHUNK_BLOCKS = 256    # blocks per read during copies


class OutputCounter:
    """Process-wide artifact numbering, owned by the scan coordinator."""

    def __init__(self, start: int = 0):
        self._next = start
        self._lock = threading.Lock()

    def next_id(self) -> int:
        with self._lock:
            value = self._next
            self._next += 1
            return value

    @property
    def peek(self) -> int:
        with self._lock:
            return self._next


@dataclass(frozen=True)
class CopyOperation:
    """Copy block_count blocks from the source device into the artifact."""
    source_device: str
    read_offset_blocks: int
    write_offset_blocks: int
    block_count: int

    @property
    def write_end_blocks(self) -> int:
        return self.write_offset_blocks + self.block_count


@dataclass
class CarveJob:
    """One recovered signature hit on its way to an artifact."""
    output_id: int
    extents: ExtentList
    block_size: int
    source_device: str
    hit_block: int = 0
    inode: int = 0

    @property
    def total_blocks(self) -> int:
        return self.extents.total_block_count

    @property
    def artifact_name(self) -> str:
        return f"recovery_{self.output_id}.gif"

    @property
    def script_name(self) -> str:
        return f"recovery_{self.output_id}.sh"


@dataclass
class RecoveryPlan:
    """Zero-fill step plus ordered copy operations for one artifact."""
    job: CarveJob
    output_path: str
    init_blocks: int
    operations: list[CopyOperation] = field(default_factory=list)

    @property
    def block_size(self) -> int:
        return self.job.block_size

    @property
    def init_bytes(self) -> int:
        return self.init_blocks * self.job.block_size

    @property
    def copied_blocks(self) -> int:
        return sum(op.block_count for op in self.operations)

    def is_consistent(self) -> bool:
        """Write regions are contiguous from 0, in order, and never overlap."""
        expected = 0
        for op in self.operations:
            if op.block_count <= 0 or op.write_offset_blocks != expected:
                return False
            expected = op.write_end_blocks
        return True


def build_plan(job: CarveJob, output_dir: str) -> RecoveryPlan:
    """Turn a CarveJob into a RecoveryPlan. Pure - touches no files."""
    init_blocks = job.total_blocks - 1
    if init_blocks < 0:
        logger.warning(
            "Job %d: total_blocks=%d, zero-fill clamped to 0",
            job.output_id, job.total_blocks,
        )
        init_blocks = 0

    plan = RecoveryPlan(
        job=job,
        output_path=os.path.join(output_dir, job.artifact_name),
        init_blocks=init_blocks,
    )

    write_offset = 0
    for extent in job.extents:
        plan.operations.append(CopyOperation(
            source_device=job.source_device,
            read_offset_blocks=extent.start,
            write_offset_blocks=write_offset,
            block_count=extent.count,
        ))
        write_offset += extent.count

    logger.debug(
        "Job %d: %d copy ops, %d blocks copied, zero-fill %d blocks",
        job.output_id, len(plan.operations), plan.copied_blocks, init_blocks,
    )
    return plan


# ─────────────────────────────────────────────────────────────
#  Plan script (auditable artifact)
# ─────────────────────────────────────────────────────────────

def render_script(plan: RecoveryPlan, use_sudo: bool = False) -> str:
    """Render the plan as a bash script of dd commands."""
    prefix = "sudo " if use_sudo else ""
    out = shlex.quote(plan.output_path)
    bs = plan.block_size
    lines = [
        "#!/bin/bash",
        f"# recovery plan {plan.job.output_id}: block {plan.job.hit_block}, "
        f"inode {plan.job.inode}, {plan.job.total_blocks} blocks reported",
        "set -e",
        f"{prefix}dd if=/dev/zero of={out} bs={bs} count={plan.init_blocks}",
    ]
    for op in plan.operations:
        lines.append(
            f"{prefix}dd if={shlex.quote(op.source_device)} of={out} bs={bs} "
            f"skip={op.read_offset_blocks} seek={op.write_offset_blocks} "
            f"count={op.block_count} conv=notrunc"
        )
    return "\n".join(lines) + "\n"


def write_plan_script(plan: RecoveryPlan, path: str, use_sudo: bool = False) -> str:
    with open(path, "w") as f:
        f.write(render_script(plan, use_sudo))
    os.chmod(path, 0o755)
    logger.info("Recovery plan written: %s", path)
    return path


def run_plan_script(path: str, timeout=None) -> bool:
    """Execute a plan script with bash. Returns False if it failed."""
    try:
        r = subprocess.run(
            ["bash", path], capture_output=True, text=True, timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning("Failed to run %s: %s", path, e)
        return False
    if r.returncode != 0:
        logger.warning("%s exited with %d: %s", path, r.returncode, r.stderr.strip())
        return False
    return True


# ─────────────────────────────────────────────────────────────
#  In-process execution
# ─────────────────────────────────────────────────────────────

def _zero_fill(path: str, size: int):
    """Create `path` holding exactly `size` zero bytes."""
    try:
        zeros = b"\x00" * min(ZERO_CHUNK, max(size, 1))
    except MemoryError as e:
        raise AllocationError(f"Cannot allocate zero buffer: {e}") from e
    try:
        with open(path, "wb") as f:
            remaining = size
            while remaining > 0:
                n = min(remaining, len(zeros))
                f.write(zeros[:n])
                remaining -= n
    except OSError as e:
        raise AllocationError(f"Cannot create {path} ({size} bytes): {e}") from e


def execute_plan(plan: RecoveryPlan, reader) -> int:
    """
    Apply a plan using `reader` as the source device.

    Returns the number of bytes copied. Short source reads are logged
    and whatever was read is still written.
    """
    bs = plan.block_size
    _zero_fill(plan.output_path, plan.init_bytes)

    copied = 0
    try:
        with open(plan.output_path, "r+b") as out:
            for op in plan.operations:
                done = 0
                while done < op.block_count:
                    n = min(COPY_CHUNK_BLOCKS, op.block_count - done)
                    src = (op.read_offset_blocks + done) * bs
                    try:
                        data = reader.read_at(src, n * bs)
                    except OSError as e:
                        logger.warning("Read error at byte %d: %s", src, e)
                        data = b""
                    if len(data) != n * bs:
                        logger.warning(
                            "Short read at block %d: bytesRead = %d (wanted %d)",
                            op.read_offset_blocks + done, len(data), n * bs,
                        )
                    out.seek((op.write_offset_blocks + done) * bs)
                    out.write(data)
                    copied += len(data)
                    done += n
    except MemoryError as e:
        raise AllocationError(f"Cannot allocate copy buffer: {e}") from e
    except OSError as e:
        raise AllocationError(f"Cannot write {plan.output_path}: {e}") from e

    logger.info(
        "Recovered %s (%d bytes copied, %d ops)",
        plan.output_path, copied, len(plan.operations),
    )
    return copied
