"""
Parallel Sweep - multiprocessing-based block scanning.

Every block read and signature test is independent, so the block range
[0, total_blocks) is split into contiguous slices, one per worker
process. Each worker opens the device itself (file handles and mmaps
don't cross process boundaries) and returns its hits. The coordinator
concatenates the per-slice results in slice order, which restores
ascending block order without a sort.

Signatures never straddle blocks, so slices need no overlap.
"""

import os
import time
import logging
import multiprocessing as mp
from dataclasses import dataclass

from .mmap_reader import DiskReader
from .scanner import SignatureHit, scan_range
from .signatures import GIF_SIGNATURES

logger = logging.getLogger(__name__)


@dataclass
class ParallelScanConfig:
    """Configuration for parallel scanning."""
    num_workers: int = 0                # 0 = auto-detect
    min_blocks_per_worker: int = 16 * 1024
    max_workers: int = 8
    use_mmap: bool = True


def optimal_worker_count(total_blocks: int, config: ParallelScanConfig) -> int:
    """
    Determine the number of worker processes.

    At least 1; each worker gets at least min_blocks_per_worker blocks;
    never more than the CPU count or max_workers.
    """
    if config.num_workers > 0:
        return max(1, min(config.num_workers, config.max_workers))

    cpu_count = os.cpu_count() or 2
    max_by_size = max(1, total_blocks // config.min_blocks_per_worker)
    return min(max_by_size, cpu_count, config.max_workers)


def split_blocks_for_workers(total_blocks: int, num_workers: int) -> list[tuple[int, int]]:
    """
    Split [0, total_blocks) into at most `num_workers` contiguous
    (first, end) slices covering every block exactly once.
    """
    if total_blocks <= 0:
        return []
    if num_workers <= 1:
        return [(0, total_blocks)]

    chunk, extra = divmod(total_blocks, num_workers)
    ranges = []
    start = 0
    for i in range(num_workers):
        size = chunk + (1 if i < extra else 0)
        if size == 0:
            continue
        ranges.append((start, start + size))
        start += size
    return ranges


def _worker_scan(args) -> tuple[int, list[SignatureHit], float]:
    """Scan one slice in a worker process."""
    worker_id, device_path, block_size, first, end, use_mmap = args
    t0 = time.time()
    with DiskReader.open(device_path, use_mmap=use_mmap) as reader:
        hits = scan_range(reader, block_size, first, end, GIF_SIGNATURES)
    return worker_id, hits, time.time() - t0


def scan_parallel(
    device_path: str,
    total_blocks: int,
    block_size: int,
    config: ParallelScanConfig,
) -> list[SignatureHit]:
    """Sweep all blocks across worker processes; hits come back in block order."""
    with DiskReader.open(device_path, use_mmap=False) as reader:
        present = -(-reader.size // block_size)
    if present < total_blocks:
        logger.warning(
            "%d of %d blocks lie past the end of the device, not read",
            total_blocks - present, total_blocks,
        )
        total_blocks = present

    workers = optimal_worker_count(total_blocks, config)
    ranges = split_blocks_for_workers(total_blocks, workers)
    if not ranges:
        return []

    logger.info(
        "Parallel sweep: %d blocks of %d bytes across %d workers",
        total_blocks, block_size, len(ranges),
    )

    tasks = [
        (i, device_path, block_size, first, end, config.use_mmap)
        for i, (first, end) in enumerate(ranges)
    ]

    hits: list[SignatureHit] = []
    with mp.Pool(processes=len(tasks)) as pool:
        # imap preserves task order, so slices come back in block order
        for worker_id, worker_hits, elapsed in pool.imap(_worker_scan, tasks):
            first, end = ranges[worker_id]
            logger.debug(
                "Worker %d: blocks [%d, %d) → %d hits in %.1fs",
                worker_id, first, end, len(worker_hits), elapsed,
            )
            hits.extend(worker_hits)
    return hits
