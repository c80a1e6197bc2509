"""
Signature Scanner - block-aligned sweep for GIF headers.

HOW THE SWEEP WORKS
───────────────────
1.  For every block index i in [0, total_blocks) read exactly
    block_size bytes at byte offset i * block_size.
2.  A short read is logged and the block is skipped. Blocks that
    start past the end of the device are not read at all.
3.  Compare the first bytes against the signature table, in order.
    The first match yields a SignatureHit and the sweep moves on -
    at most one hit per block.
4.  Signatures that start mid-block are never found.

The sweep is a generator: lazy, finite, single-pass, ascending order.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from .signatures import SignatureInfo, GIF_SIGNATURES, match_signature

logger = logging.getLogger(__name__)

# Individual short reads logged at WARNING before dropping to DEBUG
SHORT_READ_WARN_LIMIT = 10


@dataclass(frozen=True)
class SignatureHit:
    """A block whose leading bytes match a known signature."""
    block_index: int
    signature: SignatureInfo = GIF_SIGNATURES[0]

    def byte_offset(self, block_size: int) -> int:
        return self.block_index * block_size


def iter_hits(
    reader,
    total_blocks: int,
    block_size: int,
    first_block: int = 0,
    signatures: tuple[SignatureInfo, ...] = GIF_SIGNATURES,
    cancel: Optional[threading.Event] = None,
):
    """
    Yield SignatureHit for each matching block in
    [first_block, total_blocks), in ascending block order.
    """
    count = max(0, total_blocks - first_block)
    short_reads = 0

    # Blocks starting at or past the device end can never be read
    present = max(0, -(-reader.size // block_size) - first_block)
    if present < count:
        logger.warning(
            "%d of %d blocks lie past the end of the device (%d bytes), not read",
            count - present, count, reader.size,
        )
        count = present

    for index, data in reader.iter_blocks(block_size, first_block, count):
        if cancel is not None and cancel.is_set():
            logger.info("Sweep cancelled at block %d", index)
            return

        if len(data) != block_size:
            short_reads += 1
            level = logging.WARNING if short_reads <= SHORT_READ_WARN_LIMIT else logging.DEBUG
            logger.log(level, "Failed to read block %d: bytesRead = %d", index, len(data))
            continue

        sig = match_signature(data, signatures)
        if sig is not None:
            logger.info("%s found in block %d", sig.description, index)
            yield SignatureHit(index, sig)

    if short_reads > SHORT_READ_WARN_LIMIT:
        logger.warning("%d blocks skipped on short reads", short_reads)


def scan_range(reader, block_size: int, first: int, end: int,
               signatures: tuple[SignatureInfo, ...] = GIF_SIGNATURES) -> list[SignatureHit]:
    """Eagerly sweep blocks [first, end) and return the hits."""
    return list(iter_hits(reader, end, block_size, first, signatures))
