"""
Superblock Reader - block geometry of an ext2/3/4 partition.

The superblock always sits 1024 bytes into the partition. Only the
fields needed for the block sweep are decoded:

  +0:  s_inodes_count (4)          - reported only
  +24: s_log_block_size (1 byte used) - block_size = 1024 << value
  +32: block count field (4)       - total blocks swept
  +56: s_magic (2) = 0xEF53        - reported only, never enforced

The magic number is NOT used to reject a partition. A slot that holds
some other filesystem (or nothing) yields best-effort garbage geometry,
which the caller has to live with. Only a block size exponent past
MAX_SANE_EXPONENT is treated as unusable (the partition is skipped).
"""

import struct
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

SUPERBLOCK_OFFSET = 1024
SUPERBLOCK_READ_SIZE = 4096

INODES_COUNT_OFFSET = 0
BLOCK_SIZE_OFFSET = 24
TOTAL_BLOCKS_OFFSET = 32
MAGIC_OFFSET = 56

# Reserved for group / inode table walking; not decoded yet.
BLOCKS_PER_GROUP_OFFSET = 40
NUM_GROUPS_OFFSET = 64
TOTAL_INODES_OFFSET = 0x54
INODES_PER_GROUP_OFFSET = 0x68

EXT_MAGIC = 0xEF53
MIN_BLOCK_SIZE = 1024
# ext4 tops out at 64 KiB; anything past 128 KiB is almost surely noise
MAX_SANE_EXPONENT = 7


@dataclass(frozen=True)
class FilesystemGeometry:
    """Block geometry read from a superblock."""
    block_size: int
    total_blocks: int
    size_exponent: int = 0
    magic: int = 0
    inodes_count: int = 0

    @property
    def looks_like_ext(self) -> bool:
        return self.magic == EXT_MAGIC

    @property
    def total_bytes(self) -> int:
        return self.block_size * self.total_blocks

    @property
    def has_sane_block_size(self) -> bool:
        return self.size_exponent <= MAX_SANE_EXPONENT


def block_size_for(exponent: int) -> int:
    """Block size in bytes for a superblock size exponent."""
    return MIN_BLOCK_SIZE << exponent


def parse_superblock(sb: bytes) -> FilesystemGeometry:
    """Decode geometry from raw superblock bytes (at least 64 bytes)."""
    exponent = sb[BLOCK_SIZE_OFFSET]
    total_blocks = struct.unpack_from("<I", sb, TOTAL_BLOCKS_OFFSET)[0]
    magic = struct.unpack_from("<H", sb, MAGIC_OFFSET)[0]
    inodes = struct.unpack_from("<I", sb, INODES_COUNT_OFFSET)[0]
    return FilesystemGeometry(
        block_size=block_size_for(exponent),
        total_blocks=total_blocks,
        size_exponent=exponent,
        magic=magic,
        inodes_count=inodes,
    )


def read_geometry(reader, partition_offset: int) -> FilesystemGeometry:
    """
    Read the superblock of the partition starting at `partition_offset`.

    Raises DeviceReadError if the 4096-byte superblock read comes up short.
    """
    sb = reader.read_exact(
        partition_offset + SUPERBLOCK_OFFSET,
        SUPERBLOCK_READ_SIZE,
        what="superblock",
    )
    geometry = parse_superblock(sb)

    if not geometry.looks_like_ext:
        logger.warning(
            "No ext magic at partition offset 0x%X (found 0x%04X) - "
            "geometry is best-effort",
            partition_offset, geometry.magic,
        )
    logger.info(
        "Superblock @0x%X: block_size=%d, total_blocks=%d, inodes=%d",
        partition_offset + SUPERBLOCK_OFFSET,
        geometry.block_size, geometry.total_blocks, geometry.inodes_count,
    )
    return geometry
