"""
Partition Table Reader - the four primary MBR slots.

MBR layout (512 bytes):
  Offset 446: four 16-byte partition records
    +8:  LBA of first sector (4 bytes LE)
    +12: sector count (4 bytes LE)
  Offset 510: 0x55AA boot signature (not checked)

Every slot is returned, empty or not. No partition-type or boot-flag
validation is done; extended/logical partitions are not followed.
"""

import struct
import logging
from dataclasses import dataclass

from .errors import DeviceReadError
from .mmap_reader import SECTOR_SIZE

logger = logging.getLogger(__name__)

SIZE_OF_MBR = 512
START_PARTITION_DATA = 446
PARTITION_ENTRY_SIZE = 16
LBA_START_OFFSET = 8
SECTOR_COUNT_OFFSET = 12
PARTITION_SLOTS = 4


@dataclass(frozen=True)
class PartitionEntry:
    """One primary partition slot."""
    lba_start: int
    sector_count: int
    slot: int = 0

    @property
    def byte_offset(self) -> int:
        return self.lba_start * SECTOR_SIZE

    @property
    def byte_length(self) -> int:
        return self.sector_count * SECTOR_SIZE


def parse_partition_table(mbr: bytes) -> list[PartitionEntry]:
    """Decode the four partition records from a 512-byte boot sector."""
    if len(mbr) < SIZE_OF_MBR:
        raise DeviceReadError(0, SIZE_OF_MBR, len(mbr), "MBR")

    entries = []
    for slot in range(PARTITION_SLOTS):
        base = START_PARTITION_DATA + slot * PARTITION_ENTRY_SIZE
        lba_start = struct.unpack_from("<I", mbr, base + LBA_START_OFFSET)[0]
        sector_count = struct.unpack_from("<I", mbr, base + SECTOR_COUNT_OFFSET)[0]
        entries.append(PartitionEntry(lba_start, sector_count, slot))
    return entries


def read_partition_table(reader) -> list[PartitionEntry]:
    """Read the boot sector from *reader* and decode it. Raises DeviceReadError."""
    mbr = reader.read_exact(0, SIZE_OF_MBR, what="MBR")
    entries = parse_partition_table(mbr)
    for p in entries:
        logger.debug(
            "Partition slot %d: lba_start=%d sectors=%d (offset 0x%X)",
            p.slot, p.lba_start, p.sector_count, p.byte_offset,
        )
    return entries
