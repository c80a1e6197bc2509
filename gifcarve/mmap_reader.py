"""
Device Reader - mmap random access with a buffered-read fallback.

All offsets are absolute byte offsets from the start of the device
(or disk image). The device is always opened read-only.

1. Memory-mapped I/O (mmap) for zero-copy slices when the OS allows it.
2. Fallback to seek()+read() for raw block devices that refuse mmap
   (fstat reports size 0 for most of them).
3. read_exact() turns a short read into DeviceReadError so callers can
   decide whether the miss is fatal (boot sector, superblock) or not
   (a single block in the sweep).
"""

import os
import mmap
import logging
from typing import Optional, BinaryIO

from .errors import DeviceReadError

logger = logging.getLogger(__name__)

# Sector size used by the partition table LBA fields
SECTOR_SIZE = 512


class DiskReader:
    """
    Read-only random access over a raw device or disk image.

    Usage:
        with DiskReader.open("/dev/sdb") as reader:
            boot = reader.read_exact(0, 512, what="MBR")
            for index, data in reader.iter_blocks(4096, 0, 1000):
                ...
    """

    def __init__(
        self,
        fd: BinaryIO,
        total_size: int,
        use_mmap: bool = True,
        path: str = "",
    ):
        self._fd = fd
        self._size = total_size
        self._path = path
        self._owns_fd = False
        self._mmap: Optional[mmap.mmap] = None
        self._using_mmap = False

        if use_mmap and total_size > 0:
            self._try_mmap()

    @classmethod
    def open(cls, path: str, use_mmap: bool = True) -> "DiskReader":
        """Open *path* read-only. Raises OSError if the device can't be opened."""
        fd = open(path, "rb")
        try:
            # st_size is 0 for block devices; seeking to the end works for both
            fd.seek(0, os.SEEK_END)
            size = fd.tell()
            fd.seek(0)
        except OSError:
            fd.close()
            raise
        reader = cls(fd, size, use_mmap=use_mmap, path=path)
        reader._owns_fd = True
        return reader

    def _try_mmap(self):
        try:
            self._mmap = mmap.mmap(
                self._fd.fileno(),
                0,  # Map entire file
                access=mmap.ACCESS_READ,
            )
            self._using_mmap = True
            logger.debug(
                "mmap enabled: %d bytes (%.1f GB)",
                self._size, self._size / (1024 ** 3),
            )
        except (OSError, ValueError, OverflowError) as e:
            # Raw devices and >4GB images on 32-bit builds end up here
            logger.debug("mmap unavailable (%s), using buffered reads", e)
            self._mmap = None
            self._using_mmap = False

    @property
    def is_mmap(self) -> bool:
        return self._using_mmap

    @property
    def size(self) -> int:
        return self._size

    @property
    def path(self) -> str:
        return self._path

    def read_at(self, offset: int, size: int) -> bytes:
        """
        Read up to `size` bytes starting at `offset`.

        Returns fewer bytes (possibly b"") near or past the end of the device.
        """
        if offset < 0 or offset >= self._size or size <= 0:
            return b""
        size = min(size, self._size - offset)

        if self._using_mmap and self._mmap is not None:
            return self._mmap[offset:offset + size]

        self._fd.seek(offset)
        return self._fd.read(size)

    def read_exact(self, offset: int, size: int, what: str = "data") -> bytes:
        """Read exactly `size` bytes or raise DeviceReadError."""
        try:
            data = self.read_at(offset, size)
        except OSError as e:
            raise DeviceReadError(offset, size, 0, what) from e
        if len(data) != size:
            raise DeviceReadError(offset, size, len(data), what)
        return data

    def iter_blocks(self, block_size: int, first: int, count: int):
        """
        Yield (block_index, data) for blocks [first, first + count).

        A short read is yielded as-is; the caller decides what to do with it.
        """
        for index in range(first, first + count):
            try:
                data = self.read_at(index * block_size, block_size)
            except OSError as e:
                logger.warning("Failed to read block %d: %s", index, e)
                data = b""
            yield index, data

    def close(self):
        """Release mmap resources (and the file if we opened it)."""
        if self._mmap is not None:
            self._mmap.close()
            self._mmap = None
            self._using_mmap = False
        if self._owns_fd and not self._fd.closed:
            self._fd.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
