"""
TSK Resolver - inode lookups through The Sleuth Kit (pytsk3).

Same interface as the debugfs resolver, but the answers come straight
from TSK's metadata structures instead of scraping a report:

  • list_extents(inode) walks the inode's data attribute runs.
  • resolve_inode(block) needs the reverse map, which TSK does not keep;
    it is built once on first use by walking every inode's runs.

Requires: pytsk3 (pip install pytsk3)
"""

from __future__ import annotations

import bisect
import logging
from typing import Optional

from .errors import ResolverError
from .extents import Extent, ExtentList
from .resolver import InodeResolver

logger = logging.getLogger(__name__)

# Try to import pytsk3 - the debugfs resolver still works without it
try:
    import pytsk3
    HAS_TSK = True
except ImportError:
    HAS_TSK = False
    logger.info("pytsk3 not installed - TSK resolver disabled")


def is_available() -> bool:
    """Check if pytsk3 is installed and usable."""
    return HAS_TSK


def _data_attr_types() -> tuple:
    return (
        pytsk3.TSK_FS_ATTR_TYPE_DEFAULT,
        pytsk3.TSK_FS_ATTR_TYPE_NTFS_DATA,
    )


def _iter_runs(file_obj):
    """Yield (addr, length) for every allocated data run of a TSK file."""
    skip_flags = pytsk3.TSK_FS_ATTR_RUN_FLAG_SPARSE | pytsk3.TSK_FS_ATTR_RUN_FLAG_FILLER
    for attr in file_obj:
        if attr.info.type not in _data_attr_types():
            continue
        for run in attr:
            if run.len <= 0 or run.addr <= 0:
                continue
            if int(run.flags) & int(skip_flags):
                continue
            yield run.addr, run.len


class TskResolver(InodeResolver):
    """Resolver backed by pytsk3's filesystem view of the device."""

    def __init__(self, device: str, offset: int = 0):
        if not HAS_TSK:
            raise ResolverError("pytsk3 is not installed")
        self.device = device
        try:
            self._img = pytsk3.Img_Info(device)
            self._fs = pytsk3.FS_Info(self._img, offset=offset)
        except Exception as exc:
            # pytsk3 raises plain IOError/RuntimeError subclasses
            raise ResolverError(f"No supported filesystem on {device}: {exc}") from exc
        self._index: Optional[list[tuple[int, int, int]]] = None
        self._index_starts: list[int] = []
        logger.info(
            "TSK: opened %s, block_size=%d, inodes %d..%d",
            device, self._fs.info.block_size,
            self._fs.info.first_inum, self._fs.info.last_inum,
        )

    def _open_meta(self, inode: int):
        try:
            return self._fs.open_meta(inode=inode)
        except Exception as exc:
            raise ResolverError(f"Cannot open inode {inode}: {exc}") from exc

    def list_extents(self, inode: int) -> ExtentList:
        result = ExtentList()
        for addr, length in _iter_runs(self._open_meta(inode)):
            result.add(Extent(addr, addr + length - 1))
        if not result.extents:
            raise ResolverError(f"No data runs for inode {inode}")
        return result

    def _build_index(self):
        """Map every allocated run to its inode, sorted by start block."""
        entries: list[tuple[int, int, int]] = []
        info = self._fs.info
        for inode in range(info.first_inum, info.last_inum + 1):
            try:
                f = self._fs.open_meta(inode=inode)
            except Exception:
                # Unused or corrupt inode slots are expected here
                continue
            if f.info.meta is None:
                continue
            for addr, length in _iter_runs(f):
                entries.append((addr, addr + length - 1, inode))
        entries.sort()
        self._index = entries
        self._index_starts = [e[0] for e in entries]
        logger.info("TSK: indexed %d runs", len(entries))

    def resolve_inode(self, block: int) -> Optional[int]:
        if self._index is None:
            self._build_index()
        pos = bisect.bisect_right(self._index_starts, block) - 1
        if pos >= 0:
            start, end, inode = self._index[pos]
            if start <= block <= end:
                logger.info("Inode %d for block %d", inode, block)
                return inode
        logger.warning("No inode owns block %d", block)
        return None
