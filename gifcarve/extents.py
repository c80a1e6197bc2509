"""
Extent List Parser - debugfs "stat" block reports → typed extents.

Report grammar (only the block section matters):

    Inode: 12   Type: regular ...
    ...
    BLOCKS:
    (0-11):1025-1036, (IND):1037, (12-14):1038-1040
    TOTAL: 16
    <blank line>

  • Parsing starts after the line holding a section marker
    ("BLOCKS:" for ext2/3, "EXTENTS:" for ext4); tokens on the marker
    line itself are ignored.
  • The first blank line after the marker ends parsing.
  • Tokens are separated by commas and/or whitespace.
  • Tokens carrying an indirect-block marker ((IND), (DIND), (TIND),
    (ETBn)) hold pointers, not file data - dropped entirely.
  • Everything else must look like "(<label>):<start>-<end>"; anything
    that doesn't is skipped. One-block runs ("(n):block") are skipped
    too, but logged at WARNING: every later copy shifts down.

Counting quirk, kept on purpose: every parsed token adds
end - start + 1 to total_block_count, but a token whose start block was
already seen is left out of the effective extents. The total can
therefore exceed the sum of the effective extent sizes.
"""

import re
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

SECTION_MARKERS = ("BLOCKS:", "EXTENTS:")
INDIRECT_MARKERS = ("(IND)", "(DIND)", "(TIND)", "(ETB")

_TOKEN_SPLIT = re.compile(r"[,\s]+")
_EXTENT_TOKEN = re.compile(r"\((?P<label>[^)]*)\):(?P<start>\d+)-(?P<end>\d+)")
# One-block runs print as "(n):block"; they don't fit the range grammar
_SINGLE_BLOCK_TOKEN = re.compile(r"\(\d+\):\d+")


@dataclass(frozen=True)
class Extent:
    """A contiguous run of blocks, both ends inclusive."""
    start: int
    end: int

    @property
    def count(self) -> int:
        return self.end - self.start + 1


@dataclass
class ExtentList:
    """Effective extents in report order plus the report-wide block total."""
    extents: list[Extent] = field(default_factory=list)
    total_block_count: int = 0
    duplicates: list[Extent] = field(default_factory=list)
    skipped_tokens: int = 0
    _seen_starts: set[int] = field(default_factory=set, repr=False, compare=False)

    @property
    def effective_block_count(self) -> int:
        return sum(e.count for e in self.extents)

    def add(self, extent: Extent) -> bool:
        """
        Count `extent` towards the total and keep it unless its start
        block was already seen. Returns True if it was kept.
        """
        self.total_block_count += extent.count
        if extent.start in self._seen_starts:
            logger.debug("Duplicate start block %d - not copied again", extent.start)
            self.duplicates.append(extent)
            return False
        self._seen_starts.add(extent.start)
        self.extents.append(extent)
        return True

    def __len__(self) -> int:
        return len(self.extents)

    def __iter__(self):
        return iter(self.extents)


def is_indirect_token(token: str) -> bool:
    return any(marker in token for marker in INDIRECT_MARKERS)


def parse_extent_token(token: str):
    """Return an Extent for "(label):start-end", or None if malformed."""
    m = _EXTENT_TOKEN.fullmatch(token)
    if m is None:
        return None
    start, end = int(m.group("start")), int(m.group("end"))
    if end < start:
        return None
    return Extent(start, end)


def parse_extent_report(text: str) -> ExtentList:
    """Parse a debugfs stat report into an ExtentList."""
    result = ExtentList()
    in_section = False

    for line in text.splitlines():
        if not in_section:
            if any(marker in line for marker in SECTION_MARKERS):
                in_section = True
            continue

        if not line.strip():
            break
        if any(marker in line for marker in SECTION_MARKERS):
            continue

        for token in _TOKEN_SPLIT.split(line.strip()):
            if not token:
                continue
            if is_indirect_token(token):
                continue

            extent = parse_extent_token(token)
            if extent is None:
                if _SINGLE_BLOCK_TOKEN.fullmatch(token):
                    logger.warning(
                        "Skipping one-block run %r, later blocks will be misaligned", token,
                    )
                else:
                    logger.debug("Skipping malformed extent token %r", token)
                result.skipped_tokens += 1
                continue

            result.add(extent)

    if not in_section:
        logger.debug("No block section marker in report")
    return result
