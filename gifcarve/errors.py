"""
Error taxonomy for the carving pipeline.

  • DeviceReadError - short or failed read. Fatal only for the boot
    sector and the superblock; per-block misses are logged and skipped.
  • AllocationError - output artifact or buffer cannot be created.
    Aborts the whole scan.
  • ResolverError   - inode / extent report unavailable or unparsable.
    Abandons recovery for that one hit only.

Malformed extent tokens are not errors: the parser logs them at DEBUG
and skips them.
"""


class CarveError(Exception):
    """Base class for all carving failures."""


class DeviceReadError(CarveError):
    """A device read returned fewer bytes than requested."""

    def __init__(self, offset: int, wanted: int, got: int, what: str = "data"):
        self.offset = offset
        self.wanted = wanted
        self.got = got
        self.what = what
        super().__init__(
            f"Failed to read {what} at offset {offset}: "
            f"bytesRead = {got} (wanted {wanted})"
        )


class AllocationError(CarveError):
    """An output artifact or working buffer could not be allocated."""


class ResolverError(CarveError):
    """The inode resolver failed or returned something unusable."""
