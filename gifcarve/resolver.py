"""
Inode Resolver - debugfs as the filesystem metadata collaborator.

Two questions are asked of the filesystem, each through one narrow
method returning typed results:

  resolve_inode(block) → owning inode number, or None
      debugfs -R "icheck <block>" <device>
  list_extents(inode)  → ExtentList
      debugfs -R "stat <inode>" <device>

The text grammar of both reports stays confined to parse_icheck_output()
and extents.parse_extent_report(), which are tested against recorded
outputs.
"""

import logging
import subprocess
from typing import Optional

from .errors import ResolverError
from .extents import ExtentList, parse_extent_report

logger = logging.getLogger(__name__)

DEBUGFS_TIMEOUT = 30  # seconds per debugfs call


class InodeResolver:
    """Interface for block → inode → extents lookups on one device."""

    def resolve_inode(self, block: int) -> Optional[int]:
        raise NotImplementedError

    def list_extents(self, inode: int) -> ExtentList:
        raise NotImplementedError

    def close(self):
        pass


def parse_icheck_output(text: str, block: Optional[int] = None) -> Optional[int]:
    """
    Extract the inode number from an icheck report.

        Block	Inode number
        1234	12

    Returns None for "<block not found>" or anything unparsable.
    """
    lines = [ln for ln in text.splitlines() if ln.strip()]
    seen_header = False
    for line in lines:
        if line.startswith("Block") and "Inode" in line:
            seen_header = True
            continue
        if not seen_header:
            continue
        parts = line.split(None, 1)
        if len(parts) != 2 or not parts[0].isdigit():
            continue
        if block is not None and int(parts[0]) != block:
            continue
        answer = parts[1].strip()
        if answer.isdigit():
            return int(answer)
        return None
    return None


class DebugfsResolver(InodeResolver):
    """Resolver that shells out to e2fsprogs' debugfs."""

    def __init__(
        self,
        device: str,
        use_sudo: bool = False,
        timeout: float = DEBUGFS_TIMEOUT,
        debugfs: str = "debugfs",
    ):
        self.device = device
        self.use_sudo = use_sudo
        self.timeout = timeout
        self.debugfs = debugfs

    def _command(self, request: str) -> list[str]:
        cmd = [self.debugfs, "-R", request, self.device]
        if self.use_sudo:
            cmd.insert(0, "sudo")
        return cmd

    def _run(self, request: str) -> str:
        cmd = self._command(request)
        logger.debug("Running: %s", " ".join(cmd))
        try:
            r = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise ResolverError(f"{cmd[0]} not found: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise ResolverError(
                f"debugfs {request!r} timed out after {self.timeout:.0f}s"
            ) from e
        except OSError as e:
            raise ResolverError(f"Failed to run debugfs: {e}") from e

        if r.returncode != 0:
            raise ResolverError(
                f"debugfs {request!r} exited with {r.returncode}: {r.stderr.strip()}"
            )
        return r.stdout

    def resolve_inode(self, block: int) -> Optional[int]:
        out = self._run(f"icheck {block}")
        inode = parse_icheck_output(out, block)
        if inode is None:
            logger.warning("Failed to parse icheck output for block %d", block)
        else:
            logger.info("Inode %d for block %d", inode, block)
        return inode

    def stat_report(self, inode: int) -> str:
        return self._run(f"stat <{inode}>")

    def list_extents(self, inode: int) -> ExtentList:
        report = self.stat_report(inode)
        extents = parse_extent_report(report)
        if not extents.extents:
            raise ResolverError(f"No data extents in stat report for inode {inode}")
        return extents
