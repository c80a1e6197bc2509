# gifcarve - GIF recovery from raw block devices
# Block-aligned signature carving guided by inode extent reports.
#
# Architecture (bottom → top):
#   mmap_reader    - mmap I/O over a device or image, exact reads
#   errors         - DeviceReadError / AllocationError / ResolverError
#   partition      - MBR partition table (4 primary slots)
#   filesystem     - ext2/3/4 superblock → block geometry
#   signatures     - GIF87a / GIF89a header table
#   scanner        - Block-by-block signature sweep
#   parallel       - Multiprocessing block sweep (ordered merge)
#   extents        - debugfs "stat" BLOCKS/EXTENTS report parser
#   resolver       - debugfs icheck/stat collaborator
#   tsk_resolver   - pytsk3 collaborator (no text scraping)
#   carver         - Recovery plan: zero-fill + ordered dd copies
#   manager        - Orchestrator (partitions, hits, jobs, report)

__version__ = "1.0.0"
