"""
Cache scanner: sums app cache directories with `du` in the root shell.
"""
import contextlib
import logging
from typing import Iterable, Optional

from . import config
from .errors import BrokerError
from .shell import ShellSession, default_session

logger = logging.getLogger("privbroker.cache")

UNITS = ("B", "KB", "MB", "GB", "TB")


def format_size(size: int) -> str:
    """Human readable size, one decimal: 1536 -> '1.5 KB'."""
    if size <= 0:
        return "0 B"
    value = float(size)
    unit = 0
    while value >= 1024 and unit < len(UNITS) - 1:
        value /= 1024
        unit += 1
    return "%.1f %s" % (value, UNITS[unit])


def package_of(path: str) -> str:
    """'/data/data/com.foo/cache' -> 'com.foo'"""
    parts = path.strip().rstrip("/").split("/")
    if len(parts) >= 2 and parts[-1] == "cache":
        return parts[-2]
    return ""


class CacheScanner:

    def __init__(self, session: Optional[ShellSession] = None):
        self.session = session if session is not None else default_session()

    async def scan_bytes(self, packages: Optional[Iterable[str]] = None) -> Optional[int]:
        """
        Total cache bytes, optionally only for the given packages.

        Returns None without root. Raises BrokerError when the scan itself fails.
        """
        if not await self.session.is_root_available():
            return None
        wanted = set(packages) if packages else None
        total = 0
        async with contextlib.aclosing(self.session.stream(config.CACHE_SCAN_COMMAND)) as lines:
            async for line in lines:
                parts = line.split(None, 1)
                if len(parts) != 2:
                    continue
                try:
                    kilobytes = int(parts[0])
                except ValueError:
                    continue
                if wanted is not None and package_of(parts[1]) not in wanted:
                    continue
                total += kilobytes * 1024
        return total

    async def total_cache_size(self, packages: Optional[Iterable[str]] = None) -> str:
        """Formatted total, 'N/A' without root, 'Error' if the scan failed."""
        try:
            total = await self.scan_bytes(packages)
        except BrokerError as e:
            logger.warning("Cache scan failed: %s", e)
            return "Error"
        if total is None:
            return "N/A"
        return format_size(total)
