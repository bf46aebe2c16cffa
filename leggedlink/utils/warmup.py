"""
JIT warmup utilities.

Call warmup_jit() on startup to compile the numba checksum kernel before any
link is opened, so the first frame does not pay the compile cost inside the
verification window. With cache=True this is fast once the cache exists.
"""

import logging
import threading
import time

from leggedlink.protocol.checksum import CHECK_VALUE, checksum

logger = logging.getLogger(__name__)

_lock = threading.Lock()
_warmed = False


def warmup_jit() -> float:
    """
    Pre-compile the numba JIT functions by calling them once.

    Returns the time taken in seconds (0.0 if already warm).
    """
    global _warmed
    with _lock:
        if _warmed:
            return 0.0
        start = time.perf_counter()
        value = checksum(b"123456789")
        if value != CHECK_VALUE:
            raise RuntimeError(
                f"CRC-32 self-test failed: 0x{value:08X} != 0x{CHECK_VALUE:08X}"
            )
        _warmed = True
        elapsed = time.perf_counter() - start
    logger.debug("JIT warmup completed in %.3fs", elapsed)
    return elapsed
