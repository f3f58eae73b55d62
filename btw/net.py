"""
Connectivity probe.
"""

import asyncio
import logging

logger = logging.getLogger(__name__)

PROBE_HOST = "1.1.1.1"
PROBE_PORT = 53


async def has_internet(timeout_ms: int = 800, host: str = PROBE_HOST, port: int = PROBE_PORT) -> bool:
    """
    Best-effort check: a short TCP connect to a public resolver IP.

    No DNS lookup is involved, so an offline machine fails fast.
    """
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port), timeout_ms / 1000.0
        )
    except (OSError, asyncio.TimeoutError) as e:
        logger.debug(f"Connectivity probe to {host}:{port} failed: {e}")
        return False

    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True
