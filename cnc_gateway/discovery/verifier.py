"""
Protocol verification collaborators

A verifier confirms that an open port belongs to a controller and not to an
arbitrary service. Vendor protocol clients implement ``ProtocolVerifier`` and
are passed to the discovery engine explicitly.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Optional, Protocol

logger = logging.getLogger(__name__)


class ProtocolVerifier(Protocol):
    async def verify(self, ip: str, port: int, retries: int) -> Optional[Mapping[str, Any]]:
        """Return an identity record when ``ip:port`` speaks the controller protocol."""
        ...


class PortOnlyVerifier:
    """Accepts any endpoint that keeps accepting TCP connections.

    Used when no vendor client is wired in. Each attempt reopens the
    connection; the first successful attempt yields a minimal identity record.
    """

    def __init__(self, connect_timeout: float = 3.0, retry_delay: float = 0.2):
        self.connect_timeout = connect_timeout
        self.retry_delay = retry_delay

    async def verify(self, ip: str, port: int, retries: int) -> Optional[Mapping[str, Any]]:
        for attempt in range(1, max(1, retries) + 1):
            try:
                _, writer = await asyncio.wait_for(
                    asyncio.open_connection(ip, port), timeout=self.connect_timeout
                )
            except (OSError, asyncio.TimeoutError) as e:
                logger.debug(f"Verify attempt {attempt}/{retries} failed for {ip}:{port}: {e}")
                if attempt < retries:
                    await asyncio.sleep(self.retry_delay)
                continue

            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
            return {"ip": ip, "port": port, "verified_by": "tcp", "attempts": attempt}
        return None
