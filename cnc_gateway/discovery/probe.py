"""
Port/protocol probe for a single discovery candidate
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .models import DiscoveryConfig, DiscoveryResult, DiscoveryTier
from .verifier import ProtocolVerifier

logger = logging.getLogger(__name__)


class CncProbe:
    """TCP connect followed by protocol verification.

    Never raises for a bad candidate: every failure becomes ``None`` /
    ``False`` so one unreachable host cannot abort a discovery run.
    """

    def __init__(self, config: DiscoveryConfig, verifier: ProtocolVerifier):
        self.config = config
        self.verifier = verifier

    async def probe(self, ip: str) -> bool:
        return await self.identify(ip) is not None

    async def identify(self, ip: str, tier: Optional[DiscoveryTier] = None) -> Optional[DiscoveryResult]:
        port = self.config.port
        timeout = self.config.timeout_seconds
        try:
            try:
                _, writer = await asyncio.wait_for(asyncio.open_connection(ip, port), timeout=timeout)
            except asyncio.TimeoutError:
                logger.debug(f"Connection timeout to {ip}:{port}")
                return None

            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
            logger.debug(f"Port {port} accessible at {ip}")

            identity = await asyncio.wait_for(
                self.verifier.verify(ip, port, self.config.verify_retries), timeout=timeout
            )
            if identity is None:
                logger.debug(f"Protocol verification rejected {ip}:{port}")
                return None

            logger.info(f"Verified controller protocol at {ip} - identity: {dict(identity)}")
            return DiscoveryResult(ip=ip, verified=True, identity=identity, tier=tier)

        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            logger.debug(f"Protocol verification timed out for {ip}:{port}")
        except Exception as e:
            logger.debug(f"Connection test failed for {ip}: {e}")
        return None
