"""
Tiered CNC discovery engine
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional

from .candidates import CandidateGenerator, get_local_ip_address, subnet_from_ip
from .limiter import ConcurrencyLimiter
from .models import DiscoveryCandidate, DiscoveryConfig, DiscoveryResult, DiscoveryStats, DiscoveryTier
from .probe import CncProbe
from .verifier import ProtocolVerifier

logger = logging.getLogger(__name__)


class CncDiscovery:
    """
    Finds CNC controllers using three escalating strategies.

    1. common: factory-default addresses, probed in parallel
    2. smart: likely host numbers on the local /24, probed in parallel
    3. full: every host on the local /24 through a bounded worker pool

    A tier runs only when every cheaper tier found nothing. Results are
    returned in candidate order, so callers needing a single address can take
    the first one.

    Usage:
        discovery = CncDiscovery(DiscoveryConfig(timeout_ms=2000), verifier)
        ips = await discovery.discover()
    """

    def __init__(
        self,
        config: DiscoveryConfig,
        verifier: ProtocolVerifier,
        *,
        generator: Optional[CandidateGenerator] = None,
        probe: Optional[CncProbe] = None,
        local_ip_resolver: Optional[Callable[[], str]] = None,
        limiter_factory: Callable[[int], ConcurrencyLimiter] = ConcurrencyLimiter,
    ):
        self.config = config
        self.generator = generator or CandidateGenerator()
        self.probe = probe or CncProbe(config, verifier)
        self._resolve_local_ip = local_ip_resolver or get_local_ip_address
        self._limiter_factory = limiter_factory

        self.last_results: List[DiscoveryResult] = []
        self.last_limiter: Optional[ConcurrencyLimiter] = None

    async def discover(self) -> List[str]:
        """Run the tiers in order and return verified addresses."""
        logger.info("Starting CNC discovery process...")
        self.last_results = []

        try:
            results = await self._run_parallel_tier(DiscoveryTier.COMMON, None)
            if results:
                logger.info(f"Found {len(results)} CNC(s) using common IP strategy")
            else:
                subnet = subnet_from_ip(await self.resolve_local_ip())

                results = await self._run_parallel_tier(DiscoveryTier.SMART, subnet)
                if results:
                    logger.info(f"Found {len(results)} CNC(s) using smart subnet strategy")
                else:
                    results = await self._run_full_scan(subnet)
                    if results:
                        logger.info(f"Found {len(results)} CNC(s) using full subnet strategy")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"CNC discovery failed: {e}")
            results = []

        self.last_results = results
        ips = [result.ip for result in results]
        if ips:
            logger.info(f"CNC discovery complete. Found {len(ips)} machine(s): {', '.join(ips)}")
        else:
            logger.warning("No CNC machines found on network")
        return ips

    async def _run_parallel_tier(self, tier: DiscoveryTier, subnet: Optional[str]) -> List[DiscoveryResult]:
        candidates = self.generator.generate(tier, subnet)
        if not candidates:
            return []

        if subnet:
            logger.info(f"Scanning {len(candidates)} {tier.value} candidates on {subnet}.0/24")
        else:
            logger.info(f"Trying {len(candidates)} {tier.value} CNC addresses")

        outcomes = await asyncio.gather(
            *(self.probe.identify(candidate.ip, tier) for candidate in candidates),
            return_exceptions=True,
        )
        results = []
        for candidate, outcome in zip(candidates, outcomes):
            if isinstance(outcome, BaseException):
                logger.debug(f"Probe for {candidate.ip} raised: {outcome}")
                continue
            if outcome is not None:
                results.append(outcome)
        return results

    async def _run_full_scan(self, subnet: str) -> List[DiscoveryResult]:
        candidates = self.generator.generate(DiscoveryTier.FULL, subnet)
        if not candidates:
            return []

        logger.info(f"Full scanning subnet: {subnet}.0/24 (this may take a while)")

        limiter = self._limiter_factory(self.config.max_concurrency)
        self.last_limiter = limiter

        queue: asyncio.Queue[tuple[int, DiscoveryCandidate]] = asyncio.Queue()
        for index, candidate in enumerate(candidates):
            queue.put_nowait((index, candidate))

        found: List[tuple[int, DiscoveryResult]] = []
        found_lock = asyncio.Lock()

        async def worker() -> None:
            while True:
                try:
                    index, candidate = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    async with limiter:
                        result = await self.probe.identify(candidate.ip, DiscoveryTier.FULL)
                    if result is not None:
                        async with found_lock:
                            found.append((index, result))
                        logger.info(f"Found CNC at IP: {candidate.ip}")
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.debug(f"Probe for {candidate.ip} raised: {e}")
                finally:
                    queue.task_done()

        workers = [
            asyncio.create_task(worker())
            for _ in range(min(self.config.max_concurrency, len(candidates)))
        ]
        try:
            await asyncio.gather(*workers)
        finally:
            for task in workers:
                if not task.done():
                    task.cancel()

        found.sort(key=lambda item: item[0])
        return [result for _, result in found]

    async def resolve_local_ip(self) -> str:
        """Resolve the local address in a worker thread; the hostname lookup blocks."""
        return await asyncio.to_thread(self._resolve_local_ip)

    async def collect_discovery_stats(self) -> DiscoveryStats:
        return self.get_discovery_stats(await self.resolve_local_ip())

    def get_discovery_stats(self, local_ip: Optional[str] = None) -> DiscoveryStats:
        if local_ip is None:
            local_ip = self._resolve_local_ip()
        return DiscoveryStats(
            timeout_ms=self.config.timeout_ms,
            port=self.config.port,
            local_ip=local_ip,
            subnet=subnet_from_ip(local_ip),
        )
