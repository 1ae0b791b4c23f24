from __future__ import annotations

import asyncio
import time

from conftest import CountingGenerator, FakeProbe, FakeVerifier

from cnc_gateway.discovery.candidates import CandidateGenerator
from cnc_gateway.discovery.engine import CncDiscovery
from cnc_gateway.discovery.limiter import ConcurrencyLimiter
from cnc_gateway.discovery.models import DiscoveryConfig, DiscoveryTier


def _engine(probe: FakeProbe, *, local_ip: str = "10.1.2.7", max_concurrency: int = 10):
    generator = CountingGenerator()
    engine = CncDiscovery(
        DiscoveryConfig(timeout_ms=200, max_concurrency=max_concurrency),
        FakeVerifier(),
        generator=generator,
        probe=probe,
        local_ip_resolver=lambda: local_ip,
    )
    return engine, generator


def test_common_hit_short_circuits_later_tiers() -> None:
    probe = FakeProbe(["192.168.1.100", "10.1.2.100"])
    engine, generator = _engine(probe)

    ips = asyncio.run(engine.discover())

    assert ips == ["192.168.1.100"]
    assert generator.tiers == [DiscoveryTier.COMMON]
    assert probe.tiers_probed() == [DiscoveryTier.COMMON]
    assert engine.last_results[0].tier is DiscoveryTier.COMMON


def test_common_tier_returns_every_verified_address() -> None:
    probe = FakeProbe(["10.0.0.100", "192.168.1.101"])
    engine, _ = _engine(probe)

    assert asyncio.run(engine.discover()) == ["192.168.1.101", "10.0.0.100"]


def test_smart_tier_runs_after_common_miss() -> None:
    probe = FakeProbe(["10.1.2.50", "10.1.2.77"])
    engine, generator = _engine(probe)

    ips = asyncio.run(engine.discover())

    assert ips == ["10.1.2.50"]
    assert generator.calls == [(DiscoveryTier.COMMON, None), (DiscoveryTier.SMART, "10.1.2")]
    assert DiscoveryTier.FULL not in probe.tiers_probed()


def test_full_scan_returns_results_in_candidate_order() -> None:
    probe = FakeProbe(["10.1.2.77", "10.1.2.3"], delay=0.001)
    engine, generator = _engine(probe, max_concurrency=4)

    ips = asyncio.run(engine.discover())

    assert ips == ["10.1.2.3", "10.1.2.77"]
    assert generator.tiers == [DiscoveryTier.COMMON, DiscoveryTier.SMART, DiscoveryTier.FULL]
    full_calls = [ip for ip, tier in probe.calls if tier is DiscoveryTier.FULL]
    assert len(full_calls) == 254


def test_full_scan_respects_concurrency_bound() -> None:
    class FullTierOnly(CandidateGenerator):
        def generate(self, tier, subnet=None):
            if tier is not DiscoveryTier.FULL:
                return []
            return super().generate(tier, subnet)

    fake = FakeProbe(delay=0.002)
    # more workers than limiter slots, so the limiter alone holds the bound
    engine = CncDiscovery(
        DiscoveryConfig(timeout_ms=200, max_concurrency=8),
        FakeVerifier(),
        generator=FullTierOnly(),
        probe=fake,
        local_ip_resolver=lambda: "10.1.2.7",
        limiter_factory=lambda _limit: ConcurrencyLimiter(3),
    )

    assert asyncio.run(engine.discover()) == []
    assert len(fake.calls) == 254
    assert fake.max_active == 3
    assert engine.last_limiter.peak == 3
    assert engine.last_limiter.in_flight == 0


def test_full_scan_workers_follow_max_concurrency() -> None:
    fake = FakeProbe(delay=0.002)
    engine, _ = _engine(fake, max_concurrency=5)

    assert asyncio.run(engine.discover()) == []
    assert engine.last_limiter.limit == 5
    assert engine.last_limiter.peak == 5
    assert engine.last_limiter.in_flight == 0


def test_local_address_lookup_does_not_block_event_loop() -> None:
    def slow_resolver() -> str:
        time.sleep(0.3)
        return "10.1.2.7"

    fake = FakeProbe(["10.1.2.50"])
    engine = CncDiscovery(
        DiscoveryConfig(timeout_ms=200),
        FakeVerifier(),
        probe=fake,
        local_ip_resolver=slow_resolver,
    )

    async def scenario():
        ticks = 0
        stop = asyncio.Event()

        async def ticker() -> None:
            nonlocal ticks
            while not stop.is_set():
                await asyncio.sleep(0.01)
                ticks += 1

        task = asyncio.create_task(ticker())
        try:
            ips = await engine.discover()
            stats = await engine.collect_discovery_stats()
        finally:
            stop.set()
            await task
        return ips, stats, ticks

    ips, stats, ticks = asyncio.run(scenario())

    assert ips == ["10.1.2.50"]
    assert stats.subnet == "10.1.2"
    # two 0.3s lookups; a blocked loop would tick only a handful of times
    assert ticks >= 20


def test_failing_probes_do_not_abort_discovery() -> None:
    failing = {"192.168.1.100", "10.1.2.100", "10.1.2.2", "10.1.2.3"}
    probe = FakeProbe(["10.1.2.4"], failing=failing)
    engine, _ = _engine(probe, max_concurrency=3)

    ips = asyncio.run(engine.discover())

    assert ips == ["10.1.2.4"]
    assert engine.last_limiter.in_flight == 0


def test_nothing_found_runs_every_tier() -> None:
    probe = FakeProbe()
    engine, generator = _engine(probe)

    assert asyncio.run(engine.discover()) == []
    assert generator.tiers == [DiscoveryTier.COMMON, DiscoveryTier.SMART, DiscoveryTier.FULL]
    assert engine.last_results == []


def test_unresolvable_local_address_uses_fallback_subnet() -> None:
    probe = FakeProbe(["192.168.1.50"])
    engine, generator = _engine(probe, local_ip="garbage")

    assert asyncio.run(engine.discover()) == ["192.168.1.50"]
    assert generator.calls[1] == (DiscoveryTier.SMART, "192.168.1")


def test_discovery_stats_snapshot() -> None:
    engine, _ = _engine(FakeProbe(), local_ip="172.20.1.15")

    stats = engine.get_discovery_stats()

    assert stats.to_dict() == {
        "timeout_ms": 200,
        "port": 8193,
        "local_ip": "172.20.1.15",
        "subnet": "172.20.1",
    }
