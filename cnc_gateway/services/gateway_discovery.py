"""
Gateway Discovery Service.

Connects the runtime configuration with the discovery engine: decides
whether discovery is needed, runs it, and writes the resolved CNC address
back into the configuration.
"""

from __future__ import annotations

from typing import List, Optional

import structlog

from cnc_gateway.core.config_loader import (
    AUTO_DISCOVER,
    DEFAULT_DISCOVERY_TIMEOUT_MS,
    DEFAULT_FOCAS_PORT,
    DEFAULT_MAX_CONCURRENCY,
    RuntimeConfiguration,
)
from cnc_gateway.discovery.engine import CncDiscovery
from cnc_gateway.discovery.models import DiscoveryConfig, DiscoveryStats
from cnc_gateway.discovery.verifier import ProtocolVerifier

logger = structlog.get_logger("cnc_gateway.discovery")


class CncNotFoundError(Exception):
    """Raised when no CNC address could be resolved for gateway startup."""


def ensure_cnc_address_resolved(config: RuntimeConfiguration) -> str:
    """
    Return the configured CNC address or fail startup.

    Raises:
        CncNotFoundError: if the address is empty or still the sentinel
    """
    ip = config.cnc_ip
    if not ip or ip == AUTO_DISCOVER:
        raise CncNotFoundError("no CNC found")
    return ip


class GatewayDiscoveryService:
    """
    Resolves the CNC address for single-machine gateway mode.

    Usage:
        service = GatewayDiscoveryService.from_configuration(config, verifier)
        cnc_ip = await service.discover_and_configure()
        if cnc_ip is None:
            ...  # fatal: no CNC found
    """

    def __init__(self, config: RuntimeConfiguration, discovery: CncDiscovery):
        """
        Args:
            config: Validated runtime configuration, updated in place
            discovery: Discovery engine used when the address is unresolved
        """
        self.config = config
        self.discovery = discovery

    @classmethod
    def from_configuration(
        cls,
        config: RuntimeConfiguration,
        verifier: ProtocolVerifier,
    ) -> "GatewayDiscoveryService":
        return cls(config, CncDiscovery(discovery_config_from(config), verifier))

    async def discover_and_configure(self) -> Optional[str]:
        """
        Resolve the CNC address, running discovery only when needed.

        Returns:
            The address to use, the unresolved configured value when
            discovery is disabled, or None when discovery found nothing
        """
        try:
            logger.info("gateway-discovery-starting")
            configured_ip = self.config.cnc_ip

            if not self.config.discovery_enabled:
                logger.info("discovery-disabled", configured_ip=configured_ip)
                return configured_ip

            if configured_ip and configured_ip != AUTO_DISCOVER:
                logger.info("using-configured-cnc-ip", cnc_ip=configured_ip)
                return configured_ip

            discovered = await self.discovery.discover()
            if not discovered:
                logger.warning("no-cnc-discovered")
                return None

            cnc_ip = discovered[0]
            logger.info("cnc-discovered", cnc_ip=cnc_ip, candidates=discovered)
            if self.config.set_cnc_ip(cnc_ip):
                logger.info("configuration-updated", cnc_ip=cnc_ip)
            else:
                logger.warning("configuration-update-skipped", reason="machine.type.net missing")
            return cnc_ip

        except Exception as e:
            logger.error("gateway-discovery-failed", error=str(e))
            return None

    async def validate_connection(self, cnc_ip: str) -> bool:
        """Re-run discovery and check that ``cnc_ip`` is still verified."""
        try:
            logger.info("validating-cnc-connection", cnc_ip=cnc_ip)
            discovered: List[str] = await self.discovery.discover()
            connected = cnc_ip in discovered
            if connected:
                logger.info("cnc-connection-validated", cnc_ip=cnc_ip)
            else:
                logger.warning("cnc-connection-validation-failed", cnc_ip=cnc_ip)
            return connected
        except Exception as e:
            logger.error("cnc-connection-validation-error", cnc_ip=cnc_ip, error=str(e))
            return False

    def get_discovery_stats(self) -> DiscoveryStats:
        return self.discovery.get_discovery_stats()

    async def collect_discovery_stats(self) -> DiscoveryStats:
        """Like get_discovery_stats, without blocking the event loop."""
        return await self.discovery.collect_discovery_stats()


def discovery_config_from(config: RuntimeConfiguration) -> DiscoveryConfig:
    settings = config.discovery
    net = config.cnc_net
    timeout_ms = settings.timeout_ms if settings and settings.timeout_ms else DEFAULT_DISCOVERY_TIMEOUT_MS
    max_concurrency = (
        settings.max_concurrency if settings and settings.max_concurrency else DEFAULT_MAX_CONCURRENCY
    )
    port = net.port if net is not None and net.port else DEFAULT_FOCAS_PORT
    return DiscoveryConfig(timeout_ms=timeout_ms, port=port, max_concurrency=max_concurrency)


__all__ = [
    "CncNotFoundError",
    "GatewayDiscoveryService",
    "discovery_config_from",
    "ensure_cnc_address_resolved",
]
