"""Gateway services."""

from .gateway_discovery import CncNotFoundError, GatewayDiscoveryService, ensure_cnc_address_resolved

__all__ = ["CncNotFoundError", "GatewayDiscoveryService", "ensure_cnc_address_resolved"]
