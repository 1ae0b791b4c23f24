"""
Candidate address generation for CNC discovery tiers
"""

from __future__ import annotations

import ipaddress
import logging
import socket
from typing import List, Optional

from .models import DiscoveryCandidate, DiscoveryTier

logger = logging.getLogger(__name__)

FALLBACK_LOCAL_IP = "192.168.1.101"
FALLBACK_SUBNET = "192.168.1"

# Factory defaults controllers commonly ship with
COMMON_CNC_IPS = (
    "192.168.1.100",
    "192.168.1.101",
    "192.168.1.200",
    "192.168.1.1",
    "192.168.1.10",
    "10.0.0.100",
    "172.16.0.100",
)

SMART_OFFSETS = (100, 101, 200, 1, 10, 50, 150, 250)
FULL_OFFSETS = tuple(range(1, 255))


class CandidateGenerator:
    """Builds the ordered candidate list for each tier"""

    def generate(self, tier: DiscoveryTier, subnet: Optional[str] = None) -> List[DiscoveryCandidate]:
        if tier is DiscoveryTier.COMMON:
            addresses = list(COMMON_CNC_IPS)
        else:
            if not is_valid_subnet(subnet):
                logger.warning(f"Invalid subnet prefix {subnet!r}, no {tier.value} candidates")
                return []
            offsets = SMART_OFFSETS if tier is DiscoveryTier.SMART else FULL_OFFSETS
            addresses = [f"{subnet}.{offset}" for offset in offsets]

        seen = set()
        candidates = []
        for ip in addresses:
            if ip in seen:
                continue
            seen.add(ip)
            candidates.append(DiscoveryCandidate(ip=ip, tier=tier))
        return candidates


def is_valid_subnet(subnet: Optional[str]) -> bool:
    if not subnet:
        return False
    parts = subnet.split(".")
    if len(parts) != 3:
        return False
    return all(part.isdigit() and 0 <= int(part) <= 255 for part in parts)


def get_local_ip_address() -> str:
    """Return the first non-loopback IPv4 address bound to this host"""
    try:
        for ip in socket.gethostbyname_ex(socket.gethostname())[2]:
            if ip and not ipaddress.IPv4Address(ip).is_loopback:
                return ip
    except (OSError, ValueError) as e:
        logger.debug(f"Hostname lookup for local IP failed: {e}")

    # Routing-table lookup; UDP connect sends no packets
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.connect(("10.255.255.255", 1))
            ip = sock.getsockname()[0]
        finally:
            sock.close()
        if ip and not ipaddress.IPv4Address(ip).is_loopback and ip != "0.0.0.0":
            return ip
    except (OSError, ValueError) as e:
        logger.warning(f"Could not get local IP address: {e}")

    logger.warning(f"Falling back to default local IP {FALLBACK_LOCAL_IP}")
    return FALLBACK_LOCAL_IP


def subnet_from_ip(ip: str) -> str:
    """Extract the first three octets of an IPv4 address"""
    try:
        address = ipaddress.IPv4Address(ip)
    except ValueError:
        logger.warning(f"Could not parse IP address {ip!r}, using subnet {FALLBACK_SUBNET}")
        return FALLBACK_SUBNET
    return ".".join(str(address).split(".")[:3])
