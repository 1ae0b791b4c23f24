"""
Discovery data structures and models
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional


class DiscoveryTier(Enum):
    """Escalating discovery strategies, cheapest first"""

    COMMON = "common"
    SMART = "smart"
    FULL = "full"


@dataclass(frozen=True)
class DiscoveryCandidate:
    """Address produced by the candidate generator for one tier"""

    ip: str
    tier: DiscoveryTier


@dataclass
class DiscoveryResult:
    """Outcome of a successful probe"""

    ip: str
    verified: bool
    identity: Optional[Mapping[str, Any]] = None
    tier: Optional[DiscoveryTier] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ip": self.ip,
            "verified": self.verified,
            "identity": dict(self.identity) if self.identity is not None else None,
            "tier": self.tier.value if self.tier is not None else None,
        }


@dataclass(frozen=True)
class DiscoveryConfig:
    """Run parameters, fixed for the lifetime of an engine"""

    timeout_ms: int = 10000
    port: int = 8193
    max_concurrency: int = 10
    verify_retries: int = 3

    def __post_init__(self) -> None:
        if self.timeout_ms <= 0:
            raise ValueError("timeout_ms must be positive")
        if not 1 <= self.port <= 65535:
            raise ValueError("port must be between 1 and 65535")
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if self.verify_retries < 1:
            raise ValueError("verify_retries must be at least 1")

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0


@dataclass(frozen=True)
class DiscoveryStats:
    """Read-only snapshot for diagnostics"""

    timeout_ms: int
    port: int
    local_ip: str
    subnet: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
