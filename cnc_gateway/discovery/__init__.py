"""
Discovery module for CNC controller discovery
"""

from .candidates import CandidateGenerator
from .engine import CncDiscovery
from .limiter import ConcurrencyLimiter
from .models import DiscoveryCandidate, DiscoveryConfig, DiscoveryResult, DiscoveryStats, DiscoveryTier
from .probe import CncProbe
from .verifier import PortOnlyVerifier, ProtocolVerifier

__all__ = [
    'CandidateGenerator',
    'CncDiscovery',
    'CncProbe',
    'ConcurrencyLimiter',
    'DiscoveryCandidate',
    'DiscoveryConfig',
    'DiscoveryResult',
    'DiscoveryStats',
    'DiscoveryTier',
    'PortOnlyVerifier',
    'ProtocolVerifier',
]
