"""Version information for cnc-gateway and its MQTT dependency."""

import importlib.metadata
from typing import Dict


def get_gateway_version() -> str:
    """Return cnc-gateway version."""
    try:
        return importlib.metadata.version("cnc-gateway")
    except importlib.metadata.PackageNotFoundError:
        # Source checkout without an installed distribution
        return "0.1.0-dev"


def get_paho_version() -> str:
    try:
        return importlib.metadata.version("paho-mqtt")
    except importlib.metadata.PackageNotFoundError:
        return "unknown"


def get_version_info() -> Dict[str, str]:
    """Get version information for all components."""
    return {
        "cnc_gateway": get_gateway_version(),
        "paho_mqtt": get_paho_version(),
    }
