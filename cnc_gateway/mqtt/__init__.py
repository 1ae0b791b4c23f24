"""MQTT utilities package."""

from . import broker_client as broker_client
from . import log_bridge as log_bridge

__all__ = ["broker_client", "log_bridge"]
