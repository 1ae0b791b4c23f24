"""Structured logging configuration with optional MQTT forwarding."""

from __future__ import annotations

import json
import logging
from typing import Any

import structlog


class _MQTTForwarder:
    def __init__(self, enabled: bool, mqtt_client: Any, topic: str | None) -> None:
        self._enabled = enabled
        self._mqtt_client = mqtt_client
        self._topic = topic

    def __call__(self, _: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        if self._enabled and self._mqtt_client is not None and self._topic:
            try:
                payload = json.dumps(event_dict, default=str)
                self._mqtt_client.publish(self._topic, payload, qos=0, retain=False)
            except Exception:  # pragma: no cover
                pass
        return event_dict


def _resolve_log_level(level: str | None) -> int:
    candidate = (level or "info").upper()
    value = logging.getLevelName(candidate)
    return value if isinstance(value, int) else logging.INFO


def configure_log_bridge(
    level: str | None = "info",
    mqtt_client: Any = None,
    topic: str | None = None,
    *,
    forward: bool = False,
) -> None:
    """Route structlog and stdlib logging through one JSON console handler."""

    min_level = _resolve_log_level(level)
    forwarder = _MQTTForwarder(forward, mqtt_client, topic)
    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)

    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(min_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            timestamper,
            forwarder,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(min_level)

    # Remove existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(min_level)
    console_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=[structlog.processors.add_log_level, timestamper],
        )
    )
    root_logger.addHandler(console_handler)

    # paho logs every packet at debug level
    logging.getLogger("cnc_gateway.mqtt").setLevel(max(min_level, logging.INFO))


__all__ = ["configure_log_bridge"]
