"""MQTT status client wrapper around :mod:`paho.mqtt`.

The gateway announces its lifecycle and discovery outcome on the broker of the
configured MQTT transport. Collected CNC telemetry is published elsewhere;
this client only carries gateway status and diagnostics.
"""

from __future__ import annotations

import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any

import paho.mqtt.client as mqtt

from cnc_gateway.core.config_loader import RuntimeConfiguration, TransportConfig
from cnc_gateway.core.version import get_version_info


class MQTTBrokerClient:
    """Wrapper that configures and manages a paho-mqtt client instance."""

    DEFAULT_RECONNECT_MIN_SECONDS = 1
    DEFAULT_RECONNECT_MAX_SECONDS = 60
    DEFAULT_KEEPALIVE_SECONDS = 60
    DEFAULT_PORT = 1883

    def __init__(
        self,
        config: RuntimeConfiguration,
        *,
        logger: logging.Logger | None = None,
        client_factory: Any | None = None,
    ) -> None:
        if config.transport is None or not config.transport.is_mqtt:
            raise ValueError("MQTTBrokerClient requires an MQTT transport section")
        self._config = config
        self._logger = logger or logging.getLogger("cnc_gateway.mqtt.broker")
        self._client_factory = client_factory
        self._client: Any | None = None
        self._loop_started = False
        self._connected = False
        self._connect_time: float | None = None
        self._reconnect_count = 0
        self._disconnect_time: float | None = None

        machine_id = config.machine.id if config.machine is not None else None
        self.base_topic = f"cnc-gateway/{machine_id or 'unknown'}"

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------
    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self) -> None:
        """Create the MQTT client, apply configuration, and connect."""

        client = self._client or self._create_client()
        self._client = client

        client.reconnect_delay_set(
            min_delay=self.DEFAULT_RECONNECT_MIN_SECONDS,
            max_delay=self.DEFAULT_RECONNECT_MAX_SECONDS,
        )

        host, port = self._resolve_endpoint()
        try:
            self._logger.info(
                "Attempting MQTT connect",
                extra={"host": host, "port": port, "keepalive": self.DEFAULT_KEEPALIVE_SECONDS},
            )
            client.connect(host, port, keepalive=self.DEFAULT_KEEPALIVE_SECONDS)
        except Exception as exc:
            self._logger.error(
                "Failed to connect to MQTT broker",
                exc_info=exc,
                extra={"host": host, "port": port},
            )
            raise

        if not self._loop_started:
            client.loop_start()
            self._loop_started = True

    def disconnect(self) -> None:
        """Disconnect gracefully from the MQTT broker."""

        if not self._client:
            return

        if self._loop_started:
            try:
                self._client.loop_stop()
            finally:
                self._loop_started = False

        self._client.disconnect()
        self._connected = False

    def publish(
        self,
        topic: str,
        payload: Any = None,
        *,
        qos: int | None = None,
        retain: bool | None = None,
    ) -> Any:
        """Publish a message via the underlying paho client."""

        if not self._client:
            raise RuntimeError("MQTT client is not connected")

        publish_kwargs: dict[str, Any] = {}
        if qos is not None:
            publish_kwargs["qos"] = qos
        if retain is not None:
            publish_kwargs["retain"] = retain

        try:
            result = self._client.publish(topic, payload, **publish_kwargs)
        except Exception as exc:
            self._logger.error("mqtt-publish-failed", exc_info=exc, extra={"topic": topic})
            raise

        self._logger.debug(
            "mqtt-publish",
            extra={"topic": topic, "qos": publish_kwargs.get("qos"), "retain": publish_kwargs.get("retain")},
        )
        return result

    def publish_status(self, status: str) -> None:
        """Publish the retained gateway lifecycle status."""
        self.publish(f"{self.base_topic}/status", status, qos=1, retain=True)

    def publish_discovery(self, cnc_ip: str | None, stats: dict[str, Any], results: list[dict[str, Any]]) -> None:
        """Publish discovery outcome to meta/discovery as retained JSON."""
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "cnc_ip": cnc_ip,
            "stats": stats,
            "results": results,
            "versions": get_version_info(),
        }
        self.publish(f"{self.base_topic}/meta/discovery", json.dumps(payload), qos=1, retain=True)

    def publish_health(self, cnc_ip: str, reachable: bool) -> None:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "cnc_ip": cnc_ip,
            "reachable": reachable,
        }
        self.publish(f"{self.base_topic}/meta/health", json.dumps(payload), qos=0, retain=False)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @property
    def _transport(self) -> TransportConfig:
        return self._config.transport

    def _create_client(self) -> Any:
        client_id = f"{self.base_topic.replace('/', '-')}-{os.getpid()}"
        if self._client_factory is not None:
            client = self._client_factory(client_id=client_id)
        else:
            client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)

        client.enable_logger(self._logger)

        transport = self._transport
        if transport.user and transport.anonymous is not True:
            client.username_pw_set(transport.user, transport.password)

        if transport.tls_enabled:
            ca_path = transport.extra.get("ca_cert_path") or None
            client.tls_set(ca_certs=ca_path)

        # Broker marks the gateway offline if the process dies
        client.will_set(f"{self.base_topic}/status", "offline", qos=1, retain=True)

        client.on_connect = self._handle_connect
        client.on_disconnect = self._handle_disconnect
        return client

    def _resolve_endpoint(self) -> tuple[str, int]:
        net = self._transport.net
        host = net.ip if net is not None and net.ip else "localhost"
        port = net.port if net is not None and net.port else self.DEFAULT_PORT
        return host, port

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------
    def _handle_connect(
        self, client: Any, userdata: Any, flags: Any, reason_code: Any, properties: Any
    ) -> None:
        self._connected = True
        self._connect_time = time.time()
        if self._disconnect_time is not None:
            self._reconnect_count += 1

        self._logger.info(
            "Connected to MQTT broker",
            extra={
                "reason_code": getattr(reason_code, "value", reason_code),
                "reconnect_count": self._reconnect_count,
            },
        )

    def _handle_disconnect(
        self,
        client: Any,
        userdata: Any,
        disconnect_flags: Any,
        reason_code: Any,
        properties: Any,
    ) -> None:
        self._connected = False
        self._disconnect_time = time.time()

        if self._reason_is_failure(reason_code):
            # paho's network loop reconnects using reconnect_delay_set
            self._logger.warning(
                "MQTT connection lost; paho will reconnect",
                extra={"reason_code": getattr(reason_code, "value", reason_code)},
            )
        else:
            self._logger.debug("MQTT client disconnected cleanly")

    @staticmethod
    def _reason_is_failure(reason_code: Any) -> bool:
        if hasattr(reason_code, "is_failure"):
            return bool(reason_code.is_failure)

        candidate = getattr(reason_code, "value", reason_code)
        try:
            return int(candidate) != 0
        except (TypeError, ValueError):
            return bool(candidate)


__all__ = ["MQTTBrokerClient"]
