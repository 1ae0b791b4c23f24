from __future__ import annotations

import asyncio
import copy
import logging
import types
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

import pytest

from cnc_gateway.core.config_loader import ENV_OVERRIDES
from cnc_gateway.discovery.candidates import CandidateGenerator
from cnc_gateway.discovery.models import DiscoveryCandidate, DiscoveryResult, DiscoveryTier


GATEWAY_ENV_VARS = tuple(rule.variable for rule in ENV_OVERRIDES) + ("CNC_GATEWAY_CONFIG", "CONFIG_FILE")


@dataclass
class PublishedMessage:
    topic: str
    payload: Any
    qos: int
    retain: bool


@dataclass
class FakePublishResult:
    mid: int
    rc: int = 0

    def wait_for_publish(self) -> bool:
        return True


class FakeMQTTClient:
    def __init__(self, client_id: str | None = None) -> None:
        self.client_id = client_id
        self.connected: bool = False
        self.loop_running: bool = False
        self.username: Optional[str] = None
        self.password: Optional[str] = None
        self.logger = None
        self.reconnect_settings: Tuple[int, int] | None = None
        self.tls_enabled: bool = False
        self.tls_ca_cert_path: Optional[str] = None
        self.will: Optional[PublishedMessage] = None
        self.published_messages: list[PublishedMessage] = []
        self.publish_mid: int = 0
        self.connect_args: Tuple[str, int, int] | None = None
        self.disconnect_calls: int = 0
        self.enable_logger_calls: int = 0
        self.on_connect = None
        self.on_disconnect = None
        self.connect_error: Exception | None = None

    # ------------------------------------------------------------------
    # paho.mqtt style API
    # ------------------------------------------------------------------
    def enable_logger(self, logger: Any) -> None:
        self.logger = logger
        self.enable_logger_calls += 1

    def username_pw_set(
        self, username: str | None, password: str | None = None
    ) -> None:
        self.username = username
        self.password = password

    def tls_set(self, *, ca_certs: str | None = None, **_: Any) -> None:
        self.tls_enabled = True
        self.tls_ca_cert_path = ca_certs

    def will_set(self, topic: str, payload: Any = None, qos: int = 0, retain: bool = False) -> None:
        self.will = PublishedMessage(topic=topic, payload=payload, qos=qos, retain=retain)

    def reconnect_delay_set(self, *, min_delay: int, max_delay: int) -> None:
        self.reconnect_settings = (min_delay, max_delay)

    def connect(self, host: str, port: int, keepalive: int = 60) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True
        self.connect_args = (host, port, keepalive)
        if self.on_connect is not None:
            self.on_connect(
                self, None, None, types.SimpleNamespace(is_failure=False, value=0), None
            )

    def disconnect(self) -> None:
        if not self.connected:
            return
        self.connected = False
        self.disconnect_calls += 1
        if self.on_disconnect is not None:
            self.on_disconnect(
                self,
                None,
                types.SimpleNamespace(is_disconnect_packet_from_server=False),
                types.SimpleNamespace(is_failure=False, value=0),
                None,
            )

    def loop_start(self) -> None:
        self.loop_running = True

    def loop_stop(self) -> None:
        self.loop_running = False

    def publish(
        self, topic: str, payload: Any = None, qos: int = 0, retain: bool = False
    ) -> FakePublishResult:
        self.publish_mid += 1
        message = PublishedMessage(topic=topic, payload=payload, qos=qos, retain=retain)
        self.published_messages.append(message)
        return FakePublishResult(mid=self.publish_mid)

    def payloads_for(self, topic: str) -> list[Any]:
        return [message.payload for message in self.published_messages if message.topic == topic]


class FakeVerifier:
    """Protocol verifier that accepts a fixed set of addresses."""

    def __init__(self, verified: Iterable[str] = (), *, error: Exception | None = None) -> None:
        self.verified = set(verified)
        self.error = error
        self.calls: list[Tuple[str, int, int]] = []

    async def verify(self, ip: str, port: int, retries: int) -> Optional[Dict[str, Any]]:
        self.calls.append((ip, port, retries))
        if self.error is not None:
            raise self.error
        if ip in self.verified:
            return {"ip": ip, "port": port, "series": "0i-F"}
        return None


class FakeProbe:
    """Stands in for ``CncProbe`` without touching the network.

    Tracks how many probes run at once so tests can check the full-scan bound.
    """

    def __init__(
        self,
        verified: Iterable[str] = (),
        *,
        failing: Iterable[str] = (),
        delay: float = 0.0,
    ) -> None:
        self.verified = set(verified)
        self.failing = set(failing)
        self.delay = delay
        self.calls: list[Tuple[str, Optional[DiscoveryTier]]] = []
        self.active = 0
        self.max_active = 0

    async def identify(self, ip: str, tier: Optional[DiscoveryTier] = None) -> Optional[DiscoveryResult]:
        self.calls.append((ip, tier))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            else:
                await asyncio.sleep(0)
            if ip in self.failing:
                raise OSError(f"probe exploded for {ip}")
            if ip in self.verified:
                return DiscoveryResult(ip=ip, verified=True, identity={"ip": ip}, tier=tier)
            return None
        finally:
            self.active -= 1

    async def probe(self, ip: str) -> bool:
        return await self.identify(ip) is not None

    def tiers_probed(self) -> list[DiscoveryTier]:
        seen: list[DiscoveryTier] = []
        for _, tier in self.calls:
            if tier is not None and tier not in seen:
                seen.append(tier)
        return seen


class CountingGenerator(CandidateGenerator):
    def __init__(self) -> None:
        self.calls: list[Tuple[DiscoveryTier, Optional[str]]] = []

    def generate(self, tier: DiscoveryTier, subnet: Optional[str] = None) -> list[DiscoveryCandidate]:
        self.calls.append((tier, subnet))
        return super().generate(tier, subnet)

    @property
    def tiers(self) -> list[DiscoveryTier]:
        return [tier for tier, _ in self.calls]


def _build_base_config() -> Dict[str, Any]:
    return {
        "machine": {
            "id": "CNC001",
            "enabled": True,
            "type": {
                "sweep_ms": 1000,
                "net": {"ip": "auto-discover", "port": 8193, "timeout_s": 3},
            },
            "transport": "mqtt",
        },
        "mqtt": {
            "net": {"ip": "10.0.0.2", "port": 1883},
            "anonymous": True,
            "tls_enabled": False,
        },
        "discovery": {"enabled": True, "timeout_ms": 500},
    }


def _apply_dotted_overrides(config: Dict[str, Any], overrides: Dict[str, Any]) -> None:
    for path, value in overrides.items():
        segments = path.split(".")
        current: Any = config
        for segment in segments[:-1]:
            current = current.setdefault(segment, {})
        if value is None:
            current.pop(segments[-1], None)
        else:
            current[segments[-1]] = value


@pytest.fixture
def base_config_factory() -> Callable[..., Dict[str, Any]]:
    """Nested base configuration; dotted overrides set keys, ``None`` removes them."""

    def factory(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        config = copy.deepcopy(_build_base_config())
        if overrides:
            _apply_dotted_overrides(config, overrides)
        return config

    return factory


@pytest.fixture
def fake_mqtt_client() -> FakeMQTTClient:
    return FakeMQTTClient()


@pytest.fixture
def config_env(monkeypatch: pytest.MonkeyPatch) -> Callable[..., None]:
    # setenv before delenv so monkeypatch also removes values that
    # load_dotenv writes into os.environ during the test
    for name in GATEWAY_ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)

    def apply(**env: Any) -> None:
        for key, value in env.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return apply


@pytest.fixture
def reset_structlog() -> Iterable[None]:
    import structlog

    root_logger = logging.getLogger()
    handlers = root_logger.handlers[:]
    level = root_logger.level

    structlog.reset_defaults()
    yield
    structlog.reset_defaults()

    for handler in root_logger.handlers[:]:
        if handler not in handlers:
            root_logger.removeHandler(handler)
    for handler in handlers:
        if handler not in root_logger.handlers:
            root_logger.addHandler(handler)
    root_logger.setLevel(level)
