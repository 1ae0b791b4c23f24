from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, MutableMapping

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

AUTO_DISCOVER = "auto-discover"

DEFAULT_FOCAS_PORT = 8193
DEFAULT_DISCOVERY_TIMEOUT_MS = 10000
DEFAULT_MAX_CONCURRENCY = 10
DEFAULT_REVALIDATE_INTERVAL_S = 300


class ConfigError(Exception):
    """Raised when configuration parsing or validation fails."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


@dataclass
class NetConfig:
    ip: str | None = None
    port: int | None = None
    timeout_s: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], namespace: str) -> "NetConfig":
        known = {"ip", "port", "timeout_s"}
        return cls(
            ip=_optional_string(data.get("ip"), f"{namespace}.ip"),
            port=_optional_int(data.get("port"), f"{namespace}.port", min_value=1, max_value=65535),
            timeout_s=_optional_int(data.get("timeout_s"), f"{namespace}.timeout_s", min_value=1),
            extra={k: v for k, v in data.items() if k not in known},
        )

    def to_dict(self) -> dict[str, Any]:
        return _compact({"ip": self.ip, "port": self.port, "timeout_s": self.timeout_s}, self.extra)


@dataclass
class MachineTypeConfig:
    sweep_ms: int | None = None
    net: NetConfig | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MachineTypeConfig":
        net_section = _get_section(data, "net", "machine.type")
        return cls(
            sweep_ms=_optional_int(data.get("sweep_ms"), "machine.type.sweep_ms", min_value=1),
            net=NetConfig.from_dict(net_section, "machine.type.net") if net_section is not None else None,
            extra={k: v for k, v in data.items() if k not in {"sweep_ms", "net"}},
        )

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {"sweep_ms": self.sweep_ms, "net": self.net.to_dict() if self.net is not None else None},
            self.extra,
        )


@dataclass
class MachineConfig:
    id: str | None = None
    enabled: bool | None = None
    type: MachineTypeConfig | None = None
    transport: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MachineConfig":
        type_section = _get_section(data, "type", "machine")
        return cls(
            id=_optional_string(data.get("id"), "machine.id"),
            enabled=_optional_bool(data.get("enabled"), "machine.enabled"),
            type=MachineTypeConfig.from_dict(type_section) if type_section is not None else None,
            transport=_optional_string(data.get("transport"), "machine.transport"),
            extra={k: v for k, v in data.items() if k not in {"id", "enabled", "type", "transport"}},
        )

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "id": self.id,
                "enabled": self.enabled,
                "type": self.type.to_dict() if self.type is not None else None,
                "transport": self.transport,
            },
            self.extra,
        )


@dataclass
class TransportConfig:
    name: str
    net: NetConfig | None = None
    anonymous: bool | None = None
    user: str | None = None
    password: str | None = None
    tls_enabled: bool | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_mqtt(self) -> bool:
        return is_mqtt_transport(self.name)

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> "TransportConfig":
        net_section = _get_section(data, "net", name)
        known = {"net", "anonymous", "user", "password", "tls_enabled"}
        return cls(
            name=name,
            net=NetConfig.from_dict(net_section, f"{name}.net") if net_section is not None else None,
            anonymous=_optional_bool(data.get("anonymous"), f"{name}.anonymous"),
            user=_optional_string(data.get("user"), f"{name}.user"),
            password=_optional_string(data.get("password"), f"{name}.password"),
            tls_enabled=_optional_bool(data.get("tls_enabled"), f"{name}.tls_enabled"),
            extra={k: v for k, v in data.items() if k not in known},
        )

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "net": self.net.to_dict() if self.net is not None else None,
                "anonymous": self.anonymous,
                "user": self.user,
                "password": self.password,
                "tls_enabled": self.tls_enabled,
            },
            self.extra,
        )


@dataclass
class DiscoverySettings:
    enabled: bool | None = None
    timeout_ms: int | None = None
    max_concurrency: int | None = None
    revalidate_interval_s: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DiscoverySettings":
        known = {"enabled", "timeout_ms", "max_concurrency", "revalidate_interval_s"}
        return cls(
            enabled=_optional_bool(data.get("enabled"), "discovery.enabled"),
            timeout_ms=_optional_int(data.get("timeout_ms"), "discovery.timeout_ms", min_value=1),
            max_concurrency=_optional_int(data.get("max_concurrency"), "discovery.max_concurrency", min_value=1),
            revalidate_interval_s=_optional_int(
                data.get("revalidate_interval_s"), "discovery.revalidate_interval_s", min_value=0
            ),
            extra={k: v for k, v in data.items() if k not in known},
        )

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "enabled": self.enabled,
                "timeout_ms": self.timeout_ms,
                "max_concurrency": self.max_concurrency,
                "revalidate_interval_s": self.revalidate_interval_s,
            },
            self.extra,
        )


@dataclass
class RuntimeConfiguration:
    """Gateway configuration tree.

    ``transport`` holds the top-level section whose key matches
    ``machine.transport``; every other unknown top-level key is kept in
    ``extra`` so ``to_dict`` reproduces the original layout.
    """

    machine: MachineConfig | None = None
    transport: TransportConfig | None = None
    discovery: DiscoverySettings | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RuntimeConfiguration":
        if not isinstance(data, Mapping):
            raise ConfigError("Configuration root must be a mapping")

        machine_section = _get_section(data, "machine", None)
        machine = MachineConfig.from_dict(machine_section) if machine_section is not None else None

        transport = None
        transport_name = machine.transport if machine is not None else None
        if transport_name:
            transport_section = _get_section(data, transport_name, None)
            if transport_section is not None:
                transport = TransportConfig.from_dict(transport_name, transport_section)

        discovery_section = _get_section(data, "discovery", None)
        discovery = DiscoverySettings.from_dict(discovery_section) if discovery_section is not None else None

        skip = {"machine", "discovery"}
        if transport is not None:
            skip.add(transport.name)
        return cls(
            machine=machine,
            transport=transport,
            discovery=discovery,
            extra={k: v for k, v in data.items() if k not in skip},
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(self.extra)
        if self.machine is not None:
            data["machine"] = self.machine.to_dict()
        if self.transport is not None:
            data[self.transport.name] = self.transport.to_dict()
        if self.discovery is not None:
            data["discovery"] = self.discovery.to_dict()
        return data

    # ------------------------------------------------------------------
    # Accessors used by the gateway
    # ------------------------------------------------------------------
    @property
    def cnc_net(self) -> NetConfig | None:
        if self.machine is None or self.machine.type is None:
            return None
        return self.machine.type.net

    @property
    def cnc_ip(self) -> str | None:
        net = self.cnc_net
        return net.ip if net is not None else None

    def set_cnc_ip(self, ip: str) -> bool:
        net = self.cnc_net
        if net is None:
            return False
        net.ip = ip
        return True

    @property
    def discovery_enabled(self) -> bool:
        if self.discovery is None or self.discovery.enabled is None:
            return True
        return self.discovery.enabled

    def validate(self) -> None:
        _validate_machine(self)
        _validate_transport(self)
        _validate_discovery(self)


# ----------------------------------------------------------------------
# Environment overrides
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class EnvOverride:
    variable: str
    path: str
    group: str
    coerce: Callable[[str], Any]
    apply: Callable[[RuntimeConfiguration, Any], bool]
    secret: bool = False


def is_mqtt_transport(name: str | None) -> bool:
    return bool(name) and "mqtt" in name.lower()


def _machine_type(config: RuntimeConfiguration) -> MachineTypeConfig | None:
    if config.machine is None:
        return None
    return config.machine.type


def _machine_net(config: RuntimeConfiguration) -> NetConfig | None:
    machine_type = _machine_type(config)
    if machine_type is None:
        return None
    if machine_type.net is None:
        machine_type.net = NetConfig()
    return machine_type.net


def _mqtt_transport(config: RuntimeConfiguration) -> TransportConfig | None:
    if config.machine is None or not is_mqtt_transport(config.machine.transport):
        return None
    if config.transport is None or config.transport.name != config.machine.transport:
        return None
    return config.transport


def _mqtt_net(config: RuntimeConfiguration) -> NetConfig | None:
    transport = _mqtt_transport(config)
    if transport is None:
        return None
    if transport.net is None:
        transport.net = NetConfig()
    return transport.net


def _setter(resolve: Callable[[RuntimeConfiguration], Any], attribute: str) -> Callable[[RuntimeConfiguration, Any], bool]:
    def apply(config: RuntimeConfiguration, value: Any) -> bool:
        target = resolve(config)
        if target is None:
            return False
        setattr(target, attribute, value)
        return True

    return apply


def _set_credential(attribute: str) -> Callable[[RuntimeConfiguration, Any], bool]:
    def apply(config: RuntimeConfiguration, value: Any) -> bool:
        transport = _mqtt_transport(config)
        if transport is None:
            return False
        setattr(transport, attribute, value)
        transport.anonymous = False
        return True

    return apply


def _env_str(raw: str) -> str | None:
    value = raw.strip()
    return value or None


def _env_int(raw: str) -> int | None:
    try:
        return int(raw.strip())
    except ValueError:
        return None


def _env_bool(raw: str) -> bool | None:
    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return None


ENV_OVERRIDES: tuple[EnvOverride, ...] = (
    # machine
    EnvOverride("MACHINE_ID", "machine.id", "machine", _env_str, _setter(lambda c: c.machine, "id")),
    EnvOverride("SWEEP_MS", "machine.type.sweep_ms", "machine", _env_int, _setter(_machine_type, "sweep_ms")),
    # network
    EnvOverride("CNC_IP", "machine.type.net.ip", "network", _env_str, _setter(_machine_net, "ip")),
    EnvOverride("CNC_PORT", "machine.type.net.port", "network", _env_int, _setter(_machine_net, "port")),
    EnvOverride("CNC_TIMEOUT", "machine.type.net.timeout_s", "network", _env_int, _setter(_machine_net, "timeout_s")),
    # transport (MQTT only)
    EnvOverride("BROKER_IP", "<transport>.net.ip", "transport", _env_str, _setter(_mqtt_net, "ip")),
    EnvOverride("BROKER_PORT", "<transport>.net.port", "transport", _env_int, _setter(_mqtt_net, "port")),
    EnvOverride("BROKER_USER", "<transport>.user", "transport", _env_str, _set_credential("user")),
    EnvOverride("BROKER_PASSWORD", "<transport>.password", "transport", _env_str, _set_credential("password"), secret=True),
    EnvOverride("BROKER_TLS", "<transport>.tls_enabled", "transport", _env_bool, _setter(_mqtt_transport, "tls_enabled")),
    # discovery
    EnvOverride("DISCOVERY_TIMEOUT_MS", "discovery.timeout_ms", "discovery", _env_int, _setter(lambda c: c.discovery, "timeout_ms")),
    EnvOverride("ENABLE_DISCOVERY", "discovery.enabled", "discovery", _env_bool, _setter(lambda c: c.discovery, "enabled")),
)


def apply_env_overrides(config: RuntimeConfiguration, env: Mapping[str, str]) -> list[str]:
    """Apply ``ENV_OVERRIDES`` in declaration order and return the variables used."""

    applied: list[str] = []
    for rule in ENV_OVERRIDES:
        raw = env.get(rule.variable)
        if raw is None or not raw.strip():
            continue
        value = rule.coerce(raw)
        if value is None:
            logger.warning(f"Ignoring unparsable {rule.variable}={raw!r}")
            continue
        if not rule.apply(config, value):
            logger.debug(f"Skipping {rule.variable}: {rule.path} section not configured")
            continue
        path = rule.path
        if rule.group == "transport" and config.transport is not None:
            path = path.replace("<transport>", config.transport.name)
        shown = "***" if rule.secret else value
        logger.info(f"{path} overridden from environment {rule.variable}: {shown}")
        applied.append(rule.variable)
    return applied


# ----------------------------------------------------------------------
# Build / load
# ----------------------------------------------------------------------
def clone_configuration(base: Mapping[str, Any] | RuntimeConfiguration) -> Any:
    try:
        return copy.deepcopy(base)
    except Exception as exc:
        logger.warning(f"Could not clone configuration, using original: {exc}")
        return base


def build_configuration(
    base: Mapping[str, Any] | RuntimeConfiguration,
    env: Mapping[str, str] | None = None,
) -> RuntimeConfiguration:
    """Clone ``base``, apply environment overrides and validate the result."""

    logger.info("Building configuration with environment variable overrides")
    cloned = clone_configuration(base)
    config = cloned if isinstance(cloned, RuntimeConfiguration) else RuntimeConfiguration.from_dict(cloned)

    apply_env_overrides(config, os.environ if env is None else env)

    logger.info("Validating configuration")
    config.validate()
    logger.info("Configuration built successfully")
    return config


def load_base_config(path: Path | str) -> dict[str, Any]:
    config_path = Path(path)
    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse configuration file: {exc}") from exc

    if not isinstance(raw, MutableMapping):
        raise ConfigError("Configuration root must be a mapping")
    return dict(raw)


def resolve_config_path(path: Path | str | None, env: Mapping[str, str] | None = None) -> Path:
    env = os.environ if env is None else env
    if path is not None:
        candidate = Path(path)
    else:
        env_path = env.get("CNC_GATEWAY_CONFIG") or env.get("CONFIG_FILE")
        candidate = Path(env_path) if env_path else Path("config") / "gateway.yaml"

    if not candidate.exists():
        raise FileNotFoundError(candidate)
    if not candidate.is_file():
        raise ConfigError(f"Configuration path {candidate} is not a file")
    return candidate


def load_config(path: Path | str | None = None, env: Mapping[str, str] | None = None) -> RuntimeConfiguration:
    """Load the YAML base configuration and build the runtime configuration."""

    config_path = resolve_config_path(path, env)
    # .env next to the config file carries broker credentials
    load_dotenv(dotenv_path=str(config_path.parent / ".env"))
    base = load_base_config(config_path)
    logger.info(f"Base configuration loaded from {config_path}")
    return build_configuration(base, env)


def get_configuration_summary(config: RuntimeConfiguration) -> str:
    try:
        data = config.to_dict()
        if config.transport is not None and config.transport.password:
            data[config.transport.name]["password"] = "***"
        return json.dumps(data, indent=2, sort_keys=True)
    except Exception as exc:
        return f"Configuration summary unavailable: {exc}"


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------
def _missing(message: str, field_name: str) -> ConfigError:
    return ConfigError(f"{message} ({field_name})", field=field_name)


def _validate_machine(config: RuntimeConfiguration) -> None:
    machine = config.machine
    if machine is None:
        raise _missing("Machine configuration is missing", "machine")
    if not machine.id:
        raise _missing("Machine ID is required", "machine.id")
    if machine.type is None:
        raise _missing("Machine type configuration is missing", "machine.type")
    net = machine.type.net
    if net is None:
        raise _missing("Machine network configuration is missing", "machine.type.net")
    if not net.ip:
        raise _missing("CNC IP address is required", "machine.type.net.ip")
    if net.port is None:
        raise _missing("CNC port is required", "machine.type.net.port")
    _check_range(net.port, "machine.type.net.port", 1, 65535)
    if net.timeout_s is None:
        raise _missing("CNC timeout is required", "machine.type.net.timeout_s")
    _check_range(net.timeout_s, "machine.type.net.timeout_s", 1, None)
    _check_range(machine.type.sweep_ms, "machine.type.sweep_ms", 1, None)


def _validate_transport(config: RuntimeConfiguration) -> None:
    machine = config.machine
    if not machine.transport:
        raise _missing("Transport configuration is missing", "machine.transport")
    if not is_mqtt_transport(machine.transport):
        return

    name = machine.transport
    transport = config.transport
    if transport is None or transport.name != name:
        raise _missing("MQTT transport configuration is missing", name)
    if transport.net is None:
        raise _missing("MQTT network configuration is missing", f"{name}.net")
    if not transport.net.ip:
        raise _missing("MQTT broker IP is required", f"{name}.net.ip")
    if transport.net.port is None:
        raise _missing("MQTT broker port is required", f"{name}.net.port")
    _check_range(transport.net.port, f"{name}.net.port", 1, 65535)


def _validate_discovery(config: RuntimeConfiguration) -> None:
    discovery = config.discovery
    if discovery is None:
        return
    if discovery.enabled is True and discovery.timeout_ms is None:
        raise _missing("Discovery timeout is required when discovery is enabled", "discovery.timeout_ms")
    # environment overrides are not range-checked when applied
    _check_range(discovery.timeout_ms, "discovery.timeout_ms", 1, None)
    _check_range(discovery.max_concurrency, "discovery.max_concurrency", 1, None)
    _check_range(discovery.revalidate_interval_s, "discovery.revalidate_interval_s", 0, None)


# ----------------------------------------------------------------------
# Coercion helpers
# ----------------------------------------------------------------------
def _compact(values: Mapping[str, Any], extra: Mapping[str, Any]) -> dict[str, Any]:
    data = dict(extra)
    data.update({k: v for k, v in values.items() if v is not None})
    return data


def _get_section(data: Mapping[str, Any], key: str, namespace: str | None) -> Mapping[str, Any] | None:
    section = data.get(key)
    if section is None:
        return None
    if not isinstance(section, Mapping):
        name = f"{namespace}.{key}" if namespace else key
        raise ConfigError(f"{name} section must be a mapping", field=name)
    return section


def _optional_string(value: Any, field_name: str) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"{field_name} must be a string", field=field_name)
    if isinstance(value, (str, int, float)):
        trimmed = str(value).strip()
        return trimmed or None
    raise ConfigError(f"{field_name} must be a string", field=field_name)


def _optional_int(
    value: Any,
    field_name: str,
    *,
    min_value: int | None = None,
    max_value: int | None = None,
) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ConfigError(f"{field_name} must be an integer", field=field_name)
    if isinstance(value, int):
        number = value
    elif isinstance(value, str):
        try:
            number = int(value.strip())
        except ValueError as exc:
            raise ConfigError(f"{field_name} must be an integer", field=field_name) from exc
    else:
        raise ConfigError(f"{field_name} must be an integer", field=field_name)
    _check_range(number, field_name, min_value, max_value)
    return number


def _check_range(value: int | None, field_name: str, min_value: int | None, max_value: int | None) -> None:
    if value is None:
        return
    if min_value is not None and value < min_value:
        raise ConfigError(f"{field_name} must be >= {min_value}", field=field_name)
    if max_value is not None and value > max_value:
        raise ConfigError(f"{field_name} must be <= {max_value}", field=field_name)


def _optional_bool(value: Any, field_name: str) -> bool | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        parsed = _env_bool(value)
        if parsed is not None:
            return parsed
    raise ConfigError(f"{field_name} must be a boolean", field=field_name)
