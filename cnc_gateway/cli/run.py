from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import signal
import sys
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Iterator, Mapping, Optional, Sequence

import structlog

from cnc_gateway.core import config_loader
from cnc_gateway.core.config_loader import RuntimeConfiguration, is_mqtt_transport
from cnc_gateway.discovery.verifier import PortOnlyVerifier, ProtocolVerifier
from cnc_gateway.mqtt.broker_client import MQTTBrokerClient
from cnc_gateway.mqtt.log_bridge import configure_log_bridge
from cnc_gateway.services.gateway_discovery import (
    CncNotFoundError,
    GatewayDiscoveryService,
    ensure_cnc_address_resolved,
)


logger = structlog.get_logger("cnc_gateway.core")

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_UNEXPECTED = 2
EXIT_CNC_NOT_FOUND = 3

MachineRunner = Callable[[RuntimeConfiguration, asyncio.Event], Awaitable[None]]

_DEFAULT_SIGNALS: tuple[signal.Signals, ...] = tuple(
    getattr(signal, name)
    for name in ("SIGINT", "SIGTERM")
    if hasattr(signal, name)
)


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="cnc-gateway",
        description="Discover a CNC controller and prepare the gateway configuration.",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        help="Path to the base configuration file (defaults to CNC_GATEWAY_CONFIG or ./config/gateway.yaml).",
    )
    parser.add_argument(
        "--discover",
        action="store_true",
        help="Run CNC discovery once, print the verified addresses and exit.",
    )
    parser.add_argument(
        "--show-config",
        action="store_true",
        help="Print the validated configuration (environment overrides applied) and exit.",
    )
    parser.add_argument(
        "--log-level",
        default="info",
        help="Log level (debug, info, warning, error).",
    )
    parser.add_argument(
        "--forward-logs",
        action="store_true",
        help="Also publish log events to <base topic>/meta/logs on the MQTT broker.",
    )
    return parser.parse_args(argv)


@contextlib.contextmanager
def _signal_handler_context(
    loop: asyncio.AbstractEventLoop,
    shutdown_event: asyncio.Event,
    signals_to_handle: Iterable[signal.Signals],
) -> Iterator[None]:
    installed: list[signal.Signals] = []

    def _make_handler(sig: signal.Signals):
        def handler() -> None:
            if not shutdown_event.is_set():
                logger.info("shutdown-signal-received", signal=sig.name)
                shutdown_event.set()

        return handler

    for sig in signals_to_handle:
        try:
            loop.add_signal_handler(sig, _make_handler(sig))
        except (NotImplementedError, RuntimeError, ValueError):
            logger.debug("signal-handler-unavailable", signal=getattr(sig, "name", str(sig)))
            continue
        installed.append(sig)

    try:
        yield
    finally:
        for sig in installed:
            with contextlib.suppress(Exception):
                loop.remove_signal_handler(sig)


async def _health_check_loop(
    service: GatewayDiscoveryService,
    cnc_ip: str,
    interval_seconds: int,
    shutdown_event: asyncio.Event,
    broker: MQTTBrokerClient | None = None,
) -> None:
    """Periodically re-run discovery to confirm the CNC is still reachable."""
    logger.info("starting-cnc-health-check", interval_seconds=interval_seconds, cnc_ip=cnc_ip)

    while not shutdown_event.is_set():
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
        else:
            break

        reachable = await service.validate_connection(cnc_ip)
        if broker is not None:
            try:
                broker.publish_health(cnc_ip, reachable)
            except Exception as e:
                logger.warning("health-publish-failed", error=str(e))

    logger.info("stopped-cnc-health-check")


def _publish_status(broker: MQTTBrokerClient | None, status: str) -> None:
    if broker is None:
        return
    try:
        broker.publish_status(status)
    except Exception as e:
        logger.warning("status-publish-failed", status=status, error=str(e))


def _connect_broker(
    config: RuntimeConfiguration,
    client_factory: Optional[Callable[..., object]],
) -> MQTTBrokerClient | None:
    if config.machine is None or not is_mqtt_transport(config.machine.transport):
        logger.info("mqtt-status-disabled", transport=config.machine.transport if config.machine else None)
        return None

    broker = MQTTBrokerClient(
        config,
        logger=structlog.get_logger("cnc_gateway.mqtt.broker"),
        client_factory=client_factory,
    )
    try:
        broker.connect()
    except Exception as e:
        # Discovery continues without status reporting
        logger.warning("mqtt-connect-failed", error=str(e))
        return None
    return broker


async def _async_main(
    config_path: Optional[Path | str] = None,
    *,
    discover: bool = False,
    show_config: bool = False,
    log_level: str = "info",
    forward_logs: bool = False,
    env: Optional[Mapping[str, str]] = None,
    verifier: Optional[ProtocolVerifier] = None,
    machine_runner: Optional[MachineRunner] = None,
    mqtt_client_factory: Optional[Callable[..., object]] = None,
    shutdown_event: Optional[asyncio.Event] = None,
    register_signal_handlers: bool = True,
) -> int:
    loop = asyncio.get_running_loop()
    cleanup_stack = contextlib.ExitStack()
    broker: MQTTBrokerClient | None = None
    health_task: asyncio.Task | None = None
    machine_task: asyncio.Task | None = None
    event = shutdown_event or asyncio.Event()

    try:
        config = config_loader.load_config(config_path, env)

        if show_config:
            print(config_loader.get_configuration_summary(config))
            return EXIT_OK

        service = GatewayDiscoveryService.from_configuration(config, verifier or PortOnlyVerifier())

        if discover:
            logger.info("running-discovery-only")
            ips = await service.discovery.discover()
            stats = await service.collect_discovery_stats()
            print(json.dumps({
                "stats": stats.to_dict(),
                "results": [result.to_dict() for result in service.discovery.last_results],
            }, indent=2))
            return EXIT_OK if ips else EXIT_CNC_NOT_FOUND

        broker = _connect_broker(config, mqtt_client_factory)
        if broker is not None:
            configure_log_bridge(log_level, broker, f"{broker.base_topic}/meta/logs", forward=forward_logs)
        _publish_status(broker, "starting")
        _publish_status(broker, "discovering")

        await service.discover_and_configure()
        try:
            cnc_ip = ensure_cnc_address_resolved(config)
        except CncNotFoundError:
            logger.error("no CNC found", configured_ip=config.cnc_ip)
            _publish_status(broker, "discovery_failed")
            return EXIT_CNC_NOT_FOUND

        if broker is not None:
            stats = await service.collect_discovery_stats()
            try:
                broker.publish_discovery(
                    cnc_ip,
                    stats.to_dict(),
                    [result.to_dict() for result in service.discovery.last_results],
                )
            except Exception as e:
                logger.warning("discovery-publish-failed", error=str(e))
        _publish_status(broker, "online")
        logger.info("gateway-initialized", machine_id=config.machine.id, cnc_ip=cnc_ip)

        if register_signal_handlers:
            cleanup_stack.enter_context(
                _signal_handler_context(loop, event, _DEFAULT_SIGNALS)
            )

        interval = config_loader.DEFAULT_REVALIDATE_INTERVAL_S
        if config.discovery is not None and config.discovery.revalidate_interval_s is not None:
            interval = config.discovery.revalidate_interval_s
        if config.discovery_enabled and interval > 0:
            health_task = loop.create_task(
                _health_check_loop(service, cnc_ip, interval, event, broker)
            )

        if machine_runner is not None:
            machine_task = loop.create_task(machine_runner(config, event))

        await event.wait()
        logger.info("shutdown-event-received")
        return EXIT_OK

    except asyncio.CancelledError:
        event.set()
        raise
    finally:
        event.set()

        for task in (health_task, machine_task):
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        with contextlib.suppress(Exception):
            cleanup_stack.close()
        if broker is not None:
            _publish_status(broker, "offline")
            with contextlib.suppress(Exception):
                broker.disconnect()


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    configure_log_bridge(args.log_level)

    try:
        return asyncio.run(_async_main(
            config_path=args.config,
            discover=args.discover,
            show_config=args.show_config,
            log_level=args.log_level,
            forward_logs=args.forward_logs,
        ))
    except config_loader.ConfigError as exc:
        print(exc, file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except FileNotFoundError as exc:
        print(f"Configuration file not found: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover
        print(f"Unexpected error: {exc}", file=sys.stderr)
        return EXIT_UNEXPECTED


__all__ = ["_async_main", "main"]


if __name__ == "__main__":
    sys.exit(main())
