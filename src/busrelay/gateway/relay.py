"""Relay: lifecycle controller owning both connections and every manager."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING

from loguru import logger

from busrelay.adapters.dbus import DBusConnection
from busrelay.core.errors import BusConnectionError, RegistrationError, RelayError
from busrelay.gateway.catalog import InterfaceCatalog, introspect
from busrelay.gateway.forwarder import ForwardingEngine
from busrelay.gateway.names import NameOwner
from busrelay.gateway.registrations import RegistrationManager
from busrelay.gateway.subscriptions import SubscriptionManager

if TYPE_CHECKING:
    from busrelay.adapters.base import ConnectionBase
    from busrelay.config import ProxyConfig

ConnectionFactory = Callable[..., "ConnectionBase"]


class RelayState(Enum):
    CREATED = "created"
    CONNECTED = "connected"
    INTROSPECTED = "introspected"
    REGISTERED = "registered"
    SUBSCRIBED = "subscribed"
    NAME_REQUESTED = "name_requested"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class Relay:
    """Sequences startup and shutdown of one source->target relay.

    Startup: connect -> introspect -> register -> subscribe -> request name.
    Each acquired resource pushes its cleanup onto an exit stack, so shutdown
    unwinds exactly what was acquired: unsubscribe -> unregister -> release name
    -> disconnect. Every unwind step is best-effort.
    """

    def __init__(self, config: ProxyConfig, *, connection_factory: ConnectionFactory = DBusConnection) -> None:
        self._config = config
        self.source: ConnectionBase = connection_factory(config.source_bus, label="source")
        self.target: ConnectionBase = connection_factory(config.target_bus, label="target")
        self.engine = ForwardingEngine(self.source, self.target, config)
        self.registrations = RegistrationManager(self.target, config.source_object_path, self.engine)
        self.subscriptions = SubscriptionManager(self.source, config.source_service, config.source_object_path)
        self.names = NameOwner(self.target, config.proxy_name)
        self.catalog: InterfaceCatalog | None = None
        self._state = RelayState.CREATED
        self._stack = contextlib.AsyncExitStack()
        self._stop_requested = asyncio.Event()

    @property
    def state(self) -> RelayState:
        return self._state

    @property
    def config(self) -> ProxyConfig:
        return self._config

    async def start(self) -> None:
        """Bring the relay up to RUNNING. On a fatal error, unwind and re-raise."""
        if self._state is not RelayState.CREATED:
            raise RuntimeError(f"Relay cannot start from state {self._state.value}")
        try:
            await self._start()
        except RelayError as exc:
            logger.error("Startup failed ({}): {}", self._state.value, exc)
            await self.stop()
            raise
        except BaseException:
            await self.stop()
            raise
        self._state = RelayState.RUNNING
        logger.info(
            "Relay running: {}{} ({} bus) -> {} ({} bus, {})",
            self._config.source_service,
            self._config.source_object_path,
            self._config.source_bus,
            self._config.proxy_name,
            self._config.target_bus,
            "degraded" if self.names.degraded else "named",
        )

    async def _start(self) -> None:
        cfg = self._config
        for conn in (self.source, self.target):
            await conn.connect()
            self._stack.callback(self._disconnect, conn)
        logger.info(
            "Connected: source={} ({}), target={} ({})",
            self.source.unique_name,
            cfg.source_bus,
            self.target.unique_name,
            cfg.target_bus,
        )
        self._state = RelayState.CONNECTED

        self.catalog = await introspect(
            self.source,
            cfg.source_service,
            cfg.source_object_path,
            timeout=cfg.call_timeout,
        )
        self._state = RelayState.INTROSPECTED

        self._stack.push_async_callback(self.names.release)
        self._stack.callback(self.registrations.unregister_all)
        skipped = self.registrations.register_all(self.catalog)
        if len(self.registrations) == 0:
            raise RegistrationError(
                f"No interface could be registered at {cfg.source_object_path}",
                code="none_registered",
                details={"skipped": skipped},
            )
        if skipped:
            logger.warning("Skipped interfaces: {}", ", ".join(skipped))
        self._state = RelayState.REGISTERED

        self._stack.push_async_callback(self.subscriptions.unsubscribe_all)
        await self.subscriptions.subscribe_all(
            self.catalog,
            self.engine.on_signal,
            self.engine.on_properties_changed,
        )
        self._state = RelayState.SUBSCRIBED

        await self.names.request()
        self._state = RelayState.NAME_REQUESTED

    async def run(self) -> None:
        """Start if needed, then serve until a stop is requested or a connection drops.

        Raises BusConnectionError after shutting down when a connection is lost.
        """
        if self._state is RelayState.CREATED:
            await self._start_or_stop()
        if self._state is not RelayState.RUNNING:
            return

        stop_wait = asyncio.ensure_future(self._stop_requested.wait())
        watchers = {asyncio.ensure_future(conn.wait_closed()): conn for conn in (self.source, self.target)}
        try:
            done, _ = await asyncio.wait({stop_wait, *watchers}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (stop_wait, *watchers):
                task.cancel()

        lost = self._connection_lost(done, watchers)
        await self.stop()
        if lost is not None:
            raise lost

    async def _start_or_stop(self) -> None:
        """Run start() unless a stop request arrives first; then cancel it and let it unwind."""
        startup = asyncio.ensure_future(self.start())
        stop_wait = asyncio.ensure_future(self._stop_requested.wait())
        try:
            await asyncio.wait({startup, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_wait.cancel()
            if not startup.done():
                logger.info("Stop requested during startup ({})", self._state.value)
                startup.cancel()
        try:
            await startup
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if not startup.cancelled() or (current is not None and current.cancelling()):
                raise

    def _connection_lost(
        self,
        done: set[asyncio.Future],
        watchers: dict[asyncio.Future, ConnectionBase],
    ) -> BusConnectionError | None:
        if self._stop_requested.is_set() or self._state is not RelayState.RUNNING:
            for task in done:
                if task in watchers and not task.cancelled():
                    task.exception()
            return None
        for task in done:
            conn = watchers.get(task)
            if conn is None or task.cancelled():
                continue
            exc = task.exception()
            error = (
                exc
                if isinstance(exc, BusConnectionError)
                else BusConnectionError(
                    f"{conn.name} bus connection closed",
                    code="connection_lost",
                    original_error=exc,
                )
            )
            logger.error("Connection lost: {}", error)
            return error
        return None

    def request_stop(self) -> None:
        """Ask run() to shut down. Safe from a signal handler on the loop."""
        if not self._stop_requested.is_set():
            logger.info("Stop requested")
            self._stop_requested.set()

    async def stop(self) -> None:
        """Unwind whatever was acquired. Idempotent: a second call does nothing."""
        if self._state in (RelayState.SHUTTING_DOWN, RelayState.STOPPED):
            return
        self._state = RelayState.SHUTTING_DOWN
        logger.info("Relay shutting down")
        try:
            await self._stack.aclose()
        finally:
            self._state = RelayState.STOPPED
            self._stop_requested.set()
        logger.info("Relay stopped")

    @staticmethod
    def _disconnect(conn: ConnectionBase) -> None:
        try:
            conn.disconnect()
        except Exception as exc:
            logger.warning("Failed to disconnect {} bus: {}", conn.name, exc)

