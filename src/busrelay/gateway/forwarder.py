"""Forwarding engine: relays method calls, property access and signals between the two buses."""

from __future__ import annotations

import asyncio
import functools
from typing import TYPE_CHECKING

from dbus_fast import Variant
from loguru import logger

from busrelay.adapters.invocation import InvocationResolvedError
from busrelay.core.constants import ERROR_FAILED, PROPERTIES_INTERFACE
from busrelay.core.errors import BusCallError, ForwardCallError, PropertyError, SignalEmitError
from busrelay.events import Payload, SignalIn

if TYPE_CHECKING:
    from busrelay.adapters.base import ConnectionBase
    from busrelay.adapters.invocation import MethodInvocation
    from busrelay.config import ProxyConfig


class ForwardingEngine:
    """Dispatch table for every registered interface, and the source-side signal sink.

    Method calls are forwarded asynchronously: the invocation is owned by the completion
    callback of the outbound call and nothing else. Property access awaits the source's
    reply before answering. Signals are re-emitted as broadcasts in arrival order.
    """

    def __init__(self, source: ConnectionBase, target: ConnectionBase, config: ProxyConfig) -> None:
        self._source = source
        self._target = target
        self._config = config

    # -- method calls ------------------------------------------------------

    def method_call(
        self,
        interface: str,
        method: str,
        sender: str | None,
        parameters: Payload,
        invocation: MethodInvocation,
    ) -> None:
        logger.debug(
            "Forwarding method call: {}.{} from {} ({} -> {})",
            interface,
            method,
            sender,
            self._target.unique_name,
            self._source.unique_name,
        )
        future = self._source.call_async(
            self._config.source_service,
            self._config.source_object_path,
            interface,
            method,
            parameters,
            timeout=self._config.call_timeout,
        )
        future.add_done_callback(functools.partial(self._complete_call, invocation, f"{interface}.{method}"))

    def _complete_call(self, invocation: MethodInvocation, label: str, future: asyncio.Future[Payload]) -> None:
        """Resolve the original invocation with the outbound call's outcome."""
        error: ForwardCallError | None = None
        if future.cancelled():
            error = ForwardCallError(f"{label} was cancelled", error_name=ERROR_FAILED)
        elif future.exception() is not None:
            error = self._forward_error(label, future.exception())

        try:
            if error is None:
                logger.debug("Method call {} succeeded, returning result", label)
                invocation.return_value(future.result())
            else:
                logger.warning("Method call {} failed: {}", label, error)
                name = error.error_name if self._config.preserve_error_names else ERROR_FAILED
                invocation.return_error(name, str(error))
        except InvocationResolvedError:
            raise
        except Exception as exc:
            # Caller or target bus went away; the result is discarded
            logger.warning("Could not deliver reply for {} to {}: {}", label, invocation.sender, exc)

    @staticmethod
    def _forward_error(label: str, exc: BaseException) -> ForwardCallError:
        if isinstance(exc, BusCallError):
            return ForwardCallError(str(exc), error_name=exc.error_name, original_error=exc)
        return ForwardCallError(
            str(exc) or f"{label} failed",
            error_name=ERROR_FAILED,
            original_error=exc,
        )

    # -- properties --------------------------------------------------------

    async def get_property(self, interface: str, prop: str, sender: str | None) -> Variant:
        logger.debug("Forwarding property get: {}.{} from {}", interface, prop, sender)
        try:
            reply = await self._source.call(
                self._config.source_service,
                self._config.source_object_path,
                PROPERTIES_INTERFACE,
                "Get",
                Payload("ss", [interface, prop]),
                timeout=self._config.call_timeout,
            )
        except BusCallError as exc:
            logger.warning("Property get {}.{} failed: {}", interface, prop, exc)
            raise PropertyError(str(exc), error_name=exc.error_name, original_error=exc) from exc

        if reply.signature != "v" or not reply.body:
            raise PropertyError(
                f"Unexpected reply type '({reply.signature})' reading {interface}.{prop}",
                error_name=ERROR_FAILED,
            )
        logger.debug("Property get {}.{} successful", interface, prop)
        return reply.body[0]

    async def set_property(self, interface: str, prop: str, value: Variant, sender: str | None) -> None:
        logger.debug("Forwarding property set: {}.{} from {}", interface, prop, sender)
        try:
            await self._source.call(
                self._config.source_service,
                self._config.source_object_path,
                PROPERTIES_INTERFACE,
                "Set",
                Payload("ssv", [interface, prop, value]),
                timeout=self._config.call_timeout,
            )
        except BusCallError as exc:
            logger.warning("Property set {}.{} failed: {}", interface, prop, exc)
            raise PropertyError(str(exc), error_name=exc.error_name, original_error=exc) from exc
        logger.debug("Property set {}.{} successful", interface, prop)

    # -- signals -----------------------------------------------------------

    def on_signal(self, evt: SignalIn) -> None:
        """Re-emit a source signal on the target, unaddressed. Dropped on failure."""
        logger.debug("Forwarding signal: {} from {}", evt.label, evt.sender)
        try:
            self._target.emit_signal(
                self._config.source_object_path,
                evt.interface,
                evt.member,
                evt.payload,
            )
        except SignalEmitError as exc:
            logger.warning("Failed to forward signal {}: {}", evt.label, exc)

    def on_properties_changed(self, evt: SignalIn) -> None:
        if evt.payload.body:
            logger.debug("Properties changed signal for interface: {}", evt.payload.body[0])
        self.on_signal(evt)
