"""D-Bus connection: dbus-fast MessageBus with dynamic object registration and signal subscriptions."""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from dbus_fast import BusType, Message, MessageFlag, MessageType, NameFlag, RequestNameReply, Variant
from dbus_fast import introspection as intr
from dbus_fast.aio import MessageBus
from dbus_fast.validators import is_interface_name_valid, is_object_path_valid
from loguru import logger

from busrelay.adapters.base import ConnectionBase, InterfaceDispatch, NameCallback, SignalCallback
from busrelay.adapters.invocation import MethodInvocation
from busrelay.core.constants import (
    DBUS_INTERFACE,
    DBUS_NAME,
    DBUS_PATH,
    ERROR_FAILED,
    ERROR_INVALID_ARGS,
    ERROR_NO_REPLY,
    ERROR_PROPERTY_READ_ONLY,
    ERROR_UNKNOWN_INTERFACE,
    ERROR_UNKNOWN_METHOD,
    ERROR_UNKNOWN_PROPERTY,
    INTROSPECTABLE_INTERFACE,
    PEER_INTERFACE,
    PROPERTIES_INTERFACE,
)
from busrelay.core.errors import (
    BusCallError,
    BusConnectionError,
    NameOwnershipError,
    PropertyError,
    RegistrationError,
    SignalEmitError,
    SubscriptionError,
)
from busrelay.events import Payload, SignalIn

if TYPE_CHECKING:
    from busrelay.config import BusSelector
    from busrelay.gateway.catalog import InterfaceDescriptor, PropertySignature

# Properties method -> expected argument signature
_PROPERTIES_SIGNATURES = {"Get": "ss", "Set": "ssv", "GetAll": "s"}


@dataclass(frozen=True)
class _ObjectRegistration:
    handle: int
    path: str
    descriptor: InterfaceDescriptor
    dispatch: InterfaceDispatch

    @property
    def interface(self) -> str:
        return self.descriptor.name


@dataclass(frozen=True)
class _SignalSubscription:
    handle: int
    sender: str
    interface: str
    member: str
    path: str
    rule: str
    callback: SignalCallback


def _match_rule(**fields: str) -> str:
    return ",".join(["type='signal'"] + [f"{key}='{value}'" for key, value in fields.items()])


def _error_text(reply: Message) -> str:
    if reply.signature.startswith("s") and reply.body:
        return str(reply.body[0])
    return ""


class DBusConnection(ConnectionBase):
    """dbus-fast backed connection. All callbacks run on the event loop thread."""

    def __init__(self, selector: BusSelector, *, label: str) -> None:
        super().__init__()
        self._selector = selector
        self._label = label
        self._bus: MessageBus | None = None
        self._handles = itertools.count(1)
        self._registrations: dict[int, _ObjectRegistration] = {}
        self._subscriptions: dict[int, _SignalSubscription] = {}
        # well-known sender name -> current unique owner (None while unowned)
        self._owners: dict[str, str | None] = {}
        # well-known sender name -> its NameOwnerChanged match rule
        self._owner_rules: dict[str, str] = {}
        self._name_watchers: dict[str, tuple[NameCallback, NameCallback]] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def name(self) -> str:
        return self._label

    @property
    def unique_name(self) -> str | None:
        return self._bus.unique_name if self._bus else None

    @property
    def connected(self) -> bool:
        return bool(self._bus and self._bus.connected)

    def _create_bus(self) -> MessageBus:
        if self._selector.kind == "system":
            return MessageBus(bus_type=BusType.SYSTEM)
        if self._selector.kind == "session":
            return MessageBus(bus_type=BusType.SESSION)
        return MessageBus(bus_address=self._selector.address)

    def _require_bus(self) -> MessageBus:
        if self._bus is None:
            raise BusConnectionError(f"{self._label} bus is not connected", code="not_connected")
        return self._bus

    async def connect(self) -> None:
        if self._bus is not None:
            return
        try:
            bus = self._create_bus()
            await bus.connect()
        except Exception as exc:
            raise BusConnectionError(
                f"Failed to connect to {self._label} bus ({self._selector}): {exc}",
                code="connect_failed",
                details={"bus": str(self._selector), "label": self._label},
                original_error=exc,
            ) from exc
        bus.add_message_handler(self._on_message)
        self._bus = bus
        logger.info("Connected to {} bus ({}) as {}", self._label, self._selector, bus.unique_name)

    def disconnect(self) -> None:
        if self._bus is None:
            return
        bus, self._bus = self._bus, None
        bus.remove_message_handler(self._on_message)
        for task in list(self._tasks):
            task.cancel()
        self._registrations.clear()
        self._subscriptions.clear()
        self._owners.clear()
        self._owner_rules.clear()
        self._name_watchers.clear()
        bus.disconnect()
        logger.info("Disconnected from {} bus", self._label)

    async def wait_closed(self) -> None:
        bus = self._bus
        if bus is None:
            return
        try:
            await bus.wait_for_disconnect()
        except Exception as exc:
            raise BusConnectionError(
                f"{self._label} bus connection lost: {exc}",
                code="connection_lost",
                original_error=exc,
            ) from exc

    # -- calls -------------------------------------------------------------

    async def call(
        self,
        destination: str,
        path: str,
        interface: str,
        member: str,
        payload: Payload,
        *,
        timeout: float | None = None,
    ) -> Payload:
        bus = self._require_bus()
        try:
            msg = Message(
                destination=destination,
                path=path,
                interface=interface,
                member=member,
                signature=payload.signature,
                body=payload.body,
            )
            if timeout is None:
                reply = await bus.call(msg)
            else:
                reply = await asyncio.wait_for(bus.call(msg), timeout)
        except asyncio.TimeoutError as exc:
            raise BusCallError(
                f"Timed out after {timeout:.1f}s waiting for {interface}.{member}",
                error_name=ERROR_NO_REPLY,
                details={"destination": destination, "path": path},
                original_error=exc,
            ) from exc
        except Exception as exc:
            raise BusCallError(
                f"{interface}.{member} failed: {exc}",
                error_name=ERROR_FAILED,
                details={"destination": destination, "path": path},
                original_error=exc,
            ) from exc
        if reply is None:
            return Payload()
        if reply.message_type == MessageType.ERROR:
            raise BusCallError(
                _error_text(reply) or reply.error_name or "call failed",
                error_name=reply.error_name or ERROR_FAILED,
                details={"destination": destination, "path": path, "member": f"{interface}.{member}"},
            )
        return Payload(reply.signature, list(reply.body))

    # -- signals -----------------------------------------------------------

    def emit_signal(
        self,
        path: str,
        interface: str,
        member: str,
        payload: Payload,
        *,
        destination: str | None = None,
    ) -> None:
        try:
            bus = self._require_bus()
            msg = Message(
                message_type=MessageType.SIGNAL,
                destination=destination,
                path=path,
                interface=interface,
                member=member,
                signature=payload.signature,
                body=payload.body,
            )
            sent = bus.send(msg)
        except Exception as exc:
            raise SignalEmitError(
                f"Failed to emit {interface}.{member} on {self._label} bus: {exc}",
                code="emit_failed",
                details={"path": path},
                original_error=exc,
            ) from exc
        if isinstance(sent, asyncio.Future):
            sent.add_done_callback(self._log_send_failure)

    def _log_send_failure(self, future: asyncio.Future) -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.warning("Send on {} bus failed: {}", self._label, future.exception())

    async def subscribe_signal(
        self,
        sender: str,
        interface: str,
        member: str,
        path: str,
        callback: SignalCallback,
    ) -> int:
        rule = _match_rule(sender=sender, interface=interface, member=member, path=path)
        try:
            await self._add_match(rule)
        except BusCallError as exc:
            raise SubscriptionError(
                f"Failed to subscribe to {interface}.{member}: {exc}",
                code="add_match_failed",
                details={"rule": rule},
                original_error=exc,
            ) from exc
        try:
            await self._track_owner(sender)
        except BusCallError as exc:
            await self._remove_match(rule)
            raise SubscriptionError(
                f"Failed to track owner of {sender} for {interface}.{member}: {exc}",
                code="track_owner_failed",
                details={"rule": rule, "sender": sender},
                original_error=exc,
            ) from exc
        handle = next(self._handles)
        self._subscriptions[handle] = _SignalSubscription(handle, sender, interface, member, path, rule, callback)
        return handle

    async def unsubscribe_signal(self, handle: int) -> bool:
        sub = self._subscriptions.pop(handle, None)
        if sub is None:
            return False
        if not any(other.sender == sub.sender for other in self._subscriptions.values()):
            self._owners.pop(sub.sender, None)
            owner_rule = self._owner_rules.pop(sub.sender, None)
            if owner_rule is not None:
                await self._remove_match(owner_rule)
        try:
            await self.call(DBUS_NAME, DBUS_PATH, DBUS_INTERFACE, "RemoveMatch", Payload("s", [sub.rule]))
        except (BusCallError, BusConnectionError) as exc:
            raise SubscriptionError(
                f"Failed to remove match for {sub.interface}.{sub.member}: {exc}",
                code="remove_match_failed",
                details={"rule": sub.rule},
                original_error=exc,
            ) from exc
        return True

    async def _add_match(self, rule: str) -> None:
        await self.call(DBUS_NAME, DBUS_PATH, DBUS_INTERFACE, "AddMatch", Payload("s", [rule]))

    async def _remove_match(self, rule: str) -> None:
        try:
            await self.call(DBUS_NAME, DBUS_PATH, DBUS_INTERFACE, "RemoveMatch", Payload("s", [rule]))
        except (BusCallError, BusConnectionError) as exc:
            logger.warning("Failed to remove match rule {} on {} bus: {}", rule, self._label, exc)

    async def _track_owner(self, sender: str) -> None:
        """Follow the unique owner of a well-known sender name for local signal matching."""
        if sender in self._owners:
            return
        if sender.startswith(":") or sender == DBUS_NAME:
            self._owners[sender] = sender
            return
        owner_rule = _match_rule(sender=DBUS_NAME, interface=DBUS_INTERFACE, member="NameOwnerChanged", arg0=sender)
        await self._add_match(owner_rule)
        self._owner_rules[sender] = owner_rule
        try:
            reply = await self.call(DBUS_NAME, DBUS_PATH, DBUS_INTERFACE, "GetNameOwner", Payload("s", [sender]))
            self._owners[sender] = reply.body[0] if reply.body else None
        except BusCallError:
            self._owners[sender] = None
            logger.debug("{} has no owner on {} bus yet", sender, self._label)

    def _sender_matches(self, sub: _SignalSubscription, sender: str | None) -> bool:
        return sender is not None and (sender == sub.sender or sender == self._owners.get(sub.sender))

    # -- names -------------------------------------------------------------

    async def request_name(self, name: str) -> bool:
        bus = self._require_bus()
        try:
            reply = await bus.request_name(name, NameFlag.NONE)
        except Exception as exc:
            raise NameOwnershipError(
                f"RequestName({name}) failed: {exc}",
                code="request_failed",
                details={"name": name},
                original_error=exc,
            ) from exc
        logger.debug("RequestName({}) on {} bus -> {}", name, self._label, reply)
        return reply in (RequestNameReply.PRIMARY_OWNER, RequestNameReply.ALREADY_OWNER)

    async def release_name(self, name: str) -> None:
        bus = self._require_bus()
        self._name_watchers.pop(name, None)
        try:
            await bus.release_name(name)
        except Exception as exc:
            raise NameOwnershipError(
                f"ReleaseName({name}) failed: {exc}",
                code="release_failed",
                details={"name": name},
                original_error=exc,
            ) from exc

    def watch_name(self, name: str, on_acquired: NameCallback, on_lost: NameCallback) -> None:
        self._name_watchers[name] = (on_acquired, on_lost)

    # -- object registration -----------------------------------------------

    def register_object(self, path: str, descriptor: InterfaceDescriptor, dispatch: InterfaceDispatch) -> int:
        if self._bus is None:
            raise RegistrationError(f"{self._label} bus is not connected", code="not_connected")
        if not is_object_path_valid(path):
            raise RegistrationError(f"Invalid object path: {path}", code="invalid_path", details={"path": path})
        if not is_interface_name_valid(descriptor.name):
            raise RegistrationError(
                f"Invalid interface name: {descriptor.name}",
                code="invalid_interface",
                details={"interface": descriptor.name},
            )
        for reg in self._registrations.values():
            if reg.path == path and reg.interface == descriptor.name:
                raise RegistrationError(
                    f"An object is already exported for interface {descriptor.name} at {path}",
                    code="exists",
                    details={"path": path, "interface": descriptor.name, "handle": reg.handle},
                )
        handle = next(self._handles)
        self._registrations[handle] = _ObjectRegistration(handle, path, descriptor, dispatch)
        return handle

    def unregister_object(self, handle: int) -> bool:
        return self._registrations.pop(handle, None) is not None

    # -- inbound dispatch --------------------------------------------------

    def _on_message(self, msg: Message) -> bool:
        """Message handler installed on the MessageBus. True stops further dbus-fast processing."""
        if msg.message_type == MessageType.SIGNAL:
            self._dispatch_signal(msg)
            return False
        if msg.message_type == MessageType.METHOD_CALL and self._registrations:
            return self._dispatch_method_call(msg)
        return False

    def _dispatch_signal(self, msg: Message) -> None:
        if msg.sender == DBUS_NAME and msg.interface == DBUS_INTERFACE:
            self._handle_bus_signal(msg)
        evt: SignalIn | None = None
        for sub in list(self._subscriptions.values()):
            if sub.interface != msg.interface or sub.member != msg.member or sub.path != msg.path:
                continue
            if not self._sender_matches(sub, msg.sender):
                continue
            if evt is None:
                evt = SignalIn(
                    sender=msg.sender,
                    path=msg.path,
                    interface=msg.interface,
                    member=msg.member,
                    payload=Payload(msg.signature, list(msg.body)),
                )
            try:
                sub.callback(evt)
            except Exception as exc:
                logger.exception("Signal callback for {} failed: {}", evt.label, exc)

    def _handle_bus_signal(self, msg: Message) -> None:
        if not msg.body:
            return
        name = msg.body[0]
        if msg.member == "NameOwnerChanged" and len(msg.body) >= 3:
            if name in self._owners:
                self._owners[name] = msg.body[2] or None
            return
        watcher = self._name_watchers.get(name)
        if watcher is None:
            return
        on_acquired, on_lost = watcher
        if msg.member == "NameAcquired":
            on_acquired(name)
        elif msg.member == "NameLost":
            on_lost(name)

    def _registrations_at(self, path: str) -> dict[str, _ObjectRegistration]:
        return {reg.interface: reg for reg in self._registrations.values() if reg.path == path}

    def _dispatch_method_call(self, msg: Message) -> bool:
        regs = self._registrations_at(msg.path)
        if msg.member == "Introspect" and msg.interface in (None, INTROSPECTABLE_INTERFACE):
            children = self._child_nodes(msg.path)
            if not regs and not children:
                return False
            self._send_reply(msg, Message.new_method_return(msg, "s", [self._introspection_xml(regs, children)]))
            return True
        if not regs or msg.interface == PEER_INTERFACE:
            return False
        if msg.interface == PROPERTIES_INTERFACE:
            self._dispatch_properties(msg, regs)
            return True

        reg: _ObjectRegistration | None = None
        if msg.interface:
            reg = regs.get(msg.interface)
            if reg is None:
                self._reply_error(msg, ERROR_UNKNOWN_INTERFACE, f"No such interface '{msg.interface}' at {msg.path}")
                return True
            method = reg.descriptor.method(msg.member)
        else:
            method = None
            for candidate in regs.values():
                method = candidate.descriptor.method(msg.member)
                if method is not None:
                    reg = candidate
                    break
        if reg is None or method is None:
            self._reply_error(msg, ERROR_UNKNOWN_METHOD, f"No such method '{msg.member}'")
            return True
        if msg.signature != method.in_signature:
            self._reply_error(
                msg,
                ERROR_INVALID_ARGS,
                f"Type of message, '({msg.signature})', does not match expected type '({method.in_signature})'",
            )
            return True

        invocation = MethodInvocation(msg, self._send)
        reg.dispatch.method_call(reg.interface, msg.member, msg.sender, Payload(msg.signature, list(msg.body)), invocation)
        return True

    def _dispatch_properties(self, msg: Message, regs: dict[str, _ObjectRegistration]) -> None:
        expected = _PROPERTIES_SIGNATURES.get(msg.member)
        if expected is None:
            self._reply_error(msg, ERROR_UNKNOWN_METHOD, f"No such method '{msg.member}' on {PROPERTIES_INTERFACE}")
            return
        if msg.signature != expected:
            self._reply_error(msg, ERROR_INVALID_ARGS, f"Expected arguments '({expected})', got '({msg.signature})'")
            return
        interface = msg.body[0]
        reg = regs.get(interface)
        if reg is None:
            self._reply_error(msg, ERROR_UNKNOWN_INTERFACE, f"No such interface '{interface}'")
            return
        if msg.member == "GetAll":
            self._spawn(self._serve_get_all(msg, reg))
            return

        prop = reg.descriptor.property(msg.body[1])
        if prop is None:
            self._reply_error(msg, ERROR_UNKNOWN_PROPERTY, f"No such property '{msg.body[1]}'")
            return
        if msg.member == "Get":
            if not prop.readable:
                self._reply_error(msg, ERROR_INVALID_ARGS, f"Property '{prop.name}' is not readable")
                return
            self._spawn(self._serve_get(msg, reg, prop))
            return

        value = msg.body[2]
        if not prop.writable:
            self._reply_error(msg, ERROR_PROPERTY_READ_ONLY, f"Property '{prop.name}' is not writable")
            return
        if value.signature != prop.signature:
            self._reply_error(
                msg,
                ERROR_INVALID_ARGS,
                f"Error setting property '{prop.name}': Expected type '{prop.signature}' but got '{value.signature}'",
            )
            return
        self._spawn(self._serve_set(msg, reg, prop, value))

    async def _read_property(self, msg: Message, reg: _ObjectRegistration, prop: PropertySignature) -> Variant:
        value = await reg.dispatch.get_property(reg.interface, prop.name, msg.sender)
        if not isinstance(value, Variant) or value.signature != prop.signature:
            got = value.signature if isinstance(value, Variant) else type(value).__name__
            raise PropertyError(
                f"Value returned for property '{prop.name}' has type '{got}' but expected '{prop.signature}'",
                error_name=ERROR_FAILED,
            )
        return value

    async def _serve_get(self, msg: Message, reg: _ObjectRegistration, prop: PropertySignature) -> None:
        try:
            value = await self._read_property(msg, reg, prop)
        except PropertyError as exc:
            self._reply_error(msg, exc.error_name, str(exc))
            return
        self._send_reply(msg, Message.new_method_return(msg, "v", [value]))

    async def _serve_get_all(self, msg: Message, reg: _ObjectRegistration) -> None:
        values: dict[str, Variant] = {}
        try:
            for prop in reg.descriptor.properties:
                if prop.readable:
                    values[prop.name] = await self._read_property(msg, reg, prop)
        except PropertyError as exc:
            self._reply_error(msg, exc.error_name, str(exc))
            return
        self._send_reply(msg, Message.new_method_return(msg, "a{sv}", [values]))

    async def _serve_set(self, msg: Message, reg: _ObjectRegistration, prop: PropertySignature, value: Variant) -> None:
        try:
            await reg.dispatch.set_property(reg.interface, prop.name, value, msg.sender)
        except PropertyError as exc:
            self._reply_error(msg, exc.error_name, str(exc))
            return
        self._send_reply(msg, Message.new_method_return(msg))

    def _child_nodes(self, path: str) -> list[str]:
        prefix = path if path.endswith("/") else path + "/"
        children: list[str] = []
        for reg in self._registrations.values():
            if reg.path != path and reg.path.startswith(prefix):
                child = reg.path[len(prefix) :].split("/", 1)[0]
                if child not in children:
                    children.append(child)
        return children

    def _introspection_xml(self, regs: dict[str, _ObjectRegistration], children: list[str]) -> str:
        node = intr.Node.default()
        node.interfaces.extend(reg.descriptor.info for reg in regs.values())
        node.nodes.extend(intr.Node(child, is_root=False) for child in children)
        return node.tostring()

    # -- replies -----------------------------------------------------------

    def _send(self, msg: Message) -> None:
        bus = self._require_bus()
        sent = bus.send(msg)
        if isinstance(sent, asyncio.Future):
            sent.add_done_callback(self._log_send_failure)

    def _send_reply(self, call: Message, reply: Message) -> None:
        if call.flags & MessageFlag.NO_REPLY_EXPECTED:
            return
        try:
            self._send(reply)
        except Exception as exc:
            logger.warning("Dropping reply to {}.{} from {}: {}", call.interface, call.member, call.sender, exc)

    def _reply_error(self, call: Message, error_name: str, text: str) -> None:
        logger.debug("Rejecting {}.{} from {}: {}", call.interface, call.member, call.sender, text)
        self._send_reply(call, Message.new_error(call, error_name, text))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
