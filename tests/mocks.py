"""Fake connections for testing the relay without a real bus."""

from __future__ import annotations

import asyncio
import inspect
import itertools
from typing import Any

from busrelay.adapters.base import ConnectionBase, InterfaceDispatch, NameCallback, SignalCallback
from busrelay.adapters.invocation import InvocationResolvedError
from busrelay.core.constants import ERROR_UNKNOWN_METHOD
from busrelay.core.errors import (
    BusCallError,
    BusConnectionError,
    NameOwnershipError,
    RegistrationError,
    SignalEmitError,
    SubscriptionError,
)
from busrelay.events import Payload, SignalIn

SAMPLE_XML = """<!DOCTYPE node PUBLIC "-//freedesktop//DTD D-BUS Object Introspection 1.0//EN"
 "http://www.freedesktop.org/standards/dbus/1.0/introspect.dtd">
<node>
  <interface name="org.freedesktop.DBus.Introspectable">
    <method name="Introspect">
      <arg name="xml_data" type="s" direction="out"/>
    </method>
  </interface>
  <interface name="org.freedesktop.DBus.Properties">
    <method name="Get">
      <arg name="interface_name" type="s" direction="in"/>
      <arg name="property_name" type="s" direction="in"/>
      <arg name="value" type="v" direction="out"/>
    </method>
    <signal name="PropertiesChanged">
      <arg name="interface_name" type="s"/>
      <arg name="changed_properties" type="a{sv}"/>
      <arg name="invalidated_properties" type="as"/>
    </signal>
  </interface>
  <interface name="org.example.Demo">
    <method name="Echo">
      <arg name="text" type="s" direction="in"/>
      <arg name="reply" type="s" direction="out"/>
    </method>
    <method name="Add">
      <arg name="a" type="i" direction="in"/>
      <arg name="b" type="i" direction="in"/>
      <arg name="sum" type="i" direction="out"/>
    </method>
    <signal name="Changed">
      <arg name="what" type="s"/>
    </signal>
    <property name="Count" type="i" access="read"/>
    <property name="Label" type="s" access="readwrite"/>
  </interface>
  <interface name="org.example.Extra">
    <method name="Ping"/>
    <signal name="Pinged"/>
    <signal name="Tick">
      <arg name="n" type="u"/>
    </signal>
  </interface>
  <node name="child"/>
</node>
"""

COUNTER_XML = """<node>
  <interface name="org.example.Counter">
    <method name="Increment">
      <arg name="value" type="i" direction="out"/>
    </method>
    <signal name="Changed">
      <arg name="value" type="i"/>
    </signal>
    <property name="Label" type="s" access="readwrite"/>
  </interface>
</node>
"""

ONLY_STANDARD_XML ="""<node>
  <interface name="org.freedesktop.DBus.Peer">
    <method name="Ping"/>
  </interface>
</node>
"""


class FakeConnection(ConnectionBase):
    """In-memory connection that records every bus operation."""

    def __init__(
        self,
        selector: object = None,
        *,
        label: str = "fake",
        unique_name: str = ":1.1",
        connected: bool = False,
    ) -> None:
        super().__init__()
        self._label = label
        self._unique = unique_name
        self._connected = connected
        self._closed = asyncio.Event()
        self._handles = itertools.count(1)
        self.selector = selector
        # (interface, member) -> Payload, exception, or (async) callable(payload) -> Payload
        self.replies: dict[tuple[str, str], Any] = {}
        self.calls: list[tuple[str, str, str, str, Payload, float | None]] = []
        self.emitted: list[tuple[str, str, str, Payload, str | None]] = []
        self.registrations: dict[int, tuple[str, Any, InterfaceDispatch]] = {}
        self.subscriptions: dict[int, tuple[str, str, str, str, SignalCallback]] = {}
        self.watchers: dict[str, tuple[NameCallback, NameCallback]] = {}
        self.ops: list[str] = []
        self.fail_connect = False
        self.fail_emit = False
        self.reject_register: set[str] = set()
        self.reject_subscribe: set[str] = set()
        self.grant_name = True
        self.name_error: Exception | None = None

    @property
    def name(self) -> str:
        return self._label

    @property
    def unique_name(self) -> str | None:
        return self._unique if self._connected else None

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        if self.fail_connect:
            raise BusConnectionError(f"{self._label} bus unreachable", code="connect_failed")
        self._connected = True
        self.ops.append("connect")

    def disconnect(self) -> None:
        if not self._connected:
            return
        self._connected = False
        self.ops.append("disconnect")
        self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

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
        self.calls.append((destination, path, interface, member, payload, timeout))
        await asyncio.sleep(0)
        reply = self.replies.get((interface, member))
        if reply is None:
            raise BusCallError(f"No such method {member}", error_name=ERROR_UNKNOWN_METHOD)
        if isinstance(reply, BaseException):
            raise reply
        if inspect.iscoroutinefunction(reply):
            return await reply(payload)
        if callable(reply):
            return reply(payload)
        return reply

    def emit_signal(
        self,
        path: str,
        interface: str,
        member: str,
        payload: Payload,
        *,
        destination: str | None = None,
    ) -> None:
        if self.fail_emit:
            raise SignalEmitError(f"cannot emit {interface}.{member}")
        self.emitted.append((path, interface, member, payload, destination))

    def register_object(self, path: str, descriptor: Any, dispatch: InterfaceDispatch) -> int:
        if not self._connected:
            raise RegistrationError("not connected", code="not_connected")
        if descriptor.name in self.reject_register:
            raise RegistrationError(f"rejected {descriptor.name}", code="rejected")
        for reg_path, reg_descriptor, _ in self.registrations.values():
            if reg_path == path and reg_descriptor.name == descriptor.name:
                raise RegistrationError(f"{descriptor.name} exists", code="exists")
        handle = next(self._handles)
        self.registrations[handle] = (path, descriptor, dispatch)
        self.ops.append(f"register:{descriptor.name}")
        return handle

    def unregister_object(self, handle: int) -> bool:
        entry = self.registrations.pop(handle, None)
        if entry is None:
            return False
        self.ops.append(f"unregister:{entry[1].name}")
        return True

    async def subscribe_signal(
        self,
        sender: str,
        interface: str,
        member: str,
        path: str,
        callback: SignalCallback,
    ) -> int:
        if f"{interface}.{member}" in self.reject_subscribe:
            raise SubscriptionError(f"rejected {interface}.{member}", code="rejected")
        handle = next(self._handles)
        self.subscriptions[handle] = (sender, interface, member, path, callback)
        self.ops.append(f"subscribe:{interface}.{member}")
        return handle

    async def unsubscribe_signal(self, handle: int) -> bool:
        entry = self.subscriptions.pop(handle, None)
        if entry is None:
            return False
        self.ops.append(f"unsubscribe:{entry[1]}.{entry[2]}")
        return True

    async def request_name(self, name: str) -> bool:
        self.ops.append(f"request:{name}")
        if self.name_error is not None:
            raise self.name_error
        return self.grant_name

    async def release_name(self, name: str) -> None:
        self.ops.append(f"release:{name}")
        self.watchers.pop(name, None)

    def watch_name(self, name: str, on_acquired: NameCallback, on_lost: NameCallback) -> None:
        self.watchers[name] = (on_acquired, on_lost)

    # -- test helpers ------------------------------------------------------

    def fire_signal(self, interface: str, member: str, payload: Payload, *, sender: str = ":1.7") -> int:
        """Deliver a signal to every matching subscription. Returns the number of callbacks run."""
        delivered = 0
        for _, sub_iface, sub_member, path, callback in list(self.subscriptions.values()):
            if sub_iface == interface and sub_member == member:
                callback(SignalIn(sender=sender, path=path, interface=interface, member=member, payload=payload))
                delivered += 1
        return delivered

    def drop(self) -> None:
        """Simulate the bus going away underneath the relay."""
        self._connected = False
        self.ops.append("dropped")
        self._closed.set()

    def registered_interfaces(self) -> list[str]:
        return [descriptor.name for _, descriptor, _ in self.registrations.values()]

    def subscribed_labels(self) -> list[str]:
        return [f"{iface}.{member}" for _, iface, member, _, _ in self.subscriptions.values()]

    async def drain(self) -> None:
        """Let in-flight async calls and their completion callbacks run."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        await asyncio.sleep(0)


class FakeInvocation:
    """Stands in for MethodInvocation; captures the single resolution."""

    def __init__(self, sender: str | None = ":1.99", *, fail_send: Exception | None = None) -> None:
        self.sender = sender
        self.value: Payload | None = None
        self.error: tuple[str, str] | None = None
        self.resolutions = 0
        self._fail_send = fail_send

    @property
    def resolved(self) -> bool:
        return self.resolutions > 0

    def return_value(self, payload: Payload) -> None:
        self._resolve()
        self.value = payload

    def return_error(self, error_name: str, text: str) -> None:
        self._resolve()
        self.error = (error_name, text)

    def _resolve(self) -> None:
        if self.resolutions:
            raise InvocationResolvedError("already resolved")
        self.resolutions += 1
        if self._fail_send is not None:
            raise self._fail_send


def connection_factory(source: FakeConnection, target: FakeConnection):
    """Relay connection_factory returning the given fakes by label."""

    def factory(selector: object, *, label: str) -> FakeConnection:
        conn = source if label == "source" else target
        conn.selector = selector
        return conn

    return factory


def make_config(**overrides: Any):
    """ProxyConfig for tests; keyword overrides replace defaults."""
    from busrelay.config import BusSelector, ProxyConfig

    values: dict[str, Any] = {
        "source_service": "org.example.Source",
        "source_object_path": "/org/example/Source",
        "proxy_name": "org.example.Proxy",
        "source_bus": BusSelector.parse("system"),
        "target_bus": BusSelector.parse("session"),
    }
    values.update(overrides)
    return ProxyConfig(**values)


def introspect_reply(xml: str = SAMPLE_XML) -> Payload:
    return Payload("s", [xml])
