"""Base connection: the bus capability the relay engine consumes."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from busrelay.adapters.invocation import MethodInvocation
    from busrelay.events import Payload, SignalIn
    from busrelay.gateway.catalog import InterfaceDescriptor

SignalCallback = Callable[["SignalIn"], None]
NameCallback = Callable[[str], None]


class InterfaceDispatch(Protocol):
    """Dispatch table for one registered interface: method call, property get, property set."""

    def method_call(
        self,
        interface: str,
        method: str,
        sender: str | None,
        parameters: Payload,
        invocation: MethodInvocation,
    ) -> None:
        """Handle a call. Must resolve invocation exactly once, now or later."""
        ...

    def get_property(self, interface: str, prop: str, sender: str | None) -> Awaitable[Any]:
        """Return the property value (a Variant). Raise PropertyError on failure."""
        ...

    def set_property(self, interface: str, prop: str, value: Any, sender: str | None) -> Awaitable[None]:
        """Write the property. Raise PropertyError on failure."""
        ...


class ConnectionBase(ABC):
    """One live bus session. Owned by the lifecycle controller."""

    def __init__(self) -> None:
        self._inflight: set[asyncio.Future] = set()

    @property
    @abstractmethod
    def name(self) -> str:
        """Connection label (e.g. 'source', 'target')."""
        ...

    @property
    @abstractmethod
    def unique_name(self) -> str | None:
        """Unique name assigned by the bus, None until connected."""
        ...

    @property
    @abstractmethod
    def connected(self) -> bool: ...

    @abstractmethod
    async def connect(self) -> None:
        """Open the session. Raise BusConnectionError on failure."""
        ...

    @abstractmethod
    def disconnect(self) -> None:
        """Close the session. Safe to call more than once."""
        ...

    @abstractmethod
    async def wait_closed(self) -> None:
        """Return once the session has dropped."""
        ...

    @abstractmethod
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
        """Call a method and await its reply. Raise BusCallError on error reply or timeout."""
        ...

    def call_async(
        self,
        destination: str,
        path: str,
        interface: str,
        member: str,
        payload: Payload,
        *,
        timeout: float | None = None,
    ) -> asyncio.Future[Payload]:
        """Schedule call() and return its future; completion runs on the loop."""
        future = asyncio.ensure_future(
            self.call(destination, path, interface, member, payload, timeout=timeout),
        )
        self._inflight.add(future)
        future.add_done_callback(self._inflight.discard)
        return future

    @abstractmethod
    def emit_signal(
        self,
        path: str,
        interface: str,
        member: str,
        payload: Payload,
        *,
        destination: str | None = None,
    ) -> None:
        """Emit a signal; broadcast when destination is None. Raise SignalEmitError on failure."""
        ...

    @abstractmethod
    def register_object(self, path: str, descriptor: InterfaceDescriptor, dispatch: InterfaceDispatch) -> int:
        """Serve one interface at path through dispatch. Return handle; raise RegistrationError."""
        ...

    @abstractmethod
    def unregister_object(self, handle: int) -> bool:
        """Drop a registration. False if the handle is unknown."""
        ...

    @abstractmethod
    async def subscribe_signal(
        self,
        sender: str,
        interface: str,
        member: str,
        path: str,
        callback: SignalCallback,
    ) -> int:
        """Subscribe to one signal. Return handle; raise SubscriptionError."""
        ...

    @abstractmethod
    async def unsubscribe_signal(self, handle: int) -> bool:
        """Drop a subscription. False if the handle is unknown."""
        ...

    @abstractmethod
    async def request_name(self, name: str) -> bool:
        """Request a well-known name. True when this connection is now the primary owner."""
        ...

    @abstractmethod
    async def release_name(self, name: str) -> None: ...

    @abstractmethod
    def watch_name(self, name: str, on_acquired: NameCallback, on_lost: NameCallback) -> None:
        """Report later acquisition/loss of a requested name."""
        ...
