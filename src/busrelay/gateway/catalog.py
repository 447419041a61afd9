"""Interface catalog: the source object's introspected interfaces."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from dbus_fast import introspection as intr
from loguru import logger

from busrelay.core.constants import INTROSPECTABLE_INTERFACE, STANDARD_INTERFACES
from busrelay.core.errors import BusCallError, IntrospectionError
from busrelay.events import Payload

if TYPE_CHECKING:
    from busrelay.adapters.base import ConnectionBase


@dataclass(frozen=True)
class MethodSignature:
    name: str
    in_signature: str
    out_signature: str


@dataclass(frozen=True)
class SignalSignature:
    name: str
    signature: str


@dataclass(frozen=True)
class PropertySignature:
    name: str
    signature: str
    access: str  # "read" | "write" | "readwrite"

    @property
    def readable(self) -> bool:
        return self.access in ("read", "readwrite")

    @property
    def writable(self) -> bool:
        return self.access in ("write", "readwrite")


@dataclass(frozen=True)
class InterfaceDescriptor:
    """One introspected interface. Immutable once parsed."""

    name: str
    methods: tuple[MethodSignature, ...] = ()
    signals: tuple[SignalSignature, ...] = ()
    properties: tuple[PropertySignature, ...] = ()
    # Parsed form, kept to answer Introspect on the target
    info: intr.Interface | None = field(default=None, compare=False, repr=False)

    @classmethod
    def from_introspection(cls, iface: intr.Interface) -> InterfaceDescriptor:
        return cls(
            name=iface.name,
            methods=tuple(MethodSignature(m.name, m.in_signature, m.out_signature) for m in iface.methods),
            signals=tuple(SignalSignature(s.name, s.signature) for s in iface.signals),
            properties=tuple(PropertySignature(p.name, p.signature, p.access.value) for p in iface.properties),
            info=iface,
        )

    def method(self, name: str) -> MethodSignature | None:
        return next((m for m in self.methods if m.name == name), None)

    def property(self, name: str) -> PropertySignature | None:
        return next((p for p in self.properties if p.name == name), None)


class InterfaceCatalog(Mapping[str, InterfaceDescriptor]):
    """Interface name -> descriptor, in introspection order."""

    def __init__(self, descriptors: list[InterfaceDescriptor] | None = None) -> None:
        self._descriptors: dict[str, InterfaceDescriptor] = {}
        for descriptor in descriptors or []:
            self._descriptors[descriptor.name] = descriptor

    def __getitem__(self, name: str) -> InterfaceDescriptor:
        return self._descriptors[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._descriptors)

    def __len__(self) -> int:
        return len(self._descriptors)

    def signals(self) -> Iterator[tuple[InterfaceDescriptor, SignalSignature]]:
        """All (interface, signal) pairs in declaration order."""
        for descriptor in self._descriptors.values():
            for sig in descriptor.signals:
                yield descriptor, sig

    @classmethod
    def from_xml(cls, xml: str) -> InterfaceCatalog:
        """Parse introspection XML. Standard interfaces are left out."""
        try:
            node = intr.Node.parse(xml)
        except Exception as exc:
            raise IntrospectionError(
                f"Failed to parse introspection XML: {exc}",
                code="invalid_xml",
                original_error=exc,
            ) from exc
        descriptors = [
            InterfaceDescriptor.from_introspection(iface)
            for iface in node.interfaces
            if iface.name not in STANDARD_INTERFACES
        ]
        return cls(descriptors)


async def introspect(
    connection: ConnectionBase,
    service: str,
    path: str,
    *,
    timeout: float | None = None,
) -> InterfaceCatalog:
    """Introspect service at path once. Raise IntrospectionError on any failure or an empty result."""
    logger.info("Fetching introspection data from {}{}", service, path)
    try:
        reply = await connection.call(
            service,
            path,
            INTROSPECTABLE_INTERFACE,
            "Introspect",
            Payload(),
            timeout=timeout,
        )
    except BusCallError as exc:
        raise IntrospectionError(
            f"Introspection of {service}{path} failed: {exc}",
            code="call_failed",
            details={"service": service, "path": path, "error_name": exc.error_name},
            original_error=exc,
        ) from exc

    if reply.signature != "s" or not reply.body:
        raise IntrospectionError(
            f"Unexpected Introspect reply type '({reply.signature})' from {service}",
            code="invalid_reply",
            details={"service": service, "path": path},
        )
    xml = reply.body[0]
    logger.debug("Introspection XML received ({} bytes)", len(xml))

    catalog = InterfaceCatalog.from_xml(xml)
    if not catalog:
        raise IntrospectionError(
            f"No interfaces found at {service}{path}",
            code="no_interfaces",
            details={"service": service, "path": path},
        )
    logger.info(
        "Introspection parsed: {} interfaces, {} signals",
        len(catalog),
        sum(1 for _ in catalog.signals()),
    )
    return catalog
