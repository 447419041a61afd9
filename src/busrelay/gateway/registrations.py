"""Registration manager: one dispatch table per catalog interface on the target connection."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger

from busrelay.core.errors import RegistrationError

if TYPE_CHECKING:
    from busrelay.adapters.base import ConnectionBase, InterfaceDispatch
    from busrelay.gateway.catalog import InterfaceCatalog, InterfaceDescriptor


@dataclass(frozen=True)
class RegistrationRecord:
    """Registration handle (assigned by the target connection) for one interface."""

    handle: int
    interface: str


class RegistrationManager:
    """Owns the interface registrations on the target connection.

    Failure policy: a rejected interface is logged and skipped; the rest are still
    registered. The table holds at most one record per interface name.
    """

    def __init__(self, connection: ConnectionBase, object_path: str, dispatch: InterfaceDispatch) -> None:
        self._connection = connection
        self._object_path = object_path
        self._dispatch = dispatch
        self._records: dict[str, RegistrationRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, interface: object) -> bool:
        return interface in self._records

    @property
    def records(self) -> list[RegistrationRecord]:
        return list(self._records.values())

    def register(self, descriptor: InterfaceDescriptor) -> RegistrationRecord:
        """Register one interface, replacing a stale registration of the same name."""
        stale = self._records.pop(descriptor.name, None)
        if stale is not None:
            logger.debug("Replacing registration {} for {}", stale.handle, descriptor.name)
            self._connection.unregister_object(stale.handle)

        handle = self._connection.register_object(self._object_path, descriptor, self._dispatch)
        record = RegistrationRecord(handle=handle, interface=descriptor.name)
        self._records[descriptor.name] = record
        return record

    def register_all(self, catalog: InterfaceCatalog) -> list[str]:
        """Register every interface in catalog. Returns the names that were skipped."""
        skipped: list[str] = []
        for descriptor in catalog.values():
            logger.info("Registering interface: {}", descriptor.name)
            try:
                self.register(descriptor)
            except RegistrationError as exc:
                logger.error("Failed to register interface {}: {}", descriptor.name, exc)
                skipped.append(descriptor.name)
        logger.info(
            "Registered {} of {} interfaces at {}",
            len(self._records),
            len(catalog),
            self._object_path,
        )
        return skipped

    def unregister_all(self) -> None:
        """Unregister everything. Best-effort and idempotent."""
        while self._records:
            interface, record = self._records.popitem()
            try:
                if not self._connection.unregister_object(record.handle):
                    logger.debug("Registration {} for {} was already gone", record.handle, interface)
            except Exception as exc:
                logger.warning("Failed to unregister {} (handle {}): {}", interface, record.handle, exc)
