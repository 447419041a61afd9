"""Subscription manager: source-side signal subscriptions feeding the forwarding engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger

from busrelay.core.constants import PROPERTIES_CHANGED, PROPERTIES_INTERFACE
from busrelay.core.errors import SubscriptionError

if TYPE_CHECKING:
    from busrelay.adapters.base import ConnectionBase, SignalCallback
    from busrelay.gateway.catalog import InterfaceCatalog


@dataclass(frozen=True)
class SubscriptionRecord:
    """Subscription handle (assigned by the source connection) and its interface.signal label."""

    handle: int
    label: str


class SubscriptionManager:
    """Owns the signal subscriptions on the source connection. A rejected subscription is logged and skipped."""

    def __init__(self, connection: ConnectionBase, service: str, object_path: str) -> None:
        self._connection = connection
        self._service = service
        self._object_path = object_path
        self._records: dict[str, SubscriptionRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, label: object) -> bool:
        return label in self._records

    @property
    def records(self) -> list[SubscriptionRecord]:
        return list(self._records.values())

    async def subscribe(self, interface: str, member: str, callback: SignalCallback) -> SubscriptionRecord | None:
        """Subscribe to one signal from the source service/path. None when rejected."""
        label = f"{interface}.{member}"
        if label in self._records:
            return self._records[label]
        logger.debug("Subscribing to signal: {}", label)
        try:
            handle = await self._connection.subscribe_signal(
                self._service,
                interface,
                member,
                self._object_path,
                callback,
            )
        except SubscriptionError as exc:
            logger.error("Failed to subscribe to signal {}: {}", label, exc)
            return None
        record = SubscriptionRecord(handle=handle, label=label)
        self._records[label] = record
        return record

    async def subscribe_all(
        self,
        catalog: InterfaceCatalog,
        on_signal: SignalCallback,
        on_properties_changed: SignalCallback,
    ) -> None:
        """Subscribe to every catalog signal plus the generic properties-changed signal."""
        for descriptor, sig in catalog.signals():
            await self.subscribe(descriptor.name, sig.name, on_signal)
        await self.subscribe(PROPERTIES_INTERFACE, PROPERTIES_CHANGED, on_properties_changed)
        logger.info("Signal subscriptions set up: {}", len(self._records))

    async def unsubscribe_all(self) -> None:
        """Drop every subscription. Best-effort and idempotent."""
        while self._records:
            label, record = self._records.popitem()
            try:
                if not await self._connection.unsubscribe_signal(record.handle):
                    logger.debug("Subscription {} for {} was already gone", record.handle, label)
            except Exception as exc:
                logger.warning("Failed to unsubscribe {} (handle {}): {}", label, record.handle, exc)
