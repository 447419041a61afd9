"""Name owner: the proxy's well-known name on the target bus."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from loguru import logger

from busrelay.core.errors import NameOwnershipError

if TYPE_CHECKING:
    from busrelay.adapters.base import ConnectionBase


class NameState(Enum):
    UNREQUESTED = "unrequested"
    PENDING = "pending"
    ACQUIRED = "acquired"
    LOST = "lost"
    RELEASED = "released"


class NameOwner:
    """Requests the proxy name once and tracks acquisition/loss.

    Losing or being denied the name is not fatal: the relay keeps serving on its
    unique connection name and the owner reports itself as degraded.
    """

    def __init__(self, connection: ConnectionBase, name: str) -> None:
        self._connection = connection
        self._name = name
        self._state = NameState.UNREQUESTED
        self.last_error: NameOwnershipError | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> NameState:
        return self._state

    @property
    def degraded(self) -> bool:
        return self._state in (NameState.PENDING, NameState.LOST)

    async def request(self) -> NameState:
        """Request the name. Never raises for a denied name; see degraded."""
        if self._state is not NameState.UNREQUESTED:
            return self._state
        self._state = NameState.PENDING
        self._connection.watch_name(self._name, self._on_acquired, self._on_lost)
        try:
            granted = await self._connection.request_name(self._name)
        except NameOwnershipError as exc:
            self._report_lost(exc)
            return self._state

        if granted:
            self._on_acquired(self._name)
        elif self._state is NameState.PENDING:
            self._report_lost(
                NameOwnershipError(
                    f"Name {self._name} is owned by another connection; serving on {self._connection.unique_name}",
                    code="name_taken",
                    details={"name": self._name, "unique_name": self._connection.unique_name},
                ),
            )
        return self._state

    async def release(self) -> None:
        """Release the name if it was ever requested. Best-effort and idempotent."""
        if self._state in (NameState.UNREQUESTED, NameState.RELEASED):
            return
        self._state = NameState.RELEASED
        if not self._connection.connected:
            return
        try:
            await self._connection.release_name(self._name)
            logger.debug("Released name {}", self._name)
        except Exception as exc:
            logger.warning("Failed to release name {}: {}", self._name, exc)

    def _on_acquired(self, name: str) -> None:
        if self._state in (NameState.ACQUIRED, NameState.RELEASED):
            return
        self._state = NameState.ACQUIRED
        self.last_error = None
        logger.info("Acquired name {} on {} bus", name, self._connection.name)

    def _on_lost(self, name: str) -> None:
        if self._state in (NameState.LOST, NameState.RELEASED):
            return
        self._report_lost(
            NameOwnershipError(
                f"Lost name {name}; serving on {self._connection.unique_name}",
                code="name_lost",
                details={"name": name, "unique_name": self._connection.unique_name},
            ),
        )

    def _report_lost(self, error: NameOwnershipError) -> None:
        self._state = NameState.LOST
        self.last_error = error
        logger.error("Name ownership: {}", error)
