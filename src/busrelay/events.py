"""Typed records that cross the forwarding engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Payload:
    """Message body with its D-Bus type signature. Relayed without transformation."""

    signature: str = ""
    body: list[Any] = field(default_factory=list)


@dataclass(frozen=True)
class SignalIn:
    """Signal received on the source connection."""

    sender: str | None
    path: str
    interface: str
    member: str
    payload: Payload

    @property
    def label(self) -> str:
        return f"{self.interface}.{self.member}"
