"""Invocation token for an inbound method call awaiting its reply."""

from __future__ import annotations

from collections.abc import Callable

from dbus_fast import Message, MessageFlag

from busrelay.events import Payload


class InvocationResolvedError(RuntimeError):
    """An invocation was resolved a second time."""


class MethodInvocation:
    """Pending reply to one method call. Resolves exactly once."""

    def __init__(self, message: Message, send: Callable[[Message], object]) -> None:
        self._message = message
        self._send = send
        self._resolved = False

    @property
    def sender(self) -> str | None:
        return self._message.sender

    @property
    def interface(self) -> str | None:
        return self._message.interface

    @property
    def member(self) -> str:
        return self._message.member

    @property
    def resolved(self) -> bool:
        return self._resolved

    @property
    def expects_reply(self) -> bool:
        return not (self._message.flags & MessageFlag.NO_REPLY_EXPECTED)

    def return_value(self, payload: Payload) -> None:
        """Reply with payload as-is."""
        self._resolve(Message.new_method_return(self._message, payload.signature, payload.body))

    def return_error(self, error_name: str, text: str) -> None:
        """Reply with a D-Bus error."""
        self._resolve(Message.new_error(self._message, error_name, text))

    def _resolve(self, reply: Message) -> None:
        if self._resolved:
            raise InvocationResolvedError(
                f"Invocation {self._message.interface}.{self._message.member} (serial {self._message.serial}) "
                "already resolved",
            )
        self._resolved = True
        if self.expects_reply:
            self._send(reply)
