"""Relay domain exceptions."""

from __future__ import annotations


class RelayError(Exception):
    """Base for relay domain errors."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, object] | None = None,
        original_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.details = details or {}
        self.original_error = original_error


class RelayConfigurationError(RelayError):
    """Config validation or load failure."""


class BusConnectionError(RelayError):
    """Bus unreachable, or the connection dropped."""


class BusCallError(RelayError):
    """A call on a connection returned an error reply or timed out."""

    def __init__(self, message: str, *, error_name: str, **kwargs: object) -> None:
        super().__init__(message, **kwargs)  # type: ignore[arg-type]
        self.error_name = error_name


class IntrospectionError(RelayError):
    """Source service/path absent, or its introspection data is unusable."""


class RegistrationError(RelayError):
    """Interface registration rejected by the target connection."""


class SubscriptionError(RelayError):
    """Signal subscription rejected by the source connection."""


class ForwardCallError(RelayError):
    """Outbound forwarded method call failed."""

    def __init__(self, message: str, *, error_name: str, **kwargs: object) -> None:
        super().__init__(message, **kwargs)  # type: ignore[arg-type]
        self.error_name = error_name


class PropertyError(RelayError):
    """Forwarded property read or write failed."""

    def __init__(self, message: str, *, error_name: str, **kwargs: object) -> None:
        super().__init__(message, **kwargs)  # type: ignore[arg-type]
        self.error_name = error_name


class SignalEmitError(RelayError):
    """Re-emission of a signal on the target connection failed."""


class NameOwnershipError(RelayError):
    """Proxy name denied or lost."""
