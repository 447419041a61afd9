"""Config schema: the validated, immutable relay configuration."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from dbus_fast.validators import is_bus_name_valid, is_object_path_valid

from busrelay.core.constants import BusKind
from busrelay.core.errors import RelayConfigurationError

DEFAULT_SOURCE_BUS = "system"
DEFAULT_TARGET_BUS = "session"

# transport:key=value[,key=value...][;transport:...]
_ADDRESS_RE = re.compile(r"^[a-z][a-z0-9-]*:([^;,=]+=[^;,]*(,[^;,=]+=[^;,]*)*)?(;.*)?$")


def _parse_bool(value: Any, *, key: str) -> bool:
    """Parse bool from YAML/env value; raise on anything unrecognized."""
    if isinstance(value, bool):
        return value
    v = str(value).strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off", ""):
        return False
    raise RelayConfigurationError(
        f"{key} must be a boolean",
        code="invalid_bool",
        details={"key": key, "value": value},
    )


@dataclass(frozen=True)
class BusSelector:
    """Which bus a connection goes to: system, session, or an explicit address."""

    kind: BusKind
    address: str | None = None

    @classmethod
    def parse(cls, token: str) -> BusSelector:
        token = (token or "").strip()
        if token in ("system", "session"):
            return cls(kind=token)  # type: ignore[arg-type]
        if _ADDRESS_RE.match(token):
            return cls(kind="address", address=token)
        raise RelayConfigurationError(
            f"Unknown bus selector: {token!r} (expected system, session, or a D-Bus address)",
            code="invalid_bus",
            details={"value": token},
        )

    def __str__(self) -> str:
        return self.address if self.kind == "address" and self.address else self.kind


@dataclass(frozen=True)
class ProxyConfig:
    """Validated relay configuration. Never mutated after construction."""

    source_service: str
    source_object_path: str
    proxy_name: str
    source_bus: BusSelector
    target_bus: BusSelector
    verbose: bool = False
    call_timeout_ms: int | None = None
    preserve_error_names: bool = True
    log_file: str | None = None

    def __post_init__(self) -> None:
        self._validate()

    @property
    def call_timeout(self) -> float | None:
        """Outbound call timeout in seconds; None means no timeout."""
        if self.call_timeout_ms is None:
            return None
        return self.call_timeout_ms / 1000.0

    def _validate(self) -> None:
        """Validate fields; raise RelayConfigurationError on failure."""
        if not self.source_service:
            raise RelayConfigurationError("source service name is required", code="missing_source_service")
        if not is_bus_name_valid(self.source_service):
            raise RelayConfigurationError(
                f"invalid source service name: {self.source_service}",
                code="invalid_source_service",
                details={"value": self.source_service},
            )
        if not self.source_object_path:
            raise RelayConfigurationError("source object path is required", code="missing_source_object_path")
        if not is_object_path_valid(self.source_object_path):
            raise RelayConfigurationError(
                f"invalid source object path: {self.source_object_path}",
                code="invalid_source_object_path",
                details={"value": self.source_object_path},
            )
        if not self.proxy_name:
            raise RelayConfigurationError("proxy name is required", code="missing_proxy_name")
        if self.proxy_name.startswith(":") or not is_bus_name_valid(self.proxy_name):
            raise RelayConfigurationError(
                f"invalid proxy name: {self.proxy_name} (must be a well-known bus name)",
                code="invalid_proxy_name",
                details={"value": self.proxy_name},
            )
        if self.call_timeout_ms is not None and self.call_timeout_ms <= 0:
            raise RelayConfigurationError(
                "call_timeout_ms must be positive",
                code="invalid_timeout",
                details={"value": self.call_timeout_ms},
            )

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> ProxyConfig:
        """Build from the merged config dict (YAML + env + CLI)."""
        source = data.get("source") or {}
        target = data.get("target") or {}
        if not isinstance(source, dict) or not isinstance(target, dict):
            raise RelayConfigurationError(
                "source and target must be mappings",
                code="invalid_structure",
                details={"source": type(source).__name__, "target": type(target).__name__},
            )

        timeout = data.get("call_timeout_ms")
        if timeout is not None and timeout != "":
            try:
                timeout = int(timeout)
            except (TypeError, ValueError) as exc:
                raise RelayConfigurationError(
                    "call_timeout_ms must be an integer",
                    code="invalid_timeout",
                    details={"value": timeout},
                    original_error=exc,
                ) from exc
        else:
            timeout = None

        log_file = data.get("log_file")
        return cls(
            source_service=str(source.get("service") or ""),
            source_object_path=str(source.get("object_path") or ""),
            proxy_name=str(target.get("name") or ""),
            source_bus=BusSelector.parse(str(source.get("bus") or DEFAULT_SOURCE_BUS)),
            target_bus=BusSelector.parse(str(target.get("bus") or DEFAULT_TARGET_BUS)),
            verbose=_parse_bool(data.get("verbose", False), key="verbose"),
            call_timeout_ms=timeout,
            preserve_error_names=_parse_bool(data.get("preserve_error_names", True), key="preserve_error_names"),
            log_file=str(log_file) if log_file else None,
        )

    def describe(self) -> list[str]:
        """Human-readable lines for --show-config."""
        return [
            "Configuration:",
            f"  source bus:           {self.source_bus}",
            f"  source service:       {self.source_service}",
            f"  source object path:   {self.source_object_path}",
            f"  target bus:           {self.target_bus}",
            f"  proxy name:           {self.proxy_name}",
            f"  call timeout (ms):    {self.call_timeout_ms if self.call_timeout_ms is not None else '(none)'}",
            f"  preserve error names: {'true' if self.preserve_error_names else 'false'}",
            f"  verbose:              {'true' if self.verbose else 'false'}",
            f"  log file:             {self.log_file or '(none)'}",
        ]


_TEMPLATE = """\
# busrelay configuration
# Values here are overridden by BUSRELAY_* environment variables and by CLI flags.

source:
  # system, session, or a D-Bus address (unix:path=/run/dbus/system_bus_socket)
  bus: {source_bus}
  service: {source_service}
  object_path: {source_object_path}

target:
  bus: {target_bus}
  # Well-known name requested on the target bus
  name: {proxy_name}

# Timeout for forwarded calls in milliseconds; remove for no timeout
call_timeout_ms: 30000

# Pass the source's error names through to callers (false: org.freedesktop.DBus.Error.Failed)
preserve_error_names: true

verbose: false

# Extra log file (stderr is always used)
log_file:
"""


def render_template(
    *,
    source_service: str = "org.freedesktop.NetworkManager",
    source_object_path: str = "/org/freedesktop/NetworkManager",
    proxy_name: str = "org.example.Proxy",
    source_bus: str = DEFAULT_SOURCE_BUS,
    target_bus: str = DEFAULT_TARGET_BUS,
) -> str:
    """Commented YAML template for --create-config."""
    return _TEMPLATE.format(
        source_service=source_service,
        source_object_path=source_object_path,
        proxy_name=proxy_name,
        source_bus=source_bus,
        target_bus=target_bus,
    )
