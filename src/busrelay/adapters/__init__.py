"""Bus connections. Each implements base.ConnectionBase."""

from busrelay.adapters.base import ConnectionBase, InterfaceDispatch
from busrelay.adapters.dbus import DBusConnection
from busrelay.adapters.invocation import InvocationResolvedError, MethodInvocation

__all__ = [
    "ConnectionBase",
    "DBusConnection",
    "InterfaceDispatch",
    "InvocationResolvedError",
    "MethodInvocation",
]
