"""Well-known D-Bus names used by the relay."""

from __future__ import annotations

from typing import Literal

BusKind = Literal["system", "session", "address"]

DBUS_NAME = "org.freedesktop.DBus"
DBUS_PATH = "/org/freedesktop/DBus"
DBUS_INTERFACE = "org.freedesktop.DBus"

INTROSPECTABLE_INTERFACE = "org.freedesktop.DBus.Introspectable"
PEER_INTERFACE = "org.freedesktop.DBus.Peer"
PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"
PROPERTIES_CHANGED = "PropertiesChanged"

# Served by the connection layer itself; never registered or subscribed per interface
STANDARD_INTERFACES = frozenset({INTROSPECTABLE_INTERFACE, PEER_INTERFACE, PROPERTIES_INTERFACE})

ERROR_FAILED = "org.freedesktop.DBus.Error.Failed"
ERROR_NO_REPLY = "org.freedesktop.DBus.Error.NoReply"
ERROR_UNKNOWN_METHOD = "org.freedesktop.DBus.Error.UnknownMethod"
ERROR_UNKNOWN_INTERFACE = "org.freedesktop.DBus.Error.UnknownInterface"
ERROR_UNKNOWN_PROPERTY = "org.freedesktop.DBus.Error.UnknownProperty"
ERROR_INVALID_ARGS = "org.freedesktop.DBus.Error.InvalidArgs"
ERROR_PROPERTY_READ_ONLY = "org.freedesktop.DBus.Error.PropertyReadOnly"
