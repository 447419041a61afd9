"""Gateway: catalog, managers, forwarding engine, lifecycle controller."""

from busrelay.gateway.catalog import InterfaceCatalog, InterfaceDescriptor, introspect
from busrelay.gateway.forwarder import ForwardingEngine
from busrelay.gateway.names import NameOwner, NameState
from busrelay.gateway.registrations import RegistrationManager, RegistrationRecord
from busrelay.gateway.relay import Relay, RelayState
from busrelay.gateway.subscriptions import SubscriptionManager, SubscriptionRecord

__all__ = [
    "ForwardingEngine",
    "InterfaceCatalog",
    "InterfaceDescriptor",
    "NameOwner",
    "NameState",
    "RegistrationManager",
    "RegistrationRecord",
    "Relay",
    "RelayState",
    "SubscriptionManager",
    "SubscriptionRecord",
    "introspect",
]
