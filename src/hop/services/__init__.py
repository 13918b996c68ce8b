"""Service abstractions for the packet filter and rule persistence."""

from hop.services.nat import NatController, NatRedirectManager
from hop.services.persistence import FirewallPersister

__all__ = [
    "NatController",
    "NatRedirectManager",
    "FirewallPersister",
]
