"""Popular-room discovery from the public listing surface."""

from spacerelay.discovery.rooms import DiscoveryFilters, RoomDiscovery, RoomMonitor

__all__ = ["DiscoveryFilters", "RoomDiscovery", "RoomMonitor"]
