"""Networks - address allocation, the suite-wide subnet pool and per-test network contexts."""

from flotilla.networks.allocator import AddressAllocator, width_bits_of
from flotilla.networks.network import NetworkContext, NetworkState
from flotilla.networks.subnet_pool import SubnetPool

__all__ = [
    "AddressAllocator",
    "NetworkContext",
    "NetworkState",
    "SubnetPool",
    "width_bits_of",
]
