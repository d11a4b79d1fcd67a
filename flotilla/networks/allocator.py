"""Address allocator - hands out unique IPs within one subnet.

Reserved addresses are never handed out:
- IPv4: network address, gateway (network + 1), broadcast
- IPv6: subnet-router anycast (network address), gateway (network + 1)

Allocation is always lowest-first, so a fixed subnet and a fixed sequence of
allocate/release calls always yields the same addresses.
"""

from __future__ import annotations

import heapq
import ipaddress
from typing import Iterator

from flotilla.errors import NotAllocatedError, PoolExhaustedError

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network
IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address

# Subnets wider than this are refused (keeps per-test pools bounded)
MAX_WIDTH_BITS = 24


def width_bits_of(subnet: IPNetwork) -> int:
    """Host-portion bit width of a subnet."""
    return subnet.max_prefixlen - subnet.prefixlen


class AddressAllocator:
    """Lowest-first address allocator over a single subnet.

    Not thread-safe: an allocator belongs to exactly one NetworkContext and is
    only touched from that network's code path.
    """

    def __init__(self, subnet: IPNetwork | str) -> None:
        if isinstance(subnet, str):
            subnet = ipaddress.ip_network(subnet)
        width = width_bits_of(subnet)
        if not 0 < width <= MAX_WIDTH_BITS:
            raise ValueError(
                f"Subnet {subnet} has {width} host bits; expected 1..{MAX_WIDTH_BITS}"
            )

        self._subnet = subnet
        self._base = int(subnet.network_address)

        # Usable offsets are the half-open range [first, end)
        self._first = 2
        if subnet.version == 4:
            self._end = subnet.num_addresses - 1
        else:
            self._end = subnet.num_addresses
        self._end = max(self._end, self._first)

        self._next = self._first
        self._released: list[int] = []
        self._allocated: set[int] = set()

    @property
    def subnet(self) -> IPNetwork:
        return self._subnet

    @property
    def gateway(self) -> IPAddress:
        return self._address(1)

    @property
    def reserved(self) -> frozenset[IPAddress]:
        """Addresses that are never handed out."""
        offsets = {0, 1}
        if self._subnet.version == 4:
            offsets.add(self._subnet.num_addresses - 1)
        return frozenset(self._address(o) for o in offsets)

    @property
    def capacity(self) -> int:
        """Size of the usable pool (2^w minus reserved)."""
        return self._end - self._first

    @property
    def available(self) -> int:
        return self.capacity - len(self._allocated)

    @property
    def allocated(self) -> tuple[IPAddress, ...]:
        return tuple(self._address(o) for o in sorted(self._allocated))

    def __contains__(self, address: object) -> bool:
        try:
            offset = self._offset(address)  # type: ignore[arg-type]
        except (ValueError, TypeError):
            return False
        return offset in self._allocated

    def __iter__(self) -> Iterator[IPAddress]:
        return iter(self.allocated)

    def __len__(self) -> int:
        return len(self._allocated)

    def __repr__(self) -> str:
        return (
            f"AddressAllocator(subnet={self._subnet}, "
            f"allocated={len(self._allocated)}/{self.capacity})"
        )

    def allocate(self) -> IPAddress:
        """Return the lowest-numbered free, non-reserved address.

        Raises:
            PoolExhaustedError: If no address remains
        """
        if self._released and self._released[0] < self._next:
            offset = heapq.heappop(self._released)
        elif self._next < self._end:
            offset = self._next
            self._next += 1
        else:
            raise PoolExhaustedError(
                f"No free address left in {self._subnet}",
                details={"subnet": str(self._subnet), "capacity": self.capacity},
            )

        self._allocated.add(offset)
        return self._address(offset)

    def release(self, address: IPAddress | str) -> None:
        """Return an address to the pool.

        Raises:
            NotAllocatedError: If the address is not currently allocated
                (unknown, reserved, outside the subnet, or already released)
        """
        try:
            offset = self._offset(address)
        except ValueError:
            offset = None
        if offset is None or offset not in self._allocated:
            raise NotAllocatedError(
                f"Address {address} is not allocated in {self._subnet}",
                details={"subnet": str(self._subnet), "address": str(address)},
            )

        self._allocated.remove(offset)
        # _next is a high-water mark; freed offsets below it are served from the heap
        heapq.heappush(self._released, offset)

    def _address(self, offset: int) -> IPAddress:
        return ipaddress.ip_address(self._base + offset)

    def _offset(self, address: IPAddress | str) -> int:
        if isinstance(address, str):
            address = ipaddress.ip_address(address)
        if address not in self._subnet:
            raise ValueError(f"{address} is outside {self._subnet}")
        return int(address) - self._base
