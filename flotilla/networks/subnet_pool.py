"""Suite-wide subnet pool.

Hands non-overlapping subnets to concurrently running executors. This is the
only mutable state shared between executors; a single lock is held just for
the allocate/release bookkeeping.
"""

from __future__ import annotations

import ipaddress
import threading

import structlog

from flotilla.errors import NotAllocatedError, SubnetPoolExhaustedError
from flotilla.networks.allocator import IPNetwork, MAX_WIDTH_BITS

logger = structlog.get_logger()


class SubnetPool:
    """Lowest-first allocator of aligned subnets inside a supernet.

    Usage:
        pool = SubnetPool("172.24.0.0/13")
        subnet = pool.allocate(width_bits=8)   # 172.24.0.0/24
        ...
        pool.release(subnet)
    """

    def __init__(self, supernet: IPNetwork | str) -> None:
        if isinstance(supernet, str):
            supernet = ipaddress.ip_network(supernet)
        self._supernet = supernet
        self._allocated: list[IPNetwork] = []
        self._quarantined: list[IPNetwork] = []
        self._lock = threading.Lock()
        self._log = logger.bind(component="subnet_pool", supernet=str(supernet))

    @property
    def supernet(self) -> IPNetwork:
        return self._supernet

    @property
    def allocated(self) -> tuple[IPNetwork, ...]:
        with self._lock:
            return tuple(self._allocated)

    @property
    def quarantined(self) -> tuple[IPNetwork, ...]:
        with self._lock:
            return tuple(self._quarantined)

    def allocate(self, width_bits: int) -> IPNetwork:
        """Reserve the lowest free subnet with `width_bits` host bits.

        Raises:
            ValueError: If width_bits is out of range
            SubnetPoolExhaustedError: If no free block of that size remains
        """
        if not 0 < width_bits <= MAX_WIDTH_BITS:
            raise ValueError(f"width_bits must be in 1..{MAX_WIDTH_BITS}, got {width_bits}")

        new_prefix = self._supernet.max_prefixlen - width_bits
        if new_prefix < self._supernet.prefixlen:
            raise SubnetPoolExhaustedError(
                f"A /{new_prefix} subnet does not fit in {self._supernet}",
                details={"supernet": str(self._supernet), "width_bits": width_bits},
            )

        with self._lock:
            taken = self._allocated + self._quarantined
            for candidate in self._supernet.subnets(new_prefix=new_prefix):
                if not any(candidate.overlaps(t) for t in taken):
                    self._allocated.append(candidate)
                    break
            else:
                raise SubnetPoolExhaustedError(
                    f"No free /{new_prefix} subnet left in {self._supernet}",
                    details={"supernet": str(self._supernet), "width_bits": width_bits},
                )

        self._log.debug("subnet_pool.allocate", subnet=str(candidate))
        return candidate

    def release(self, subnet: IPNetwork) -> None:
        """Return a subnet to the pool.

        Raises:
            NotAllocatedError: If the subnet is not currently allocated
        """
        with self._lock:
            try:
                self._allocated.remove(subnet)
            except ValueError:
                raise NotAllocatedError(
                    f"Subnet {subnet} is not allocated from {self._supernet}",
                    details={"subnet": str(subnet)},
                ) from None
        self._log.debug("subnet_pool.release", subnet=str(subnet))

    def quarantine(self, subnet: IPNetwork) -> None:
        """Retire a subnet for the rest of the run.

        Used when its network could not be destroyed: the runtime may still
        hold it, so handing it out again would collide.
        """
        with self._lock:
            try:
                self._allocated.remove(subnet)
            except ValueError:
                raise NotAllocatedError(
                    f"Subnet {subnet} is not allocated from {self._supernet}",
                    details={"subnet": str(subnet)},
                ) from None
            self._quarantined.append(subnet)
        self._log.warning("subnet_pool.quarantine", subnet=str(subnet))
