#!/usr/bin/env python3
"""Private IP allocator for the servers' private network."""

import ipaddress
import threading
from typing import Iterable, List, Optional

from .errors import IPPoolExhausted

DEFAULT_POOL_START = "10.1.0.2"
DEFAULT_POOL_END = "10.1.0.127"


class PrivateIPAllocator:
    """Hands out unique private addresses from a closed range, lowest first.

    The in-use set is guarded by a lock so concurrent resource creations never
    receive the same address. Allocation is deterministic: ``acquire`` always
    returns the lowest free address in the range.
    """

    def __init__(self, pool_start: str = DEFAULT_POOL_START, pool_end: str = DEFAULT_POOL_END, printer=None) -> None:
        start = ipaddress.IPv4Address(pool_start)
        end = ipaddress.IPv4Address(pool_end)
        if end < start:
            raise ValueError(f"Invalid address pool {pool_start}-{pool_end}")
        if ipaddress.ip_network(f"{start}/24", strict=False) != ipaddress.ip_network(f"{end}/24", strict=False):
            raise ValueError(f"Address pool {pool_start}-{pool_end} must stay within a single /24 subnet")
        self.pool_start = start
        self.pool_end = end
        self.printer = printer
        self._in_use = set()
        self._lock = threading.Lock()

    @property
    def size(self) -> int:
        return int(self.pool_end) - int(self.pool_start) + 1

    def __repr__(self):
        return f"<PrivateIPAllocator {self.pool_start}-{self.pool_end} in_use={len(self._in_use)}>"

    def _parse_in_range(self, address) -> Optional[ipaddress.IPv4Address]:
        try:
            parsed = ipaddress.IPv4Address(address)
        except ValueError:
            return None
        if self.pool_start <= parsed <= self.pool_end:
            return parsed
        return None

    def contains(self, address: str) -> bool:
        return self._parse_in_range(address) is not None

    def seed(self, addresses: Iterable[str]) -> int:
        """Mark previously persisted addresses as in use.

        Addresses outside the pool (or unparsable ones) are ignored.

        Returns:
            Number of addresses that were added to the in-use set
        """
        added = 0
        with self._lock:
            for address in addresses:
                parsed = self._parse_in_range(address)
                if parsed is not None and parsed not in self._in_use:
                    self._in_use.add(parsed)
                    added += 1
        if self.printer:
            self.printer.print_info(f"Seeded private IP pool with {added} address(es) already in use")
        return added

    def acquire(self) -> str:
        """Reserve and return the lowest free address.

        Raises:
            IPPoolExhausted: If every address in the range is in use
        """
        with self._lock:
            for value in range(int(self.pool_start), int(self.pool_end) + 1):
                candidate = ipaddress.IPv4Address(value)
                if candidate not in self._in_use:
                    self._in_use.add(candidate)
                    return str(candidate)
        raise IPPoolExhausted(
            "IP assignment failed",
            f"no available IP addresses in range {self.pool_start}-{self.pool_end}",
        )

    def release(self, address: str) -> None:
        """Return an address to the pool. Releasing an address not held is a no-op."""
        parsed = self._parse_in_range(address)
        if parsed is None:
            return
        with self._lock:
            self._in_use.discard(parsed)

    def in_use(self) -> List[str]:
        with self._lock:
            return [str(address) for address in sorted(self._in_use)]
