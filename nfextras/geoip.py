"""Match packets on the country their source or destination address is in.

Each country is a sorted list of non-overlapping address ranges.  The
ranges of one country and address family are loaded once and shared by
every rule that names the country; a reference count keeps them alive
while any rule uses them.
"""

from __future__ import annotations

import enum
import ipaddress
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Sequence, Union

__all__ = [
    "XT_GEOIP_MAX",
    "MatchFlag",
    "Family",
    "range_search",
    "country_code",
    "CountryNode",
    "CountryRegistry",
    "GeoipMatch",
]

#: The most countries a single rule may name.
XT_GEOIP_MAX = 31

Address = Union[int, str, bytes, ipaddress.IPv4Address, ipaddress.IPv6Address]
RangeLoader = Callable[[], Iterable[tuple[Address, Address]]]


class MatchFlag(enum.IntFlag):
    """Which address to test, and whether to negate the result."""

    SRC = 1 << 0
    DST = 1 << 1
    INV = 1 << 2


class Family(enum.Enum):
    """Address family of a country's ranges."""

    IPV6 = 6
    IPV4 = 4


_ADDRESS_BITS = {Family.IPV4: 32, Family.IPV6: 128}


def _to_int(family: Family, value: Address) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        if not 0 <= value < 1 << _ADDRESS_BITS[family]:
            raise ValueError(f"address {value} out of range for {family.name}")
        return value
    address = ipaddress.ip_address(value)
    if address.version != family.value:
        raise ValueError(f"{address} is not an {family.name} address")
    return int(address)


def range_search(ranges: Sequence[tuple[int, int]], addr: int) -> bool:
    """Return True when ``addr`` lies in one of the sorted ``ranges``."""
    lo, hi = 0, len(ranges)
    while lo < hi:
        mid = (lo + hi) // 2
        begin, end = ranges[mid]
        if begin <= addr <= end:
            return True
        if begin > addr:
            hi = mid
        else:
            lo = mid + 1
    return False


def country_code(cc: int) -> str:
    """Return the two letters packed into the 16-bit country value ``cc``."""
    if not 0 <= cc <= 0xFFFF:
        raise ValueError("a country value is 16 bits wide")
    return chr(cc >> 8) + chr(cc & 0xFF)


def _cc_value(cc: Union[int, str]) -> int:
    if isinstance(cc, str):
        if len(cc) != 2 or any(ord(ch) > 0xFF for ch in cc):
            raise ValueError(f"bad country code {cc!r}")
        return (ord(cc[0]) << 8) | ord(cc[1])
    if not 0 <= cc <= 0xFFFF:
        raise ValueError("a country value is 16 bits wide")
    return cc


def _normalise_ranges(family: Family,
                      ranges: Iterable[tuple[Address, Address]]
                      ) -> tuple[tuple[int, int], ...]:
    result = tuple((_to_int(family, begin), _to_int(family, end))
                   for begin, end in ranges)
    previous_end = -1
    for begin, end in result:
        if begin > end:
            raise ValueError("a range must not end before it begins")
        if begin <= previous_end:
            raise ValueError("ranges must be sorted and must not overlap")
        previous_end = end
    return result


@dataclass(eq=False)
class CountryNode:
    """The loaded ranges of one country in one address family."""

    family: Family
    cc: int
    subnets: tuple[tuple[int, int], ...]
    refs: int = field(default=1, repr=False)

    @property
    def code(self) -> str:
        """The country's two letters."""
        return country_code(self.cc)

    def __contains__(self, addr: int) -> bool:
        return range_search(self.subnets, addr)


class CountryRegistry:
    """Shared, reference-counted country ranges, per address family."""

    def __init__(self) -> None:
        self._nodes: dict[Family, list[CountryNode]] = {f: [] for f in Family}
        self._lock = threading.RLock()

    def acquire(self, family: Family, cc: Union[int, str],
                loader: RangeLoader) -> CountryNode:
        """Return the country's node, loading its ranges on first use.

        ``loader`` is called only when the country is not loaded yet; it
        returns the sorted (begin, end) ranges.
        """
        family = Family(family)
        value = _cc_value(cc)
        with self._lock:
            for node in self._nodes[family]:
                if node.cc == value:
                    node.refs += 1
                    return node
            node = CountryNode(family, value,
                               _normalise_ranges(family, loader()))
            self._nodes[family].append(node)
            return node

    def release(self, node: CountryNode) -> None:
        """Drop one reference; the node is forgotten when none is left."""
        with self._lock:
            nodes = self._nodes[node.family]
            if not any(n is node for n in nodes):
                raise ValueError("node is not registered")
            node.refs -= 1
            if node.refs == 0:
                nodes[:] = [n for n in nodes if n is not node]

    def __len__(self) -> int:
        with self._lock:
            return sum(len(nodes) for nodes in self._nodes.values())


class GeoipMatch:
    """Match on whether an address belongs to any of the given countries."""

    def __init__(
        self,
        registry: CountryRegistry,
        family: Family,
        flags: int,
        countries: Union[Mapping[Union[int, str], RangeLoader],
                         Iterable[tuple[Union[int, str], RangeLoader]]],
    ) -> None:
        if isinstance(countries, Mapping):
            entries = list(countries.items())
        else:
            entries = list(countries)
        if len(entries) > XT_GEOIP_MAX:
            raise ValueError(f"at most {XT_GEOIP_MAX} countries per rule")
        self.registry = registry
        self.family = Family(family)
        self.flags = MatchFlag(flags)
        nodes: list[CountryNode] = []
        try:
            for cc, loader in entries:
                nodes.append(registry.acquire(self.family, cc, loader))
        except BaseException:
            for node in nodes:
                registry.release(node)
            raise
        self._nodes: tuple[CountryNode, ...] | None = tuple(nodes)

    @property
    def countries(self) -> tuple[str, ...]:
        """The codes of the countries this rule names."""
        return tuple(node.code for node in self._nodes or ())

    def match(self, source: Address, destination: Address) -> bool:
        """Test the packet's source or destination address."""
        if self._nodes is None:
            raise RuntimeError("match has been destroyed")
        chosen = source if self.flags & MatchFlag.SRC else destination
        addr = _to_int(self.family, chosen)
        hit = any(range_search(node.subnets, addr) for node in self._nodes)
        return hit != bool(self.flags & MatchFlag.INV)

    def destroy(self) -> None:
        """Release the countries; calling it again does nothing."""
        if self._nodes is None:
            return
        nodes, self._nodes = self._nodes, None
        for node in nodes:
            self.registry.release(node)