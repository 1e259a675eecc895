"""Match IPv4 packets on the options present in their header."""

from __future__ import annotations

import enum

__all__ = [
    "OptionsMode",
    "parse_options",
    "Ipv4OptionsMatch",
]

_IPOPT_END = 0
_IPOPT_NOOP = 1
_IPV4_HEADER_LEN = 20
_M32 = 0xFFFFFFFF


class OptionsMode(enum.IntFlag):
    """ALL: every option in the map must be present; ANY: one suffices."""

    ALL = 1 << 0
    ANY = 1 << 1


def parse_options(data: bytes) -> int:
    """Return a bitmap with bit ``n`` set for each option number ``n`` found.

    Parsing stops at an end-of-list option or a malformed length.
    """
    data = bytes(data)
    opts = 0
    pos = 0
    while len(data) - pos >= 2:
        kind = data[pos]
        if kind == _IPOPT_END:
            return opts
        if kind == _IPOPT_NOOP:
            pos += 1
            continue
        length = data[pos + 1]
        if length < 2 or length > len(data) - pos:
            return opts
        opts |= 1 << (kind & 0x1F)
        pos += length
    return opts


class Ipv4OptionsMatch:
    """Match on the options of an IPv4 header."""

    def __init__(self, option_map: int, invert: int = 0,
                 mode: OptionsMode = OptionsMode.ALL) -> None:
        self.option_map = option_map & _M32
        self.invert = invert & _M32
        self.mode = OptionsMode(mode)

    def match(self, header: bytes) -> bool:
        """Test an IPv4 header (trailing payload is ignored).

        Raises ValueError when the bytes do not hold an IPv4 header.
        """
        header = bytes(header)
        if len(header) < _IPV4_HEADER_LEN or header[0] >> 4 != 4:
            raise ValueError("not an IPv4 header")
        ihl = (header[0] & 0x0F) * 4
        if ihl < _IPV4_HEADER_LEN or len(header) < ihl:
            raise ValueError("bad IPv4 header length")
        opts = parse_options(header[_IPV4_HEADER_LEN:ihl])
        opts = (opts ^ self.invert) & self.option_map
        if self.mode & OptionsMode.ANY:
            return opts != 0
        return opts == self.option_map