"""Match packets on their length at layer 3, 4, 5 or 7."""

from __future__ import annotations

import enum
from typing import Optional

__all__ = [
    "LengthFlag",
    "layer5_length",
    "layer7_length",
    "Length2Match",
]

_M32 = 0xFFFFFFFF

IPPROTO_ICMP = 1
IPPROTO_IPIP = 4
IPPROTO_TCP = 6
IPPROTO_UDP = 17
IPPROTO_DCCP = 33
IPPROTO_IPV6 = 41
IPPROTO_ESP = 50
IPPROTO_AH = 51
IPPROTO_ICMPV6 = 58
IPPROTO_SCTP = 132
IPPROTO_UDPLITE = 136

_FIXED_HEADER = {
    IPPROTO_UDP: 8,
    IPPROTO_UDPLITE: 8,
    IPPROTO_SCTP: 12,
    IPPROTO_ICMP: 8,
    IPPROTO_ICMPV6: 4,
    IPPROTO_AH: 12,
    IPPROTO_ESP: 8,
}
_TCP_HEADER_LEN = 20
_DCCP_HEADER_LEN = 12
_SCTP_COMMON_HEADER = 12
_SCTP_CHUNK_HEADER = 4
_SCTP_DATA = 0

_IPV4_HEADER_LEN = 20
_IPV6_HEADER_LEN = 40
_IPV6_EXT = frozenset({0, 43, 44, 51, 59, 60})
_IPV6_FRAGMENT = 44
_IPV6_AH = 51
_IPV6_NONE = 59

# Encapsulations first, so that TCP inside IPv6-in-IPv6 is not taken.
_L4_SEARCH_ORDER = (
    IPPROTO_IPV6, IPPROTO_IPIP, IPPROTO_ESP, IPPROTO_AH, IPPROTO_ICMP,
    IPPROTO_TCP, IPPROTO_UDP, IPPROTO_UDPLITE, IPPROTO_SCTP, IPPROTO_DCCP,
)


class LengthFlag(enum.IntFlag):
    """Which length to measure, and whether to negate the result."""

    INVERT = 1 << 0
    LAYER3 = 1 << 1  # IP header plus payload
    LAYER4 = 1 << 2  # without the IP header
    LAYER5 = 1 << 3  # without the transport header
    LAYER7 = 1 << 4  # transport payload (SCTP: DATA chunks)


def _u16be(data: bytes, offset: int) -> int:
    return int.from_bytes(data[offset:offset + 2], "big")


def layer5_length(packet: bytes, proto: int, offset: int) -> Optional[int]:
    """Length after the transport header starting at ``offset``.

    Returns None for an unknown protocol or a truncated header.
    """
    remaining = (len(packet) - offset) & _M32
    if proto == IPPROTO_TCP:
        if len(packet) < offset + _TCP_HEADER_LEN:
            return None
        header_len = 4 * (packet[offset + 12] >> 4)
        return remaining - header_len if remaining >= header_len else remaining
    if proto == IPPROTO_DCCP:
        if len(packet) < offset + _DCCP_HEADER_LEN:
            return None
        header_len = 4 * packet[offset + 4]
        return remaining - header_len if remaining >= header_len else remaining
    fixed = _FIXED_HEADER.get(proto)
    if fixed is None:
        return None
    return (remaining - fixed) & _M32


def layer7_length(packet: bytes, proto: int, offset: int) -> Optional[int]:
    """Payload length; for SCTP the summed length of its DATA chunks.

    Returns None when the length cannot be worked out.
    """
    if proto != IPPROTO_SCTP:
        return layer5_length(packet, proto, offset)
    total = 0
    pos = _SCTP_COMMON_HEADER
    while pos < len(packet):
        start = offset + pos
        if len(packet) < start + _SCTP_CHUNK_HEADER:
            return None
        chunk_len = _u16be(packet, start + 2)
        if chunk_len == 0:
            # Such a chunk would never let the walk advance.
            return None
        if packet[start] == _SCTP_DATA:
            total = (total + chunk_len) & _M32
        pos += chunk_len
    return total


def _find_ipv6_header(packet: bytes, target: int) -> Optional[int]:
    """Offset of the header of type ``target``, or None when absent."""
    nexthdr = packet[6]
    offset = _IPV6_HEADER_LEN
    while nexthdr != target:
        if nexthdr not in _IPV6_EXT or nexthdr == _IPV6_NONE:
            return None
        if len(packet) < offset + 2:
            raise ValueError("truncated IPv6 extension header")
        if nexthdr == _IPV6_FRAGMENT:
            if len(packet) < offset + 4:
                raise ValueError("truncated IPv6 fragment header")
            if _u16be(packet, offset + 2) & 0xFFF8:
                return None
            header_len = 8
        elif nexthdr == _IPV6_AH:
            header_len = (packet[offset + 1] + 2) * 4
        else:
            header_len = (packet[offset + 1] + 1) * 8
        nexthdr = packet[offset]
        offset += header_len
    return offset


class Length2Match:
    """Match on whether a length lies in ``[minimum, maximum]``."""

    def __init__(self, minimum: int, maximum: int, flags: int) -> None:
        self.minimum = minimum
        self.maximum = maximum
        self.flags = LengthFlag(flags)

    def _verdict(self, length: Optional[int]) -> bool:
        if length is None:
            return False
        inside = self.minimum <= length <= self.maximum
        return inside != bool(self.flags & LengthFlag.INVERT)

    def _measure(self, packet: bytes, proto: int, offset: int,
                 layer4: int) -> Optional[int]:
        flags = self.flags
        if flags & LengthFlag.LAYER4:
            return layer4
        if flags & LengthFlag.LAYER5:
            return layer5_length(packet, proto, offset)
        if flags & LengthFlag.LAYER7:
            return layer7_length(packet, proto, offset)
        return 0

    def match_ipv4(self, packet: bytes) -> bool:
        """Match an IPv4 packet.

        Raises ValueError when the bytes do not hold an IPv4 header.
        """
        packet = bytes(packet)
        if len(packet) < _IPV4_HEADER_LEN or packet[0] >> 4 != 4:
            raise ValueError("not an IPv4 packet")
        thoff = (packet[0] & 0x0F) * 4
        if thoff < _IPV4_HEADER_LEN or len(packet) < thoff:
            raise ValueError("bad IPv4 header length")
        total_len = _u16be(packet, 2)
        if self.flags & LengthFlag.LAYER3:
            return self._verdict(total_len)
        return self._verdict(self._measure(
            packet, packet[9], thoff, (total_len - thoff) & _M32))

    def match_ipv6(self, packet: bytes) -> bool:
        """Match an IPv6 packet.

        Raises ValueError when the bytes do not hold an IPv6 header or an
        extension header is cut short.
        """
        packet = bytes(packet)
        if len(packet) < _IPV6_HEADER_LEN or packet[0] >> 4 != 6:
            raise ValueError("not an IPv6 packet")
        if self.flags & LengthFlag.LAYER3:
            payload_len = _u16be(packet, 4)
            if payload_len == 0:
                return self._verdict(len(packet))  # jumbogram
            return self._verdict(_IPV6_HEADER_LEN + payload_len)
        for proto in _L4_SEARCH_ORDER:
            thoff = _find_ipv6_header(packet, proto)
            if thoff is not None:
                break
        else:
            return False
        return self._verdict(self._measure(
            packet, proto, thoff, (len(packet) - thoff) & _M32))