"""Build the replies a TCP tarpit sends, for IPv4 and IPv6 packets.

The tarpit lets incoming connections complete, then shrinks the window to
zero so that the peer is stuck in the persist state.  It ignores any attempt
to close the connection.  Two other modes are offered: a "honeypot" that
keeps scanners talking with plausible but odd replies, and a plain reset.

All functions work on raw packet bytes and return the reply packet, or
``None`` when no reply is sent.  The original packet is always meant to be
dropped.
"""

from __future__ import annotations

import enum
import ipaddress
import random
import struct
from dataclasses import dataclass, replace
from typing import Optional

__all__ = [
    "TarpitMode",
    "TcpHeader",
    "internet_checksum",
    "build_reply",
    "tarpit_ipv4",
    "tarpit_ipv6",
]


class TarpitMode(enum.IntEnum):
    """How the reply is shaped."""

    TARPIT = 0
    HONEYPOT = 1
    RESET = 2


IPPROTO_TCP = 6
TCP_HEADER_LEN = 20
IPV4_HEADER_LEN = 20
IPV6_HEADER_LEN = 40

_M16 = 0xFFFF
_M32 = 0xFFFFFFFF
_IP_DF = 0x4000
_IP_OFFSET = 0x1FFF
_HONEYPOT_TTL = 128
_TARPIT_WINDOW = 5
# 0xdeadbeef stored into a big-endian field from a little-endian host, read
# back in host byte order.
_HONEYPOT_PROBE = 0xEFBEADDE
_LIMITED_BROADCAST = ipaddress.IPv4Address("255.255.255.255")
# Next-header values that are IPv6 extension headers (or "no next header").
_IPV6_EXTENSION_HEADERS = frozenset({0, 43, 44, 51, 59, 60})

_TCP_STRUCT = struct.Struct("!HHIIBBHHH")
_IPV4_STRUCT = struct.Struct("!BBHHHBBH4s4s")
_IPV6_STRUCT = struct.Struct("!IHBB16s16s")

_FLAGS = (
    ("fin", 0x01),
    ("syn", 0x02),
    ("rst", 0x04),
    ("psh", 0x08),
    ("ack", 0x10),
    ("urg", 0x20),
    ("ece", 0x40),
    ("cwr", 0x80),
)


@dataclass
class TcpHeader:
    """A 20-byte TCP header with host-order fields; options are not kept."""

    source: int = 0
    dest: int = 0
    seq: int = 0
    ack_seq: int = 0
    doff: int = 5
    reserved: int = 0
    fin: bool = False
    syn: bool = False
    rst: bool = False
    psh: bool = False
    ack: bool = False
    urg: bool = False
    ece: bool = False
    cwr: bool = False
    window: int = 0
    check: int = 0
    urg_ptr: int = 0

    @classmethod
    def from_bytes(cls, data: bytes) -> "TcpHeader":
        """Parse the first 20 bytes of ``data``."""
        if len(data) < TCP_HEADER_LEN:
            raise ValueError("truncated TCP header")
        (source, dest, seq, ack_seq, offset, flags,
         window, check, urg_ptr) = _TCP_STRUCT.unpack_from(data)
        return cls(
            source=source,
            dest=dest,
            seq=seq,
            ack_seq=ack_seq,
            doff=offset >> 4,
            reserved=offset & 0x0F,
            window=window,
            check=check,
            urg_ptr=urg_ptr,
            **{name: bool(flags & bit) for name, bit in _FLAGS},
        )

    @property
    def flags(self) -> int:
        """The flag byte as it appears on the wire."""
        return sum(bit for name, bit in _FLAGS if getattr(self, name))

    def to_bytes(self) -> bytes:
        """Serialise the 20-byte header."""
        return _TCP_STRUCT.pack(
            self.source,
            self.dest,
            self.seq & _M32,
            self.ack_seq & _M32,
            ((self.doff & 0x0F) << 4) | (self.reserved & 0x0F),
            self.flags,
            self.window & _M16,
            self.check & _M16,
            self.urg_ptr & _M16,
        )


def internet_checksum(data: bytes) -> int:
    """Return the 16-bit one's complement checksum of ``data``."""
    data = bytes(data)
    if len(data) % 2:
        data += b"\x00"
    total = sum(word for (word,) in struct.iter_unpack("!H", data))
    while total >> 16:
        total = (total & _M16) + (total >> 16)
    return ~total & _M16


def _swap16(value: int) -> int:
    return int.from_bytes((value & _M16).to_bytes(2, "big"), "little")


def _swap32(value: int) -> int:
    return int.from_bytes((value & _M32).to_bytes(4, "big"), "little")


def _skeleton(original: TcpHeader) -> TcpHeader:
    """Ports swapped, no options, no urgent pointer, all flags cleared."""
    return replace(
        original,
        source=original.dest,
        dest=original.source,
        doff=TCP_HEADER_LEN // 4,
        urg_ptr=0,
        **{name: False for name, _ in _FLAGS},
    )


def _tarpit(reply: TcpHeader, oth: TcpHeader) -> bool:
    # No replies for RST, FIN or !SYN,!ACK
    if oth.rst or oth.fin or (not oth.syn and not oth.ack):
        return False
    reply.seq = oth.ack_seq if oth.ack else 0
    # Our SYN-ACKs must have a >0 window
    reply.window = _TARPIT_WINDOW if (oth.syn and not oth.ack) else 0
    if oth.syn and oth.ack:
        reply.rst = True
        reply.ack_seq = 0
    else:
        reply.syn = oth.syn
        reply.ack = True
        reply.ack_seq = (oth.seq + int(oth.syn)) & _M32
    return True


def _random_window(window: int, rng) -> int:
    # The mask is applied to the big-endian field as a little-endian host
    # sees it.
    mask = (rng.randrange(0x20) - 0xF) & _M16
    return window & _swap16(mask)


def _honeypot(reply: TcpHeader, oth: TcpHeader, payload_len: int, rng) -> bool:
    if oth.rst or oth.seq == _HONEYPOT_PROBE:
        return False
    # Send a reset to scanners.
    if oth.syn and oth.ack:
        reply.window = 0
        reply.ack = False
        reply.psh = True
        reply.ack_seq = _HONEYPOT_PROBE
        reply.seq = oth.ack_seq
        reply.rst = True
    # SYN > SYN-ACK
    if oth.syn and not oth.ack:
        reply.syn = True
        reply.ack = True
        reply.window = _random_window(oth.window, rng)
        ceiling = (-_swap32(oth.seq)) & _M32
        reply.seq = rng.randrange(ceiling) if ceiling else 0
        reply.ack_seq = (oth.seq + 1) & _M32
    # ACK > ACK
    if oth.ack and not (oth.fin or oth.syn):
        reply.syn = False
        reply.ack = True
        reply.window = _random_window(oth.window, rng)
        reply.ack_seq = (
            (oth.seq + payload_len) & _M32 if payload_len > 100 else oth.seq
        )
        reply.seq = oth.ack_seq
    # FIN > RST: there is no graceful way out.
    if oth.fin:
        reply.window = 0
        reply.seq = oth.ack_seq
        reply.ack_seq = oth.ack_seq
        reply.fin = False
        reply.ack = False
        reply.rst = True
    return True


def _reset(reply: TcpHeader, oth: TcpHeader) -> None:
    reply.window = 0
    reply.ack = False
    reply.syn = False
    reply.rst = True
    reply.seq = oth.ack_seq
    reply.ack_seq = oth.seq


def build_reply(
    original: TcpHeader,
    payload_len: int,
    mode: TarpitMode,
    rng: Optional[random.Random] = None,
) -> Optional[TcpHeader]:
    """Return the TCP header answering ``original``, or None for no reply.

    ``payload_len`` is the number of data bytes the original segment carried.
    The returned header's checksum is the one copied from ``original``.
    """
    mode = TarpitMode(mode)
    rng = rng if rng is not None else random.Random()
    payload_len &= _M16
    reply = _skeleton(original)
    if mode is TarpitMode.TARPIT:
        if not _tarpit(reply, original):
            return None
    elif mode is TarpitMode.HONEYPOT:
        if not _honeypot(reply, original, payload_len, rng):
            return None
    else:
        _reset(reply, original)
    return reply


def _tcp4_checksum(src: bytes, dst: bytes, segment: bytes) -> int:
    pseudo = src + dst + bytes((0, IPPROTO_TCP)) + len(segment).to_bytes(2, "big")
    return internet_checksum(pseudo + segment)


def _tcp6_checksum(src: bytes, dst: bytes, segment: bytes) -> int:
    pseudo = (src + dst + len(segment).to_bytes(4, "big")
              + b"\x00\x00\x00" + bytes((IPPROTO_TCP,)))
    return internet_checksum(pseudo + segment)


def tarpit_ipv4(
    packet: bytes,
    mode: TarpitMode = TarpitMode.TARPIT,
    ttl: int = 64,
    rng: Optional[random.Random] = None,
) -> Optional[bytes]:
    """Return the IPv4 reply to ``packet``, or None when none is sent.

    ``ttl`` is the hop limit of the route back; the honeypot always uses 128.
    Raises ValueError when ``packet`` is not an IPv4 packet.
    """
    mode = TarpitMode(mode)
    if len(packet) < IPV4_HEADER_LEN or packet[0] >> 4 != 4:
        raise ValueError("not an IPv4 packet")
    ihl = (packet[0] & 0x0F) * 4
    total_len = int.from_bytes(packet[2:4], "big")
    if total_len < IPV4_HEADER_LEN or total_len > len(packet):
        raise ValueError("bad IPv4 total length")
    packet = bytes(packet[:total_len])

    # No IP options, no fragments, no multicast or broadcast.
    if ihl != IPV4_HEADER_LEN:
        return None
    old_id = int.from_bytes(packet[4:6], "big")
    if int.from_bytes(packet[6:8], "big") & _IP_OFFSET:
        return None
    if packet[9] != IPPROTO_TCP:
        return None
    destination = ipaddress.IPv4Address(packet[16:20])
    if destination.is_multicast or destination == _LIMITED_BROADCAST:
        return None
    if len(packet) < IPV4_HEADER_LEN + TCP_HEADER_LEN:
        return None

    src, dst = packet[12:16], packet[16:20]
    segment = packet[IPV4_HEADER_LEN:]
    if _tcp4_checksum(src, dst, segment) != 0:
        return None

    original = TcpHeader.from_bytes(segment)
    reply = build_reply(original, len(segment) - TCP_HEADER_LEN, mode, rng)
    if reply is None:
        return None
    reply.check = 0
    reply.check = _tcp4_checksum(dst, src, reply.to_bytes())

    if mode is TarpitMode.HONEYPOT:
        ident = _swap16((-_swap16(old_id)) & _M16)
        ttl_out = _HONEYPOT_TTL
    else:
        ident = 0
        ttl_out = ttl
    header = _IPV4_STRUCT.pack(
        packet[0], packet[1], IPV4_HEADER_LEN + TCP_HEADER_LEN, ident,
        _IP_DF, ttl_out, IPPROTO_TCP, 0, dst, src,
    )
    check = internet_checksum(header)
    header = header[:10] + check.to_bytes(2, "big") + header[12:]
    return header + reply.to_bytes()


def tarpit_ipv6(
    packet: bytes,
    mode: TarpitMode = TarpitMode.TARPIT,
    hop_limit: int = 64,
    rng: Optional[random.Random] = None,
) -> Optional[bytes]:
    """Return the IPv6 reply to ``packet``, or None when none is sent.

    The verdict is taken by running the mode's rules on the reply skeleton
    (ports swapped, flags cleared, sequence numbers and window carried over,
    no payload), and that skeleton is what is sent.  ``hop_limit`` is the
    route's hop limit; the honeypot always uses 128.
    Raises ValueError when ``packet`` is not an IPv6 packet.
    """
    mode = TarpitMode(mode)
    if len(packet) < IPV6_HEADER_LEN or packet[0] >> 4 != 6:
        raise ValueError("not an IPv6 packet")
    payload_len = int.from_bytes(packet[4:6], "big")
    if payload_len:
        if IPV6_HEADER_LEN + payload_len > len(packet):
            raise ValueError("bad IPv6 payload length")
        packet = bytes(packet[:IPV6_HEADER_LEN + payload_len])

    nexthdr = packet[6]
    if nexthdr in _IPV6_EXTENSION_HEADERS:
        return None
    src, dst = packet[8:24], packet[24:40]
    for address in (ipaddress.IPv6Address(src), ipaddress.IPv6Address(dst)):
        if address.is_multicast or address.is_unspecified:
            return None
    segment = packet[IPV6_HEADER_LEN:]
    if nexthdr != IPPROTO_TCP or len(segment) < TCP_HEADER_LEN:
        return None
    if _tcp6_checksum(src, dst, segment) != 0:
        return None

    skeleton = _skeleton(TcpHeader.from_bytes(segment))
    if build_reply(skeleton, 0, mode, rng) is None:
        return None
    skeleton.check = 0
    skeleton.check = _tcp6_checksum(dst, src, skeleton.to_bytes())

    hops = _HONEYPOT_TTL if mode is TarpitMode.HONEYPOT else hop_limit
    header = _IPV6_STRUCT.pack(
        0x60000000, TCP_HEADER_LEN, IPPROTO_TCP, hops, dst, src,
    )
    return header + skeleton.to_bytes()