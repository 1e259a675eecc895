"""Detect low-level TCP scans such as those made by nmap.

Connections are followed through a small state machine kept in the
connection mark.  The machine tells apart SYN scans, connect scans and
banner-grab scans from real connections.  Packets that belong to no known
connection are checked for stealth scans: NULL, XMAS, FIN and odd flag
combinations.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional

__all__ = [
    "FL1_STEALTH",
    "FL1_MIRAI",
    "FL2_SYN",
    "FL3_CN",
    "FL4_GR",
    "LscanMarks",
    "TcpFlag",
    "Conntrack",
    "LscanPacket",
    "stealth_match",
    "classify_full",
    "LscanMatch",
]

log = logging.getLogger(__name__)

FL1_STEALTH = 1 << 0
FL1_MIRAI = 1 << 1
FL2_SYN = 1 << 0
FL3_CN = 1 << 0
FL4_GR = 1 << 0

_M32 = 0xFFFFFFFF


class TcpFlag(enum.IntFlag):
    """TCP header flag bits."""

    FIN = 0x01
    SYN = 0x02
    RST = 0x04
    PSH = 0x08
    ACK = 0x10
    URG = 0x20


_ALL3 = TcpFlag.FIN | TcpFlag.RST | TcpFlag.SYN
_ALL4 = _ALL3 | TcpFlag.ACK
_ALL6 = _ALL4 | TcpFlag.PSH | TcpFlag.URG


@dataclass(frozen=True)
class LscanMarks:
    """Mark values and masks that encode the connection states."""

    connmark_mask: int = _M32
    packet_mask: int = _M32
    mark_seen: int = 0x9
    mark_synrcv: int = 0x1
    mark_closed: int = 0x2
    mark_synscan: int = 0x3
    mark_estab1: int = 0x4
    mark_estab2: int = 0x5
    mark_cnscan: int = 0x6
    mark_grscan: int = 0x7
    mark_valid: int = 0x8


@dataclass
class Conntrack:
    """The tracked connection a packet belongs to."""

    mark: int = 0
    new: bool = False


@dataclass
class LscanPacket:
    """What the match looks at in a TCP packet.

    ``daddr`` is the IPv4 destination address as an integer, or None for
    IPv6; ``conntrack`` is None when the packet belongs to no connection.
    ``nfmark`` and ``conntrack.mark`` are updated by the match.
    """

    tcp_flags: int
    payload_len: int = 0
    seq: int = 0
    daddr: Optional[int] = None
    loopback: bool = False
    nfmark: int = 0
    conntrack: Optional[Conntrack] = None


def _ack4(flags: int) -> bool:
    return flags & _ALL4 == TcpFlag.ACK


def _ack6(flags: int) -> bool:
    return flags & _ALL6 == TcpFlag.ACK


def _fin(flags: int) -> bool:
    return flags & _ALL3 == TcpFlag.FIN


def _rst(flags: int) -> bool:
    return flags & _ALL3 == TcpFlag.RST


def _rstack(flags: int) -> bool:
    return flags & _ALL4 == TcpFlag.ACK | TcpFlag.RST


def _syn(flags: int) -> bool:
    return flags & _ALL4 == TcpFlag.SYN


def _synack(flags: int) -> bool:
    return flags & _ALL4 == TcpFlag.SYN | TcpFlag.ACK


def stealth_match(tcp_flags: int) -> bool:
    """Return True for a stray non-SYN packet that looks like a scan probe."""
    # "Connection refused" replies to our own probes must not match.
    if _rstack(tcp_flags):
        return False
    if _rst(tcp_flags):
        log.warning("Warning: Pure RST received")
        return False
    return not _syn(tcp_flags)


def classify_full(mark: int, new_connection: bool, loopback: bool,
                  tcp_flags: int, payload_len: int,
                  marks: LscanMarks = LscanMarks()) -> int:
    """Return the connection mark that follows ``mark`` for this packet."""
    if mark == marks.mark_estab2:
        if _ack4(tcp_flags) and payload_len == 0:
            return mark
        if _rst(tcp_flags) or _fin(tcp_flags):
            return marks.mark_grscan
        return marks.mark_valid
    if mark == marks.mark_estab1:
        if _rst(tcp_flags) or _fin(tcp_flags):
            return marks.mark_cnscan
        if not loopback and _ack4(tcp_flags) and payload_len == 0:
            return marks.mark_estab2
        return marks.mark_valid
    if mark == marks.mark_synrcv:
        if loopback and _synack(tcp_flags):
            return mark
        if loopback and _rstack(tcp_flags):
            return marks.mark_closed
        if _ack6(tcp_flags):
            return marks.mark_estab1
        return marks.mark_synscan
    if new_connection and _syn(tcp_flags):
        return marks.mark_synrcv
    return mark


class LscanMatch:
    """Match TCP packets of the selected scan types."""

    def __init__(self, fl1: int = 0, fl2: int = 0, fl3: int = 0, fl4: int = 0,
                 marks: Optional[LscanMarks] = None) -> None:
        if (fl1 & ~(FL1_STEALTH | FL1_MIRAI) or fl2 & ~FL2_SYN
                or fl3 & ~FL3_CN or fl4 & ~FL4_GR):
            raise ValueError("invalid flags")
        self.fl1 = fl1
        self.fl2 = fl2
        self.fl3 = fl3
        self.fl4 = fl4
        self.marks = marks if marks is not None else LscanMarks()

    def match(self, packet: LscanPacket) -> bool:
        """Run the packet through the state machine; return the verdict."""
        marks = self.marks
        if (self.fl1 & FL1_MIRAI and packet.daddr is not None
                and packet.daddr == packet.seq):
            return True

        ct = packet.conntrack
        if ct is None:
            if self.fl1 & FL1_STEALTH:
                return stealth_match(packet.tcp_flags)
            return False

        # Do not run the simulated rules twice over the same packet.
        if ((ct.mark & marks.connmark_mask) == marks.mark_valid
                or (packet.nfmark & marks.packet_mask) != marks.mark_seen):
            state = classify_full(
                ct.mark & marks.connmark_mask, ct.new, packet.loopback,
                packet.tcp_flags, packet.payload_len, marks)
            ct.mark = ((ct.mark & ~marks.connmark_mask) | state) & _M32
            packet.nfmark = (
                (packet.nfmark & ~marks.packet_mask) ^ marks.mark_seen) & _M32

        return bool(
            (self.fl1 & FL1_STEALTH and ct.mark == marks.mark_synscan)
            or (self.fl3 & FL3_CN and ct.mark == marks.mark_cnscan)
            or (self.fl4 & FL4_GR and ct.mark == marks.mark_grscan)
        )