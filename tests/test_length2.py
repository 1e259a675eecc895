import pytest

from nfextras.length2 import (
    Length2Match,
    LengthFlag,
    layer5_length,
    layer7_length,
)


def ipv4(proto, transport):
    total = 20 + len(transport)
    header = (bytes([0x45, 0]) + total.to_bytes(2, "big") + bytes(4)
              + bytes([64, proto]) + bytes(2) + bytes([10, 0, 0, 1, 10, 0, 0, 2]))
    return header + transport


def ipv6(nexthdr, payload, payload_len=None):
    plen = len(payload) if payload_len is None else payload_len
    return (bytes([0x60, 0, 0, 0]) + plen.to_bytes(2, "big")
            + bytes([nexthdr, 64]) + bytes(15) + b"\x01" + bytes(15) + b"\x02"
            + payload)


def tcp(doff, body):
    header = bytearray(doff * 4 if doff * 4 >= 20 else 20)
    header[12] = doff << 4
    return bytes(header) + body


PAYLOAD = b"0123456789"
UDP = bytes(8) + PAYLOAD


def test_layer3_total_length():
    pkt = ipv4(17, UDP)
    assert Length2Match(len(pkt), len(pkt), LengthFlag.LAYER3).match_ipv4(pkt)
    assert not Length2Match(len(pkt) + 1, 10000, LengthFlag.LAYER3).match_ipv4(pkt)


def test_layer4_strips_ip_header():
    pkt = ipv4(17, UDP)
    assert Length2Match(len(UDP), len(UDP), LengthFlag.LAYER4).match_ipv4(pkt)


def test_layer5_udp():
    pkt = ipv4(17, UDP)
    assert layer5_length(pkt, 17, 20) == len(PAYLOAD)
    assert Length2Match(len(PAYLOAD), len(PAYLOAD), LengthFlag.LAYER5).match_ipv4(pkt)


def test_layer5_tcp_with_options():
    segment = tcp(6, PAYLOAD)
    assert layer5_length(segment, 6, 0) == len(PAYLOAD)


def test_layer5_tcp_oversized_offset_not_subtracted():
    segment = tcp(15, b"")[:24]
    assert layer5_length(segment, 6, 0) == len(segment)


def test_layer5_unknown_or_truncated():
    assert layer5_length(bytes(40), 99, 0) is None
    assert layer5_length(bytes(10), 6, 0) is None


def test_layer7_sctp_counts_data_chunks():
    data = bytes([0, 0]) + (20).to_bytes(2, "big") + bytes(16)
    init = bytes([1, 0, 0, 8]) + bytes(4)
    segment = bytes(12) + data + init
    assert layer7_length(segment, 132, 0) == 20


def test_layer7_sctp_zero_length_chunk():
    segment = bytes(12) + bytes([0, 0, 0, 0])
    assert layer7_length(segment, 132, 0) is None


def test_layer7_other_protocols_match_layer5():
    pkt = ipv4(17, UDP)
    assert layer7_length(pkt, 17, 20) == layer5_length(pkt, 17, 20)


def test_invert():
    pkt = ipv4(17, UDP)
    flags = LengthFlag.LAYER5 | LengthFlag.INVERT
    assert not Length2Match(len(PAYLOAD), len(PAYLOAD), flags).match_ipv4(pkt)
    assert Length2Match(len(PAYLOAD) + 1, 1000, flags).match_ipv4(pkt)


def test_unknown_protocol_does_not_match():
    pkt = ipv4(99, bytes(30))
    assert not Length2Match(0, 100000, LengthFlag.LAYER5).match_ipv4(pkt)


def test_ipv4_rejects_other_bytes():
    with pytest.raises(ValueError):
        Length2Match(0, 10, LengthFlag.LAYER3).match_ipv4(bytes(10))


def test_ipv6_hop_by_hop_then_udp():
    hbh = bytes([17, 0]) + bytes(6)
    pkt = ipv6(0, hbh + UDP)
    assert Length2Match(len(UDP), len(UDP), LengthFlag.LAYER4).match_ipv6(pkt)
    assert Length2Match(len(PAYLOAD), len(PAYLOAD), LengthFlag.LAYER5).match_ipv6(pkt)


def test_ipv6_layer3():
    pkt = ipv6(17, UDP)
    assert Length2Match(len(pkt), len(pkt), LengthFlag.LAYER3).match_ipv6(pkt)
    jumbo = ipv6(17, UDP, payload_len=0)
    assert Length2Match(len(jumbo), len(jumbo), LengthFlag.LAYER3).match_ipv6(jumbo)


def test_ipv6_no_transport():
    pkt = ipv6(59, b"")
    assert not Length2Match(0, 100000, LengthFlag.LAYER4).match_ipv6(pkt)


def test_ipv6_truncated_extension_header():
    pkt = ipv6(0, b"")
    with pytest.raises(ValueError):
        Length2Match(0, 100, LengthFlag.LAYER4).match_ipv6(pkt)