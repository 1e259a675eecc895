import pytest

from nfextras.lscan import (
    FL1_MIRAI,
    FL1_STEALTH,
    FL3_CN,
    FL4_GR,
    Conntrack,
    LscanMarks,
    LscanMatch,
    LscanPacket,
    TcpFlag,
    classify_full,
    stealth_match,
)

M = LscanMarks()


@pytest.mark.parametrize(
    "flags, expected",
    [
        (TcpFlag.RST | TcpFlag.ACK, False),
        (TcpFlag.RST, False),
        (TcpFlag.SYN, False),
        (TcpFlag.FIN, True),
        (0, True),
        (TcpFlag.FIN | TcpFlag.PSH | TcpFlag.URG, True),
        (TcpFlag.SYN | TcpFlag.FIN, True),
    ],
)
def test_stealth_match(flags, expected):
    assert stealth_match(flags) is expected


def test_new_syn_enters_syn_received():
    assert classify_full(0, True, False, TcpFlag.SYN, 0) == M.mark_synrcv


def test_syn_on_existing_connection_keeps_mark():
    assert classify_full(0, False, False, TcpFlag.SYN, 0) == 0


def test_syn_received_transitions():
    assert classify_full(M.mark_synrcv, False, False, TcpFlag.ACK, 0) == M.mark_estab1
    assert classify_full(M.mark_synrcv, False, False, TcpFlag.RST, 0) == M.mark_synscan
    assert classify_full(M.mark_synrcv, False, True,
                         TcpFlag.SYN | TcpFlag.ACK, 0) == M.mark_synrcv
    assert classify_full(M.mark_synrcv, False, True,
                         TcpFlag.RST | TcpFlag.ACK, 0) == M.mark_closed


def test_established_one_transitions():
    assert classify_full(M.mark_estab1, False, False, TcpFlag.FIN, 0) == M.mark_cnscan
    assert classify_full(M.mark_estab1, False, False, TcpFlag.ACK, 0) == M.mark_estab2
    assert classify_full(M.mark_estab1, False, True, TcpFlag.ACK, 0) == M.mark_valid
    assert classify_full(M.mark_estab1, False, False, TcpFlag.ACK, 5) == M.mark_valid


def test_established_two_transitions():
    assert classify_full(M.mark_estab2, False, False, TcpFlag.ACK, 0) == M.mark_estab2
    assert classify_full(M.mark_estab2, False, False, TcpFlag.RST, 0) == M.mark_grscan
    assert classify_full(M.mark_estab2, False, False,
                         TcpFlag.ACK | TcpFlag.PSH, 10) == M.mark_valid


@pytest.mark.parametrize("kwargs", [{"fl1": 4}, {"fl2": 2}, {"fl3": 2}, {"fl4": 8}])
def test_invalid_flags_rejected(kwargs):
    with pytest.raises(ValueError):
        LscanMatch(**kwargs)


def test_stealth_without_conntrack():
    m = LscanMatch(fl1=FL1_STEALTH)
    assert m.match(LscanPacket(tcp_flags=TcpFlag.FIN)) is True
    assert m.match(LscanPacket(tcp_flags=TcpFlag.SYN)) is False
    assert LscanMatch().match(LscanPacket(tcp_flags=TcpFlag.FIN)) is False


def test_mirai_probe():
    m = LscanMatch(fl1=FL1_MIRAI)
    assert m.match(LscanPacket(tcp_flags=TcpFlag.SYN, seq=0x0A000001,
                               daddr=0x0A000001)) is True
    assert m.match(LscanPacket(tcp_flags=TcpFlag.SYN, seq=0x0A000001,
                               daddr=None)) is False


def test_syn_scan_sequence():
    m = LscanMatch(fl1=FL1_STEALTH)
    ct = Conntrack(mark=0, new=True)
    first = LscanPacket(tcp_flags=TcpFlag.SYN, conntrack=ct)
    assert m.match(first) is False
    assert ct.mark == M.mark_synrcv
    assert first.nfmark == M.mark_seen
    ct.new = False
    second = LscanPacket(tcp_flags=TcpFlag.RST, conntrack=ct)
    assert m.match(second) is True
    assert ct.mark == M.mark_synscan


def test_connect_and_grab_scans():
    ct = Conntrack(mark=M.mark_estab1)
    assert LscanMatch(fl3=FL3_CN).match(
        LscanPacket(tcp_flags=TcpFlag.FIN, conntrack=ct)) is True
    ct2 = Conntrack(mark=M.mark_estab2)
    assert LscanMatch(fl4=FL4_GR).match(
        LscanPacket(tcp_flags=TcpFlag.RST, conntrack=ct2)) is True


def test_seen_packet_not_reevaluated():
    ct = Conntrack(mark=M.mark_synrcv)
    packet = LscanPacket(tcp_flags=TcpFlag.RST, conntrack=ct, nfmark=M.mark_seen)
    LscanMatch(fl1=FL1_STEALTH).match(packet)
    assert ct.mark == M.mark_synrcv