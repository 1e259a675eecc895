import pytest

from nfextras.ipv4options import Ipv4OptionsMatch, OptionsMode, parse_options

RR = bytes([7, 3, 0])  # record route, 3 bytes
RR_BIT = 1 << 7


def header(options=b""):
    padded = options + bytes(-len(options) % 4)
    ihl = (20 + len(padded)) // 4
    return (bytes([0x40 | ihl, 0]) + (20 + len(padded)).to_bytes(2, "big")
            + bytes(4) + bytes([64, 6]) + bytes(2) + bytes(8) + padded)


def test_record_route_bit():
    assert parse_options(RR + b"\x00") == RR_BIT


def test_noop_is_skipped():
    assert parse_options(b"\x01\x01" + RR + b"\x00") == parse_options(RR + b"\x00")


def test_end_stops_parsing():
    assert parse_options(b"\x00" + RR) == 0


@pytest.mark.parametrize("data", [bytes([7, 1, 0]), bytes([7, 10, 0])])
def test_bad_length_stops_parsing(data):
    assert parse_options(data) == 0


def test_copied_and_class_bits_ignored():
    assert parse_options(bytes([0x87, 3, 0])) == parse_options(bytes([0x07, 3, 0]))


def test_multiple_options_combine():
    two = RR + bytes([0x44, 4, 0, 0])
    assert parse_options(two) == parse_options(RR) | parse_options(bytes([0x44, 4, 0, 0]))


def test_match_all_present():
    assert Ipv4OptionsMatch(RR_BIT).match(header(RR))
    assert not Ipv4OptionsMatch(RR_BIT).match(header())


def test_match_all_requires_every_option():
    other = parse_options(bytes([0x44, 4, 0, 0]))
    assert not Ipv4OptionsMatch(RR_BIT | other).match(header(RR))


def test_match_any():
    other = parse_options(bytes([0x44, 4, 0, 0]))
    assert Ipv4OptionsMatch(RR_BIT | other, mode=OptionsMode.ANY).match(header(RR))
    assert not Ipv4OptionsMatch(RR_BIT, mode=OptionsMode.ANY).match(header())


def test_invert_requires_absence():
    m = Ipv4OptionsMatch(RR_BIT, invert=RR_BIT)
    assert m.match(header())
    assert not m.match(header(RR))


def test_rejects_non_ipv4():
    with pytest.raises(ValueError):
        Ipv4OptionsMatch(RR_BIT).match(bytes(10))
    with pytest.raises(ValueError):
        Ipv4OptionsMatch(RR_BIT).match(bytes([0x46]) + bytes(19))