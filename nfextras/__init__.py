"""Firewall match and target logic: tarpit replies, rate limits, GeoIP, quotas, scans, lengths, IPv4 options."""

__version__ = "0.1.0"

__all__ = [
    "fuzzy",
    "geoip",
    "ipv4options",
    "length2",
    "lscan",
    "quota2",
    "tarpit",
]