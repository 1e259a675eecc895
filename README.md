# nfextras

Pure-Python match and target logic for firewall experiments, traffic
analysis and testing. The modules work on raw packet bytes and plain Python
values. Time is passed in explicitly as ticks, and random choices come from
a `random.Random` you can seed, so you can get the same results every time
in tests.

## Installation

```
pip install nfextras
```

There are no runtime dependencies. To run the test suite:

```
pip install "nfextras[test]"
pytest
```

## Modules

| Module | Purpose |
| --- | --- |
| `nfextras.tarpit` | Builds tarpit, honeypot and reset replies to TCP packets (`TarpitMode`, `TcpHeader`, `build_reply`, `tarpit_ipv4`, `tarpit_ipv6`, `internet_checksum`) |
| `nfextras.fuzzy` | Adaptive rate limiter driven by a fuzzy-logic controller (`FuzzyMatch`, `mf_high`, `mf_low`) |
| `nfextras.geoip` | Matches addresses against country address ranges, with a shared reference-counted registry (`CountryRegistry`, `GeoipMatch`, `MatchFlag`, `Family`, `range_search`, `country_code`) |
| `nfextras.quota2` | Byte and packet quotas that count down, or count up for accounting, with named shared counters (`QuotaRegistry`, `QuotaCounter`, `Quota2Match`, `QuotaFlag`, `parse_c_integer`) |
| `nfextras.lscan` | Connection-mark state machine that detects SYN, connect, grab and stealth scans (`LscanMatch`, `LscanPacket`, `Conntrack`, `LscanMarks`, `TcpFlag`, `classify_full`, `stealth_match`) |
| `nfextras.length2` | Packet length at layer 3, 4, 5 or 7 for IPv4 and IPv6 (`Length2Match`, `LengthFlag`, `layer5_length`, `layer7_length`) |
| `nfextras.ipv4options` | Matches on the options present in an IPv4 header (`Ipv4OptionsMatch`, `OptionsMode`, `parse_options`) |

## Examples

Build the tarpit's answer to a SYN:

```python
from nfextras.tarpit import TcpHeader, TarpitMode, build_reply

syn = TcpHeader(source=40000, dest=22, seq=1000, syn=True)
reply = build_reply(syn, 0, TarpitMode.TARPIT)
print(reply.syn, reply.ack, reply.window, reply.ack_seq)   # True True 5 1001
```

`tarpit_ipv4(packet)` and `tarpit_ipv6(packet)` take a whole packet. They
return the whole reply packet with its checksums filled in, or `None` when
no reply is sent.

Count down a named quota:

```python
from nfextras.quota2 import QuotaRegistry, Quota2Match

registry = QuotaRegistry()
match = Quota2Match(registry, "uplink", 1500)
print(match.match(1000))             # True: 500 bytes left
print(match.match(1000))             # False: quota exhausted, set to 0
print(registry["uplink"].read())     # "0\n"
registry["uplink"].write("+5000")    # add 5000 bytes
```

Match on a source country:

```python
from nfextras.geoip import CountryRegistry, GeoipMatch, Family, MatchFlag

registry = CountryRegistry()
rule = GeoipMatch(registry, Family.IPV4, MatchFlag.SRC,
                  {"XA": lambda: [("10.0.0.0", "10.255.255.255")]})
print(rule.match("10.1.2.3", "192.0.2.1"))   # True
rule.destroy()
```

List the IPv4 options found in an option area:

```python
from nfextras.ipv4options import parse_options

print(bin(parse_options(bytes([0x01, 0x07, 0x03, 0x04]))))   # 0b10000000
```

Limit the packet rate:

```python
import random
from nfextras.fuzzy import FuzzyMatch

limiter = FuzzyMatch(10, 1000, hz=250, rng=random.Random(0))
over_limit = limiter.match(length=60, now=0)
```

## What this package does not do

- It does not capture, send or drop packets, and it does not hook into a
  kernel firewall. You feed it packet bytes and act on its verdicts yourself.
- It has no command-line tool and does not keep state on disk. Quota
  counters, country ranges and connection marks live in Python objects.
- It does not classify peer-to-peer traffic, detect port scans by source
  address, or test network interface state flags.