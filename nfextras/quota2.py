"""Byte and packet quotas that count down, or count up for accounting.

Named quotas are shared between rules and can be read and rewritten as
text, the way an administrator edits them; unnamed quotas belong to a
single rule.
"""

from __future__ import annotations

import enum
import threading
from typing import Union

__all__ = [
    "QuotaFlag",
    "QUOTA_MASK",
    "NAME_MAX",
    "parse_c_integer",
    "QuotaCounter",
    "QuotaRegistry",
    "Quota2Match",
]

_M64 = (1 << 64) - 1
# Room for "+-18446744073709551616" and its terminating NUL.
_WRITE_BUFFER = 23
#: Longest counter name kept.
NAME_MAX = 14

_DIGITS = {ch: int(ch, 16) for ch in "0123456789abcdefABCDEF"}


class QuotaFlag(enum.IntFlag):
    """Behaviour switches of a quota rule."""

    INVERT = 1 << 0
    GROW = 1 << 1
    PACKET = 1 << 2
    NO_CHANGE = 1 << 3


QUOTA_MASK = 0x0F


def parse_c_integer(text: Union[str, bytes]) -> int:
    """Parse a leading C integer literal, as the kernel's strtoull does.

    A leading ``-`` negates the value; ``0x`` selects hexadecimal and a
    leading ``0`` octal.  Parsing stops at the first character that is not
    a digit, and the magnitude wraps at 64 bits.  No digits give 0.
    """
    if isinstance(text, (bytes, bytearray)):
        text = bytes(text).decode("latin-1")
    negative = text.startswith("-")
    if negative:
        text = text[1:]
    if text[:1] == "0" and text[1:2] in ("x", "X") and text[2:3] in _DIGITS:
        base, text = 16, text[2:]
    elif text[:1] == "0":
        base = 8
    else:
        base = 10
    value = 0
    for ch in text:
        digit = _DIGITS.get(ch)
        if digit is None or digit >= base:
            break
        value = (value * base + digit) & _M64
    return -value if negative else value


def _to_int64(value: int) -> int:
    value &= _M64
    return value - (1 << 64) if value >= 1 << 63 else value


class QuotaCounter:
    """A quota value, guarded by its own lock."""

    def __init__(self, name: str, quota: int) -> None:
        self.name = name
        self.quota = quota & _M64
        self.lock = threading.Lock()
        self._refs = 1

    @property
    def anonymous(self) -> bool:
        """True for a counter that belongs to a single rule."""
        return not self.name

    def read(self) -> str:
        """The quota as a decimal line."""
        with self.lock:
            return f"{self.quota}\n"

    def write(self, text: Union[str, bytes]) -> int:
        """Set or adjust the quota from text; return the count consumed.

        ``+N`` adds, ``-N`` subtracts and anything else sets the value;
        an adjustment never takes the quota below zero.
        """
        raw = text.encode("latin-1") if isinstance(text, str) else bytes(text)
        size = min(len(raw), _WRITE_BUFFER)
        buf = raw[:min(size, _WRITE_BUFFER - 1)].split(b"\0", 1)[0]
        with self.lock:
            if buf[:1] == b"+":
                temp = _to_int64(parse_c_integer(buf[1:]))
                if temp > 0 or (-temp) & _M64 < self.quota:
                    self.quota = (self.quota + temp) & _M64
                else:
                    self.quota = 0
            elif buf[:1] == b"-":
                temp = _to_int64(parse_c_integer(buf[1:]))
                if temp < 0 or temp < self.quota:
                    self.quota = (self.quota - temp) & _M64
                else:
                    self.quota = 0
            else:
                self.quota = parse_c_integer(buf) & _M64
        return size

    def __repr__(self) -> str:
        return f"QuotaCounter(name={self.name!r}, quota={self.quota})"


class QuotaRegistry:
    """Named, reference-counted quota counters."""

    def __init__(self) -> None:
        self._counters: dict[str, QuotaCounter] = {}
        self._lock = threading.Lock()

    def get(self, name: str, quota: int) -> QuotaCounter:
        """Return the named counter, creating it with ``quota`` if needed.

        An empty name gives a fresh counter that is not shared.
        """
        if quota < 0:
            raise ValueError("quota must not be negative")
        if not name:
            return QuotaCounter("", quota)
        with self._lock:
            counter = self._counters.get(name)
            if counter is not None:
                counter._refs += 1
                return counter
            counter = QuotaCounter(name, quota)
            self._counters[name] = counter
            return counter

    def release(self, counter: QuotaCounter) -> None:
        """Drop one reference; the counter is forgotten when none is left."""
        if counter.anonymous:
            return
        with self._lock:
            if self._counters.get(counter.name) is not counter:
                raise ValueError("counter is not registered")
            counter._refs -= 1
            if counter._refs == 0:
                del self._counters[counter.name]

    def __getitem__(self, name: str) -> QuotaCounter:
        with self._lock:
            return self._counters[name]

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._counters

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)


class Quota2Match:
    """A quota rule: counts packets or bytes against a counter."""

    def __init__(self, registry: QuotaRegistry, name: str = "",
                 quota: int = 0, flags: int = 0) -> None:
        if flags & ~QUOTA_MASK:
            raise ValueError("unknown quota flags")
        name = name.split("\0", 1)[0][:NAME_MAX]
        if name.startswith(".") or "/" in name:
            raise ValueError(f"illegal quota name {name!r}")
        self.registry = registry
        self.name = name
        self.flags = QuotaFlag(flags)
        self.quota = quota & _M64
        self.counter: QuotaCounter | None = registry.get(name, quota)

    def match(self, length: int) -> bool:
        """Account one packet of ``length`` bytes; return the verdict."""
        counter = self.counter
        if counter is None:
            raise RuntimeError("match has been destroyed")
        flags = self.flags
        cost = 1 if flags & QuotaFlag.PACKET else length
        change = not flags & QuotaFlag.NO_CHANGE
        result = bool(flags & QuotaFlag.INVERT)
        with counter.lock:
            if flags & QuotaFlag.GROW:
                if change:
                    counter.quota = (counter.quota + cost) & _M64
                    self.quota = counter.quota
                result = True
            else:
                if counter.quota >= cost:
                    if change:
                        counter.quota -= cost
                    result = not result
                elif change:
                    # Once exhausted, not even small packets pass.
                    counter.quota = 0
                self.quota = counter.quota
        return result

    def destroy(self) -> None:
        """Release the counter; calling it again does nothing."""
        if self.counter is None:
            return
        counter, self.counter = self.counter, None
        self.registry.release(counter)