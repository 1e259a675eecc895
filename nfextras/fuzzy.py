"""Adaptive rate limiting driven by a small fuzzy-logic controller.

The match measures the packet rate over windows of at least a tenth of a
second.  Below the minimum rate every packet passes; above the maximum only
about one in a hundred does; in between the acceptance rate falls linearly.
A packet that is *not* accepted matches.
"""

from __future__ import annotations

import random
from typing import Optional

__all__ = [
    "FUZZY_MIN_RATE",
    "FUZZY_MAX_RATE",
    "mf_high",
    "mf_low",
    "FuzzyMatch",
]

FUZZY_MIN_RATE = 3
FUZZY_MAX_RATE = 10_000_000

_M32 = 0xFFFFFFFF


def mf_high(tx: int, mini: int, maxi: int) -> int:
    """Membership, in percent, of ``tx`` in the "high rate" set."""
    if tx >= maxi:
        return 100
    if tx <= mini:
        return 0
    return 100 * (tx - mini) // (maxi - mini)


def mf_low(tx: int, mini: int, maxi: int) -> int:
    """Membership, in percent, of ``tx`` in the "low rate" set."""
    if tx <= mini:
        return 100
    if tx >= maxi:
        return 0
    return 100 * (maxi - tx) // (maxi - mini)


class FuzzyMatch:
    """Rate limiter state; ``match`` is called once per packet.

    Times are given in ticks, ``hz`` ticks to the second.
    """

    def __init__(
        self,
        minimum_rate: int,
        maximum_rate: int,
        hz: int = 250,
        rng: Optional[random.Random] = None,
    ) -> None:
        if (
            minimum_rate < FUZZY_MIN_RATE
            or maximum_rate > FUZZY_MAX_RATE
            or minimum_rate >= maximum_rate
        ):
            raise ValueError("bad rate limits")
        if hz <= 0:
            raise ValueError("hz must be positive")
        self.minimum_rate = minimum_rate
        self.maximum_rate = maximum_rate
        self.hz = hz
        self.rng = rng if rng is not None else random.Random()
        self.packets_total = 0
        self.bytes_total = 0
        self.previous_time = 0
        self.present_time = 0
        self.mean_rate = 0
        self.acceptance_rate = 0

    def match(self, length: int, now: int) -> bool:
        """Account one packet of ``length`` bytes at tick ``now``.

        Returns True when the packet is over the limit.
        """
        self.bytes_total = (self.bytes_total + length) & _M32
        self.packets_total = (self.packets_total + 1) & _M32
        self.present_time = now & _M32

        if self.present_time >= self.previous_time:
            amount = self.present_time - self.previous_time
        else:
            # The clock went backwards: resample and keep the old rate.
            amount = 0
            self.previous_time = self.present_time
            self.bytes_total = self.packets_total = 0

        if amount > self.hz // 10:
            self.mean_rate = (self.hz * self.packets_total // amount) & _M32
            self.previous_time = self.present_time
            self.bytes_total = self.packets_total = 0
            howhigh = mf_high(self.mean_rate, self.minimum_rate,
                              self.maximum_rate)
            howlow = mf_low(self.mean_rate, self.minimum_rate,
                            self.maximum_rate)
            # Weighted sum of the rule outputs (1% for high, 100% for low);
            # the denominator howhigh + howlow is constant here.
            self.acceptance_rate = (howhigh // 100 + howlow) & 0xFF

        if self.acceptance_rate < 100:
            random_number = self.rng.randrange(256)
            return random_number > 255 * self.acceptance_rate // 100
        return False