"""
Timestamp math for four-timestamp NTP exchanges.

All values are seconds on a common time base:
    t1 = client transmit (local clock)
    t2 = server receive  (server clock)
    t3 = server transmit (server clock)
    t4 = client receive  (local clock)
"""

from typing import Tuple


def clock_offset(t1: float, t2: float, t3: float, t4: float) -> float:
    """
    Estimated offset of the server clock relative to the local clock.

    Positive means the local clock is behind network time, so
    ``network_time = local_time + offset``.
    """
    return ((t2 - t1) + (t3 - t4)) / 2.0


def round_trip_delay(t1: float, t2: float, t3: float, t4: float) -> float:
    """Round-trip network transit time, excluding server processing time."""
    return (t4 - t1) - (t3 - t2)


def offset_and_delay(t1: float, t2: float, t3: float, t4: float) -> Tuple[float, float]:
    """Return ``(offset, delay)`` for one exchange."""
    return clock_offset(t1, t2, t3, t4), round_trip_delay(t1, t2, t3, t4)


def is_plausible_delay(delay: float, max_delay: float) -> bool:
    """
    Sanity check for a computed delay.

    Negative delays come from clock steps or reordered timestamps; very large
    ones usually mean a proxy or VPN distorted the exchange mid-flight.
    """
    return 0.0 <= delay <= max_delay
