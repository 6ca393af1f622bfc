"""
netclock - network time without touching the system clock

Queries several NTP servers concurrently, filters and combines their estimates,
and publishes a continuously refined offset between local and network time.
"""

__version__ = "1.0.0"

from .aggregation import combine_snapshots, reject_outliers, select_best_sample, weighted_offset
from .association import ServerAssociation
from .clock import NetworkClock, OffsetSubscription
from .config import NetworkClockConfig, load_config
from .models import AssociationSnapshot, ClockStatus, NetworkClockState, Sample
from .timestamps import clock_offset, offset_and_delay, round_trip_delay
from .transport import ServerReply, Transport, TransportError, UDPTransport

__all__ = [
    "NetworkClock",
    "OffsetSubscription",
    "ServerAssociation",
    "NetworkClockConfig",
    "load_config",
    "NetworkClockState",
    "Sample",
    "AssociationSnapshot",
    "ClockStatus",
    "Transport",
    "TransportError",
    "ServerReply",
    "UDPTransport",
    "clock_offset",
    "round_trip_delay",
    "offset_and_delay",
    "select_best_sample",
    "reject_outliers",
    "weighted_offset",
    "combine_snapshots",
    "__version__",
]
