"""Value types shared by associations and the network clock."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .timestamps import clock_offset, round_trip_delay


class NetworkClockState(str, Enum):
    """Convergence state of a NetworkClock."""
    NOT_STARTED = "not_started"
    STARTING = "starting"
    STARTED = "started"


class Sample(BaseModel):
    """One completed four-timestamp exchange with a server."""

    model_config = ConfigDict(frozen=True)

    t1: float = Field(description="Client transmit time (local clock, seconds)")
    t2: float = Field(description="Server receive time (server clock, seconds)")
    t3: float = Field(description="Server transmit time (server clock, seconds)")
    t4: float = Field(description="Client receive time (local clock, seconds)")
    server: str = Field("", description="Server the exchange was made with")

    @property
    def offset(self) -> float:
        return clock_offset(self.t1, self.t2, self.t3, self.t4)

    @property
    def delay(self) -> float:
        return round_trip_delay(self.t1, self.t2, self.t3, self.t4)


class AssociationSnapshot(BaseModel):
    """Read-only view of a ServerAssociation, handed to the clock on every report."""

    model_config = ConfigDict(frozen=True)

    association_id: int = Field(0, description="Index of the association inside its clock")
    server: str = Field(description="Server address")
    best_offset: Optional[float] = Field(None, description="Offset of the minimum-delay sample")
    best_delay: Optional[float] = Field(None, description="Delay of the minimum-delay sample")
    quality: float = Field(0.0, description="Confidence score, higher is better", ge=0.0)
    jitter: Optional[float] = Field(None, description="Spread (max - min) of offsets in history")
    reachable: bool = Field(False, description="Whether the server currently answers usefully")
    sample_count: int = Field(0, description="Number of samples in history", ge=0)
    consecutive_failures: int = Field(0, description="Rejected exchanges since the last accepted one", ge=0)
    poll_interval: float = Field(0.0, description="Current seconds between requests", ge=0.0)

    @property
    def usable(self) -> bool:
        """Whether this snapshot can take part in aggregation."""
        return self.reachable and self.best_offset is not None


class ClockStatus(BaseModel):
    """Synchronisation status report of a NetworkClock."""

    state: NetworkClockState = Field(description="Current convergence state")
    network_offset: Optional[float] = Field(None, description="Published offset in seconds, None if undetermined")
    is_stale: bool = Field(False, description="Offset is held while no association is reachable")
    reachable_associations: int = Field(0, description="Number of usable associations")
    total_associations: int = Field(0, description="Number of configured associations")
    associations: List[AssociationSnapshot] = Field(default_factory=list)
    last_update: Optional[datetime] = Field(None, description="Local time of the last publication")
