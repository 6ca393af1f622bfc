"""
Estimation statistics for netclock.

Per association:
    - minimum-delay selection of the best sample in history
    - quality score from delay and offset spread

Across associations:
    - median / MAD outlier rejection
    - quality-weighted mean of the survivors
"""

import logging
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .logging.debug_logger import debug_log_call
from .models import AssociationSnapshot, Sample

logger = logging.getLogger(__name__)


def select_best_sample(history: Iterable[Sample]) -> Optional[Sample]:
    """
    Return the sample with the smallest round-trip delay.

    Lower delay bounds the path asymmetry error of the offset, so the offset is
    taken from that one sample rather than averaged over the history. Ties go to
    the most recent sample.
    """
    best = None
    for sample in history:
        if best is None or sample.delay <= best.delay:
            best = sample
    return best


def offset_jitter(history: Sequence[Sample]) -> float:
    """Spread (max - min) of the offsets in history, 0.0 for fewer than two samples."""
    if len(history) < 2:
        return 0.0
    offsets = np.array([s.offset for s in history])
    return float(np.ptp(offsets))


def quality_score(best_delay: float, jitter: float, floor: float = 0.001) -> float:
    """
    Confidence of an association's estimate.

    Inverse of delay plus jitter; ``floor`` keeps the score finite for a
    zero-delay, zero-jitter loopback server.
    """
    return 1.0 / (max(best_delay, 0.0) + max(jitter, 0.0) + floor)


@debug_log_call
def reject_outliers(offsets: np.ndarray,
                    mad_multiplier: float = 3.0,
                    min_threshold: float = 0.003) -> np.ndarray:
    """
    Return a boolean mask of offsets that survive median/MAD outlier rejection.

    An offset is rejected when it deviates from the median by more than
    ``max(mad_multiplier * MAD, min_threshold)``. With fewer than two offsets
    nothing is compared and everything survives. If the rule would reject every
    offset the mask keeps them all.
    """
    offsets = np.asarray(offsets, dtype=float)
    if offsets.size < 2:
        return np.ones(offsets.size, dtype=bool)

    median = np.median(offsets)
    deviations = np.abs(offsets - median)
    mad = np.median(deviations)
    threshold = max(mad_multiplier * mad, min_threshold)

    mask = deviations <= threshold
    if not mask.any():
        return np.ones(offsets.size, dtype=bool)
    return mask


@debug_log_call
def weighted_offset(offsets: np.ndarray, weights: np.ndarray) -> float:
    """
    Quality-weighted mean of offsets.

    A single offset is returned unchanged; non-positive total weight falls back
    to the plain mean.
    """
    offsets = np.asarray(offsets, dtype=float)
    weights = np.asarray(weights, dtype=float)
    if offsets.size == 0:
        raise ValueError("weighted_offset() needs at least one offset")
    if offsets.size == 1:
        return float(offsets[0])
    if weights.sum() <= 0.0:
        return float(np.mean(offsets))
    return float(np.average(offsets, weights=weights))


def combine_snapshots(snapshots: Iterable[AssociationSnapshot],
                      mad_multiplier: float = 3.0,
                      min_threshold: float = 0.003
                      ) -> Tuple[Optional[float], List[AssociationSnapshot], List[AssociationSnapshot]]:
    """
    Combine association estimates into one network offset.

    Returns ``(offset, accepted, rejected)``; ``offset`` is None when no
    snapshot is usable.
    """
    usable = [s for s in snapshots if s.usable]
    if not usable:
        return None, [], []

    offsets = np.array([s.best_offset for s in usable])
    weights = np.array([s.quality for s in usable])

    mask = reject_outliers(offsets, mad_multiplier, min_threshold)
    accepted = [s for s, keep in zip(usable, mask) if keep]
    rejected = [s for s, keep in zip(usable, mask) if not keep]

    if rejected:
        logger.info(f"[AGGREGATION] Rejected {len(rejected)} outlier(s): " +
                    ", ".join(f"{s.server}={s.best_offset * 1000:.2f}ms" for s in rejected))

    offset = weighted_offset(offsets[mask], weights[mask])
    return offset, accepted, rejected
