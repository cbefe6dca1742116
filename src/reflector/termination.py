"""Detector-line crossings and the termination histogram."""

import logging
import math
from typing import Dict, Mapping, Optional, Tuple

import numpy as np

from .datatypes import TerminationStats
from .exceptions import InvalidGeometry

logger = logging.getLogger(__name__)


class TerminationHistogram:
    """Hit counts keyed by bin index ``floor(y / bin_size)``.

    The representative coordinate of bin *i* is its lower edge
    ``i * bin_size``.  Counts only grow until :meth:`clear`.
    """

    def __init__(self, bin_size: float = 2.0):
        if not bin_size > 0.0:
            raise InvalidGeometry(f"bin_size must be positive, got {bin_size}")
        self.bin_size = float(bin_size)
        self.bins: Dict[int, int] = {}

    @classmethod
    def from_counts(cls, counts: Mapping[int, int], bin_size: float = 2.0) -> "TerminationHistogram":
        histogram = cls(bin_size)
        for index, count in counts.items():
            if count < 0:
                raise ValueError(f"bin {index} has a negative count")
            if count:
                histogram.bins[int(index)] = int(count)
        return histogram

    def __len__(self):
        return len(self.bins)

    def bin_index(self, y: float) -> int:
        return int(math.floor(y / self.bin_size))

    def bin_position(self, index: int) -> float:
        return index * self.bin_size

    def add(self, y: float) -> int:
        index = self.bin_index(y)
        self.bins[index] = self.bins.get(index, 0) + 1
        return index

    def clear(self) -> None:
        self.bins.clear()

    @property
    def total_count(self) -> int:
        return sum(self.bins.values())

    def positions_and_counts(self) -> Tuple[np.ndarray, np.ndarray]:
        """Bin positions (ascending) and their counts as float arrays."""
        indices = sorted(self.bins)
        positions = np.array([self.bin_position(i) for i in indices], dtype=float)
        counts = np.array([self.bins[i] for i in indices], dtype=float)
        return positions, counts

    def stats(self) -> TerminationStats:
        max_count = 0
        modal: Optional[int] = None
        for index in sorted(self.bins):
            if self.bins[index] > max_count:
                max_count = self.bins[index]
                modal = index
        return TerminationStats(
            total_count=self.total_count,
            bins=dict(self.bins),
            max_bin_count=max_count,
            modal_bin=modal,
            bin_size=self.bin_size,
        )


class TerminationRecorder:
    """Terminates rays whose last step crosses the detector line ``x = detector_x``.

    Parameters
    ----------
    histogram : TerminationHistogram
        Receives one count per terminated ray.
    half_width : float
        A crossing counts only if ``|y| <= half_width``.
    detector_x : float
        x-coordinate of the detector line.
    """

    def __init__(self, histogram: TerminationHistogram, half_width: float, detector_x: float = 0.0):
        if not half_width >= 0.0:
            raise InvalidGeometry(f"detector half-width must be non-negative, got {half_width}")
        self.histogram = histogram
        self.half_width = float(half_width)
        self.detector_x = float(detector_x)

    def crossing(self, ray) -> Optional[np.ndarray]:
        """Detector point crossed by the ray's last segment, if within bounds."""
        segment = ray.last_segment
        if segment is None:
            return None
        p1, p2 = segment
        x = self.detector_x
        if not ((p1[0] <= x <= p2[0]) or (p2[0] <= x <= p1[0])):
            return None
        if p1[0] == p2[0]:
            # Segment runs along the detector line; no single crossing point.
            return None
        t = (x - p1[0]) / (p2[0] - p1[0])
        y = p1[1] + t * (p2[1] - p1[1])
        if abs(y) > self.half_width:
            return None
        return np.array([x, y])

    def check_termination(self, ray) -> bool:
        """Terminate and record *ray* if its last step hit the detector.

        Inactive rays are ignored, so repeated calls never double count.
        """
        if not ray.active:
            return False
        point = self.crossing(ray)
        if point is None:
            return False
        ray.terminate_at(point)
        index = self.histogram.add(point[1])
        logger.debug("ray terminated at y=%.4g (bin %d)", point[1], index)
        return True
