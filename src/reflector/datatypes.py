"""Core data structures for the confocal reflector simulator.

Geometry and configuration are immutable ``NamedTuple`` records so they can
be compared, hashed and swapped between ticks as snapshots.  Fit results are
read-only snapshots derived from the termination histogram.  The only
mutable entity, the ray, lives in :mod:`reflector.rays`.
"""

import enum
from typing import Dict, NamedTuple, Optional, Tuple

import jax.numpy as jnp
import numpy as np


# ---------------------------------------------------------------------------
# Numerical constants shared across modules
# ---------------------------------------------------------------------------

EPS = 1e-10            # |cos(theta)| below this counts as vertical
LARGE_SLOPE = 1e6      # finite stand-in for tan(theta) when cos(theta) -> 0
MIN_BANDWIDTH = 0.1    # floor applied to Silverman's rule
EDGE_THRESHOLD = 0.1   # fraction of the source treated as "edge" on each end
MAX_SPREAD = 3.0       # full angular width (rad) of the interior jitter


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class EmissionPolicy(enum.Enum):
    """How emitted ray directions are distributed about the source normal."""
    EDGE_BLEND = "edge_blend"  # uniform jitter inside, normal/centre blend at the ends
    LAMBERT = "lambert"        # cosine-weighted, importance weight stored as power


class KernelType(enum.Enum):
    """Closed set of KDE kernels."""
    GAUSSIAN = "gaussian"
    EPANECHNIKOV = "epanechnikov"
    UNIFORM = "uniform"
    TRIANGULAR = "triangular"
    BIWEIGHT = "biweight"

    @classmethod
    def from_name(cls, name: "str | KernelType") -> "KernelType":
        if isinstance(name, cls):
            return name
        try:
            return cls(str(name).lower())
        except ValueError:
            valid = ", ".join(k.value for k in cls)
            raise ValueError(f"unknown kernel {name!r}; expected one of: {valid}") from None


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------

class GeometryParams(NamedTuple):
    """The five scalars that fully determine both reflectors."""
    theta: float = 0.0               # source tilt (radians)
    source_half_width: float = 50.0  # b
    target_half_width: float = 50.0  # a
    distance: float = 600.0          # z0, detector plane to source midpoint
    vertical_offset: float = 0.0     # voff


class Ellipse(NamedTuple):
    """Center ``(h, k)``, semi-axes ``(a, b)`` and rotation ``phi``."""
    h: float
    k: float
    a: float
    b: float
    phi: float

    @property
    def center(self) -> np.ndarray:
        return np.array([self.h, self.k])


class MaskLine(NamedTuple):
    """Line ``y = slope * x + intercept`` clipping an ellipse to its valid arc."""
    slope: float
    intercept: float
    x_min: float
    x_max: float


class SourceSegment(NamedTuple):
    x1: float
    y1: float
    x2: float
    y2: float

    @property
    def midpoint(self) -> np.ndarray:
        return np.array([(self.x1 + self.x2) / 2.0, (self.y1 + self.y2) / 2.0])

    @property
    def length(self) -> float:
        return float(np.hypot(self.x2 - self.x1, self.y2 - self.y1))


class ReflectorDescriptor(NamedTuple):
    """An ellipse plus the part of it that physically exists.

    ``keep_above`` is False for the upper reflector (points above the mask
    line are masked) and True for the lower one.  When ``source`` is set, only
    points on the detector side of the source plane are kept as well.  A
    reflector with neither keeps its whole ellipse.
    """
    name: str
    ellipse: Ellipse
    mask: Optional[MaskLine] = None
    keep_above: bool = False
    source: Optional[SourceSegment] = None


class Intersection(NamedTuple):
    """A resolved hit: segment parameter ``t``, world point, outward normal."""
    t: float
    point: np.ndarray
    normal: np.ndarray
    reflector: str = ""


# ---------------------------------------------------------------------------
# Simulation configuration (snapshot passed into every tick)
# ---------------------------------------------------------------------------

class SimulationConfig(NamedTuple):
    """Per-tick configuration.  Derive edited copies with ``_replace``."""
    emission_rate: int = 5              # 0-9; higher emits more often
    max_bounces: int = 10
    ray_speed: float = 5.0              # path length per step
    ray_lifetime: int = 2000            # steps before a ray ages out
    geometry: GeometryParams = GeometryParams()
    detector_half_width: float = 170.0
    bin_size: float = 2.0
    world_bound: float = 2000.0
    emission_policy: EmissionPolicy = EmissionPolicy.EDGE_BLEND
    path_limit: Optional[int] = 512     # None keeps the full path


DEFAULT_CONFIG = SimulationConfig()


# ---------------------------------------------------------------------------
# Termination statistics and fits
# ---------------------------------------------------------------------------

class TerminationStats(NamedTuple):
    total_count: int
    bins: Dict[int, int]           # bin index -> hit count
    max_bin_count: int
    modal_bin: Optional[int]       # index of the most-hit bin, None when empty
    bin_size: float


class TickResult(NamedTuple):
    live_rays: Tuple               # RayState instances still active
    newly_terminated_count: int


class GaussianFit(NamedTuple):
    """Moment-based Gaussian.

    ``amplitude`` is the largest bin count, a display convenience so the curve
    overlays the histogram.  It is *not* the normalised peak height
    ``N / (std_dev * sqrt(2 pi))`` for the fitted width.
    """
    amplitude: float
    mean: float
    std_dev: float
    variance: float
    total_hits: int


class KDEFit(NamedTuple):
    """Kernel density estimate over the histogram re-expanded into samples.

    ``support``/``weights`` are the distinct sample positions and their
    multiplicities; evaluating over them equals summing over ``samples``.
    """
    kernel_type: KernelType
    bandwidth: float
    samples: jnp.ndarray
    support: jnp.ndarray
    weights: jnp.ndarray
    mean: float
    std_dev: float
    variance: float

    @property
    def total_points(self) -> int:
        return int(self.samples.shape[0])


class KDEMode(NamedTuple):
    position: float
    density: float


class FitQuality(NamedTuple):
    r_squared: float
    mean_absolute_error: float
    max_error: float
    scale_factor: float


class DistributionAnalysis(NamedTuple):
    gaussian: Optional[GaussianFit]
    kde: Optional[KDEFit]
    modes: Tuple[KDEMode, ...]
    kde_quality: FitQuality
    gaussian_r_squared: float
    better_fit: Optional[str]      # "kde", "gaussian" or None without data


class ReflectorHitSummary(NamedTuple):
    average_hits: float
    total_rays: int
    total_bounces: int
    hit_distribution: Dict[int, int]
