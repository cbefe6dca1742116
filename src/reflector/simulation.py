"""Tick-driven simulation of rays between two confocal elliptical reflectors.

One call to :meth:`Simulation.tick` advances every live ray by one step:

1. emit new rays on the tick cadence set by ``emission_rate``;
2. for each active ray, resolve reflector hits inside the step (snap to the
   clipped hit point, check the detector, reflect, continue with the rest of
   the step);
3. step the ray, check the detector, cull rays that left the world or the
   reflector cavity;
4. drop inactive rays.

The configuration passed to ``tick`` is a read-only snapshot for that tick.
"""

import logging
from typing import Optional, Tuple

import jax

from .datatypes import (
    DEFAULT_CONFIG,
    DistributionAnalysis,
    GaussianFit,
    GeometryParams,
    KDEFit,
    KernelType,
    ReflectorDescriptor,
    ReflectorHitSummary,
    SimulationConfig,
    SourceSegment,
    TerminationStats,
    TickResult,
)
from .distribution import analyze, fit_gaussian, fit_kde, reflector_hit_summary
from .emission import EmissionSampler
from .exceptions import InvalidGeometry
from .geometry import is_outside_aperture, reflector_geometry, source_segment
from .intersection import intersect_reflectors
from .rays import RayState, apply_config
from .termination import TerminationHistogram, TerminationRecorder

logger = logging.getLogger(__name__)

_MIN_REMAINING = 1e-6


def validate_config(config: SimulationConfig) -> None:
    """Raise :class:`InvalidGeometry` for a configuration no tick can run with."""
    if config.emission_rate < 0:
        raise InvalidGeometry(f"emission_rate must be non-negative, got {config.emission_rate}")
    if config.max_bounces < 1:
        raise InvalidGeometry(f"max_bounces must be at least 1, got {config.max_bounces}")
    if not config.ray_speed > 0.0:
        raise InvalidGeometry(f"ray_speed must be positive, got {config.ray_speed}")
    if config.ray_lifetime < 0:
        raise InvalidGeometry(f"ray_lifetime must be non-negative, got {config.ray_lifetime}")
    if not config.bin_size > 0.0:
        raise InvalidGeometry(f"bin_size must be positive, got {config.bin_size}")
    if not config.detector_half_width >= 0.0:
        raise InvalidGeometry(f"detector_half_width must be non-negative, got {config.detector_half_width}")
    if not config.world_bound > 0.0:
        raise InvalidGeometry(f"world_bound must be positive, got {config.world_bound}")
    if config.path_limit is not None and config.path_limit < 2:
        raise InvalidGeometry(f"path_limit must be None or at least 2, got {config.path_limit}")


class Simulation:
    """Single simulation context.

    Parameters
    ----------
    config : SimulationConfig
        Initial configuration; geometry is derived immediately.
    key : jax PRNG key, optional
        Random source for emission.  Defaults to ``PRNGKey(seed)``.
    seed : int
        Used only when *key* is not given.

    Raises
    ------
    InvalidGeometry
        If the initial configuration or geometry is unusable.
    """

    def __init__(self, config: SimulationConfig = DEFAULT_CONFIG, key=None, seed: int = 0):
        validate_config(config)
        self._reflectors, self._source = self._derive(config.geometry)
        self._geometry = config.geometry
        self.config = config
        self.sampler = EmissionSampler(jax.random.PRNGKey(seed) if key is None else key,
                                       config.emission_policy)
        self.histogram = TerminationHistogram(config.bin_size)
        self.recorder = TerminationRecorder(self.histogram, config.detector_half_width)
        self.rays = []
        self.tick_count = 0
        self.total_emitted = 0
        self.total_terminated = 0

    # ---- geometry ----------------------------------------------------------

    @staticmethod
    def _derive(params: GeometryParams) -> Tuple[Tuple[ReflectorDescriptor, ReflectorDescriptor], SourceSegment]:
        reflectors = reflector_geometry(params)
        return reflectors, source_segment(params)

    def set_geometry(self, params: GeometryParams) -> None:
        """Recompute reflectors and source; state is unchanged if this raises."""
        reflectors, source = self._derive(params)
        self._reflectors, self._source = reflectors, source
        self._geometry = params
        self.config = self.config._replace(geometry=params)
        logger.info("geometry set to %s", params)

    def get_reflector_descriptors(self) -> Tuple[ReflectorDescriptor, ReflectorDescriptor]:
        return self._reflectors

    def get_source_segment(self) -> SourceSegment:
        return self._source

    # ---- configuration -----------------------------------------------------

    def apply_config(self, config: SimulationConfig) -> None:
        """Adopt *config*, applying live edits to existing state.

        Geometry changes re-derive the reflectors, a lifetime change rescales
        every live ray's ``max_age``, and a bin-size change starts a fresh
        histogram (counts binned at different widths cannot be merged).
        Validation happens before anything is mutated.
        """
        validate_config(config)
        if config.geometry != self._geometry:
            self.set_geometry(config.geometry)

        if config.bin_size != self.histogram.bin_size:
            logger.warning("bin size changed from %g to %g; clearing %d recorded hits",
                           self.histogram.bin_size, config.bin_size, self.histogram.total_count)
            self.histogram = TerminationHistogram(config.bin_size)
            self.recorder.histogram = self.histogram
        self.recorder.half_width = float(config.detector_half_width)
        self.sampler.policy = config.emission_policy

        apply_config(self.rays, config)
        self.config = config

    # ---- stepping ----------------------------------------------------------

    def _should_emit(self, config: SimulationConfig) -> bool:
        return self.tick_count % max(1, 10 - config.emission_rate) == 0

    def _emit(self, config: SimulationConfig) -> int:
        new_rays = self.sampler.sample(
            self._source,
            config.emission_rate,
            config.ray_lifetime,
            policy=config.emission_policy,
            path_limit=config.path_limit,
        )
        self.rays.extend(new_rays)
        self.total_emitted += len(new_rays)
        return len(new_rays)

    def _cull(self, ray: RayState, config: SimulationConfig) -> None:
        x, y = ray.position
        if abs(x) > config.world_bound or abs(y) > config.world_bound:
            ray.deactivate()
        elif x > config.geometry.distance / 2.0 and is_outside_aperture(ray.position, self._reflectors):
            ray.deactivate()

    def advance_ray(self, ray: RayState, config: Optional[SimulationConfig] = None) -> bool:
        """Advance one ray by one step; True if it terminated on the detector."""
        config = self.config if config is None else config
        if not ray.active:
            return False

        remaining = config.ray_speed
        while remaining > _MIN_REMAINING:
            hit = intersect_reflectors(ray, self._reflectors, remaining)
            if hit is None:
                break
            ray.move_to(hit.point)
            if self.recorder.check_termination(ray):
                return True
            ray.reflect(hit.normal, config.max_bounces)
            if not ray.active:
                return False
            remaining *= 1.0 - hit.t

        ray.step(remaining)
        if self.recorder.check_termination(ray):
            return True
        if ray.active:
            self._cull(ray, config)
        return False

    def tick(self, config: Optional[SimulationConfig] = None) -> TickResult:
        """Advance the simulation by one tick under *config* (default: current)."""
        if config is not None and config != self.config:
            self.apply_config(config)
        config = self.config

        if self._should_emit(config):
            self._emit(config)

        terminated = 0
        for ray in self.rays:
            if ray.active and self.advance_ray(ray, config):
                terminated += 1

        self.rays = [ray for ray in self.rays if ray.active]
        self.tick_count += 1
        self.total_terminated += terminated
        return TickResult(live_rays=tuple(self.rays), newly_terminated_count=terminated)

    def run(self, ticks: int, config: Optional[SimulationConfig] = None) -> int:
        """Run *ticks* ticks; returns the number of rays terminated meanwhile."""
        terminated = 0
        for _ in range(ticks):
            terminated += self.tick(config).newly_terminated_count
        return terminated

    # ---- accessors and mutators --------------------------------------------

    def get_live_rays(self) -> Tuple[RayState, ...]:
        return tuple(self.rays)

    def get_termination_stats(self) -> TerminationStats:
        return self.histogram.stats()

    def reset_rays(self) -> None:
        logger.info("clearing %d live rays", len(self.rays))
        self.rays = []

    def reset_histogram(self) -> None:
        logger.info("clearing %d recorded hits", self.histogram.total_count)
        self.histogram.clear()

    # ---- fits --------------------------------------------------------------

    def fit_gaussian(self) -> Optional[GaussianFit]:
        return fit_gaussian(self.histogram)

    def fit_kde(self, kernel_type=KernelType.GAUSSIAN, bandwidth: Optional[float] = None) -> Optional[KDEFit]:
        return fit_kde(self.histogram, kernel_type, bandwidth)

    def analyze(self, kernel_type=KernelType.GAUSSIAN, bandwidth: Optional[float] = None) -> DistributionAnalysis:
        return analyze(self.histogram, kernel_type, bandwidth)

    def reflector_hit_summary(self) -> ReflectorHitSummary:
        return reflector_hit_summary(self.rays)
