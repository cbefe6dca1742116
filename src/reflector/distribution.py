"""Distribution fits over the termination histogram.

All numerical work is done with ``jax.numpy`` in branchless form
(``jnp.where`` instead of Python conditionals inside the kernels), and grid
evaluation is batched with ``jax.vmap``.  Every function is a pure function
of the histogram it is given; "no data" is reported as ``None``.
"""

from typing import Callable, Dict, Iterable, Optional, Tuple

import jax
import jax.numpy as jnp
import numpy as np

from .datatypes import (
    MIN_BANDWIDTH,
    DistributionAnalysis,
    FitQuality,
    GaussianFit,
    KDEFit,
    KDEMode,
    KernelType,
    ReflectorHitSummary,
)
from .termination import TerminationHistogram

_NO_QUALITY = FitQuality(r_squared=0.0, mean_absolute_error=0.0, max_error=0.0, scale_factor=0.0)


# ---------------------------------------------------------------------------
# Gaussian moment fit
# ---------------------------------------------------------------------------

def fit_gaussian(histogram: TerminationHistogram) -> Optional[GaussianFit]:
    """Count-weighted mean and standard deviation of the bin positions.

    Returns None for an empty histogram.  ``amplitude`` is the largest bin
    count (see :class:`GaussianFit`).
    """
    positions, counts = histogram.positions_and_counts()
    if counts.sum() <= 0:
        return None

    positions = jnp.asarray(positions)
    counts = jnp.asarray(counts)
    total = jnp.sum(counts)
    mean = jnp.sum(positions * counts) / total
    variance = jnp.sum(counts * (positions - mean) ** 2) / total

    return GaussianFit(
        amplitude=float(jnp.max(counts)),
        mean=float(mean),
        std_dev=float(jnp.sqrt(variance)),
        variance=float(variance),
        total_hits=int(total),
    )


def evaluate_gaussian(fit: GaussianFit, y) -> jnp.ndarray:
    """``amplitude * exp(-(y - mean)^2 / (2 std^2))``; a spike when std is 0."""
    y = jnp.asarray(y, dtype=jnp.float32)
    var2 = 2.0 * fit.std_dev ** 2
    safe_var2 = var2 if var2 > 0.0 else 1.0
    smooth = fit.amplitude * jnp.exp(-((y - fit.mean) ** 2) / safe_var2)
    spike = jnp.where(y == fit.mean, fit.amplitude, 0.0)
    return smooth if var2 > 0.0 else spike


def gaussian_curve(fit: GaussianFit, y_min: float = -100.0, y_max: float = 100.0,
                   num_points: int = 200) -> Tuple[jnp.ndarray, jnp.ndarray]:
    ys = jnp.linspace(y_min, y_max, num_points)
    return ys, evaluate_gaussian(fit, ys)


def r_squared(observed: jnp.ndarray, predicted: jnp.ndarray) -> float:
    """Coefficient of determination clamped to ``[0, 1]``; 0 without variance."""
    mean_observed = jnp.mean(observed)
    total_ss = float(jnp.sum((observed - mean_observed) ** 2))
    residual_ss = float(jnp.sum((observed - predicted) ** 2))
    if total_ss <= 0.0:
        return 0.0
    return max(0.0, 1.0 - residual_ss / total_ss)


def gaussian_fit_quality(fit: Optional[GaussianFit], histogram: TerminationHistogram) -> float:
    """R^2 of the Gaussian against the observed bin counts."""
    if fit is None:
        return 0.0
    positions, counts = histogram.positions_and_counts()
    if counts.size == 0:
        return 0.0
    return r_squared(jnp.asarray(counts), evaluate_gaussian(fit, positions))


# ---------------------------------------------------------------------------
# Kernels
# ---------------------------------------------------------------------------

def gaussian_kernel(u):
    return jnp.exp(-0.5 * u * u) / jnp.sqrt(2.0 * jnp.pi)


def epanechnikov_kernel(u):
    return jnp.where(jnp.abs(u) <= 1.0, 0.75 * (1.0 - u * u), 0.0)


def uniform_kernel(u):
    return jnp.where(jnp.abs(u) <= 1.0, 0.5, 0.0)


def triangular_kernel(u):
    return jnp.where(jnp.abs(u) <= 1.0, 1.0 - jnp.abs(u), 0.0)


def biweight_kernel(u):
    return jnp.where(jnp.abs(u) <= 1.0, (15.0 / 16.0) * (1.0 - u * u) ** 2, 0.0)


KERNEL_FUNCTIONS: Dict[KernelType, Callable] = {
    KernelType.GAUSSIAN: gaussian_kernel,
    KernelType.EPANECHNIKOV: epanechnikov_kernel,
    KernelType.UNIFORM: uniform_kernel,
    KernelType.TRIANGULAR: triangular_kernel,
    KernelType.BIWEIGHT: biweight_kernel,
}


def kernel_function(kernel_type) -> Callable:
    return KERNEL_FUNCTIONS[KernelType.from_name(kernel_type)]


# ---------------------------------------------------------------------------
# Kernel density estimate
# ---------------------------------------------------------------------------

def silverman_bandwidth(samples, weights=None) -> float:
    """Silverman's rule ``1.06 * sigma * n^(-1/5)``, floored at MIN_BANDWIDTH.

    *n* is the total weight (the effective sample count).  Returns 1.0 for
    no samples.
    """
    samples = jnp.asarray(samples, dtype=jnp.float32)
    if samples.size == 0:
        return 1.0
    weights = jnp.ones_like(samples) if weights is None else jnp.asarray(weights, dtype=jnp.float32)
    total = jnp.sum(weights)
    mean = jnp.sum(samples * weights) / total
    sigma = jnp.sqrt(jnp.sum(weights * (samples - mean) ** 2) / total)
    bandwidth = 1.06 * sigma * total ** (-0.2)
    return max(float(bandwidth), MIN_BANDWIDTH)


def fit_kde(histogram: TerminationHistogram, kernel_type=KernelType.GAUSSIAN,
            bandwidth: Optional[float] = None) -> Optional[KDEFit]:
    """Kernel density estimate over the histogram expanded into samples.

    Parameters
    ----------
    histogram : TerminationHistogram
    kernel_type : KernelType or str
        Raises ValueError for unknown names.
    bandwidth : float, optional
        Defaults to :func:`silverman_bandwidth` of the expanded samples.

    Returns
    -------
    KDEFit or None
        None when the histogram is empty.
    """
    kernel_type = KernelType.from_name(kernel_type)
    if bandwidth is not None and not bandwidth > 0.0:
        raise ValueError(f"bandwidth must be positive, got {bandwidth}")

    positions, counts = histogram.positions_and_counts()
    if counts.sum() <= 0:
        return None

    samples = jnp.asarray(np.repeat(positions, counts.astype(int)), dtype=jnp.float32)
    h = silverman_bandwidth(samples) if bandwidth is None else float(bandwidth)

    mean = jnp.mean(samples)
    variance = jnp.mean((samples - mean) ** 2)
    return KDEFit(
        kernel_type=kernel_type,
        bandwidth=h,
        samples=samples,
        support=jnp.asarray(positions, dtype=jnp.float32),
        weights=jnp.asarray(counts, dtype=jnp.float32),
        mean=float(mean),
        std_dev=float(jnp.sqrt(variance)),
        variance=float(variance),
    )


def evaluate_kde(fit: Optional[KDEFit], y) -> jnp.ndarray:
    """Density ``sum_i K((y - s_i) / h) / (n h)`` at scalar or array *y*."""
    y = jnp.asarray(y, dtype=jnp.float32)
    if fit is None:
        return jnp.zeros_like(y)

    kernel = KERNEL_FUNCTIONS[fit.kernel_type]
    support, weights, h = fit.support, fit.weights, fit.bandwidth
    n = jnp.sum(weights)

    def density_at(yi):
        return jnp.sum(weights * kernel((yi - support) / h)) / (n * h)

    flat = jax.vmap(density_at)(jnp.ravel(y))
    return jnp.reshape(flat, y.shape)


def kde_curve(fit: Optional[KDEFit], y_min: float = -100.0, y_max: float = 100.0,
              num_points: int = 200) -> Tuple[jnp.ndarray, jnp.ndarray]:
    ys = jnp.linspace(y_min, y_max, num_points)
    return ys, evaluate_kde(fit, ys)


def data_range(fit: KDEFit, padding: float = 0.2) -> Tuple[float, float]:
    """Sample extent padded by *padding* of its width (by 3 h when it has none)."""
    lo = float(jnp.min(fit.support))
    hi = float(jnp.max(fit.support))
    pad = (hi - lo) * padding
    if pad <= 0.0:
        pad = 3.0 * fit.bandwidth
    return lo - pad, hi + pad


def find_kde_modes(fit: Optional[KDEFit], y_min: Optional[float] = None,
                   y_max: Optional[float] = None, resolution: int = 1000) -> Tuple[KDEMode, ...]:
    """Strict local maxima of the density on a dense grid, highest first."""
    if fit is None:
        return ()
    if y_min is None or y_max is None:
        lo, hi = data_range(fit)
        y_min = lo if y_min is None else y_min
        y_max = hi if y_max is None else y_max

    ys = jnp.linspace(y_min, y_max, resolution + 1)
    densities = evaluate_kde(fit, ys)
    centre = densities[1:-1]
    is_peak = (centre > densities[:-2]) & (centre > densities[2:])

    ys = np.asarray(ys[1:-1])
    centre = np.asarray(centre)
    modes = [KDEMode(position=float(ys[i]), density=float(centre[i])) for i in np.flatnonzero(np.asarray(is_peak))]
    modes.sort(key=lambda m: m.density, reverse=True)
    return tuple(modes)


def kde_fit_quality(fit: Optional[KDEFit], histogram: TerminationHistogram) -> FitQuality:
    """Compare the KDE, rescaled so its peak matches the tallest bin, to the counts."""
    if fit is None:
        return _NO_QUALITY
    positions, counts = histogram.positions_and_counts()
    if counts.size == 0:
        return _NO_QUALITY

    observed = jnp.asarray(counts)
    densities = evaluate_kde(fit, positions)
    max_density = float(jnp.max(densities))
    scale = float(jnp.max(observed)) / max_density if max_density > 0.0 else 0.0
    predicted = densities * scale
    errors = jnp.abs(observed - predicted)

    return FitQuality(
        r_squared=r_squared(observed, predicted),
        mean_absolute_error=float(jnp.mean(errors)),
        max_error=float(jnp.max(errors)),
        scale_factor=scale,
    )


def analyze(histogram: TerminationHistogram, kernel_type=KernelType.GAUSSIAN,
            bandwidth: Optional[float] = None) -> DistributionAnalysis:
    """Gaussian and KDE fits side by side, with modes and goodness of fit."""
    kde = fit_kde(histogram, kernel_type, bandwidth)
    gaussian = fit_gaussian(histogram)
    if kde is None:
        return DistributionAnalysis(gaussian=None, kde=None, modes=(), kde_quality=_NO_QUALITY,
                                    gaussian_r_squared=0.0, better_fit=None)

    quality = kde_fit_quality(kde, histogram)
    gaussian_r2 = gaussian_fit_quality(gaussian, histogram)
    return DistributionAnalysis(
        gaussian=gaussian,
        kde=kde,
        modes=find_kde_modes(kde),
        kde_quality=quality,
        gaussian_r_squared=gaussian_r2,
        better_fit="kde" if quality.r_squared > gaussian_r2 else "gaussian",
    )


def reflector_hit_summary(rays: Iterable) -> ReflectorHitSummary:
    """Average bounce count and bounce-count distribution over *rays*."""
    distribution: Dict[int, int] = {}
    total_bounces = 0
    total_rays = 0
    for ray in rays:
        total_rays += 1
        total_bounces += ray.bounce_count
        distribution[ray.bounce_count] = distribution.get(ray.bounce_count, 0) + 1
    average = total_bounces / total_rays if total_rays else 0.0
    return ReflectorHitSummary(
        average_hits=average,
        total_rays=total_rays,
        total_bounces=total_bounces,
        hit_distribution=distribution,
    )
