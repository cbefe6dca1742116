"""Reflector geometry: two confocal ellipses derived from five scalars.

Coordinate convention
---------------------
* The detector (target) is the line ``x = 0``; its half-width is the
  ``target_half_width`` *a*, shifted by ``vertical_offset``.
* The source segment is centred at ``(z0, z0 * tan(theta) + voff)`` with
  tangent ``(-sin(theta), cos(theta))`` and half-length *b*.
* Each ellipse has one focus at an end of the target and one at the matching
  end of the source.  Its mask line joins the *other* end of the target to
  the opposite end of the source, cutting the ellipse into the arc that
  physically exists and the arc that does not.
* The upper reflector keeps the points on or below its mask line, the lower
  reflector keeps the points on or above it.  Both are further limited to
  ``0 <= x <= max x of the source`` and to the detector side of the source
  plane.
"""

import logging
from typing import Iterable, Tuple

import numpy as np

from .datatypes import (
    EPS,
    LARGE_SLOPE,
    Ellipse,
    GeometryParams,
    MaskLine,
    ReflectorDescriptor,
    SourceSegment,
)
from .exceptions import InvalidGeometry

logger = logging.getLogger(__name__)


def validate_geometry(params: GeometryParams) -> None:
    """Raise :class:`InvalidGeometry` for parameters no reflector pair can have."""
    values = np.array(params, dtype=float)
    if not np.all(np.isfinite(values)):
        raise InvalidGeometry(f"geometry parameters must be finite: {params}")
    if params.source_half_width <= 0.0:
        raise InvalidGeometry("source half-width must be positive (zero-length source segment)")
    if params.target_half_width <= 0.0:
        raise InvalidGeometry("target half-width must be positive")
    if params.distance <= 0.0:
        raise InvalidGeometry("source-to-target distance must be positive")


def safe_tan(theta: float) -> float:
    """``tan(theta)`` with the vertical case replaced by a large finite slope."""
    sin_t = np.sin(theta)
    cos_t = np.cos(theta)
    if abs(cos_t) < EPS:
        return float(np.sign(sin_t) * LARGE_SLOPE)
    return float(sin_t / cos_t)


def _safe_slope(rise: float, run: float) -> float:
    if abs(run) < EPS:
        return float(np.sign(rise) * LARGE_SLOPE)
    return float(rise / run)


def source_segment(params: GeometryParams) -> SourceSegment:
    tx = -np.sin(params.theta)
    ty = np.cos(params.theta)
    mid_x = params.distance
    mid_y = params.distance * safe_tan(params.theta) + params.vertical_offset
    half = params.source_half_width
    return SourceSegment(
        x1=float(mid_x - half * tx),
        y1=float(mid_y - half * ty),
        x2=float(mid_x + half * tx),
        y2=float(mid_y + half * ty),
    )


def source_normal(segment: SourceSegment) -> np.ndarray:
    """Unit normal ``(-dy, dx) / |d|`` of the segment from end 1 to end 2."""
    dx = segment.x2 - segment.x1
    dy = segment.y2 - segment.y1
    length = np.hypot(dx, dy)
    if not np.isfinite(length) or length < EPS:
        raise InvalidGeometry("source segment has zero length; its normal is undefined")
    return np.array([-dy / length, dx / length])


def reflector_geometry(params: GeometryParams) -> Tuple[ReflectorDescriptor, ReflectorDescriptor]:
    """Derive the (upper, lower) reflector pair from the geometry parameters.

    Parameters
    ----------
    params : GeometryParams
        Tilt, source half-width *b*, target half-width *a*, distance *z0* and
        vertical offset.

    Returns
    -------
    upper, lower : ReflectorDescriptor
        Ellipse descriptors with their mask lines attached.

    Raises
    ------
    InvalidGeometry
        For non-finite or non-positive sizes, or when a derived semi-axis
        collapses to zero.
    """
    validate_geometry(params)

    theta = params.theta
    a = params.target_half_width
    b = params.source_half_width
    z0 = params.distance
    voff = params.vertical_offset

    sin_t = np.sin(theta)
    cos_t = np.cos(theta)
    tan_t = safe_tan(theta)

    h_upper = 0.5 * z0 + 0.5 * b * sin_t
    h_lower = 0.5 * z0 - 0.5 * b * sin_t
    k_upper = 0.5 * (z0 * tan_t - b * cos_t - a) + voff
    k_lower = 0.5 * (z0 * tan_t + b * cos_t + a) + voff

    # Half focal distances.
    l_upper = 0.5 * np.hypot(z0 + b * sin_t, a - b * cos_t + z0 * tan_t)
    l_lower = 0.5 * np.hypot(z0 - b * sin_t, b * cos_t + z0 * tan_t - a)

    # Semi-major axes from the edge-ray string construction.
    c_upper = 0.5 * np.hypot(z0 - b * sin_t, a + b * cos_t + z0 * tan_t) + b
    c_lower = 0.5 * np.hypot(z0 + b * sin_t, z0 * tan_t - a - b * cos_t) + b

    # Clamp before the root: c^2 - l^2 can flip sign by rounding alone.
    d_upper = np.sqrt(max(c_upper ** 2 - l_upper ** 2, 0.0))
    d_lower = np.sqrt(max(c_lower ** 2 - l_lower ** 2, 0.0))

    phi_upper = np.arctan2(z0 * tan_t - b * cos_t + a, z0 + b * sin_t)
    phi_lower = np.arctan2(z0 * tan_t + b * cos_t - a, z0 - b * sin_t)

    slope_upper = _safe_slope(z0 * tan_t - b * cos_t - a, z0 + b * sin_t)
    slope_lower = _safe_slope(z0 * tan_t + b * cos_t + a, z0 - b * sin_t)

    segment = source_segment(params)
    x_max = max(segment.x1, segment.x2)

    upper = ReflectorDescriptor(
        name="upper",
        ellipse=make_ellipse(h_upper, k_upper, c_upper, d_upper, phi_upper),
        mask=MaskLine(float(slope_upper), float(a + voff), 0.0, float(x_max)),
        keep_above=False,
        source=segment,
    )
    lower = ReflectorDescriptor(
        name="lower",
        ellipse=make_ellipse(h_lower, k_lower, c_lower, d_lower, phi_lower),
        mask=MaskLine(float(slope_lower), float(-a + voff), 0.0, float(x_max)),
        keep_above=True,
        source=segment,
    )
    logger.debug("derived reflectors for %s: upper=%s lower=%s", params, upper.ellipse, lower.ellipse)
    return upper, lower


def make_ellipse(h, k, a, b, phi) -> Ellipse:
    """Build an :class:`Ellipse`, rejecting non-positive or non-finite semi-axes."""
    values = np.array([h, k, a, b, phi], dtype=float)
    if not np.all(np.isfinite(values)):
        raise InvalidGeometry(f"ellipse parameters must be finite: {values.tolist()}")
    if a <= 0.0 or b <= 0.0:
        raise InvalidGeometry(f"ellipse semi-axes must be positive, got a={a}, b={b}")
    return Ellipse(float(h), float(k), float(a), float(b), float(phi))


# ---------------------------------------------------------------------------
# Point predicates
# ---------------------------------------------------------------------------

def to_local(point, ellipse: Ellipse) -> np.ndarray:
    """Rotate a world point into the ellipse's axis-aligned frame."""
    dx = point[0] - ellipse.h
    dy = point[1] - ellipse.k
    cos_p = np.cos(ellipse.phi)
    sin_p = np.sin(ellipse.phi)
    return np.array([dx * cos_p + dy * sin_p, -dx * sin_p + dy * cos_p])


def implicit_value(point, ellipse: Ellipse) -> float:
    """``(x'/a)^2 + (y'/b)^2 - 1``: negative inside, zero on, positive outside."""
    xr, yr = to_local(point, ellipse)
    return float((xr / ellipse.a) ** 2 + (yr / ellipse.b) ** 2 - 1.0)


def point_on_ellipse(ellipse: Ellipse, angle: float) -> np.ndarray:
    """World point at parametric ``angle`` on the ellipse."""
    cos_p = np.cos(ellipse.phi)
    sin_p = np.sin(ellipse.phi)
    u = ellipse.a * np.cos(angle)
    v = ellipse.b * np.sin(angle)
    return np.array([ellipse.h + u * cos_p - v * sin_p, ellipse.k + u * sin_p + v * cos_p])


def is_point_above_mask_line(point, mask: MaskLine) -> bool:
    return bool(point[1] > mask.slope * point[0] + mask.intercept)


def is_within_mask_range(point, mask: MaskLine) -> bool:
    return bool(mask.x_min <= point[0] <= mask.x_max)


def is_on_valid_arc(point, reflector: ReflectorDescriptor) -> bool:
    """True when *point* is on the physically present part of the reflector.

    That is the kept side of the mask line, inside its x-range, and strictly
    on the detector side of the source plane when the reflector carries one.
    """
    if reflector.source is not None and not is_left_of_source_plane(point, reflector.source):
        return False
    mask = reflector.mask
    if mask is None:
        return True
    if not is_within_mask_range(point, mask):
        return False
    return is_point_above_mask_line(point, mask) == reflector.keep_above


def is_left_of_source_plane(point, segment: SourceSegment) -> bool:
    """Cross-product side test looking from end 1 towards end 2 of the source."""
    cross = (segment.x2 - segment.x1) * (point[1] - segment.y1) - (segment.y2 - segment.y1) * (point[0] - segment.x1)
    return bool(cross > 0.0)


def is_outside_aperture(point, reflectors: Iterable[ReflectorDescriptor]) -> bool:
    """True when *point* lies outside every reflector's full ellipse."""
    return all(implicit_value(point, r.ellipse) > 0.0 for r in reflectors)
