"""Ray-ellipse intersection within one propagation step, and surface normals.

Unlike the statistics code these functions run per ray with ordinary Python
control flow: the root finding is an ordered chain of strategies, each of
which either answers definitively (a possibly empty tuple of segment
parameters) or raises :class:`NumericalDegeneracy` to hand over to the next.

Coordinate convention
---------------------
* A step is the segment ``P(t) = position + t * speed * direction`` for
  ``t`` in ``[0, 1]``.
* The segment is rotated into the ellipse's local frame, where the ellipse is
  ``(x/a)^2 + (y/b)^2 = 1`` and the implicit function is negative inside.
* Normals point away from the ellipse interior.
"""

import logging
from typing import Callable, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from .datatypes import Ellipse, Intersection, ReflectorDescriptor
from .exceptions import NumericalDegeneracy
from .geometry import is_on_valid_arc, to_local

logger = logging.getLogger(__name__)

T_MIN = 1e-9                    # roots closer than this are the ray's own surface
MIN_HIT_DISTANCE = 1e-7         # same, as a world-space distance along the step
LEADING_EPS = 1e-12             # |A| below this: the segment has no length
TANGENT_EPS = 1e-12             # relative discriminant band treated as tangent
RESIDUAL_TOL = 1e-8             # implicit value allowed at an analytic root
MAX_BISECTION_ITERATIONS = 50
DISTANCE_TOLERANCE = 1e-7       # bisection stops once this close to the curve


class LocalSegment(NamedTuple):
    """One propagation step expressed in an ellipse's local frame."""
    rx: float
    ry: float
    rdx: float
    rdy: float
    a: float
    b: float

    def implicit(self, t: float) -> float:
        x = self.rx + t * self.rdx
        y = self.ry + t * self.rdy
        return (x / self.a) ** 2 + (y / self.b) ** 2 - 1.0

    def distance_estimate(self, t: float) -> float:
        """First-order distance to the curve, ``|f| / |grad f|``."""
        x = self.rx + t * self.rdx
        y = self.ry + t * self.rdy
        grad = np.hypot(2.0 * x / self.a ** 2, 2.0 * y / self.b ** 2)
        f = abs(self.implicit(t))
        if grad == 0.0:
            return float("inf")
        return f / grad


def local_segment(origin, direction, ellipse: Ellipse, speed: float) -> LocalSegment:
    rx, ry = to_local(origin, ellipse)
    cos_p = np.cos(ellipse.phi)
    sin_p = np.sin(ellipse.phi)
    dx = direction[0] * speed
    dy = direction[1] * speed
    return LocalSegment(
        rx=float(rx),
        ry=float(ry),
        rdx=float(dx * cos_p + dy * sin_p),
        rdy=float(-dx * sin_p + dy * cos_p),
        a=ellipse.a,
        b=ellipse.b,
    )


def quadratic_coefficients(seg: LocalSegment) -> Tuple[float, float, float]:
    """``A t^2 + B t + C = 0`` for the segment against the unit-scaled ellipse."""
    a2 = seg.a * seg.a
    b2 = seg.b * seg.b
    A = seg.rdx * seg.rdx / a2 + seg.rdy * seg.rdy / b2
    B = 2.0 * (seg.rx * seg.rdx / a2 + seg.ry * seg.rdy / b2)
    C = seg.rx * seg.rx / a2 + seg.ry * seg.ry / b2 - 1.0
    return A, B, C


def _in_step(t: float) -> bool:
    return T_MIN <= t <= 1.0


# ---------------------------------------------------------------------------
# Strategies, tried in order
# ---------------------------------------------------------------------------

def solve_quadratic(seg: LocalSegment) -> Tuple[float, ...]:
    """Analytic roots of the quadratic, ascending, restricted to the step.

    Raises
    ------
    NumericalDegeneracy
        When the leading coefficient vanishes, the discriminant sits inside
        the tangent band, or a root fails the residual check.
    """
    A, B, C = quadratic_coefficients(seg)
    if not np.all(np.isfinite([A, B, C])):
        raise NumericalDegeneracy("non-finite quadratic coefficients")
    if abs(A) < LEADING_EPS:
        raise NumericalDegeneracy("leading coefficient is numerically zero")

    disc = B * B - 4.0 * A * C
    band = TANGENT_EPS * max(B * B, abs(4.0 * A * C))
    if abs(disc) <= band:
        raise NumericalDegeneracy("ray is numerically tangent to the ellipse")
    if disc < 0.0:
        return ()

    # Citardauq form avoids subtracting nearly equal quantities.
    sqrt_disc = np.sqrt(disc)
    q = -0.5 * (B + np.copysign(sqrt_disc, B))
    roots = [q / A]
    if q != 0.0:
        roots.append(C / q)
    roots = sorted(float(t) for t in roots)

    hits = tuple(t for t in roots if _in_step(t))
    for t in hits:
        if abs(seg.implicit(t)) > RESIDUAL_TOL:
            raise NumericalDegeneracy(f"root t={t:.6g} fails the residual check")
    return hits


def solve_linear(seg: LocalSegment) -> Tuple[float, ...]:
    """``B t + C = 0``; only applicable when the quadratic term has vanished."""
    A, B, C = quadratic_coefficients(seg)
    if abs(A) >= LEADING_EPS:
        raise NumericalDegeneracy("quadratic term is significant; linear model does not apply")
    if abs(B) < LEADING_EPS:
        raise NumericalDegeneracy("linear term is numerically zero")
    t = -C / B
    return (float(t),) if _in_step(t) else ()


def solve_bisection(seg: LocalSegment) -> Tuple[float, ...]:
    """Bounded bisection for a sign change of the implicit function on the step."""
    lo, hi = 0.0, 1.0
    f_lo = seg.implicit(lo)
    f_hi = seg.implicit(hi)
    if not (np.isfinite(f_lo) and np.isfinite(f_hi)):
        raise NumericalDegeneracy("implicit function is not finite on the step")
    if np.sign(f_lo) == np.sign(f_hi):
        return ()

    t = 0.5 * (lo + hi)
    for _ in range(MAX_BISECTION_ITERATIONS):
        t = 0.5 * (lo + hi)
        f_mid = seg.implicit(t)
        if seg.distance_estimate(t) < DISTANCE_TOLERANCE:
            break
        if np.sign(f_mid) == np.sign(f_lo):
            lo, f_lo = t, f_mid
        else:
            hi = t
    return (t,) if _in_step(t) else ()


Strategy = Callable[[LocalSegment], Tuple[float, ...]]

STRATEGIES: Tuple[Strategy, ...] = (solve_quadratic, solve_linear, solve_bisection)


def solve_segment(seg: LocalSegment, strategies: Sequence[Strategy] = STRATEGIES) -> Tuple[float, ...]:
    """Run *strategies* in order; the first that does not raise decides."""
    for strategy in strategies:
        try:
            return strategy(seg)
        except NumericalDegeneracy as exc:
            logger.debug("%s deferred: %s", strategy.__name__, exc)
    return ()


# ---------------------------------------------------------------------------
# Normals and public entry points
# ---------------------------------------------------------------------------

def ellipse_normal(point, ellipse: Ellipse) -> np.ndarray:
    """Outward unit normal: the implicit gradient rotated back to world axes."""
    xr, yr = to_local(point, ellipse)
    nx = 2.0 * xr / (ellipse.a * ellipse.a)
    ny = 2.0 * yr / (ellipse.b * ellipse.b)
    norm = np.hypot(nx, ny)
    if norm > 0.0:
        nx /= norm
        ny /= norm

    cos_p = np.cos(ellipse.phi)
    sin_p = np.sin(ellipse.phi)
    normal = np.array([nx * cos_p - ny * sin_p, nx * sin_p + ny * cos_p])

    outward = np.asarray(point, dtype=float) - ellipse.center
    if np.dot(normal, outward) < 0.0:
        normal = -normal
    return normal


def ellipse_hits(origin, direction, ellipse: Ellipse, speed: float,
                 strategies: Sequence[Strategy] = STRATEGIES):
    """All crossings of the ellipse within one step, nearest first (unmasked)."""
    origin = np.asarray(origin, dtype=float)
    direction = np.asarray(direction, dtype=float)
    seg = local_segment(origin, direction, ellipse, speed)
    hits = []
    for t in solve_segment(seg, strategies):
        if t * speed < MIN_HIT_DISTANCE:
            continue
        point = origin + t * speed * direction
        hits.append(Intersection(t=t, point=point, normal=ellipse_normal(point, ellipse)))
    return hits


def intersect(ray, reflector: ReflectorDescriptor, speed: float,
              strategies: Sequence[Strategy] = STRATEGIES) -> Optional[Intersection]:
    """Nearest crossing of *reflector* in the ray's next step, or None.

    Crossings on the masked side of the reflector's mask line, or outside its
    x-range, are skipped; a farther crossing on the valid arc still counts.

    Parameters
    ----------
    ray : RayState
        Only ``position`` and ``direction`` are read.
    reflector : ReflectorDescriptor
    speed : float
        Step length; the step spans ``t`` in ``[0, 1]``.

    Returns
    -------
    Intersection or None
        ``None`` is the common "nothing this step" outcome.
    """
    for hit in ellipse_hits(ray.position, ray.direction, reflector.ellipse, speed, strategies):
        if is_on_valid_arc(hit.point, reflector):
            return hit._replace(reflector=reflector.name)
    return None


def intersect_reflectors(ray, reflectors: Sequence[ReflectorDescriptor], speed: float,
                         strategies: Sequence[Strategy] = STRATEGIES) -> Optional[Intersection]:
    """Nearest valid hit across all reflectors (smallest traversal distance)."""
    best = None
    for reflector in reflectors:
        hit = intersect(ray, reflector, speed, strategies)
        if hit is not None and (best is None or hit.t < best.t):
            best = hit
    return best
