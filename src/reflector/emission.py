"""Ray emission along the finite source segment.

Randomness comes from an explicit ``jax.random`` key held by the sampler and
split on every draw, so a sampler built from ``jax.random.PRNGKey(seed)``
reproduces the same rays for the same sequence of calls.
"""

import logging
from typing import List, Optional

import jax
import numpy as np

from .datatypes import EDGE_THRESHOLD, MAX_SPREAD, EmissionPolicy, SourceSegment
from .geometry import source_normal
from .rays import RayState

logger = logging.getLogger(__name__)


def _wrap_angle(angle: np.ndarray) -> np.ndarray:
    """Map angles onto ``[-pi, pi]``."""
    return (angle + np.pi) % (2.0 * np.pi) - np.pi


def edge_blend_angles(t, u_angle, base_angle, segment: SourceSegment):
    """Emission angles for :attr:`EmissionPolicy.EDGE_BLEND`.

    Interior samples jitter uniformly by ``MAX_SPREAD`` (full width) about
    the normal.  Samples within ``EDGE_THRESHOLD`` of either end interpolate
    uniformly between the normal and the direction towards the source
    centre, which keeps edge rays from leaving the reflector cavity.

    Returns
    -------
    angles, power : (N,) arrays
    """
    x = segment.x1 + t * (segment.x2 - segment.x1)
    y = segment.y1 + t * (segment.y2 - segment.y1)
    centre = segment.midpoint

    interior = base_angle + (u_angle - 0.5) * MAX_SPREAD
    to_centre = np.arctan2(centre[1] - y, centre[0] - x)
    edge = base_angle + u_angle * _wrap_angle(to_centre - base_angle)

    is_edge = (t < EDGE_THRESHOLD) | (t > 1.0 - EDGE_THRESHOLD)
    angles = np.where(is_edge, edge, interior)
    return angles, np.ones_like(angles)


def lambert_angles(u_angle, base_angle):
    """Emission angles for :attr:`EmissionPolicy.LAMBERT`.

    In 2-D a cosine-weighted direction has ``sin(offset)`` uniform on
    ``[-1, 1]``.  The cosine of the offset is kept as the ray's power.
    """
    offset = np.arcsin(2.0 * u_angle - 1.0)
    return base_angle + offset, np.cos(offset)


class EmissionSampler:
    """Creates new rays on a source segment.

    Parameters
    ----------
    key : jax PRNG key
        Seed state; use ``jax.random.PRNGKey(seed)``.
    policy : EmissionPolicy
        Exactly one policy is applied per call.
    """

    def __init__(self, key, policy: EmissionPolicy = EmissionPolicy.EDGE_BLEND):
        self._key = key
        self.policy = EmissionPolicy(policy)

    @classmethod
    def from_seed(cls, seed: int, policy: EmissionPolicy = EmissionPolicy.EDGE_BLEND) -> "EmissionSampler":
        return cls(jax.random.PRNGKey(seed), policy)

    def _uniform(self, n: int) -> np.ndarray:
        self._key, subkey = jax.random.split(self._key)
        return np.asarray(jax.random.uniform(subkey, (n, 2)), dtype=float)

    def sample(self, segment: SourceSegment, n: int, max_age: int,
               policy: Optional[EmissionPolicy] = None,
               path_limit: Optional[int] = None) -> List[RayState]:
        """Emit *n* rays from *segment*.

        Raises
        ------
        InvalidGeometry
            If the segment has zero length.
        """
        normal = source_normal(segment)
        if n <= 0:
            return []
        policy = self.policy if policy is None else EmissionPolicy(policy)

        u = self._uniform(n)
        t, u_angle = u[:, 0], u[:, 1]
        base_angle = np.arctan2(normal[1], normal[0])

        if policy is EmissionPolicy.EDGE_BLEND:
            angles, power = edge_blend_angles(t, u_angle, base_angle, segment)
        elif policy is EmissionPolicy.LAMBERT:
            angles, power = lambert_angles(u_angle, base_angle)
        else:
            raise ValueError(f"unsupported emission policy: {policy!r}")

        xs = segment.x1 + t * (segment.x2 - segment.x1)
        ys = segment.y1 + t * (segment.y2 - segment.y1)
        logger.debug("emitting %d rays with policy %s", n, policy.value)
        return [
            RayState.from_angle(float(x), float(y), float(angle), max_age,
                                power=float(p), path_limit=path_limit)
            for x, y, angle, p in zip(xs, ys, angles, power)
        ]
