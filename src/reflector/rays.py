"""The mutable ray entity and live-configuration updates.

A ray is created active and stays mutable until it is deactivated (aged out,
bounce budget spent, culled, or terminated on the detector).  Deactivation is
terminal: every mutating method is a no-op on an inactive ray.
"""

import collections
import logging
from typing import Iterable, Optional

import numpy as np

from .datatypes import SimulationConfig
from .reflection import specular_reflection

logger = logging.getLogger(__name__)


class RayState:
    """One photon-like ray.

    Attributes
    ----------
    origin : (2,) ndarray
        Emission point, never modified.
    position, direction : (2,) ndarray
        Current point and unit direction.
    path : deque of (2,) ndarray
        Append-only history used for rendering.  Bounded by ``path_limit``
        (oldest points are dropped); ``None`` keeps every point.
    power : float
        Cosmetic emission weight, not a radiometric quantity.
    """

    def __init__(self, origin, direction, max_age: int, power: float = 1.0,
                 path_limit: Optional[int] = None):
        if path_limit is not None and path_limit < 2:
            raise ValueError("path_limit must keep at least two points")
        self.origin = np.array(origin, dtype=float)
        self.position = self.origin.copy()
        direction = np.asarray(direction, dtype=float)
        self.direction = direction / np.linalg.norm(direction)
        self.active = True
        self.bounce_count = 0
        self.age = 0
        self.max_age = int(max_age)
        self.total_distance = 0.0
        self.power = float(power)
        self.path = collections.deque([self.position.copy()], maxlen=path_limit)

    @classmethod
    def from_angle(cls, x: float, y: float, angle: float, max_age: int, **kwargs) -> "RayState":
        return cls((x, y), (np.cos(angle), np.sin(angle)), max_age, **kwargs)

    def __repr__(self):
        state = "active" if self.active else "inactive"
        return (f"RayState(position={self.position.tolist()}, direction={self.direction.tolist()}, "
                f"bounces={self.bounce_count}, age={self.age}, {state})")

    @property
    def last_segment(self):
        """The two most recent path points, or None before the first step."""
        if len(self.path) < 2:
            return None
        return self.path[-2], self.path[-1]

    def _advance_to(self, point) -> None:
        point = np.asarray(point, dtype=float)
        self.total_distance += float(np.linalg.norm(point - self.position))
        self.position = point.copy()
        self.path.append(point.copy())

    def step(self, speed: float) -> None:
        """Move one step along the direction and age by one tick."""
        if not self.active:
            return
        new_position = self.position + speed * self.direction
        self.age += 1
        if self.age > self.max_age:
            self.active = False
            return
        self._advance_to(new_position)

    def move_to(self, point) -> None:
        """Snap to *point* (e.g. a clipped intersection) without ageing."""
        if not self.active:
            return
        self._advance_to(point)

    def reflect(self, normal, max_bounces: int) -> None:
        """Specular reflection about *normal*; spends one unit of bounce budget."""
        if not self.active:
            return
        # numpy in, numpy out: the direction stays float64.
        reflected = specular_reflection(self.direction, np.asarray(normal, dtype=np.float64))
        self.direction = np.asarray(reflected, dtype=float)
        self.direction /= np.linalg.norm(self.direction)
        self.bounce_count += 1
        if self.bounce_count >= max_bounces:
            self.active = False

    def terminate_at(self, point) -> None:
        """Replace the last path point with *point* and deactivate."""
        if not self.active:
            return
        point = np.asarray(point, dtype=float)
        previous = self.path[-2] if len(self.path) >= 2 else self.origin
        self.total_distance += float(np.linalg.norm(point - previous) - np.linalg.norm(self.position - previous))
        self.position = point.copy()
        self.path[-1] = point.copy()
        self.active = False

    def deactivate(self) -> None:
        self.active = False

    def opacity(self) -> float:
        """Display fade: newer rays are more opaque, floored at 0.1."""
        if self.max_age <= 0:
            return 0.1
        return max(0.1, 1.0 - 0.8 * self.age / self.max_age)


def apply_config(rays: Iterable[RayState], config: SimulationConfig) -> int:
    """Retroactively apply a live lifetime edit to every extant ray.

    Returns the number of rays updated.
    """
    updated = 0
    for ray in rays:
        if ray.max_age != config.ray_lifetime:
            ray.max_age = config.ray_lifetime
            updated += 1
    if updated:
        logger.info("applied ray lifetime %d to %d live rays", config.ray_lifetime, updated)
    return updated
