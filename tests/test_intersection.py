"""Unit tests for reflector.intersection: ray-ellipse hits, fallbacks and normals."""

import numpy as np
import pytest

from reflector import intersection
from reflector.datatypes import Ellipse, GeometryParams, MaskLine, ReflectorDescriptor
from reflector.exceptions import NumericalDegeneracy
from reflector.geometry import (
    implicit_value,
    is_left_of_source_plane,
    is_point_above_mask_line,
    is_within_mask_range,
    point_on_ellipse,
    reflector_geometry,
    source_segment,
)
from reflector.intersection import (
    LocalSegment,
    ellipse_hits,
    ellipse_normal,
    intersect,
    intersect_reflectors,
    solve_bisection,
    solve_linear,
    solve_quadratic,
    solve_segment,
)
from reflector.rays import RayState


# ---- helpers ---------------------------------------------------------------

def _circle(r=5.0, h=0.0, k=0.0, name="circle"):
    return ReflectorDescriptor(name=name, ellipse=Ellipse(h, k, r, r, 0.0))


def _ray(x, y, dx, dy):
    return RayState((x, y), (dx, dy), max_age=100)


# ---- analytic path ---------------------------------------------------------

class TestAnalyticIntersection:

    def test_head_on_circle(self):
        """Ray at (-10, 0) along +x meets a radius-5 circle at (-5, 0)."""
        hit = intersect(_ray(-10.0, 0.0, 1.0, 0.0), _circle(), speed=10.0)
        assert hit is not None
        np.testing.assert_allclose(hit.point, [-5.0, 0.0], atol=1e-9)
        np.testing.assert_allclose(hit.normal, [-1.0, 0.0], atol=1e-9)
        assert hit.t == pytest.approx(0.5)

    def test_step_too_short_returns_none(self):
        assert intersect(_ray(-10.0, 0.0, 1.0, 0.0), _circle(), speed=4.0) is None

    def test_miss_returns_none(self):
        assert intersect(_ray(-10.0, 8.0, 1.0, 0.0), _circle(), speed=20.0) is None

    def test_pointing_away_returns_none(self):
        assert intersect(_ray(-10.0, 0.0, -1.0, 0.0), _circle(), speed=20.0) is None

    def test_nearer_root_chosen(self):
        """Both crossings inside the step: the entry point wins."""
        hits = ellipse_hits([-10.0, 0.0], [1.0, 0.0], _circle().ellipse, speed=20.0)
        assert [round(h.t, 9) for h in hits] == [0.25, 0.75]
        hit = intersect(_ray(-10.0, 0.0, 1.0, 0.0), _circle(), speed=20.0)
        np.testing.assert_allclose(hit.point, [-5.0, 0.0], atol=1e-9)

    def test_from_inside_hits_far_wall(self):
        hit = intersect(_ray(0.0, 0.0, 0.0, 1.0), _circle(), speed=10.0)
        np.testing.assert_allclose(hit.point, [0.0, 5.0], atol=1e-9)
        np.testing.assert_allclose(hit.normal, [0.0, 1.0], atol=1e-9)

    def test_rotated_ellipse_hit_lies_on_curve(self):
        ellipse = Ellipse(h=3.0, k=-2.0, a=8.0, b=3.0, phi=0.6)
        reflector = ReflectorDescriptor("tilted", ellipse)
        hit = intersect(_ray(3.0, -2.0, np.cos(0.3), np.sin(0.3)), reflector, speed=20.0)
        assert hit is not None
        assert implicit_value(hit.point, ellipse) == pytest.approx(0.0, abs=1e-9)

    def test_own_surface_is_not_rehit(self):
        """A ray sitting on the curve and heading inwards finds the far wall."""
        hit = intersect(_ray(-5.0, 0.0, 1.0, 0.0), _circle(), speed=20.0)
        np.testing.assert_allclose(hit.point, [5.0, 0.0], atol=1e-9)


# ---- fallback strategies ---------------------------------------------------

class TestQuadraticStrategy:

    def test_zero_length_step_defers(self):
        with pytest.raises(NumericalDegeneracy):
            solve_quadratic(LocalSegment(-2.0, 0.0, 0.0, 0.0, 1.0, 1.0))

    def test_tangent_defers(self):
        """Grazing the top of a unit circle puts the discriminant at zero."""
        with pytest.raises(NumericalDegeneracy):
            solve_quadratic(LocalSegment(-1.0, 1.0, 2.0, 0.0, 1.0, 1.0))

    def test_clear_miss_is_definitive(self):
        assert solve_quadratic(LocalSegment(-2.0, 3.0, 4.0, 0.0, 1.0, 1.0)) == ()

    def test_roots_are_ascending(self):
        roots = solve_quadratic(LocalSegment(-2.0, 0.0, 4.0, 0.0, 1.0, 1.0))
        assert roots == pytest.approx((0.25, 0.75))


class TestLinearStrategy:

    def test_applies_only_when_quadratic_term_vanishes(self):
        with pytest.raises(NumericalDegeneracy):
            solve_linear(LocalSegment(-2.0, 0.0, 4.0, 0.0, 1.0, 1.0))

    def test_solves_degenerate_step(self):
        seg = LocalSegment(1.0 + 1e-8, 0.0, -1e-7, 0.0, 1.0, 1.0)
        (t,) = solve_linear(seg)
        assert t == pytest.approx(0.1, rel=1e-3)

    def test_chain_reaches_linear_stage(self):
        seg = LocalSegment(1.0 + 1e-8, 0.0, -1e-7, 0.0, 1.0, 1.0)
        with pytest.raises(NumericalDegeneracy):
            solve_quadratic(seg)
        assert solve_segment(seg) == pytest.approx((0.1,), rel=1e-3)

    def test_no_linear_term_defers(self):
        with pytest.raises(NumericalDegeneracy):
            solve_linear(LocalSegment(0.0, 0.0, 0.0, 0.0, 1.0, 1.0))


class TestBisectionStrategy:

    def test_finds_crossing(self):
        (t,) = solve_bisection(LocalSegment(-10.0, 0.0, 10.0, 0.0, 5.0, 5.0))
        assert t == pytest.approx(0.5, abs=1e-6)

    def test_no_sign_change_is_no_hit(self):
        assert solve_bisection(LocalSegment(-10.0, 0.0, 1.0, 0.0, 5.0, 5.0)) == ()

    def test_iteration_cap(self, monkeypatch):
        monkeypatch.setattr(intersection, "MAX_BISECTION_ITERATIONS", 3)
        (t,) = solve_bisection(LocalSegment(-10.0, 0.0, 13.0, 0.0, 5.0, 5.0))
        # Three halvings leave the bracket 1/8 wide around t = 5/13.
        assert abs(t - 5.0 / 13.0) <= 1.0 / 8.0

    def test_used_when_earlier_stages_defer(self):
        def always_defers(seg):
            raise NumericalDegeneracy("test")

        seg = LocalSegment(-10.0, 0.0, 10.0, 0.0, 5.0, 5.0)
        roots = solve_segment(seg, (always_defers, solve_linear, solve_bisection))
        assert roots == pytest.approx((0.5,), abs=1e-6)

    def test_all_stages_defer_means_no_hit(self):
        def always_defers(seg):
            raise NumericalDegeneracy("test")

        assert solve_segment(LocalSegment(-10.0, 0.0, 10.0, 0.0, 5.0, 5.0), (always_defers,)) == ()


# ---- masking ---------------------------------------------------------------

class TestMasking:

    def test_masked_near_crossing_skipped_for_far_one(self):
        """Upper convention keeps y <= x: the entry at (-5, 0) is masked, the exit is not."""
        mask = MaskLine(slope=1.0, intercept=0.0, x_min=-100.0, x_max=100.0)
        reflector = ReflectorDescriptor("upper", Ellipse(0.0, 0.0, 5.0, 5.0, 0.0), mask, keep_above=False)
        hit = intersect(_ray(-10.0, 0.0, 1.0, 0.0), reflector, speed=30.0)
        np.testing.assert_allclose(hit.point, [5.0, 0.0], atol=1e-9)
        assert hit.reflector == "upper"

    def test_only_masked_crossings_is_no_hit(self):
        mask = MaskLine(slope=1.0, intercept=0.0, x_min=-100.0, x_max=100.0)
        reflector = ReflectorDescriptor("upper", Ellipse(0.0, 0.0, 5.0, 5.0, 0.0), mask, keep_above=False)
        assert intersect(_ray(-10.0, 0.0, 1.0, 0.0), reflector, speed=10.0) is None

    def test_lower_convention_keeps_points_above(self):
        mask = MaskLine(slope=0.0, intercept=0.0, x_min=-100.0, x_max=100.0)
        reflector = ReflectorDescriptor("lower", Ellipse(0.0, 0.0, 5.0, 5.0, 0.0), mask, keep_above=True)
        assert intersect(_ray(0.0, 0.0, 0.0, -1.0), reflector, speed=10.0) is None
        hit = intersect(_ray(0.0, 0.0, 0.0, 1.0), reflector, speed=10.0)
        np.testing.assert_allclose(hit.point, [0.0, 5.0], atol=1e-9)

    def test_outside_x_range_is_masked(self):
        mask = MaskLine(slope=0.0, intercept=100.0, x_min=0.0, x_max=100.0)
        reflector = ReflectorDescriptor("upper", Ellipse(0.0, 0.0, 5.0, 5.0, 0.0), mask, keep_above=False)
        hit = intersect(_ray(0.0, 0.0, -1.0, 0.0), reflector, speed=10.0)
        assert hit is None

    def test_arc_behind_tilted_source_does_not_reflect(self):
        params = GeometryParams(theta=0.2)
        seg = source_segment(params)
        _, lower = reflector_geometry(params)
        behind = [
            p for p in (point_on_ellipse(lower.ellipse, t) for t in np.linspace(0.0, 2.0 * np.pi, 2000, endpoint=False))
            if is_within_mask_range(p, lower.mask)
            and is_point_above_mask_line(p, lower.mask)
            and not is_left_of_source_plane(p, seg)
        ]
        assert behind
        target = behind[len(behind) // 2]

        # From the centre the ray leaves the ellipse exactly once, at the target.
        start = lower.ellipse.center
        reach = np.linalg.norm(target - start)
        ray = _ray(start[0], start[1], *(target - start))
        assert intersect(ray, lower, speed=2.0 * reach) is None

        hit = intersect(ray, lower._replace(source=None), speed=2.0 * reach)
        np.testing.assert_allclose(hit.point, target, atol=1e-6)


# ---- normals ---------------------------------------------------------------

class TestEllipseNormal:

    @pytest.mark.parametrize("angle", np.linspace(0.0, 2 * np.pi, 13)[:-1])
    def test_unit_and_outward(self, angle):
        ellipse = Ellipse(h=1.0, k=2.0, a=6.0, b=2.5, phi=0.4)
        cos_p, sin_p = np.cos(ellipse.phi), np.sin(ellipse.phi)
        u, v = ellipse.a * np.cos(angle), ellipse.b * np.sin(angle)
        point = np.array([ellipse.h + u * cos_p - v * sin_p, ellipse.k + u * sin_p + v * cos_p])

        n = ellipse_normal(point, ellipse)
        assert np.linalg.norm(n) == pytest.approx(1.0, abs=1e-12)
        assert np.dot(n, point - ellipse.center) >= 0.0

    def test_axis_aligned_vertices(self):
        ellipse = Ellipse(0.0, 0.0, 4.0, 2.0, 0.0)
        np.testing.assert_allclose(ellipse_normal([4.0, 0.0], ellipse), [1.0, 0.0], atol=1e-12)
        np.testing.assert_allclose(ellipse_normal([0.0, -2.0], ellipse), [0.0, -1.0], atol=1e-12)


# ---- nearest reflector -----------------------------------------------------

class TestNearestReflector:

    def test_nearer_reflector_wins(self):
        near = _circle(r=1.0, h=5.0, name="near")
        far = _circle(r=1.0, h=9.0, name="far")
        hit = intersect_reflectors(_ray(0.0, 0.0, 1.0, 0.0), (far, near), speed=20.0)
        assert hit.reflector == "near"
        np.testing.assert_allclose(hit.point, [4.0, 0.0], atol=1e-9)

    def test_no_reflector_hit(self):
        assert intersect_reflectors(_ray(0.0, 0.0, 0.0, 1.0), (_circle(h=50.0),), speed=5.0) is None

    def test_derived_pair_bottom_vertex(self):
        """Straight down from the cavity centre lands on the upper reflector's vertex."""
        upper, lower = reflector_geometry(GeometryParams())
        ray = _ray(300.0, 0.0, 0.0, -1.0)
        hit = intersect_reflectors(ray, (upper, lower), speed=500.0)
        assert hit.reflector == "upper"
        assert hit.point[1] == pytest.approx(upper.ellipse.k - upper.ellipse.b, abs=1e-6)
        np.testing.assert_allclose(hit.normal, [0.0, -1.0], atol=1e-9)
