import math

import numpy as np
import pytest

from facesync.geometry import (
    Box, CoordinateTransform, Point, center_distance, compute_transform_to_box,
)


def _close_box(a: Box, b: Box, tol: float = 1e-9) -> bool:
    return np.allclose(a.to_list(), b.to_list(), atol=tol)


def test_box_rejects_negative_extent():
    with pytest.raises(ValueError):
        Box(0, 0, -1, 5)
    assert Box(3, 4, 0, 0).area == 0


def test_box_properties():
    box = Box(10, 20, 30, 40)
    assert box.right == 40
    assert box.bottom == 60
    assert box.center == Point(25, 40)
    assert Box.from_corners(10, 20, 40, 60) == box
    assert Box.from_list(box.to_list()) == box


def test_enlarge_keeps_centre_and_round_trips():
    box = Box(10.5, 20.25, 30, 40)
    bigger = box.enlarge(2.0)
    assert bigger.center == box.center
    assert bigger.width == 60 and bigger.height == 80
    assert _close_box(bigger.enlarge(0.5), box)


def test_rescale_is_origin_anchored_and_round_trips():
    box = Box(10, 20, 30, 40)
    assert box.rescale(2.0) == Box(20, 40, 60, 80)
    assert _close_box(box.rescale(3.7).rescale(1 / 3.7), box)


def test_bounding_box_of_points():
    box = Box.bounding([Point(3, 9), Point(-1, 2), Point(5, 4)])
    assert box == Box(-1, 2, 6, 7)
    with pytest.raises(ValueError):
        Box.bounding([])


def test_transform_rejects_non_positive_scale():
    with pytest.raises(ValueError):
        CoordinateTransform(scale=0)


def test_transform_inverse_and_compose():
    t = CoordinateTransform(scale=2.5, rotation=0.7, translate_x=-4, translate_y=11)
    p = Point(3.0, -8.0)
    back = t.inverse().apply_point(t.apply_point(p))
    assert math.isclose(back.x, p.x, abs_tol=1e-9)
    assert math.isclose(back.y, p.y, abs_tol=1e-9)
    assert t.compose(t.inverse()).is_close(CoordinateTransform.identity())


def test_compose_applies_right_operand_first():
    scale = CoordinateTransform.scaling(2.0)
    shift = CoordinateTransform.translation(5, 0)
    p = Point(1, 1)
    assert scale.compose(shift).apply_point(p) == Point(12, 2)
    assert shift.compose(scale).apply_point(p) == Point(7, 2)


def test_to_matrix_agrees_with_apply_point():
    t = CoordinateTransform(scale=0.8, rotation=-1.1, translate_x=2, translate_y=3)
    p = Point(7, -2)
    mapped = t.to_matrix() @ np.array([p.x, p.y, 1.0])
    q = t.apply_point(p)
    assert np.allclose(mapped, [q.x, q.y])


def test_apply_box_without_rotation_is_exact():
    t = CoordinateTransform(scale=2.0, translate_x=1, translate_y=-1)
    assert t.apply_box(Box(1, 2, 3, 4)) == Box(3, 3, 6, 8)


def test_apply_box_with_rotation_bounds_corners():
    t = CoordinateTransform(rotation=math.pi / 4)
    box = t.apply_box(Box(-1, -1, 2, 2))
    half = math.sqrt(2)
    assert _close_box(box, Box(-half, -half, 2 * half, 2 * half))


def test_compute_transform_to_box():
    src = Box(10, 10, 20, 20)
    dst = Box(0, 0, 100, 100)
    t = compute_transform_to_box(src, dst)
    assert _close_box(t.apply_box(src), dst)


def test_center_distance():
    assert center_distance(Box(0, 0, 2, 2), Box(3, 4, 2, 2)) == 5.0


def test_transform_list_round_trip():
    t = CoordinateTransform(1.5, 0.2, 3, 4)
    assert CoordinateTransform.from_list(t.to_list()) == t
