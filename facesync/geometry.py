"""
Points, boxes and similarity transforms.

The detector maps results through several coordinate spaces (source image,
square detector input, padded second-pass crop, canonical face frame).  All
of them are expressed with the immutable value types in this module so a
box is never silently reinterpreted in the wrong space: every operation
returns a new value and the transform between two spaces is an explicit
:class:`CoordinateTransform`.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

import numpy as np


@dataclass(frozen=True)
class Point:
    x: float
    y: float

    def distance_to(self, other: "Point") -> float:
        return math.hypot(self.x - other.x, self.y - other.y)


@dataclass(frozen=True)
class Box:
    """Axis-aligned rectangle ``(x, y, width, height)``.

    The coordinate space (pixels of some image, or a normalised frame) is
    given by context; the box itself only guarantees non-negative extent.
    """

    x: float
    y: float
    width: float
    height: float

    def __post_init__(self) -> None:
        if self.width < 0 or self.height < 0:
            raise ValueError(f"Box extent must be non-negative, got {self.width}x{self.height}")

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @property
    def center(self) -> Point:
        return Point(self.x + self.width / 2.0, self.y + self.height / 2.0)

    @property
    def area(self) -> float:
        return self.width * self.height

    def enlarge(self, factor: float) -> "Box":
        """Scale width and height by ``factor`` keeping the centre fixed."""
        center = self.center
        width = self.width * factor
        height = self.height * factor
        return Box(center.x - width / 2.0, center.y - height / 2.0, width, height)

    def rescale(self, factor: float) -> "Box":
        """Scale all coordinates by ``factor`` (anchored at the origin)."""
        return Box(self.x * factor, self.y * factor, self.width * factor, self.height * factor)

    def shift(self, dx: float, dy: float) -> "Box":
        return Box(self.x + dx, self.y + dy, self.width, self.height)

    def round(self) -> "Box":
        return Box(float(round(self.x)), float(round(self.y)),
                   float(round(self.width)), float(round(self.height)))

    def corners(self) -> Tuple[Point, Point, Point, Point]:
        return (
            Point(self.x, self.y),
            Point(self.right, self.y),
            Point(self.right, self.bottom),
            Point(self.x, self.bottom),
        )

    def to_list(self) -> List[float]:
        return [float(self.x), float(self.y), float(self.width), float(self.height)]

    @classmethod
    def from_list(cls, values: Sequence[float]) -> "Box":
        x, y, width, height = values
        return cls(float(x), float(y), float(width), float(height))

    @classmethod
    def from_corners(cls, x1: float, y1: float, x2: float, y2: float) -> "Box":
        return cls(float(x1), float(y1), float(max(0.0, x2 - x1)), float(max(0.0, y2 - y1)))

    @classmethod
    def bounding(cls, points: Iterable[Point]) -> "Box":
        pts = list(points)
        if not pts:
            raise ValueError("Cannot bound an empty point set")
        xs = [p.x for p in pts]
        ys = [p.y for p in pts]
        return cls.from_corners(min(xs), min(ys), max(xs), max(ys))


@dataclass(frozen=True)
class CoordinateTransform:
    """Similarity transform ``p -> scale * R(rotation) * p + t``.

    ``rotation`` is in radians, counter-clockwise in a y-up frame (which is
    clockwise on screen, since image rows grow downwards).  Transforms
    compose like functions: ``a.compose(b)`` applies ``b`` first.
    """

    scale: float = 1.0
    rotation: float = 0.0
    translate_x: float = 0.0
    translate_y: float = 0.0

    def __post_init__(self) -> None:
        if not self.scale > 0:
            raise ValueError(f"Transform scale must be positive, got {self.scale}")

    @classmethod
    def identity(cls) -> "CoordinateTransform":
        return cls()

    @classmethod
    def scaling(cls, scale: float) -> "CoordinateTransform":
        return cls(scale=scale)

    @classmethod
    def translation(cls, dx: float, dy: float) -> "CoordinateTransform":
        return cls(translate_x=dx, translate_y=dy)

    def _linear(self, x: float, y: float) -> Tuple[float, float]:
        cos_r = math.cos(self.rotation)
        sin_r = math.sin(self.rotation)
        return (self.scale * (cos_r * x - sin_r * y),
                self.scale * (sin_r * x + cos_r * y))

    def apply_point(self, point: Point) -> Point:
        x, y = self._linear(point.x, point.y)
        return Point(x + self.translate_x, y + self.translate_y)

    def apply_points(self, points: Iterable[Point]) -> Tuple[Point, ...]:
        return tuple(self.apply_point(p) for p in points)

    def apply_box(self, box: Box) -> Box:
        """Return the axis-aligned bounds of the transformed box corners."""
        return Box.bounding(self.apply_point(c) for c in box.corners())

    def compose(self, other: "CoordinateTransform") -> "CoordinateTransform":
        """Return ``self ∘ other``: the map that applies ``other`` then ``self``."""
        tx, ty = self._linear(other.translate_x, other.translate_y)
        return CoordinateTransform(
            scale=self.scale * other.scale,
            rotation=_wrap_angle(self.rotation + other.rotation),
            translate_x=tx + self.translate_x,
            translate_y=ty + self.translate_y,
        )

    def inverse(self) -> "CoordinateTransform":
        inv = CoordinateTransform(scale=1.0 / self.scale, rotation=-self.rotation)
        tx, ty = inv._linear(self.translate_x, self.translate_y)
        return CoordinateTransform(inv.scale, inv.rotation, -tx, -ty)

    def to_matrix(self) -> np.ndarray:
        cos_r = math.cos(self.rotation) * self.scale
        sin_r = math.sin(self.rotation) * self.scale
        return np.array([
            [cos_r, -sin_r, self.translate_x],
            [sin_r, cos_r, self.translate_y],
        ], dtype=np.float64)

    def is_close(self, other: "CoordinateTransform", tol: float = 1e-9) -> bool:
        return bool(np.allclose(self.to_matrix(), other.to_matrix(), atol=tol))

    def to_list(self) -> List[float]:
        return [self.scale, self.rotation, self.translate_x, self.translate_y]

    @classmethod
    def from_list(cls, values: Sequence[float]) -> "CoordinateTransform":
        scale, rotation, tx, ty = values
        return cls(float(scale), float(rotation), float(tx), float(ty))


def _wrap_angle(angle: float) -> float:
    return math.atan2(math.sin(angle), math.cos(angle))


def compute_transform_to_box(in_box: Box, to_box: Box) -> CoordinateTransform:
    """Transform mapping ``in_box`` onto ``to_box`` with a uniform scale.

    The scale is taken from the widths; callers only use this between boxes
    of the same aspect ratio.
    """
    if in_box.width <= 0:
        raise ValueError("Source box has zero width")
    scale = to_box.width / in_box.width
    return CoordinateTransform(
        scale=scale,
        translate_x=to_box.x - in_box.x * scale,
        translate_y=to_box.y - in_box.y * scale,
    )


def center_distance(a: Box, b: Box) -> float:
    return a.center.distance_to(b.center)
