"""
Similarity alignment of detected faces to a canonical pose.

The embedder expects faces with the eyes at fixed positions of a square
image.  With two reference points a similarity transform (uniform scale,
rotation, translation) is fully determined, so it is computed in closed
form from the eye landmarks instead of a least-squares fit.
"""

from __future__ import annotations

import math
from typing import Tuple

from .errors import AlignmentError
from .geometry import Box, CoordinateTransform, Point
from .records import AlignedFace, FaceDetection

DEFAULT_LEFT_EYE = (0.36, 0.45)


def compute_alignment(left_eye: Point, right_eye: Point, face_size: int,
                      desired_left_eye: Tuple[float, float] = DEFAULT_LEFT_EYE) -> CoordinateTransform:
    """Transform from source pixels to the ``face_size`` canonical frame.

    Parameters
    ----------
    left_eye, right_eye: Point
        Eye landmarks in source pixels; ``left_eye`` is the one on the
        image's left.
    face_size: int
        Side of the canonical frame in pixels.
    desired_left_eye: (float, float)
        Normalised target of ``left_eye``; ``right_eye`` goes to
        ``(1 - x, y)``.

    Returns
    -------
    CoordinateTransform
        Maps ``left_eye``/``right_eye`` exactly onto their targets.
    """
    dx = right_eye.x - left_eye.x
    dy = right_eye.y - left_eye.y
    distance = math.hypot(dx, dy)
    desired_distance = (1.0 - 2.0 * desired_left_eye[0]) * face_size
    if distance <= 1e-9 or desired_distance <= 0:
        raise AlignmentError("Eye landmarks coincide; cannot align face")

    angle = math.atan2(dy, dx)
    scale = desired_distance / distance
    eyes_center = Point((left_eye.x + right_eye.x) / 2.0, (left_eye.y + right_eye.y) / 2.0)
    target = Point(0.5 * face_size, desired_left_eye[1] * face_size)

    # Rotate the eye line to horizontal, scale, then move the eye midpoint.
    linear = CoordinateTransform(scale=scale, rotation=-angle)
    moved = linear.apply_point(eyes_center)
    return CoordinateTransform(
        scale=scale,
        rotation=-angle,
        translate_x=target.x - moved.x,
        translate_y=target.y - moved.y,
    )


def aligned_box_for(alignment: CoordinateTransform, face_size: int) -> Tuple[Box, float]:
    """Footprint of the canonical frame in the source image.

    Returns the unrotated square box and the rotation to apply about its
    centre when sampling it.
    """
    to_source = alignment.inverse()
    center = to_source.apply_point(Point(face_size / 2.0, face_size / 2.0))
    side = face_size * to_source.scale
    box = Box(center.x - side / 2.0, center.y - side / 2.0, side, side)
    return box, to_source.rotation


def align_face(detection: FaceDetection, face_size: int = 112,
               desired_left_eye: Tuple[float, float] = DEFAULT_LEFT_EYE) -> AlignedFace:
    """Align ``detection`` using its first two landmarks (the eyes)."""
    if len(detection.landmarks) < 2:
        raise AlignmentError("Detection has fewer than two landmarks")
    left_eye, right_eye = detection.landmarks[0], detection.landmarks[1]
    alignment = compute_alignment(left_eye, right_eye, face_size, desired_left_eye)
    aligned_box, rotation = aligned_box_for(alignment, face_size)
    return AlignedFace(
        detection=detection,
        alignment=alignment,
        aligned_box=aligned_box,
        rotation=rotation,
    )
