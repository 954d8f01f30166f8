"""
Pixel operations shared by the detector and the crop extractor.

Every function samples with :func:`cv2.warpAffine` under one convention:
pixel ``(i, j)`` covers the continuous square ``[i, i+1) x [j, j+1)``, so a
continuous coordinate ``u`` in an output of width ``W`` extracted from a box
of width ``w`` corresponds exactly to ``box.x + u * w / W`` in the source.
Keeping that convention everywhere is what lets detections be mapped back
through resize/crop/pad chains, and aligned faces be re-extracted from a
cached crop, without drift.

Images are ``(H, W, C)`` uint8 arrays in OpenCV's BGR channel order.
Regions outside the source are filled with black.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from .geometry import Box, CoordinateTransform


@dataclass(frozen=True)
class ResizedImage:
    """A square canvas holding an aspect-preserving resize at its top-left.

    ``to_source`` maps canvas pixel coordinates back to the original image.
    """
    image: np.ndarray
    width: int
    height: int
    to_source: CoordinateTransform


def is_empty_image(image: Optional[np.ndarray]) -> bool:
    return image is None or image.ndim < 2 or image.shape[0] == 0 or image.shape[1] == 0


def crop_with_rotation(image: np.ndarray, box: Box, rotation: float,
                       size: Tuple[int, int]) -> np.ndarray:
    """Sample ``box`` rotated by ``rotation`` about its centre into ``size``.

    Parameters
    ----------
    image: ndarray
        Source image.
    box: Box
        Region in source pixel coordinates.  With a non-zero rotation the
        sampled region is this box turned by ``rotation`` radians about its
        centre, so content tilted by ``rotation`` comes out upright.
    rotation: float
        Angle in radians (same convention as :class:`CoordinateTransform`).
    size: (int, int)
        Output ``(width, height)``.

    Returns
    -------
    ndarray
        The resampled region, ``height x width`` with the source's channels.
    """
    out_w, out_h = int(size[0]), int(size[1])
    if out_w <= 0 or out_h <= 0:
        raise ValueError(f"Output size must be positive, got {size}")
    sx = box.width / out_w
    sy = box.height / out_h
    cos_r = math.cos(rotation)
    sin_r = math.sin(rotation)
    center = box.center
    # Inverse map: output pixel index -> source pixel index.
    a = np.array([[cos_r * sx, -sin_r * sy],
                  [sin_r * sx, cos_r * sy]], dtype=np.float64)
    offset = np.array([(0.5 - out_w / 2.0), (0.5 - out_h / 2.0)], dtype=np.float64)
    b = np.array([center.x, center.y]) + a @ offset - 0.5
    matrix = np.hstack([a, b.reshape(2, 1)])
    return cv2.warpAffine(
        image, matrix, (out_w, out_h),
        flags=cv2.INTER_LINEAR | cv2.WARP_INVERSE_MAP,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=0,
    )


def crop_box(image: np.ndarray, box: Box, max_size: Optional[int] = None) -> Tuple[np.ndarray, float]:
    """Extract ``box`` without rotation, optionally fitted inside ``max_size``.

    Returns the crop and the scale from source pixels to crop pixels.
    """
    if box.width <= 0 or box.height <= 0:
        raise ValueError("Cannot crop an empty box")
    scale = 1.0
    if max_size:
        scale = min(max_size / box.width, max_size / box.height)
    out_w = max(1, int(round(box.width * scale)))
    scale = out_w / box.width
    out_h = max(1, int(round(box.height * scale)))
    return crop_with_rotation(image, box, 0.0, (out_w, out_h)), scale


def resize_to_square(image: np.ndarray, size: int) -> ResizedImage:
    """Fit ``image`` into a ``size x size`` canvas, top-left aligned."""
    h, w = image.shape[:2]
    scale = size / float(max(w, h))
    new_w = max(1, int(round(w * scale)))
    new_h = max(1, int(round(h * scale)))
    # Sample the full source extent into new_w x new_h, so the map is exact.
    content = crop_with_rotation(image, Box(0, 0, w, h), 0.0, (new_w, new_h))
    canvas = np.zeros((size, size) + image.shape[2:], dtype=image.dtype)
    canvas[:new_h, :new_w] = content
    to_source = CoordinateTransform(scale=w / float(new_w))
    return ResizedImage(canvas, new_w, new_h, to_source)


def add_padding(image: np.ndarray, padding: float) -> Tuple[np.ndarray, Tuple[int, int]]:
    """Surround ``image`` with a black border of ``padding`` times its size.

    Returns the padded image and the ``(x, y)`` offset of the original.
    """
    h, w = image.shape[:2]
    pad_x = int(round(w * padding))
    pad_y = int(round(h * padding))
    padded = cv2.copyMakeBorder(image, pad_y, pad_y, pad_x, pad_x,
                                cv2.BORDER_CONSTANT, value=0)
    return padded, (pad_x, pad_y)
