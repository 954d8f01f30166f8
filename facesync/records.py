"""
Value types passed between pipeline stages and persisted in the store.

``FaceDetection``, ``AlignedFace`` and ``FaceCrop`` are transient and live
for one file's pipeline run.  ``FaceRecord``/``FileFaces`` are what the
store keeps per file, and ``SyncJobState`` is the resumable cursor of the
library sync.  Coordinates are source-image pixels unless stated otherwise.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

import numpy as np

from .geometry import Box, CoordinateTransform, Point


@dataclass(frozen=True)
class FaceDetection:
    box: Box
    landmarks: Tuple[Point, ...]
    probability: float

    def transformed(self, transform: CoordinateTransform) -> "FaceDetection":
        """Return this detection mapped into another coordinate space."""
        return replace(
            self,
            box=transform.apply_box(self.box),
            landmarks=transform.apply_points(self.landmarks),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "box": self.box.to_list(),
            "landmarks": [[p.x, p.y] for p in self.landmarks],
            "probability": float(self.probability),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FaceDetection":
        return cls(
            box=Box.from_list(data["box"]),
            landmarks=tuple(Point(float(x), float(y)) for x, y in data["landmarks"]),
            probability=float(data["probability"]),
        )


@dataclass(frozen=True)
class AlignedFace:
    """A detection plus the similarity transform to the canonical face frame.

    ``alignment`` maps source pixels to the ``face_size`` square canonical
    frame.  ``aligned_box`` is that frame's footprint in the source image
    before rotation: the region to sample, turned by ``rotation`` about its
    centre, to get an upright aligned face.
    """
    detection: FaceDetection
    alignment: CoordinateTransform
    aligned_box: Box
    rotation: float


@dataclass(frozen=True)
class FaceCrop:
    """Padded, unrotated face region and the source box it was taken from."""
    image: np.ndarray
    image_box: Box


class FaceRef(NamedTuple):
    file_id: str
    face_index: int


@dataclass(frozen=True)
class FaceRecord:
    """Everything the store keeps about one detected face."""
    ref: FaceRef
    detection: FaceDetection
    aligned_box: Box
    rotation: float
    embedding: Tuple[float, ...]
    crop_box: Optional[Box] = None

    def embedding_array(self) -> np.ndarray:
        return np.asarray(self.embedding, dtype=np.float32)


@dataclass
class FileFaces:
    """The per-file store record: all faces found in one library file."""
    file_id: str
    faces: List[FaceRecord] = field(default_factory=list)
    width: Optional[int] = None
    height: Optional[int] = None


class SyncStatus(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    FAILED = "failed"


@dataclass(frozen=True)
class SyncJobState:
    """Resumable progress of a library sync.

    ``cursor`` is the last file whose result was persisted; ``None`` means
    the next pass starts at the beginning of the library.  ``retry_count``
    counts consecutive passes that ended in ``FAILED``; a completed pass
    resets it.
    """
    cursor: Optional[str] = None
    status: SyncStatus = SyncStatus.IDLE
    retry_count: int = 0
