import threading
import time
from typing import Dict, List, Optional

import cv2
import numpy as np
import pytest

from facesync.config import SyncConfig
from facesync.detection import DetectionModel
from facesync.embedders import Embedder, l2_normalise
from facesync.geometry import Box, Point
from facesync.records import FaceDetection
from facesync.store import SqlFaceStore

# BGR colours of two synthetic "people"; their embeddings are orthogonal.
PERSON_A = (255, 128, 128)
PERSON_B = (128, 128, 255)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_face_image(width: int = 480, height: int = 360, faces=()) -> np.ndarray:
    """Black image with one filled square per ``(x, y, size, colour)``."""
    image = np.zeros((height, width, 3), dtype=np.uint8)
    for x, y, size, colour in faces:
        image[y:y + size, x:x + size] = colour
    return image


def landmarks_for(box: Box):
    x, y, w, h = box.x, box.y, box.width, box.height
    return (
        Point(x + 0.3 * w, y + 0.4 * h),
        Point(x + 0.7 * w, y + 0.4 * h),
        Point(x + 0.5 * w, y + 0.6 * h),
        Point(x + 0.35 * w, y + 0.8 * h),
        Point(x + 0.65 * w, y + 0.8 * h),
    )


class FakeDetectionModel(DetectionModel):
    """Finds bright blobs and reports them as faces with fixed landmarks."""

    def __init__(self, probability: float = 0.9, min_area: int = 16, max_faces: int = 50,
                 fail_load: bool = False) -> None:
        self.probability = probability
        self.min_area = min_area
        self.max_faces = max_faces
        self.fail_load = fail_load
        self.load_calls = 0
        self.predict_calls = 0
        self._lock = threading.Lock()

    def load(self) -> None:
        self.load_calls += 1
        if self.fail_load:
            raise RuntimeError("weights not found")

    def predict(self, image: np.ndarray) -> List[FaceDetection]:
        with self._lock:
            self.predict_calls += 1
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        mask = (gray > 100).astype(np.uint8)
        n, _labels, stats, _centroids = cv2.connectedComponentsWithStats(mask, connectivity=8)
        found = []
        for i in range(1, n):
            x, y, w, h, area = (int(v) for v in stats[i])
            if area < self.min_area:
                continue
            box = Box(x, y, w, h)
            found.append(FaceDetection(box=box, landmarks=landmarks_for(box),
                                       probability=self.probability))
        found.sort(key=lambda d: -d.box.area)
        return found[:self.max_faces]


class FakeEmbedder(Embedder):
    """Embeds a face as its mean colour (relative to mid-grey) near the centre."""

    embedding_dim = 3

    def __init__(self) -> None:
        self.load_calls = 0
        self.embed_calls = 0

    def load(self) -> None:
        self.load_calls += 1

    def embed(self, faces):
        self.embed_calls += 1
        vectors = []
        for face in faces:
            h, w = face.shape[:2]
            centre = face[int(h * 0.4):int(h * 0.6), int(w * 0.4):int(w * 0.6)]
            vectors.append(centre.reshape(-1, 3).mean(axis=0) - 128.0 + 1e-3)
        return l2_normalise(np.asarray(vectors))


class FakeLibrary:
    """In-memory photo library.

    ``failing`` IDs raise on decode, ``delays`` make decoding slow and
    ``on_decode`` is called after every successful decode.
    """

    def __init__(self, images: Dict[str, np.ndarray]) -> None:
        self.images = dict(images)
        self.failing = set()
        self.delays: Dict[str, float] = {}
        self.decoded: List[str] = []
        self.on_decode = None

    def list_files(self) -> List[str]:
        return sorted(self.images)

    def decode(self, file_id: str) -> Optional[np.ndarray]:
        if file_id in self.delays:
            time.sleep(self.delays[file_id])
        self.decoded.append(file_id)
        if file_id in self.failing:
            raise RuntimeError(f"corrupt file {file_id}")
        image = self.images.get(file_id)
        if self.on_decode is not None:
            self.on_decode(file_id)
        return None if image is None else image.copy()


def people_library() -> FakeLibrary:
    """Three photos of each of two people, plus one photo without faces."""
    images = {}
    for i in range(3):
        images[f"a_{i}.png"] = make_face_image(faces=[(60 + 40 * i, 80 + 20 * i, 80, PERSON_A)])
        images[f"b_{i}.png"] = make_face_image(faces=[(250 - 30 * i, 120 + 10 * i, 90, PERSON_B)])
    images["empty.png"] = make_face_image()
    return FakeLibrary(images)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def config() -> SyncConfig:
    return SyncConfig(min_cluster_size=3, file_timeout_sec=10.0)


@pytest.fixture
def store() -> SqlFaceStore:
    s = SqlFaceStore()
    yield s
    s.close()


@pytest.fixture
def smooth_image() -> np.ndarray:
    """A smooth, non-symmetric colour pattern for resampling comparisons."""
    h, w = 360, 480
    yy, xx = np.mgrid[0:h, 0:w].astype(np.float64)
    b = 127 + 100 * np.sin(xx / 23.0) * np.cos(yy / 31.0)
    g = 127 + 100 * np.cos(xx / 37.0 + yy / 29.0)
    r = 127 + 100 * np.sin((xx - yy) / 41.0)
    return np.clip(np.dstack([b, g, r]), 0, 255).astype(np.uint8)
