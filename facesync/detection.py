"""
Two-pass face detection.

A small square-input detector is run twice.  The first pass looks at the
whole image shrunk to the model's input size and is tuned to be permissive.
Each first-pass face is then re-detected from a context crop around it at a
much higher effective resolution; only second-pass results are trusted.
Both passes are mapped back to source-image pixels through explicit
:class:`~facesync.geometry.CoordinateTransform` chains, and the survivors
go through proximity de-duplication.

The model itself is pluggable through :class:`DetectionModel`.  The shipped
backend wraps the SCRFD detector of an InsightFace model pack.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

import numpy as np

from .bitmap import add_padding, crop_box, is_empty_image, resize_to_square
from .config import SyncConfig
from .errors import ModelLoadError
from .geometry import Box, CoordinateTransform, Point
from .records import FaceDetection
from .suppression import get_nearest_detection, remove_duplicate_detections

logger = logging.getLogger(__name__)

# Context enlargement around a first-pass face, and the padding added to
# the second-pass crop (as a fraction of its size on each side).
PASS2_ENLARGE_FACTOR = 2.0
PASS2_PADDING = 0.5


class DetectionModel:
    """Base class for square-input face detection models.

    ``predict`` receives a ``input_size x input_size`` BGR image and returns
    detections in that image's pixel coordinates, already filtered by the
    model's own score threshold, overlap suppression and face limit.
    """

    def load(self) -> None:
        """Load weights.  Called once before the first ``predict``."""

    def predict(self, image: np.ndarray) -> List[FaceDetection]:
        raise NotImplementedError

    def dispose(self) -> None:
        """Release the model and any accelerator memory it holds."""


class InsightFaceDetectionModel(DetectionModel):
    """SCRFD detector from an InsightFace ``FaceAnalysis`` model pack.

    Parameters
    ----------
    app: FaceAnalysis, optional
        An already loaded model pack to share with the embedder.  When
        omitted, ``load`` creates one from ``model_name``.
    model_name: str
        InsightFace model pack name, e.g. ``"buffalo_l"``.
    input_size: int
        Square detector input size in pixels (multiple of 32).
    score_threshold: float
        Minimum detector score (the permissive first-pass threshold).
    iou_threshold: float
        Overlap threshold of the model's internal NMS.
    max_faces: int
        Maximum detections returned per call.
    use_gpu: bool
        Prefer the CUDA execution provider when available.
    """

    def __init__(self, app: Any = None, model_name: str = "buffalo_l", input_size: int = 256,
                 score_threshold: float = 0.4, iou_threshold: float = 0.3,
                 max_faces: int = 50, use_gpu: bool = False) -> None:
        self._app = app
        self.model_name = model_name
        self.input_size = input_size
        self.score_threshold = score_threshold
        self.iou_threshold = iou_threshold
        self.max_faces = max_faces
        self.use_gpu = use_gpu

    def load(self) -> None:
        from .embedders import load_face_analysis

        if self._app is None:
            self._app = load_face_analysis(self.model_name, use_gpu=self.use_gpu)
        det_model = getattr(self._app, "det_model", None)
        if det_model is None:
            raise ModelLoadError(f"Model pack {self.model_name!r} has no detection model")
        det_model.prepare(
            0 if self.use_gpu else -1,
            input_size=(self.input_size, self.input_size),
            det_thresh=self.score_threshold,
            nms_thresh=self.iou_threshold,
        )

    def predict(self, image: np.ndarray) -> List[FaceDetection]:
        bboxes, kpss = self._app.det_model.detect(
            image, input_size=(self.input_size, self.input_size), max_num=self.max_faces,
        )
        results: List[FaceDetection] = []
        for i, (x1, y1, x2, y2, score) in enumerate(bboxes):
            landmarks = tuple(Point(float(x), float(y)) for x, y in kpss[i]) if kpss is not None else ()
            results.append(FaceDetection(
                box=Box.from_corners(x1, y1, x2, y2),
                landmarks=landmarks,
                probability=float(score),
            ))
        return results

    def dispose(self) -> None:
        self._app = None


class FaceDetector:
    """Run a :class:`DetectionModel` in two passes over a decoded image."""

    def __init__(self, model: DetectionModel, config: Optional[SyncConfig] = None) -> None:
        self.model = model
        self.config = config or SyncConfig()
        self._loaded = False

    def init(self) -> None:
        if self._loaded:
            return
        try:
            self.model.load()
        except ModelLoadError:
            raise
        except Exception as exc:
            raise ModelLoadError(f"Failed to load detection model: {exc}") from exc
        self._loaded = True
        logger.info("Face detector ready (input %dpx)", self.config.input_size)

    def dispose(self) -> None:
        if self._loaded:
            self.model.dispose()
            self._loaded = False

    def detect(self, image: Optional[np.ndarray]) -> List[FaceDetection]:
        """Detect faces in ``image`` and return them in its pixel coordinates.

        Empty or zero-size images yield no detections.
        """
        if is_empty_image(image):
            return []
        self.init()
        width = image.shape[1]
        max_face_distance = width * self.config.max_face_distance_percent

        pass1 = self._estimate_faces(image)
        detections: List[FaceDetection] = []
        for pass1_detection in pass1:
            selected = self._refine(image, pass1_detection)
            # A face seen only in the first pass is not trusted.
            if selected is not None and selected.probability >= self.config.score_threshold:
                detections.append(selected)

        final = remove_duplicate_detections(detections, max_face_distance)
        logger.debug("Detected faces: pass1=%d pass2=%d final=%d",
                     len(pass1), len(detections), len(final))
        return final

    def _estimate_faces(self, image: np.ndarray) -> List[FaceDetection]:
        """Single pass: resize to the model input and map results back."""
        resized = resize_to_square(image, self.config.input_size)
        raw = self.model.predict(resized.image)
        return [d.transformed(resized.to_source) for d in raw]

    def _refine(self, image: np.ndarray, pass1_detection: FaceDetection) -> Optional[FaceDetection]:
        image_box = pass1_detection.box.enlarge(PASS2_ENLARGE_FACTOR)
        if image_box.width < 1 or image_box.height < 1:
            return None
        face_image, scale = crop_box(image, image_box, self.config.input_size // 2)
        padded, (pad_x, pad_y) = add_padding(face_image, PASS2_PADDING)

        # padded pixels -> crop pixels -> source pixels
        crop_to_source = CoordinateTransform(
            scale=1.0 / scale, translate_x=image_box.x, translate_y=image_box.y,
        )
        padded_to_source = crop_to_source.compose(CoordinateTransform.translation(-pad_x, -pad_y))

        pass2 = [d.transformed(padded_to_source) for d in self._estimate_faces(padded)]
        if not pass2:
            return None
        if len(pass2) == 1:
            return pass2[0]
        return get_nearest_detection(pass1_detection, pass2)
