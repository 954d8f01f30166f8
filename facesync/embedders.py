"""
Embedding model wrappers.

This module abstracts away the details of loading and running facial
embedding models.  The pipeline treats the embedder as a black box: it
receives aligned, upright face images of the configured size (BGR) and
returns one L2-normalised vector per face.  The default implementation runs
the ArcFace recogniser of an InsightFace model pack through ONNX Runtime.

:func:`load_face_analysis` is shared with the detector so that a single
model pack is loaded once per model context.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence

import numpy as np

from .errors import ModelLoadError

logger = logging.getLogger(__name__)


def execution_providers(use_gpu: bool) -> List[str]:
    """ONNX Runtime providers to request, best first."""
    if not use_gpu:
        return ["CPUExecutionProvider"]
    try:
        import onnxruntime
    except ImportError:
        return ["CPUExecutionProvider"]
    available = set(onnxruntime.get_available_providers())
    if "CUDAExecutionProvider" in available:
        return ["CUDAExecutionProvider", "CPUExecutionProvider"]
    logger.warning("GPU requested but ONNX Runtime has no CUDA provider; using CPU")
    return ["CPUExecutionProvider"]


def load_face_analysis(model_name: str = "buffalo_l", use_gpu: bool = False) -> Any:
    """Load an InsightFace model pack with its detector and recogniser.

    Raises
    ------
    ModelLoadError
        If InsightFace is missing or the pack cannot be loaded.
    """
    try:
        from insightface.app import FaceAnalysis
    except ImportError as exc:
        raise ModelLoadError("insightface is not installed") from exc
    try:
        app = FaceAnalysis(
            name=model_name,
            allowed_modules=["detection", "recognition"],
            providers=execution_providers(use_gpu),
        )
    except Exception as exc:
        raise ModelLoadError(f"Failed to load InsightFace model pack {model_name!r}: {exc}") from exc
    logger.info("Loaded InsightFace model pack %s (%s)", model_name, "GPU" if use_gpu else "CPU")
    return app


class Embedder:
    """Base class for all embedders."""

    embedding_dim: int = 0

    def load(self) -> None:
        """Load weights.  Called once before the first ``embed``."""

    def embed(self, faces: Sequence[np.ndarray]) -> np.ndarray:
        """Embed aligned face images.

        Subclasses must return a float32 array of shape ``(len(faces), dim)``
        with L2-normalised rows.
        """
        raise NotImplementedError

    def dispose(self) -> None:
        """Release the model."""


def l2_normalise(vectors: np.ndarray) -> np.ndarray:
    vectors = np.asarray(vectors, dtype=np.float32)
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    return vectors / (norms + 1e-9)


class InsightFaceEmbedder(Embedder):
    """ArcFace recogniser from an InsightFace model pack.

    Parameters
    ----------
    app: FaceAnalysis, optional
        A loaded model pack shared with the detector.  When omitted,
        ``load`` creates one from ``model_name``.
    model_name: str
        Name of the model package to load from InsightFace.
    use_gpu: bool
        Whether to use CUDA if available; falls back to CPU otherwise.
    """

    embedding_dim = 512

    def __init__(self, app: Any = None, model_name: str = "buffalo_l", use_gpu: bool = False) -> None:
        self._app = app
        self._model = None
        self.model_name = model_name
        self.use_gpu = use_gpu

    def load(self) -> None:
        if self._app is None:
            self._app = load_face_analysis(self.model_name, use_gpu=self.use_gpu)
        model = self._app.models.get("recognition")
        if model is None:
            raise ModelLoadError(f"Model pack {self.model_name!r} has no recognition model")
        model.prepare(0 if self.use_gpu else -1)
        self._model = model

    def embed(self, faces: Sequence[np.ndarray]) -> np.ndarray:
        if not faces:
            return np.zeros((0, self.embedding_dim), dtype=np.float32)
        feats = self._model.get_feat(list(faces))
        return l2_normalise(np.asarray(feats).reshape(len(faces), -1))

    def dispose(self) -> None:
        self._model = None
        self._app = None
