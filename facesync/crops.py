"""
Face crop extraction and caching.

A face crop is the aligned box enlarged by a padding margin, sampled
without rotation and stored at a fixed size.  It is cached so that the
aligned face image can be re-derived later (for a new embedding model, or
for display) without decoding the original photo again.  Re-deriving goes
through :func:`extract_face_image_from_crop`, which must agree with cutting
the face straight from the source image via :func:`extract_face_image`.

:class:`CropCache` stores crops as PNG files keyed by
:class:`~facesync.records.FaceRef`.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
from pathlib import Path
from typing import Iterator, List, Optional

import numpy as np
from PIL import Image

from .bitmap import crop_with_rotation
from .records import AlignedFace, FaceCrop, FaceRef

logger = logging.getLogger(__name__)


def crop_face(image: np.ndarray, aligned_face: AlignedFace,
              padding: float = 0.25, max_size: int = 256) -> FaceCrop:
    """Cut the padded aligned region of ``image`` into a square crop.

    Parameters
    ----------
    image: ndarray
        Decoded source image.
    aligned_face: AlignedFace
        Alignment of the face to crop.
    padding: float
        Margin added on each side, as a fraction of the aligned box.
    max_size: int
        Side of the output crop in pixels.

    Returns
    -------
    FaceCrop
        The crop and the integer-rounded source box it covers.
    """
    scale_for_padding = 1.0 + padding * 2.0
    padded_box = aligned_face.aligned_box.enlarge(scale_for_padding).round()
    crop = crop_with_rotation(image, padded_box, 0.0, (max_size, max_size))
    return FaceCrop(image=crop, image_box=padded_box)


def extract_face_image(image: np.ndarray, aligned_face: AlignedFace, face_size: int) -> np.ndarray:
    """Upright aligned face of side ``face_size`` from the source image."""
    return crop_with_rotation(image, aligned_face.aligned_box, aligned_face.rotation,
                              (face_size, face_size))


def extract_face_image_from_crop(face_crop: FaceCrop, aligned_face: AlignedFace,
                                 face_size: int) -> np.ndarray:
    """Upright aligned face re-derived from a cached padded crop.

    The aligned box is moved into the crop's pixel space: scaled by the
    crop's resolution relative to its source box, then shifted by the
    scaled crop origin.
    """
    image_box = face_crop.image_box
    if image_box.width <= 0:
        raise ValueError("Face crop has an empty source box")
    scale = face_crop.image.shape[1] / image_box.width
    box = aligned_face.aligned_box.rescale(scale).shift(-image_box.x * scale, -image_box.y * scale)
    return crop_with_rotation(face_crop.image, box, aligned_face.rotation, (face_size, face_size))


class CropCache:
    """Directory of face crops, one PNG per ``(file_id, face_index)``.

    Each file gets its own directory, named by a digest of the file ID, so
    all crops of one file can be dropped together when it is re-indexed.
    The file ID itself is kept in a ``.file_id`` marker inside the directory.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _file_dir(self, file_id: str) -> Path:
        return self.root / hashlib.sha256(file_id.encode("utf-8")).hexdigest()[:32]

    def path_for(self, ref: FaceRef) -> Path:
        return self._file_dir(ref.file_id) / f"{int(ref.face_index):04d}.png"

    def put(self, ref: FaceRef, image: np.ndarray) -> Path:
        dst = self.path_for(ref)
        dst.parent.mkdir(parents=True, exist_ok=True)
        # Crops are BGR; Pillow expects RGB.
        Image.fromarray(np.ascontiguousarray(image[:, :, ::-1])).save(dst, format="PNG")
        (dst.parent / ".file_id").write_text(ref.file_id, encoding="utf-8")
        return dst

    def get(self, ref: FaceRef) -> Optional[np.ndarray]:
        src = self.path_for(ref)
        if not src.exists():
            return None
        with Image.open(src) as im:
            return np.ascontiguousarray(np.asarray(im.convert("RGB"))[:, :, ::-1])

    def contains(self, ref: FaceRef) -> bool:
        return self.path_for(ref).exists()

    def delete(self, ref: FaceRef) -> None:
        self.path_for(ref).unlink(missing_ok=True)

    def remove_file(self, file_id: str) -> None:
        """Drop every cached crop of ``file_id``."""
        shutil.rmtree(self._file_dir(file_id), ignore_errors=True)

    def refs(self) -> Iterator[FaceRef]:
        """Yield the references of all cached crops."""
        for file_dir in sorted(p for p in self.root.iterdir() if p.is_dir()):
            marker = file_dir / ".file_id"
            if not marker.exists():
                logger.debug("Skipping crop directory without file id: %s", file_dir)
                continue
            file_id = marker.read_text(encoding="utf-8")
            for png in sorted(file_dir.glob("*.png")):
                yield FaceRef(file_id, int(png.stem))

    def put_all(self, file_id: str, crops: List[np.ndarray]) -> None:
        """Replace the cached crops of ``file_id`` with ``crops`` (by face index)."""
        self.remove_file(file_id)
        for face_index, crop in enumerate(crops):
            self.put(FaceRef(file_id, face_index), crop)
