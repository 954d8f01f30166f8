"""
Photo library access.

The sync pipeline only needs two things from a library: a deterministic
list of file IDs and a way to decode one of them into pixels.
:class:`FolderLibrary` provides both for a directory tree, using paths
relative to the root (with forward slashes) as file IDs.  Perceptual
hashes can optionally be used to skip near-identical copies of the same
photo, as when an export folder and an originals folder overlap.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterator, List, Optional

import cv2
import imagehash
import numpy as np
from PIL import Image, ImageOps

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".bmp", ".webp", ".tif", ".tiff")


def iter_image_paths(root: Path) -> Iterator[Path]:
    """Yield all files under ``root`` that have an image-like extension."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for fn in sorted(filenames):
            if fn.lower().endswith(IMAGE_EXTENSIONS):
                yield Path(dirpath) / fn


def compute_phash(path: Path) -> Optional[str]:
    """Perceptual hash of an image as a hex string, or ``None`` if unreadable."""
    try:
        with Image.open(path) as im:
            return str(imagehash.phash(im))
    except (OSError, ValueError) as exc:
        logger.debug("Cannot hash %s: %s", path, exc)
        return None


def decode_image(path: Path) -> Optional[np.ndarray]:
    """Decode ``path`` into a 3-channel BGR array, or ``None`` if unreadable.

    OpenCV is tried first; Pillow is the fallback for formats the OpenCV
    build lacks, with EXIF orientation applied.
    """
    image = cv2.imread(str(path), cv2.IMREAD_COLOR)
    if image is not None:
        return image
    try:
        with Image.open(path) as im:
            rgb = np.asarray(ImageOps.exif_transpose(im).convert("RGB"))
    except (OSError, ValueError) as exc:
        logger.warning("Cannot decode %s: %s", path, exc)
        return None
    return np.ascontiguousarray(rgb[:, :, ::-1])


class FolderLibrary:
    """A directory tree of photos.

    Parameters
    ----------
    root: Path
        Library root directory.
    use_phash: bool
        Skip files whose perceptual hash matches an earlier file in listing
        order.
    """

    def __init__(self, root: Path, use_phash: bool = False) -> None:
        self.root = Path(root)
        self.use_phash = use_phash

    def list_files(self) -> List[str]:
        """Relative POSIX paths of all images, sorted."""
        ids = sorted(p.relative_to(self.root).as_posix() for p in iter_image_paths(self.root))
        if not self.use_phash:
            return ids
        seen_hashes = set()
        unique: List[str] = []
        for file_id in ids:
            phash = compute_phash(self.root / file_id)
            if phash:
                if phash in seen_hashes:
                    logger.debug("Skipping perceptual duplicate %s", file_id)
                    continue
                seen_hashes.add(phash)
            unique.append(file_id)
        return unique

    def path_for(self, file_id: str) -> Path:
        return self.root / Path(file_id)

    def decode(self, file_id: str) -> Optional[np.ndarray]:
        path = self.path_for(file_id)
        if not path.is_file():
            return None
        return decode_image(path)
