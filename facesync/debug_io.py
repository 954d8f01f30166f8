"""
Parquet debug bundles of indexed faces.

A bundle is a single Parquet file with one row per stored face: the face
record (detection, aligned box, rotation, embedding, crop box) and, when a
crop cache is available, the padded crop as PNG bytes.  The list of indexed
files, including those without any face, travels in the schema metadata so
that importing a bundle into an empty store reproduces exactly the same
clustering input.

We use PyArrow's Parquet support through pandas, as for any other tabular
output.  Embeddings are stored as lists of floats in an ``embedding`` column.
"""

from __future__ import annotations

import io
import json
import logging
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq
from PIL import Image

from .crops import CropCache
from .geometry import Box
from .records import FaceDetection, FaceRecord, FaceRef, FileFaces
from .store import STATUS_INDEXED, SqlFaceStore

logger = logging.getLogger(__name__)

FILES_METADATA_KEY = b"facesync.files"
COLUMNS = ["file_id", "face_index", "detection", "aligned_box", "rotation",
           "embedding", "crop_box", "crop_png"]


def _encode_png(image: np.ndarray) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(np.ascontiguousarray(image[:, :, ::-1])).save(buf, format="PNG")
    return buf.getvalue()


def _decode_png(data: bytes) -> np.ndarray:
    with Image.open(io.BytesIO(data)) as im:
        return np.ascontiguousarray(np.asarray(im.convert("RGB"))[:, :, ::-1])


def _face_row(face: FaceRecord, crop_cache: Optional[CropCache]) -> Dict[str, Any]:
    crop = crop_cache.get(face.ref) if crop_cache is not None else None
    return {
        "file_id": face.ref.file_id,
        "face_index": int(face.ref.face_index),
        "detection": json.dumps(face.detection.to_dict()),
        "aligned_box": face.aligned_box.to_list(),
        "rotation": float(face.rotation),
        "embedding": [float(v) for v in face.embedding],
        "crop_box": face.crop_box.to_list() if face.crop_box is not None else None,
        "crop_png": _encode_png(crop) if crop is not None else None,
    }


def export_debug_bundle(store: SqlFaceStore, crop_cache: Optional[CropCache], path: Path) -> int:
    """Write every indexed face of ``store`` to a Parquet bundle at ``path``.

    Returns
    -------
    int
        Number of faces written.
    """
    faces = store.get_all_faces()
    files = [
        {"file_id": row["file_id"], "width": row["width"], "height": row["height"]}
        for row in store.get_all_files()
        if row["status"] == STATUS_INDEXED
    ]
    df = pd.DataFrame([_face_row(f, crop_cache) for f in faces], columns=COLUMNS)
    table = pa.Table.from_pandas(df, preserve_index=False)
    metadata = dict(table.schema.metadata or {})
    metadata[FILES_METADATA_KEY] = json.dumps(files).encode("utf-8")
    table = table.replace_schema_metadata(metadata)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    pq.write_table(table, path)
    logger.info("Exported %d faces from %d files to %s", len(faces), len(files), path)
    return len(faces)


def _optional_box(value: Any) -> Optional[Box]:
    if value is None:
        return None
    return Box.from_list([float(v) for v in value])


def import_debug_bundle(path: Path, store: SqlFaceStore, crop_cache: Optional[CropCache] = None) -> int:
    """Load a bundle written by :func:`export_debug_bundle` into ``store``.

    Files in the bundle replace any stored record of the same ID; crops are
    written to ``crop_cache`` when given.

    Returns
    -------
    int
        Number of faces imported.
    """
    table = pq.read_table(path)
    metadata = table.schema.metadata or {}
    files: List[Dict[str, Any]] = json.loads(metadata.get(FILES_METADATA_KEY, b"[]").decode("utf-8"))
    df = table.to_pandas()

    faces_by_file: Dict[str, List[FaceRecord]] = defaultdict(list)
    crops_by_file: Dict[str, Dict[int, np.ndarray]] = defaultdict(dict)
    for row in df.itertuples(index=False):
        ref = FaceRef(str(row.file_id), int(row.face_index))
        faces_by_file[ref.file_id].append(FaceRecord(
            ref=ref,
            detection=FaceDetection.from_dict(json.loads(row.detection)),
            aligned_box=_optional_box(row.aligned_box),
            rotation=float(row.rotation),
            embedding=tuple(float(v) for v in row.embedding),
            crop_box=_optional_box(row.crop_box),
        ))
        if row.crop_png is not None:
            crops_by_file[ref.file_id][ref.face_index] = _decode_png(row.crop_png)

    known = {f["file_id"] for f in files}
    # Bundles without a file list still carry every file that has faces.
    files.extend({"file_id": fid, "width": None, "height": None}
                 for fid in sorted(faces_by_file) if fid not in known)

    for entry in files:
        file_id = entry["file_id"]
        faces = sorted(faces_by_file.get(file_id, []), key=lambda f: f.ref.face_index)
        store.put_file(FileFaces(file_id=file_id, faces=faces,
                                 width=entry.get("width"), height=entry.get("height")))
        if crop_cache is not None and crops_by_file.get(file_id):
            crop_cache.remove_file(file_id)
            for face_index, crop in sorted(crops_by_file[file_id].items()):
                crop_cache.put(FaceRef(file_id, face_index), crop)
    n_faces = sum(len(v) for v in faces_by_file.values())
    logger.info("Imported %d faces from %d files", n_faces, len(files))
    return n_faces
