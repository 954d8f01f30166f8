"""
Persistent store for indexed faces, sync progress and cluster results.

We keep a SQLite database with a handful of tables: one row per library
file (indexed or failed, with its retry count), one row per detected face,
and single-row tables for the sync cursor and the latest clustering.  A
file's faces are replaced in one transaction so a crash never leaves a
half-written file behind; this is what lets a sync resume from whatever was
persisted last.

The tables are created automatically if they do not exist when connecting.
All interactions are implemented using SQLAlchemy Core.
"""

from __future__ import annotations

import datetime as _dt
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy import (
    Table, Column, Integer, String, Float, DateTime, JSON, MetaData,
    create_engine, delete, insert, select, update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool

from .clustering import ClusterResult, ClusterTreeNode
from .geometry import Box
from .records import (
    FaceDetection, FaceRecord, FaceRef, FileFaces, SyncJobState, SyncStatus,
)

logger = logging.getLogger(__name__)

STATUS_INDEXED = "indexed"
STATUS_FAILED = "failed"


def _make_metadata() -> MetaData:
    """Define and return SQLAlchemy metadata with our table definitions."""
    metadata = MetaData()
    # One row per library file that has been processed at least once
    Table(
        "files", metadata,
        Column("file_id", String, primary_key=True),
        Column("status", String, nullable=False),
        Column("retry_count", Integer, nullable=False, default=0),
        Column("face_count", Integer, nullable=False, default=0),
        Column("width", Integer, nullable=True),
        Column("height", Integer, nullable=True),
        Column("error", String, nullable=True),
        Column("updated_at", DateTime, nullable=False),
    )
    # Faces of indexed files
    Table(
        "faces", metadata,
        Column("file_id", String, primary_key=True),
        Column("face_index", Integer, primary_key=True),
        Column("detection", JSON, nullable=False),
        Column("aligned_box", JSON, nullable=False),
        Column("rotation", Float, nullable=False),
        Column("embedding", JSON, nullable=False),  # list of floats
        Column("crop_box", JSON, nullable=True),
    )
    Table(
        "sync_state", metadata,
        Column("id", Integer, primary_key=True),
        Column("cursor", String, nullable=True),
        Column("status", String, nullable=False),
        Column("retry_count", Integer, nullable=False, default=0),
        Column("updated_at", DateTime, nullable=False),
    )
    # Latest clustering; members are [file_id, face_index] pairs
    Table(
        "cluster_results", metadata,
        Column("id", Integer, primary_key=True),
        Column("clusters", JSON, nullable=False),
        Column("noise", JSON, nullable=False),
        Column("debug_tree", JSON, nullable=True),
        Column("parameters", JSON, nullable=True),
        Column("created_at", DateTime, nullable=False),
    )
    return metadata


def _now() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc).replace(tzinfo=None)


def init_db(db: Union[Path, str, None] = None) -> Engine:
    """Initialize the database and create tables if they do not exist.

    Parameters
    ----------
    db: Path or str, optional
        Location of the SQLite database file, or a full SQLAlchemy URL.
        ``None`` opens a private in-memory database.

    Returns
    -------
    sqlalchemy.Engine
        Connected engine instance.
    """
    if db is None or str(db) in ("", ":memory:", "sqlite://"):
        # A single shared connection, or every thread would see its own empty database.
        engine = create_engine("sqlite://", poolclass=StaticPool,
                               connect_args={"check_same_thread": False})
    elif "://" in str(db):
        engine = create_engine(str(db))
    else:
        engine = create_engine(f"sqlite:///{db}", connect_args={"check_same_thread": False})
    _make_metadata().create_all(engine)
    return engine


def _face_row(file_id: str, face: FaceRecord) -> Dict[str, Any]:
    return {
        "file_id": file_id,
        "face_index": int(face.ref.face_index),
        "detection": face.detection.to_dict(),
        "aligned_box": face.aligned_box.to_list(),
        "rotation": float(face.rotation),
        "embedding": [float(v) for v in face.embedding],
        "crop_box": face.crop_box.to_list() if face.crop_box is not None else None,
    }


def _face_from_row(row: Any) -> FaceRecord:
    return FaceRecord(
        ref=FaceRef(row["file_id"], int(row["face_index"])),
        detection=FaceDetection.from_dict(row["detection"]),
        aligned_box=Box.from_list(row["aligned_box"]),
        rotation=float(row["rotation"]),
        embedding=tuple(float(v) for v in row["embedding"]),
        crop_box=Box.from_list(row["crop_box"]) if row["crop_box"] is not None else None,
    )


class SqlFaceStore:
    """SQLAlchemy-backed face store.

    Parameters
    ----------
    db: Path, str or Engine, optional
        Database file, SQLAlchemy URL or ready engine; ``None`` keeps the
        store in memory.
    """

    def __init__(self, db: Union[Path, str, Engine, None] = None) -> None:
        self.engine = db if isinstance(db, Engine) else init_db(db)
        if isinstance(db, Engine):
            _make_metadata().create_all(self.engine)
        tables = _make_metadata().tables
        self.files = tables["files"]
        self.faces = tables["faces"]
        self.sync_state = tables["sync_state"]
        self.cluster_results = tables["cluster_results"]

    def close(self) -> None:
        self.engine.dispose()

    # -- files ---------------------------------------------------------

    def _file_row(self, conn: Connection, file_id: str) -> Optional[Dict[str, Any]]:
        row = conn.execute(select(self.files).where(self.files.c.file_id == file_id)).mappings().first()
        return dict(row) if row else None

    def get_file(self, file_id: str) -> Optional[FileFaces]:
        """Faces of an indexed file, or ``None`` if it is unknown or failed."""
        with self.engine.connect() as conn:
            row = self._file_row(conn, file_id)
            if row is None or row["status"] != STATUS_INDEXED:
                return None
            faces = conn.execute(
                select(self.faces)
                .where(self.faces.c.file_id == file_id)
                .order_by(self.faces.c.face_index)
            ).mappings().all()
        return FileFaces(
            file_id=file_id,
            faces=[_face_from_row(f) for f in faces],
            width=row["width"],
            height=row["height"],
        )

    def is_indexed(self, file_id: str) -> bool:
        with self.engine.connect() as conn:
            row = self._file_row(conn, file_id)
        return row is not None and row["status"] == STATUS_INDEXED

    def put_file(self, file_faces: FileFaces) -> None:
        """Replace everything stored for one file with ``file_faces``, atomically."""
        file_id = file_faces.file_id
        with self.engine.begin() as conn:
            conn.execute(delete(self.faces).where(self.faces.c.file_id == file_id))
            conn.execute(delete(self.files).where(self.files.c.file_id == file_id))
            conn.execute(insert(self.files).values(
                file_id=file_id,
                status=STATUS_INDEXED,
                retry_count=0,
                face_count=len(file_faces.faces),
                width=file_faces.width,
                height=file_faces.height,
                error=None,
                updated_at=_now(),
            ))
            if file_faces.faces:
                conn.execute(insert(self.faces), [_face_row(file_id, f) for f in file_faces.faces])

    def mark_failed(self, file_id: str, error: Optional[str] = None) -> int:
        """Record a failed attempt and return the file's new retry count."""
        with self.engine.begin() as conn:
            row = self._file_row(conn, file_id)
            retries = (row["retry_count"] if row and row["status"] == STATUS_FAILED else 0) + 1
            conn.execute(delete(self.faces).where(self.faces.c.file_id == file_id))
            conn.execute(delete(self.files).where(self.files.c.file_id == file_id))
            conn.execute(insert(self.files).values(
                file_id=file_id,
                status=STATUS_FAILED,
                retry_count=retries,
                face_count=0,
                error=(error or "")[:2000] or None,
                updated_at=_now(),
            ))
        return retries

    def retry_count(self, file_id: str) -> int:
        with self.engine.connect() as conn:
            row = self._file_row(conn, file_id)
        return int(row["retry_count"]) if row and row["status"] == STATUS_FAILED else 0

    def failed_files(self, max_retries: Optional[int] = None) -> List[str]:
        """IDs of failed files, optionally only those below ``max_retries``."""
        query = select(self.files.c.file_id).where(self.files.c.status == STATUS_FAILED)
        if max_retries is not None:
            query = query.where(self.files.c.retry_count < max_retries)
        with self.engine.connect() as conn:
            return list(conn.execute(query.order_by(self.files.c.file_id)).scalars())

    def list_file_ids(self) -> List[str]:
        with self.engine.connect() as conn:
            return list(conn.execute(select(self.files.c.file_id).order_by(self.files.c.file_id)).scalars())

    def remove_files(self, file_ids: Iterable[str]) -> int:
        """Drop every record of ``file_ids``; returns how many files were removed."""
        ids = list(file_ids)
        if not ids:
            return 0
        with self.engine.begin() as conn:
            conn.execute(delete(self.faces).where(self.faces.c.file_id.in_(ids)))
            result = conn.execute(delete(self.files).where(self.files.c.file_id.in_(ids)))
        return int(result.rowcount or 0)

    def get_all_faces(self) -> List[FaceRecord]:
        """All stored faces ordered by file ID then face index."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(self.faces).order_by(self.faces.c.file_id, self.faces.c.face_index)
            ).mappings().all()
        return [_face_from_row(r) for r in rows]

    def get_all_files(self) -> List[Dict[str, Any]]:
        """File rows (without faces) as dictionaries."""
        with self.engine.connect() as conn:
            rows = conn.execute(select(self.files).order_by(self.files.c.file_id)).mappings().all()
        return [dict(r) for r in rows]

    # -- sync state ----------------------------------------------------

    def get_sync_state(self) -> SyncJobState:
        with self.engine.connect() as conn:
            row = conn.execute(select(self.sync_state).where(self.sync_state.c.id == 1)).mappings().first()
        if row is None:
            return SyncJobState()
        return SyncJobState(cursor=row["cursor"], status=SyncStatus(row["status"]),
                            retry_count=int(row["retry_count"]))

    def set_sync_state(self, state: SyncJobState) -> None:
        values = dict(cursor=state.cursor, status=state.status.value,
                      retry_count=state.retry_count, updated_at=_now())
        with self.engine.begin() as conn:
            result = conn.execute(update(self.sync_state).where(self.sync_state.c.id == 1).values(**values))
            if not result.rowcount:
                conn.execute(insert(self.sync_state).values(id=1, **values))

    # -- clustering ----------------------------------------------------

    def get_cluster_result(self) -> Optional[ClusterResult]:
        """Latest stored clustering with :class:`FaceRef` members."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(self.cluster_results).where(self.cluster_results.c.id == 1)
            ).mappings().first()
        if row is None:
            return None
        return ClusterResult(
            clusters=[[FaceRef(f, int(i)) for f, i in cluster] for cluster in row["clusters"]],
            noise=[FaceRef(f, int(i)) for f, i in row["noise"]],
            debug_tree=ClusterTreeNode.from_dict(row["debug_tree"]) if row["debug_tree"] else None,
        )

    def get_cluster_parameters(self) -> Optional[Dict[str, Any]]:
        with self.engine.connect() as conn:
            return conn.execute(
                select(self.cluster_results.c.parameters).where(self.cluster_results.c.id == 1)
            ).scalar()

    def set_cluster_result(self, result: ClusterResult, parameters: Optional[Dict[str, Any]] = None) -> None:
        """Replace the stored clustering.  Members must be :class:`FaceRef`."""
        values = dict(
            clusters=[[[ref.file_id, int(ref.face_index)] for ref in cluster] for cluster in result.clusters],
            noise=[[ref.file_id, int(ref.face_index)] for ref in result.noise],
            debug_tree=result.debug_tree.to_dict() if result.debug_tree is not None else None,
            parameters=parameters,
            created_at=_now(),
        )
        with self.engine.begin() as conn:
            conn.execute(delete(self.cluster_results))
            conn.execute(insert(self.cluster_results).values(id=1, **values))
        logger.debug("Stored cluster result: clusters=%d noise=%d", len(result.clusters), len(result.noise))
