"""
High-level orchestration of the face sync pipeline.

This module ties together the lower-level components: listing the library,
two-pass detection, alignment, crop caching, embedding and clustering.  It
records progress in the store after every file so that an interrupted sync
resumes where it stopped.

Model work (loading, per-file processing and clustering) is funnelled
through one :class:`~facesync.queue_processor.QueueProcessor`, so requests
start one at a time.  A per-file task abandoned after a timeout may keep
running inference while the next file starts; it only returns results and
the sync loop is the only writer, so it can never write anything.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from functools import partial
from typing import List, Optional, Protocol, Tuple

import numpy as np

from .alignment import align_face
from .clustering import ClusterResult, cluster_faces
from .config import JobConfig, SyncConfig
from .crops import CropCache, crop_face, extract_face_image
from .detection import DetectionModel, FaceDetector, InsightFaceDetectionModel
from .embedders import Embedder, InsightFaceEmbedder, load_face_analysis
from .errors import AlignmentError, FaceSyncError, ModelLoadError, SyncCancelled
from .jobs import CancellationToken, JobResult, SimpleJob
from .queue_processor import QueueProcessor
from .records import AlignedFace, FaceRecord, FaceRef, FileFaces, SyncJobState, SyncStatus
from .store import SqlFaceStore

logger = logging.getLogger(__name__)


class Library(Protocol):
    """What the sync needs from a photo library."""

    def list_files(self) -> List[str]:
        ...

    def decode(self, file_id: str) -> Optional[np.ndarray]:
        ...


class FaceModelContext:
    """Owns the detector and embedder for one session.

    Both models come from a single InsightFace model pack unless they are
    supplied explicitly.  ``init`` loads them once; if loading fails the
    context is disabled and every later ``init`` re-raises the original
    error instead of trying again.
    """

    def __init__(self, config: Optional[SyncConfig] = None,
                 detection_model: Optional[DetectionModel] = None,
                 embedder: Optional[Embedder] = None) -> None:
        self.config = config or SyncConfig()
        self._detection_model = detection_model
        self._embedder = embedder
        self.detector: Optional[FaceDetector] = None
        self.disabled = False
        self.load_error: Optional[ModelLoadError] = None
        self._lock = threading.Lock()

    @property
    def ready(self) -> bool:
        return self.detector is not None

    @property
    def embedder(self) -> Embedder:
        if self._embedder is None or not self.ready:
            raise FaceSyncError("Model context is not initialised")
        return self._embedder

    def init(self) -> None:
        with self._lock:
            if self.disabled:
                raise self.load_error
            if self.ready:
                return
            try:
                self._load()
            except ModelLoadError as exc:
                self._disable(exc)
                raise
            except Exception as exc:
                error = ModelLoadError(f"Failed to load face models: {exc}")
                self._disable(error)
                raise error from exc

    def _load(self) -> None:
        cfg = self.config
        app = None
        if self._detection_model is None and self._embedder is None:
            app = load_face_analysis(cfg.model_name, use_gpu=cfg.use_gpu)
        if self._detection_model is None:
            self._detection_model = InsightFaceDetectionModel(
                app=app,
                model_name=cfg.model_name,
                input_size=cfg.input_size,
                score_threshold=cfg.score_threshold_pass1,
                iou_threshold=cfg.iou_threshold,
                max_faces=cfg.max_faces,
                use_gpu=cfg.use_gpu,
            )
        if self._embedder is None:
            self._embedder = InsightFaceEmbedder(app=app, model_name=cfg.model_name, use_gpu=cfg.use_gpu)
        detector = FaceDetector(self._detection_model, cfg)
        detector.init()
        self._embedder.load()
        self.detector = detector

    def _disable(self, error: ModelLoadError) -> None:
        self.disabled = True
        self.load_error = error
        logger.error("Face indexing disabled: %s", error)

    def dispose(self) -> None:
        with self._lock:
            if self.detector is not None:
                self.detector.dispose()
                self.detector = None
            if self._embedder is not None:
                self._embedder.dispose()


@dataclass
class SyncReport:
    """Counts of one sync pass and the clustering it produced."""
    processed: int = 0
    failed: int = 0
    removed: int = 0
    cluster_result: ClusterResult = field(default_factory=ClusterResult)

    @property
    def attempted(self) -> int:
        return self.processed + self.failed


def cluster_records(faces: List[FaceRecord], config: SyncConfig) -> ClusterResult:
    """Cluster stored faces; members of the result are :class:`FaceRef`."""
    if not faces:
        return ClusterResult()
    embeddings = np.stack([f.embedding_array() for f in faces])
    result = cluster_faces(
        embeddings,
        distance_threshold=config.cluster_distance_threshold,
        min_cluster_size=config.min_cluster_size,
        metric=config.cluster_metric,
        keep_debug_tree=config.keep_debug_tree,
        method=config.cluster_method,
        hdbscan_min_samples=config.hdbscan_min_samples,
    )
    return result.map_members([f.ref for f in faces])


class MachineLearningService:
    """Index a library's faces incrementally and keep its clustering current.

    Parameters
    ----------
    library: Library
        Source of file IDs and decoded images.
    store: SqlFaceStore
        Where file results, sync progress and clusterings are persisted.
    config: SyncConfig, optional
        Pipeline parameters.
    crop_cache: CropCache, optional
        Where padded face crops are kept; crops are skipped when omitted.
    context: FaceModelContext, optional
        Models to use; a default InsightFace context is created otherwise.
    job_config: JobConfig, optional
        Timing of :meth:`schedule_next_sync`.
    queue: QueueProcessor, optional
        Serial queue for model work.
    """

    def __init__(self, library: Library, store: SqlFaceStore, config: Optional[SyncConfig] = None,
                 crop_cache: Optional[CropCache] = None, context: Optional[FaceModelContext] = None,
                 job_config: Optional[JobConfig] = None, queue: Optional[QueueProcessor] = None) -> None:
        self.library = library
        self.store = store
        self.config = config or SyncConfig()
        self.crop_cache = crop_cache
        self.context = context or FaceModelContext(self.config)
        self.job_config = job_config or JobConfig()
        self.queue = queue or QueueProcessor()
        self._job: Optional[SimpleJob] = None
        self._token: Optional[CancellationToken] = None
        self._sync_lock = threading.Lock()

    # -- per-file work (runs on the queue) -----------------------------

    def process_file(self, file_id: str) -> Tuple[FileFaces, List[np.ndarray]]:
        """Detect, align, crop and embed the faces of one file.

        Returns the file record and the padded crops (empty when there is no
        crop cache).  Nothing is persisted here.
        """
        cfg = self.config
        image = self.library.decode(file_id)
        if image is None:
            raise FaceSyncError(f"Cannot decode {file_id}")
        detections = self.context.detector.detect(image)

        aligned: List[AlignedFace] = []
        for detection in detections:
            try:
                aligned.append(align_face(detection, cfg.desired_face_size, tuple(cfg.desired_left_eye)))
            except AlignmentError as exc:
                logger.warning("Skipping face in %s: %s", file_id, exc)

        crops = [crop_face(image, face, cfg.crop_padding, cfg.crop_max_size) for face in aligned] \
            if self.crop_cache is not None else []
        if aligned:
            face_images = [extract_face_image(image, face, cfg.desired_face_size) for face in aligned]
            embeddings = self.context.embedder.embed(face_images)
        else:
            embeddings = np.zeros((0, 0), dtype=np.float32)

        records = [
            FaceRecord(
                ref=FaceRef(file_id, i),
                detection=face.detection,
                aligned_box=face.aligned_box,
                rotation=face.rotation,
                embedding=tuple(float(v) for v in embeddings[i]),
                crop_box=crops[i].image_box if crops else None,
            )
            for i, face in enumerate(aligned)
        ]
        file_faces = FileFaces(file_id=file_id, faces=records,
                               width=int(image.shape[1]), height=int(image.shape[0]))
        return file_faces, [c.image for c in crops]

    # -- sync ----------------------------------------------------------

    def _pending_files(self, files: List[str], cursor: Optional[str]) -> Tuple[List[str], List[str]]:
        """Files after the cursor still to index, and earlier failed files to retry."""
        failed = set(self.store.failed_files())
        retryable = set(self.store.failed_files(self.config.max_retries))
        indexed = set(self.store.list_file_ids()) - failed
        start = files.index(cursor) + 1 if cursor is not None else 0
        forward = [f for f in files[start:]
                   if f not in indexed and (f not in failed or f in retryable)]
        retries = [f for f in files[:start] if f in retryable]
        return forward, retries

    def _index_one(self, file_id: str, report: SyncReport) -> None:
        handle = self.queue.queue_up_request(partial(self.process_file, file_id),
                                             timeout=self.config.file_timeout_sec)
        try:
            file_faces, crops = handle.result()
        except ModelLoadError:
            raise
        except Exception as exc:
            retries = self.store.mark_failed(file_id, f"{type(exc).__name__}: {exc}")
            report.failed += 1
            logger.warning("Failed to index %s (attempt %d): %s", file_id, retries, exc)
            return
        self.store.put_file(file_faces)
        if self.crop_cache is not None:
            self.crop_cache.put_all(file_id, crops)
        report.processed += 1
        logger.debug("Indexed %s: %d faces", file_id, len(file_faces.faces))

    def sync(self, token: Optional[CancellationToken] = None) -> SyncReport:
        """Run one sync pass over the library and recluster.

        Raises
        ------
        ModelLoadError
            If the models cannot be loaded (now or in an earlier pass).
        SyncCancelled
            If ``token`` is cancelled between two files.  Progress so far is
            kept and the next pass resumes after the last persisted file.
        """
        token = token or CancellationToken()
        with self._sync_lock:
            self._token = token
            self.queue.queue_up_request(self.context.init).result()

            report = SyncReport()
            files = self.library.list_files()
            known = set(files)
            state = self.store.get_sync_state()
            cursor = state.cursor
            failures = state.retry_count
            if cursor is not None and cursor not in known:
                logger.warning("Sync cursor %s is no longer in the library; restarting from the beginning",
                               cursor)
                cursor = None

            vanished = [f for f in self.store.list_file_ids() if f not in known]
            if vanished:
                report.removed = self.store.remove_files(vanished)
                if self.crop_cache is not None:
                    for file_id in vanished:
                        self.crop_cache.remove_file(file_id)
                logger.info("Removed %d vanished files", len(vanished))

            forward, retries = self._pending_files(files, cursor)
            logger.info("Sync pass: %d files to index, %d to retry", len(forward), len(retries))
            self.store.set_sync_state(SyncJobState(cursor=cursor, status=SyncStatus.RUNNING,
                                                   retry_count=failures))
            try:
                for file_id in forward:
                    self._check_cancelled(token, cursor, failures)
                    self._index_one(file_id, report)
                    cursor = file_id
                    self.store.set_sync_state(SyncJobState(cursor=cursor, status=SyncStatus.RUNNING,
                                                           retry_count=failures))
                for file_id in retries:
                    self._check_cancelled(token, cursor, failures)
                    self._index_one(file_id, report)
            except SyncCancelled:
                raise
            except Exception:
                self.store.set_sync_state(SyncJobState(cursor=cursor, status=SyncStatus.FAILED,
                                                       retry_count=failures + 1))
                raise
            self.store.set_sync_state(SyncJobState(cursor=None, status=SyncStatus.IDLE))

            report.cluster_result = self.recluster()
            logger.info("Sync pass done: processed=%d failed=%d removed=%d clusters=%d",
                        report.processed, report.failed, report.removed,
                        len(report.cluster_result.clusters))
            return report

    def _check_cancelled(self, token: CancellationToken, cursor: Optional[str], failures: int) -> None:
        if token.cancelled:
            self.store.set_sync_state(SyncJobState(cursor=cursor, status=SyncStatus.PAUSED,
                                                   retry_count=failures))
            logger.info("Sync paused after %s", cursor)
            token.raise_if_cancelled()

    def recluster(self) -> ClusterResult:
        """Cluster every stored face on the queue and store the result."""
        faces = self.store.get_all_faces()
        result = self.queue.queue_up_request(partial(cluster_records, faces, self.config)).result()
        self.store.set_cluster_result(result, self.config.to_dict())
        return result

    # -- periodic job --------------------------------------------------

    def _run_sync_job(self) -> JobResult:
        token = CancellationToken()
        try:
            report = self.sync(token)
        except ModelLoadError:
            return JobResult(should_back_off=True, should_stop=True)
        except SyncCancelled:
            return JobResult()
        return JobResult(should_back_off=report.attempted == 0)

    def schedule_next_sync(self, delay: Optional[float] = None) -> None:
        """Start (or restart) periodic syncing."""
        if self._job is None:
            self._job = SimpleJob(self.job_config, self._run_sync_job, name="face-sync")
        self._job.start(delay)

    def stop_sync(self) -> None:
        """Stop periodic syncing and cancel a sync in progress."""
        if self._job is not None:
            self._job.stop()
        if self._token is not None:
            self._token.cancel()

    def dispose(self) -> None:
        self.stop_sync()
        self.queue.shutdown()
        self.context.dispose()


def sync_library(library: Library, store: SqlFaceStore, config: Optional[SyncConfig] = None,
                 crop_cache: Optional[CropCache] = None, context: Optional[FaceModelContext] = None,
                 token: Optional[CancellationToken] = None) -> ClusterResult:
    """Run one sync pass with a short-lived service and return the clustering.

    A ``context`` passed in is left initialised for reuse; one created here
    is disposed before returning.
    """
    owns_context = context is None
    service = MachineLearningService(library, store, config, crop_cache=crop_cache, context=context)
    try:
        return service.sync(token).cluster_result
    finally:
        service.queue.shutdown()
        if owns_context:
            service.context.dispose()


def recluster_store(store: SqlFaceStore, config: Optional[SyncConfig] = None) -> ClusterResult:
    """Recluster stored faces without loading any model."""
    config = config or SyncConfig()
    result = cluster_records(store.get_all_faces(), config)
    store.set_cluster_result(result, config.to_dict())
    return result
