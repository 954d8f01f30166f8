"""
Command-line entry point for the face sync pipeline.

This module parses command line arguments, builds a :class:`SyncConfig`
and dispatches to one of the run modes: a single sync pass, periodic syncs
until interrupted, reclustering of stored embeddings, or debug bundle
export/import.
"""

from __future__ import annotations

import logging
import sys
import time
from typing import Optional

from .config import JobConfig, SyncConfig, parse_args
from .crops import CropCache
from .debug_io import export_debug_bundle, import_debug_bundle
from .errors import FaceSyncError
from .images import FolderLibrary
from .log import setup_logging
from .pipeline import MachineLearningService, recluster_store
from .store import SqlFaceStore

logger = logging.getLogger(__name__)


def _gpu_preflight() -> None:
    """Warn when a GPU was requested but ONNX Runtime cannot use CUDA."""
    try:
        import onnxruntime as ort
    except ImportError:
        # InsightFace reports the missing runtime when the models load.
        return
    if "CUDAExecutionProvider" not in set(ort.get_available_providers()):
        logger.warning(
            "GPU not detected by ONNX Runtime; falling back to CPU. "
            "To enable GPU install the CUDA build: "
            "pip uninstall -y onnxruntime && pip install onnxruntime-gpu"
        )


def _watch(service: MachineLearningService) -> None:
    """Run periodic syncs until interrupted."""
    service.schedule_next_sync(delay=0)
    logger.info("Watching library; press Ctrl-C to stop")
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        logger.info("Interrupted; stopping")


def run(config: SyncConfig, job_config: JobConfig) -> int:
    extra = config.extra
    store = SqlFaceStore(extra.get("db_path"))
    crop_cache = CropCache(extra["crops_dir"]) if extra.get("crops_dir") else None
    try:
        if extra.get("export_debug"):
            export_debug_bundle(store, crop_cache, extra["export_debug"])
            return 0
        if extra.get("import_debug"):
            import_debug_bundle(extra["import_debug"], store, crop_cache)
            return 0
        if extra.get("recluster"):
            result = recluster_store(store, config)
            logger.info("Reclustered: %d clusters, %d noise faces", len(result.clusters), len(result.noise))
            return 0

        if config.use_gpu:
            _gpu_preflight()
        library = FolderLibrary(extra["library"], use_phash=config.use_phash)
        service = MachineLearningService(library, store, config, crop_cache=crop_cache,
                                         job_config=job_config)
        try:
            if extra.get("watch"):
                _watch(service)
            else:
                report = service.sync()
                logger.info("Indexed %d files (%d failed); %d clusters, %d noise faces",
                            report.processed, report.failed,
                            len(report.cluster_result.clusters), len(report.cluster_result.noise))
        finally:
            service.dispose()
        return 0
    except FaceSyncError as exc:
        logger.error("%s", exc)
        return 1
    finally:
        store.close()


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point called by the ``facesync`` script."""
    config, job_config = parse_args(argv)
    setup_logging(config.extra.get("log_level", "INFO"), config.extra.get("log_file"))
    return run(config, job_config)


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
