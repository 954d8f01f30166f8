"""
Configuration structures for the face sync pipeline.

We use :class:`dataclasses.dataclass` to describe the tunables accepted by
the command line interface and stored alongside clustering results.  Each
field corresponds to a user-controllable parameter, with defaults matching
the detector and recogniser the pipeline ships with.

The :func:`parse_args` function converts command line arguments into a
:class:`SyncConfig` and a :class:`JobConfig`.  Paths and run-mode switches
that are not algorithm parameters are returned in ``SyncConfig.extra``.
"""

from __future__ import annotations

import argparse
import json
import math
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple


@dataclass
class SyncConfig:
    """Parameters controlling detection, alignment, cropping and clustering.

    Attributes
    ----------
    model_name: str
        InsightFace model pack providing the detector and recogniser.
    use_gpu: bool
        Prefer the CUDA execution provider of ONNX Runtime when present.
    max_faces: int
        Upper bound on faces returned by one detector call.
    score_threshold_pass1: float
        Detector score threshold for the first, whole-image pass.  Kept
        looser than ``score_threshold`` so real faces are not lost before
        the second pass gets to look at them.
    score_threshold: float
        Final score a second-pass detection must reach to be kept.
    iou_threshold: float
        Overlap threshold of the detector's internal non-maximum suppression.
    input_size: int
        Square input size of the detector, in pixels.
    max_face_distance_percent: float
        Two final detections whose centres are closer than this fraction of
        the image width are duplicates; the less probable one is dropped.
    desired_face_size: int
        Side of the aligned face image fed to the embedder.
    desired_left_eye: (float, float)
        Normalised position of the left eye in the aligned face.  The right
        eye mirrors it horizontally.
    crop_padding: float
        Fraction of the aligned box added on each side of cached face crops.
    crop_max_size: int
        Side of cached face crops, in pixels.
    cluster_method: str
        ``"mst"`` (minimum spanning tree cut) or ``"hdbscan"``.
    cluster_metric: str
        ``"cosine"`` or ``"euclidean"`` distance between embeddings.
    cluster_distance_threshold: float
        Spanning tree edges longer than this are cut.
    min_cluster_size: int
        Components with fewer faces are reported as noise.
    hdbscan_min_samples: int
        ``min_samples`` for the HDBSCAN method; ignored otherwise.
    keep_debug_tree: bool
        Keep the merge tree of the spanning tree with the cluster result.
    file_timeout_sec: float
        Per-file time limit for detection, alignment and embedding.  ``0``
        disables the limit.
    max_retries: int
        Number of sync passes a failing file is retried on.
    use_phash: bool
        Skip library files whose perceptual hash was already seen.
    extra: dict
        Non-algorithm settings (paths, run mode) filled in by the CLI.
    """
    model_name: str = "buffalo_l"
    use_gpu: bool = False
    max_faces: int = 50
    score_threshold_pass1: float = 0.4
    score_threshold: float = 0.75
    iou_threshold: float = 0.3
    input_size: int = 256
    max_face_distance_percent: float = math.sqrt(2) / 100
    desired_face_size: int = 112
    desired_left_eye: Tuple[float, float] = (0.36, 0.45)
    crop_padding: float = 0.25
    crop_max_size: int = 256
    cluster_method: str = "mst"
    cluster_metric: str = "cosine"
    cluster_distance_threshold: float = 0.55
    min_cluster_size: int = 3
    hdbscan_min_samples: int = 5
    keep_debug_tree: bool = False
    file_timeout_sec: float = 60.0
    max_retries: int = 3
    use_phash: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Algorithm parameters as a JSON-serialisable dict (``extra`` excluded)."""
        data = asdict(self)
        data.pop("extra", None)
        data["desired_left_eye"] = list(self.desired_left_eye)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncConfig":
        """Build a config from a dict, ignoring unknown keys."""
        known = {f.name for f in fields(cls)} - {"extra"}
        values = {k: v for k, v in data.items() if k in known}
        if "desired_left_eye" in values:
            values["desired_left_eye"] = tuple(values["desired_left_eye"])
        return cls(**values)


@dataclass
class JobConfig:
    """Timing of the periodic background sync.

    Attributes
    ----------
    interval_sec: float
        Delay before the next run after a run that found work.
    max_interval_sec: float
        Upper bound of the backed-off delay.
    backoff_multiplier: float
        Factor applied to the delay after an idle or failed run.
    """
    interval_sec: float = 30.0
    max_interval_sec: float = 960.0
    backoff_multiplier: float = 2.0


def load_config_file(path: Path) -> SyncConfig:
    """Read a JSON file of :class:`SyncConfig` fields."""
    with open(path, "r", encoding="utf-8") as fh:
        return SyncConfig.from_dict(json.load(fh))


def parse_args(argv: Optional[list[str]] = None) -> Tuple[SyncConfig, JobConfig]:
    """Parse command line arguments.

    Parameters
    ----------
    argv: list of str, optional
        List of command line arguments.  If omitted, :mod:`sys.argv` will be
        used.  This parameter facilitates testing.

    Returns
    -------
    (SyncConfig, JobConfig)
        Populated configuration objects.  Paths and run-mode switches are in
        ``SyncConfig.extra``.
    """
    defaults = SyncConfig()
    job_defaults = JobConfig()
    parser = argparse.ArgumentParser(
        description="On-device face detection, embedding and clustering for a photo library",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--library", dest="library", type=Path, required=False,
                        help="Folder containing the photo library")
    parser.add_argument("--db", dest="db_path", type=Path, default=Path("facesync.sqlite"),
                        help="Path to the SQLite store")
    parser.add_argument("--crops-dir", dest="crops_dir", type=Path, default=None,
                        help="Directory for cached face crops (disabled when omitted)")
    parser.add_argument("--config", dest="config_file", type=Path, default=None,
                        help="JSON file with pipeline parameters; command line flags override it")
    parser.add_argument("--model", dest="model_name", type=str, default=None,
                        help=f"InsightFace model pack (default {defaults.model_name})")
    parser.add_argument("--gpu", dest="use_gpu", action="store_true",
                        help="Use the CUDA execution provider when available")
    parser.add_argument("--distance-threshold", dest="cluster_distance_threshold", type=float,
                        default=None,
                        help=f"Cluster cut distance (default {defaults.cluster_distance_threshold})")
    parser.add_argument("--min-cluster-size", dest="min_cluster_size", type=int, default=None,
                        help=f"Minimum faces per person (default {defaults.min_cluster_size})")
    parser.add_argument("--cluster-method", dest="cluster_method", choices=["mst", "hdbscan"],
                        default=None, help=f"Clustering method (default {defaults.cluster_method})")
    parser.add_argument("--file-timeout", dest="file_timeout_sec", type=float, default=None,
                        help=f"Per-file timeout in seconds (default {defaults.file_timeout_sec})")
    parser.add_argument("--use-phash", dest="use_phash", action="store_true",
                        help="Skip perceptual duplicates of already listed photos")
    parser.add_argument("--debug-tree", dest="keep_debug_tree", action="store_true",
                        help="Keep the cluster merge tree with the results")
    parser.add_argument("--watch", dest="watch", action="store_true",
                        help="Keep running periodic syncs until interrupted")
    parser.add_argument("--interval", dest="interval_sec", type=float,
                        default=job_defaults.interval_sec,
                        help="Seconds between periodic syncs in --watch mode")
    parser.add_argument("--recluster", dest="recluster", action="store_true",
                        help="Only recluster the stored embeddings")
    parser.add_argument("--export-debug", dest="export_debug", type=Path, default=None,
                        help="Write stored faces and crops to a Parquet debug bundle and exit")
    parser.add_argument("--import-debug", dest="import_debug", type=Path, default=None,
                        help="Load a Parquet debug bundle into the store and exit")
    parser.add_argument("--log-level", dest="log_level", type=str, default="INFO",
                        help="Logging level")
    parser.add_argument("--log-file", dest="log_file", type=Path, default=None,
                        help="Also write logs to this file")
    args = parser.parse_args(argv)

    needs_library = not (args.recluster or args.export_debug or args.import_debug)
    if needs_library and args.library is None:
        parser.error("--library is required unless --recluster, --export-debug or --import-debug is given")

    config = load_config_file(args.config_file) if args.config_file else SyncConfig()
    for name in ("model_name", "cluster_distance_threshold", "min_cluster_size",
                 "cluster_method", "file_timeout_sec"):
        value = getattr(args, name)
        if value is not None:
            setattr(config, name, value)
    for name in ("use_gpu", "use_phash", "keep_debug_tree"):
        if getattr(args, name):
            setattr(config, name, True)
    config.extra = {
        "library": args.library,
        "db_path": args.db_path,
        "crops_dir": args.crops_dir,
        "watch": args.watch,
        "recluster": args.recluster,
        "export_debug": args.export_debug,
        "import_debug": args.import_debug,
        "log_level": args.log_level,
        "log_file": args.log_file,
    }
    job = JobConfig(interval_sec=args.interval_sec,
                    max_interval_sec=max(job_defaults.max_interval_sec, args.interval_sec),
                    backoff_multiplier=job_defaults.backoff_multiplier)
    return config, job
