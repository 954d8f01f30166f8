"""
Top-level package for the facesync pipeline.

Indexes the faces of a photo library incrementally and groups them into
people.  The functionality is organised into smaller modules:

- :mod:`facesync.geometry` – points, boxes and similarity transforms between coordinate spaces.
- :mod:`facesync.bitmap` – resizing, padding and rotated cropping of images with OpenCV.
- :mod:`facesync.records` – value types passed between stages and persisted in the store.
- :mod:`facesync.detection` – two-pass face detection on top of an InsightFace detector.
- :mod:`facesync.suppression` – proximity de-duplication of detections.
- :mod:`facesync.alignment` – eye-based similarity alignment to a canonical face frame.
- :mod:`facesync.crops` – padded face crops, re-extraction from crops and the crop cache.
- :mod:`facesync.embedders` – wrappers around the InsightFace recogniser.
- :mod:`facesync.clustering` – minimum spanning tree clustering of face embeddings.
- :mod:`facesync.queue_processor` – serial queue with per-request timeouts for model work.
- :mod:`facesync.jobs` – periodic background job with back-off and cancellation tokens.
- :mod:`facesync.store` – SQLite schema and helpers for files, faces, sync state and clusters.
- :mod:`facesync.images` – listing and decoding photos in a folder library.
- :mod:`facesync.debug_io` – Parquet debug bundles of indexed faces.
- :mod:`facesync.pipeline` – orchestrates resumable library syncs, tying together all modules.

You can run a sync from the command line using the ``facesync`` script installed by this
package.
"""

__all__ = [
    "geometry",
    "bitmap",
    "records",
    "detection",
    "suppression",
    "alignment",
    "crops",
    "embedders",
    "clustering",
    "queue_processor",
    "jobs",
    "store",
    "images",
    "debug_io",
    "pipeline",
]
