"""
Exception types raised by the face sync pipeline.

Callers can catch :class:`FaceSyncError` to handle every pipeline failure
in one place, or one of the subclasses when the distinction matters (for
example a queue timeout versus an error raised by the task itself).
"""

from __future__ import annotations


class FaceSyncError(Exception):
    """Base class for all pipeline errors."""


class ModelLoadError(FaceSyncError):
    """A detection or embedding model could not be loaded.

    This is fatal for the model context that raised it: face indexing is
    disabled for the rest of the session rather than retried per file.
    """


class AlignmentError(FaceSyncError, ValueError):
    """A detection's landmarks cannot define a similarity transform."""


class TaskTimeoutError(FaceSyncError, TimeoutError):
    """A queued task did not settle before its timeout expired."""


class SyncCancelled(FaceSyncError):
    """A sync pass observed a stop request between two files."""
