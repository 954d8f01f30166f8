"""
Collapse duplicate detections produced by the two-pass detector.

Two detections are duplicates when their box centres are closer than a
distance threshold.  The threshold is derived from the image width by the
caller so the rule does not depend on resolution.  Overlap (IoU) is not
used: neighbouring faces at different scales can legitimately overlap.
"""

from __future__ import annotations

from typing import List, Sequence

from .records import FaceDetection


def remove_duplicate_detections(detections: Sequence[FaceDetection],
                                max_distance: float) -> List[FaceDetection]:
    """Greedy proximity non-maximum suppression.

    Parameters
    ----------
    detections: sequence of FaceDetection
        Candidate detections in one coordinate space.
    max_distance: float
        Detections whose centre lies closer than this to the centre of an
        already kept detection are dropped.

    Returns
    -------
    list of FaceDetection
        Survivors in descending probability order.  Equal probabilities keep
        their input order.
    """
    order = sorted(range(len(detections)), key=lambda i: (-detections[i].probability, i))
    kept: List[FaceDetection] = []
    for idx in order:
        candidate = detections[idx]
        center = candidate.box.center
        if any(center.distance_to(k.box.center) < max_distance for k in kept):
            continue
        kept.append(candidate)
    return kept


def get_nearest_detection(reference: FaceDetection,
                          candidates: Sequence[FaceDetection]) -> FaceDetection:
    """Return the candidate whose centre is nearest ``reference``'s centre.

    Equal distances resolve to the lowest index.
    """
    if not candidates:
        raise ValueError("No candidate detections")
    center = reference.box.center
    best_idx = min(range(len(candidates)),
                   key=lambda i: (candidates[i].box.center.distance_to(center), i))
    return candidates[best_idx]
