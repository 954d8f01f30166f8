import pytest

from facesync.geometry import Box
from facesync.records import FaceDetection
from facesync.suppression import get_nearest_detection, remove_duplicate_detections


def _det(x, y, p, size=10):
    return FaceDetection(box=Box(x, y, size, size), landmarks=(), probability=p)


def test_keeps_most_probable_of_close_pair():
    weak = _det(0, 0, 0.8)
    strong = _det(2, 1, 0.95)
    far = _det(100, 100, 0.5)
    kept = remove_duplicate_detections([weak, strong, far], max_distance=5)
    assert kept == [strong, far]


def test_distance_threshold_is_strict():
    a = _det(0, 0, 0.9)
    b = _det(3, 4, 0.8)  # centres exactly 5 apart
    assert remove_duplicate_detections([a, b], max_distance=5) == [a, b]
    assert remove_duplicate_detections([a, b], max_distance=5.01) == [a]


def test_equal_probabilities_keep_input_order():
    a = _det(0, 0, 0.9)
    b = _det(1, 0, 0.9)
    assert remove_duplicate_detections([a, b], max_distance=5) == [a]
    assert remove_duplicate_detections([b, a], max_distance=5) == [b]


def test_empty_input():
    assert remove_duplicate_detections([], max_distance=5) == []


def test_nearest_detection_breaks_ties_by_index():
    ref = _det(50, 50, 0.9)
    left = _det(40, 50, 0.5)
    right = _det(60, 50, 0.99)
    assert get_nearest_detection(ref, [left, right]) is left
    assert get_nearest_detection(ref, [right, left]) is right
    assert get_nearest_detection(ref, [right, _det(51, 50, 0.1)]).box.x == 51


def test_nearest_detection_requires_candidates():
    with pytest.raises(ValueError):
        get_nearest_detection(_det(0, 0, 0.5), [])
