from facesync.clustering import ClusterResult, ClusterTreeNode
from facesync.geometry import Box, Point
from facesync.records import (
    FaceDetection, FaceRecord, FaceRef, FileFaces, SyncJobState, SyncStatus,
)
from facesync.store import SqlFaceStore


def _face(file_id: str, index: int, value: float = 0.5) -> FaceRecord:
    det = FaceDetection(box=Box(10, 20, 30, 40),
                        landmarks=(Point(15, 30), Point(30, 30)),
                        probability=0.93)
    return FaceRecord(
        ref=FaceRef(file_id, index),
        detection=det,
        aligned_box=Box(5.5, 12.25, 50, 50),
        rotation=0.125,
        embedding=(value, 1.0 - value, 0.0),
        crop_box=Box(0, 0, 75, 75),
    )


def test_put_and_get_round_trip(store):
    faces = [_face("a.jpg", 0), _face("a.jpg", 1, 0.25)]
    store.put_file(FileFaces("a.jpg", faces, width=640, height=480))
    got = store.get_file("a.jpg")
    assert got.faces == faces
    assert (got.width, got.height) == (640, 480)
    assert store.is_indexed("a.jpg")
    assert store.get_file("missing.jpg") is None


def test_put_file_replaces_previous_faces(store):
    store.put_file(FileFaces("a.jpg", [_face("a.jpg", 0), _face("a.jpg", 1)]))
    store.put_file(FileFaces("a.jpg", [_face("a.jpg", 0, 0.9)]))
    faces = store.get_file("a.jpg").faces
    assert len(faces) == 1
    assert faces[0].embedding == (0.9, 1.0 - 0.9, 0.0)


def test_file_without_faces_is_indexed(store):
    store.put_file(FileFaces("empty.jpg", []))
    assert store.is_indexed("empty.jpg")
    assert store.get_file("empty.jpg").faces == []
    assert store.get_all_faces() == []


def test_mark_failed_counts_retries(store):
    assert store.mark_failed("bad.jpg", "decode error") == 1
    assert store.mark_failed("bad.jpg", "decode error") == 2
    assert store.retry_count("bad.jpg") == 2
    assert not store.is_indexed("bad.jpg")
    assert store.get_file("bad.jpg") is None
    assert store.failed_files() == ["bad.jpg"]
    assert store.failed_files(max_retries=3) == ["bad.jpg"]
    assert store.failed_files(max_retries=2) == []


def test_success_after_failure_clears_retries(store):
    store.mark_failed("x.jpg", "boom")
    store.put_file(FileFaces("x.jpg", [_face("x.jpg", 0)]))
    assert store.failed_files() == []
    assert store.retry_count("x.jpg") == 0
    assert store.mark_failed("x.jpg") == 1


def test_remove_files(store):
    store.put_file(FileFaces("a.jpg", [_face("a.jpg", 0)]))
    store.put_file(FileFaces("b.jpg", [_face("b.jpg", 0)]))
    store.mark_failed("c.jpg")
    assert store.remove_files(["a.jpg", "c.jpg", "nope.jpg"]) == 2
    assert store.list_file_ids() == ["b.jpg"]
    assert [f.ref for f in store.get_all_faces()] == [FaceRef("b.jpg", 0)]
    assert store.remove_files([]) == 0


def test_get_all_faces_is_ordered(store):
    store.put_file(FileFaces("b.jpg", [_face("b.jpg", 0)]))
    store.put_file(FileFaces("a.jpg", [_face("a.jpg", 0), _face("a.jpg", 1)]))
    refs = [f.ref for f in store.get_all_faces()]
    assert refs == [FaceRef("a.jpg", 0), FaceRef("a.jpg", 1), FaceRef("b.jpg", 0)]


def test_sync_state(store):
    assert store.get_sync_state() == SyncJobState()
    state = SyncJobState(cursor="a.jpg", status=SyncStatus.PAUSED, retry_count=1)
    store.set_sync_state(state)
    assert store.get_sync_state() == state
    store.set_sync_state(SyncJobState())
    assert store.get_sync_state() == SyncJobState()


def test_cluster_result_round_trip(store):
    assert store.get_cluster_result() is None
    leaf = [ClusterTreeNode(size=1, index=i) for i in range(3)]
    inner = ClusterTreeNode(size=2, distance=0.1, left=leaf[0], right=leaf[1])
    tree = ClusterTreeNode(size=3, distance=0.7, left=inner, right=leaf[2])
    result = ClusterResult(
        clusters=[[FaceRef("a.jpg", 0), FaceRef("b.jpg", 0)]],
        noise=[FaceRef("c.jpg", 2)],
        debug_tree=tree,
    )
    store.set_cluster_result(result, {"cluster_distance_threshold": 0.55})
    got = store.get_cluster_result()
    assert got.clusters == result.clusters
    assert got.noise == result.noise
    assert got.debug_tree.to_dict() == tree.to_dict()
    assert store.get_cluster_parameters() == {"cluster_distance_threshold": 0.55}

    store.set_cluster_result(ClusterResult())
    assert store.get_cluster_result().clusters == []


def test_file_database_persists(tmp_path):
    path = tmp_path / "faces.sqlite"
    first = SqlFaceStore(path)
    first.put_file(FileFaces("a.jpg", [_face("a.jpg", 0)]))
    first.set_sync_state(SyncJobState(cursor="a.jpg", status=SyncStatus.RUNNING))
    first.close()

    second = SqlFaceStore(path)
    assert second.is_indexed("a.jpg")
    assert second.get_sync_state().cursor == "a.jpg"
    second.close()
