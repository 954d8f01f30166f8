import cv2

from conftest import FakeDetectionModel, FakeEmbedder, people_library
from facesync import cli, pipeline
from facesync.store import SqlFaceStore


def _write_library(root):
    library = people_library()
    for file_id, image in library.images.items():
        cv2.imwrite(str(root / file_id), image)


def _fake_models(monkeypatch):
    original = pipeline.FaceModelContext

    def factory(config):
        return original(config, FakeDetectionModel(), FakeEmbedder())

    monkeypatch.setattr(pipeline, "FaceModelContext", factory)


def test_sync_then_recluster_then_export_import(tmp_path, monkeypatch):
    photos = tmp_path / "photos"
    photos.mkdir()
    _write_library(photos)
    _fake_models(monkeypatch)
    db = tmp_path / "faces.sqlite"
    crops = tmp_path / "crops"

    assert cli.main(["--library", str(photos), "--db", str(db), "--crops-dir", str(crops)]) == 0
    store = SqlFaceStore(db)
    assert len(store.get_cluster_result().clusters) == 2
    store.close()

    assert cli.main(["--recluster", "--db", str(db), "--min-cluster-size", "4"]) == 0
    store = SqlFaceStore(db)
    assert store.get_cluster_result().clusters == []
    store.close()

    bundle = tmp_path / "bundle.parquet"
    assert cli.main(["--export-debug", str(bundle), "--db", str(db), "--crops-dir", str(crops)]) == 0
    assert bundle.exists()

    other_db = tmp_path / "other.sqlite"
    assert cli.main(["--import-debug", str(bundle), "--db", str(other_db)]) == 0
    other = SqlFaceStore(other_db)
    assert len(other.get_all_faces()) == 6
    other.close()


def test_model_load_failure_exits_with_error(tmp_path, monkeypatch):
    photos = tmp_path / "photos"
    photos.mkdir()
    _write_library(photos)
    original = pipeline.FaceModelContext
    monkeypatch.setattr(pipeline, "FaceModelContext",
                        lambda config: original(config, FakeDetectionModel(fail_load=True), FakeEmbedder()))
    assert cli.main(["--library", str(photos), "--db", str(tmp_path / "x.sqlite")]) == 1
