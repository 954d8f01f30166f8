import numpy as np
import pyarrow.parquet as pq

from conftest import FakeDetectionModel, FakeEmbedder, people_library
from facesync.crops import CropCache
from facesync.debug_io import FILES_METADATA_KEY, export_debug_bundle, import_debug_bundle
from facesync.pipeline import FaceModelContext, MachineLearningService, cluster_records
from facesync.store import SqlFaceStore


def _indexed_store(config, tmp_path):
    store = SqlFaceStore(tmp_path / "source.sqlite")
    cache = CropCache(tmp_path / "crops")
    context = FaceModelContext(config, FakeDetectionModel(), FakeEmbedder())
    service = MachineLearningService(people_library(), store, config, crop_cache=cache, context=context)
    service.sync()
    service.dispose()
    return store, cache


def test_export_writes_one_row_per_face(config, tmp_path):
    store, cache = _indexed_store(config, tmp_path)
    path = tmp_path / "bundle" / "faces.parquet"
    assert export_debug_bundle(store, cache, path) == 6
    table = pq.read_table(path)
    assert table.num_rows == 6
    assert FILES_METADATA_KEY in table.schema.metadata
    assert set(table.column_names) >= {"file_id", "face_index", "embedding", "crop_png"}


def test_import_reproduces_clustering_input(config, tmp_path):
    store, cache = _indexed_store(config, tmp_path)
    path = tmp_path / "faces.parquet"
    export_debug_bundle(store, cache, path)

    target = SqlFaceStore()
    target_cache = CropCache(tmp_path / "imported_crops")
    assert import_debug_bundle(path, target, target_cache) == 6

    assert target.get_all_faces() == store.get_all_faces()
    assert target.list_file_ids() == store.list_file_ids()
    assert target.get_file("empty.png").faces == []
    assert target.get_file("a_0.png").width == 480
    for face in store.get_all_faces():
        assert np.array_equal(target_cache.get(face.ref), cache.get(face.ref))

    original = cluster_records(store.get_all_faces(), config)
    imported = cluster_records(target.get_all_faces(), config)
    assert imported.clusters == original.clusters
    assert imported.noise == original.noise


def test_export_without_crop_cache(config, tmp_path):
    store, _cache = _indexed_store(config, tmp_path)
    path = tmp_path / "nocrops.parquet"
    export_debug_bundle(store, None, path)
    target = SqlFaceStore()
    assert import_debug_bundle(path, target) == 6
    assert target.get_all_faces() == store.get_all_faces()


def test_empty_store_round_trip(tmp_path):
    path = tmp_path / "empty.parquet"
    assert export_debug_bundle(SqlFaceStore(), None, path) == 0
    target = SqlFaceStore()
    assert import_debug_bundle(path, target) == 0
    assert target.list_file_ids() == []
