import numpy as np
from PIL import Image

from facesync.images import FolderLibrary, decode_image


def _save(path, colour, size=(64, 48)):
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, color=colour).save(path)


def test_list_files_is_sorted_relative_posix(tmp_path):
    _save(tmp_path / "b.png", (10, 20, 30))
    _save(tmp_path / "2021" / "a.jpg", (30, 20, 10))
    _save(tmp_path / "a.PNG", (1, 2, 3))
    (tmp_path / "notes.txt").write_text("not an image")
    library = FolderLibrary(tmp_path)
    assert library.list_files() == ["2021/a.jpg", "a.PNG", "b.png"]


def test_decode_returns_bgr(tmp_path):
    _save(tmp_path / "red.png", (255, 0, 0))
    image = FolderLibrary(tmp_path).decode("red.png")
    assert image.shape == (48, 64, 3)
    assert image.dtype == np.uint8
    assert tuple(image[0, 0]) == (0, 0, 255)


def test_decode_missing_or_broken(tmp_path):
    (tmp_path / "broken.jpg").write_bytes(b"not really a jpeg")
    library = FolderLibrary(tmp_path)
    assert library.decode("missing.jpg") is None
    assert library.decode("broken.jpg") is None
    assert decode_image(tmp_path / "broken.jpg") is None


def test_phash_skips_duplicates(tmp_path):
    rng = np.random.default_rng(0)
    pixels = rng.integers(0, 256, size=(64, 64, 3), dtype=np.uint8)
    Image.fromarray(pixels).save(tmp_path / "one.png")
    Image.fromarray(pixels).save(tmp_path / "two.png")
    Image.fromarray(255 - pixels).save(tmp_path / "three.png")
    assert FolderLibrary(tmp_path).list_files() == ["one.png", "three.png", "two.png"]
    assert FolderLibrary(tmp_path, use_phash=True).list_files() == ["one.png", "three.png"]
