from pathlib import Path

from PIL import Image

from pixishelf_backend.features.ingest.media_associator import (
    collect,
    directory_created_at,
    match_page_index,
    probe_dimensions,
)


def test_match_page_index() -> None:
    assert match_page_index("123.jpg", "123") == 0
    assert match_page_index("123_p0.png", "123") == 0
    assert match_page_index("123_p12.webp", "123") == 12
    assert match_page_index("1234_p0.jpg", "123") is None
    assert match_page_index("123_p0.txt", "123") is None
    assert match_page_index("123-meta.txt", "123") is None


def test_collect_orders_pages_and_ignores_foreign_files(tmp_path: Path) -> None:
    for name in ("123_p2.jpg", "123_p0.jpg", "123_p1.png", "999_p0.jpg", "notes.txt"):
        (tmp_path / name).write_bytes(b"x" * 10)
    res = collect(tmp_path, "123")
    assert res.ok
    assert [m.page_index for m in res.data] == [0, 1, 2]
    assert [Path(m.path).name for m in res.data] == ["123_p0.jpg", "123_p1.png", "123_p2.jpg"]
    assert all(m.size == 10 for m in res.data)


def test_collect_prefers_explicit_page_zero(tmp_path: Path) -> None:
    (tmp_path / "5.jpg").write_bytes(b"a")
    (tmp_path / "5_p0.jpg").write_bytes(b"bb")
    res = collect(tmp_path, "5")
    assert res.ok
    assert len(res.data) == 1
    assert Path(res.data[0].path).name == "5_p0.jpg"


def test_collect_empty_directory_is_ok(tmp_path: Path) -> None:
    res = collect(tmp_path, "1")
    assert res.ok
    assert res.data == []


def test_collect_missing_directory_is_error(tmp_path: Path) -> None:
    res = collect(tmp_path / "missing", "1")
    assert not res.ok
    assert res.code == "IO_ERROR"


def test_probe_dimensions(tmp_path: Path) -> None:
    path = tmp_path / "1_p0.png"
    Image.new("RGB", (7, 3)).save(path)
    assert probe_dimensions(str(path)) == (7, 3)

    broken = tmp_path / "1_p1.png"
    broken.write_bytes(b"not an image")
    assert probe_dimensions(str(broken)) == (None, None)

    video = tmp_path / "1_p2.mp4"
    video.write_bytes(b"")
    assert probe_dimensions(str(video)) == (None, None)


def test_collect_with_probe(tmp_path: Path) -> None:
    Image.new("RGB", (4, 5)).save(tmp_path / "8_p0.png")
    res = collect(tmp_path, "8", probe=True)
    assert res.ok
    assert (res.data[0].width, res.data[0].height) == (4, 5)


def test_directory_created_at(tmp_path: Path) -> None:
    res = directory_created_at(tmp_path)
    assert res.ok
    assert res.data.tzinfo is not None
    assert res.data.timestamp() > 0

    missing = directory_created_at(tmp_path / "gone")
    assert not missing.ok
    assert missing.code == "IO_ERROR"
