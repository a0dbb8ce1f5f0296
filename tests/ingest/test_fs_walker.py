import os
from pathlib import Path

import pytest

from pixishelf_backend.features.ingest.fs_walker import MetadataWalker, match_metadata_file


def _meta(path: Path, external_id: str) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    target = path / f"{external_id}-meta.txt"
    target.write_text("ID\n" + external_id + "\n", encoding="utf-8")
    return target


def test_match_metadata_file() -> None:
    assert match_metadata_file("123-meta.txt") == "123"
    assert match_metadata_file("123-META.TXT") == "123"
    assert match_metadata_file("abc-meta.txt") is None
    assert match_metadata_file("123-meta.txt.bak") is None
    assert match_metadata_file("") is None


def test_discover_finds_nested_files_in_path_order(tmp_path: Path) -> None:
    _meta(tmp_path / "b" / "2", "2")
    _meta(tmp_path / "a" / "1", "1")
    (tmp_path / "a" / "1" / "1_p0.jpg").write_bytes(b"x")

    res = MetadataWalker().discover(tmp_path)
    assert res.ok
    assert res.data.external_ids == ["1", "2"]
    first = res.data.artworks[0]
    assert first.directory == os.path.abspath(tmp_path / "a" / "1")
    assert first.metadata_path.endswith("1-meta.txt")


def test_duplicate_ids_keep_first_path(tmp_path: Path) -> None:
    _meta(tmp_path / "x" / "999", "999")
    _meta(tmp_path / "y" / "999", "999")

    res = MetadataWalker().discover(tmp_path)
    assert res.ok
    assert res.data.external_ids == ["999"]
    assert "x" in Path(res.data.artworks[0].metadata_path).parts
    assert len(res.data.duplicates) == 1
    assert "y" in Path(res.data.duplicates[0].metadata_path).parts


def test_hidden_dirs_and_depth_limit(tmp_path: Path) -> None:
    _meta(tmp_path / ".trash" / "1", "1")
    _meta(tmp_path / "d1" / "d2" / "d3", "3")
    _meta(tmp_path / "d1", "4")

    shallow = MetadataWalker(max_depth=1).discover(tmp_path)
    assert shallow.data.external_ids == ["4"]

    deep = MetadataWalker(max_depth=8).discover(tmp_path)
    assert sorted(deep.data.external_ids) == ["3", "4"]


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unavailable")
def test_symlinked_directories_are_not_followed(tmp_path: Path) -> None:
    outside = tmp_path / "outside"
    _meta(outside / "7", "7")
    root = tmp_path / "root"
    root.mkdir()
    try:
        os.symlink(outside, root / "link", target_is_directory=True)
    except OSError:
        pytest.skip("cannot create symlink")
    res = MetadataWalker().discover(root)
    assert res.ok
    assert res.data.external_ids == []


def test_bad_roots(tmp_path: Path) -> None:
    missing = MetadataWalker().discover(tmp_path / "missing")
    assert not missing.ok
    assert missing.code == "NOT_FOUND"

    file_root = tmp_path / "file.txt"
    file_root.write_text("x", encoding="utf-8")
    not_dir = MetadataWalker().discover(file_root)
    assert not not_dir.ok
    assert not_dir.code == "INVALID_INPUT"
