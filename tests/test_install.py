import pytest

import sector_update as su


def _tree(root, files):
    for rel, text in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)


def test_merge_keeps_destination_extras(tmp_path):
    src, dst = tmp_path / "src", tmp_path / "dst"
    _tree(src, {"a.txt": "A", "sub/b.txt": "B"})
    _tree(dst, {"local.txt": "mine", "sub/other.txt": "keep"})

    count = su.merge_copy(src, dst)

    assert count == 2
    assert (dst / "local.txt").read_text() == "mine"
    assert (dst / "sub" / "other.txt").read_text() == "keep"
    assert (dst / "sub" / "b.txt").read_text() == "B"


def test_merge_overwrites_same_named_files(tmp_path):
    src, dst = tmp_path / "src", tmp_path / "dst"
    _tree(src, {"a.txt": "new", "deep/er/c.txt": "new c"})
    _tree(dst, {"a.txt": "old", "deep/er/c.txt": "old c"})

    su.merge_copy(src, dst)

    assert (dst / "a.txt").read_text() == "new"
    assert (dst / "deep" / "er" / "c.txt").read_text() == "new c"


def test_merge_creates_empty_directories(tmp_path):
    src, dst = tmp_path / "src", tmp_path / "dst"
    (src / "empty" / "nested").mkdir(parents=True)
    su.merge_copy(src, dst)
    assert (dst / "empty" / "nested").is_dir()


def test_merge_missing_source_raises(tmp_path):
    with pytest.raises(su.InstallError):
        su.merge_copy(tmp_path / "nope", tmp_path / "dst")


def test_merge_file_in_place_of_directory_raises(tmp_path):
    src, dst = tmp_path / "src", tmp_path / "dst"
    _tree(src, {"NavData/x.txt": "x"})
    dst.mkdir()
    (dst / "NavData").write_text("not a dir")
    with pytest.raises(su.InstallError):
        su.merge_copy(src, dst)
