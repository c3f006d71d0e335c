import os

import pytest

from lidarkit.file_manager import (
    RECORD_TIME_LENGTH,
    collect_file_names,
    delete_hidden_files,
    dir_total_size,
    directory_exists,
    make_directory,
    record_time_key,
    unhide_file,
    unhide_files,
)

NAME_A = "2023-01-02_03-04-05_SN0000_0_1.dat"
NAME_B = "2022-12-31_23-59-59_SN0000_0_2.dat"


def test_record_time_key_takes_timestamp_prefix():
    assert record_time_key(NAME_A) == NAME_A[:RECORD_TIME_LENGTH]
    assert record_time_key(NAME_A) == "2023-01-02_03-04-05"


def test_record_time_key_short_name():
    assert record_time_key("abc") == "abc"


def test_record_time_key_empty():
    with pytest.raises(ValueError):
        record_time_key("")


def test_dir_total_size_sums_tree(tmp_path):
    (tmp_path / "a").write_bytes(b"x" * 10)
    sub = tmp_path / "sub"
    sub.mkdir()
    (sub / "b").write_bytes(b"y" * 25)
    assert dir_total_size(tmp_path) == 35
    assert dir_total_size(sub / "b") == 25


def test_dir_total_size_missing(tmp_path):
    assert dir_total_size(tmp_path / "missing") == 0


def test_collect_file_names_sorted_and_skips_hidden(tmp_path):
    (tmp_path / NAME_A).write_bytes(b"1")
    (tmp_path / ("." + NAME_B)).write_bytes(b"2")
    sub = tmp_path / "sub"
    sub.mkdir()
    (sub / NAME_B).write_bytes(b"3")
    result = collect_file_names(tmp_path)
    assert result == [
        (NAME_B[:RECORD_TIME_LENGTH], NAME_B),
        (NAME_A[:RECORD_TIME_LENGTH], NAME_A),
    ]


def test_collect_file_names_missing_dir(tmp_path):
    with pytest.raises(OSError):
        collect_file_names(tmp_path / "missing")


def test_unhide_file_renames(tmp_path):
    (tmp_path / ".log.dat").write_bytes(b"data")
    assert unhide_file(tmp_path, ".log.dat") is True
    assert (tmp_path / "log.dat").read_bytes() == b"data"
    assert not (tmp_path / ".log.dat").exists()


def test_unhide_file_replaces_existing(tmp_path):
    (tmp_path / ".log.dat").write_bytes(b"new")
    (tmp_path / "log.dat").write_bytes(b"old")
    assert unhide_file(tmp_path, ".log.dat") is True
    assert (tmp_path / "log.dat").read_bytes() == b"new"


@pytest.mark.parametrize("name", ["", "visible.dat", ".missing.dat"])
def test_unhide_file_refuses(tmp_path, name):
    (tmp_path / "visible.dat").write_bytes(b"v")
    assert unhide_file(tmp_path, name) is False
    assert (tmp_path / "visible.dat").exists()


def test_unhide_files_recurses(tmp_path):
    (tmp_path / ".a.dat").write_bytes(b"a")
    sub = tmp_path / "sub"
    sub.mkdir()
    (sub / ".b.dat").write_bytes(b"b")
    (sub / "c.dat").write_bytes(b"c")
    renamed = unhide_files(tmp_path)
    assert sorted(os.path.basename(p) for p in renamed) == ["a.dat", "b.dat"]
    assert sorted(p.name for p in sub.iterdir()) == ["b.dat", "c.dat"]
    assert (tmp_path / "a.dat").read_bytes() == b"a"


def test_unhide_files_empty_name():
    with pytest.raises(ValueError):
        unhide_files("")


def test_delete_hidden_files(tmp_path):
    (tmp_path / ".a.dat").write_bytes(b"a")
    (tmp_path / "keep.dat").write_bytes(b"k")
    sub = tmp_path / "sub"
    sub.mkdir()
    (sub / ".b.dat").write_bytes(b"b")
    removed = delete_hidden_files(tmp_path)
    assert len(removed) == 2
    assert sorted(p.name for p in tmp_path.iterdir()) == ["keep.dat", "sub"]
    assert list(sub.iterdir()) == []


def test_make_directory_and_exists(tmp_path):
    target = tmp_path / "logs"
    assert directory_exists(target) is False
    make_directory(target)
    assert directory_exists(target) is True
    assert target.is_dir()
    with pytest.raises(FileExistsError):
        make_directory(target)