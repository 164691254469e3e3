import pytest
from pathlib import Path

from provkeep.errors import IntegrityError
from provkeep.utils import contained_path, human_size, mask_key, private_workdir, tree_checksum


@pytest.mark.parametrize("key, shown", [
    ("sk-or-v1-a8f3c9d2e7b1", "sk-...e7b1"),
    ("gsk_0123456789abcdef", "gsk_...cdef"),
    ("plainkeyvalue1234", "...1234"),
    ("sk-short", "****"),
    ("", "****"),
])
def test_mask_key(key: str, shown: str):
    assert mask_key(key) == shown

@pytest.mark.parametrize("nbytes, text", [
    (0, "0 B"),
    (512, "512 B"),
    (2048, "2.0 KiB"),
    (5 * 1024 * 1024, "5.0 MiB"),
])
def test_human_size(nbytes: int, text: str):
    assert human_size(nbytes) == text

def test_contained_path(tmp_path: Path):
    assert contained_path(tmp_path / "a" / "b", tmp_path) == (tmp_path / "a" / "b").resolve()
    assert contained_path(tmp_path, tmp_path) == tmp_path.resolve()
    with pytest.raises(IntegrityError):
        contained_path(tmp_path / ".." / "elsewhere", tmp_path)

def test_private_workdir_is_removed():
    with private_workdir() as workdir:
        (workdir / "providers").mkdir()
        (workdir / "providers" / "alpha.json").write_text("{}")
    assert not workdir.exists()

def test_tree_checksum_depends_on_names(tmp_path: Path):
    first = tmp_path / "first"
    second = tmp_path / "second"
    first.mkdir()
    second.mkdir()
    (first / "a.json").write_text("{}")
    (second / "b.json").write_text("{}")
    assert tree_checksum(first) != tree_checksum(second)
