# tests/test_directory.py
from __future__ import annotations

from pathlib import Path

import pytest

from cascadenet.core.directory import (
    ModelDirectory,
    TeardownReport,
    claim_free_sibling,
    copy_tree,
    first_free_sibling,
    reclaim_paths,
    remove_tree_best_effort,
    sibling_base,
    write_tree_staged,
)
from cascadenet.core.errors import ModelIOError
from cascadenet.core.jsonutil import tree_sha256

pytestmark = pytest.mark.unit


def _populate(root: Path, files: dict[str, str]) -> None:
    for rel, text in files.items():
        p = root / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(text, encoding="utf-8")


def test_model_directory_ownership() -> None:
    d = ModelDirectory.scratch("/tmp/x")
    assert d.is_scratch
    assert not ModelDirectory.persisted("/tmp/x").is_scratch


def test_write_tree_staged_replaces_whole_tree(tmp_path: Path) -> None:
    dest = tmp_path / "m"
    _populate(dest, {"old.txt": "old", "sub/a.txt": "a"})

    write_tree_staged(dest, lambda d: _populate(d, {"new.txt": "new"}))

    assert tree_sha256(dest).keys() == {"new.txt"}
    assert sorted(p.name for p in tmp_path.iterdir()) == ["m"]


def test_write_tree_staged_failure_keeps_previous(tmp_path: Path) -> None:
    dest = tmp_path / "m"
    _populate(dest, {"keep.txt": "keep"})
    before = tree_sha256(dest)

    def _fail(d: Path) -> None:
        _populate(d, {"half.txt": "half"})
        raise OSError("no space left")

    with pytest.raises(ModelIOError):
        write_tree_staged(dest, _fail)
    assert tree_sha256(dest) == before
    assert sorted(p.name for p in tmp_path.iterdir()) == ["m"]


def test_copy_tree_refuses_existing_destination(tmp_path: Path) -> None:
    _populate(tmp_path / "src", {"f.txt": "1"})
    (tmp_path / "dst").mkdir()
    with pytest.raises(ModelIOError):
        copy_tree(tmp_path / "src", tmp_path / "dst")
    with pytest.raises(ModelIOError):
        copy_tree(tmp_path / "missing", tmp_path / "other")

    copy_tree(tmp_path / "src", tmp_path / "fresh")
    assert tree_sha256(tmp_path / "fresh") == tree_sha256(tmp_path / "src")


def test_free_sibling_probing(tmp_path: Path) -> None:
    (tmp_path / "model").mkdir()
    (tmp_path / "model_1").mkdir()
    assert sibling_base(tmp_path / "model_3") == "model"
    assert sibling_base(tmp_path / "model") == "model"
    assert first_free_sibling(tmp_path / "model") == tmp_path / "model_2"
    # Duplicating a duplicate keeps counting from the same base name.
    assert first_free_sibling(tmp_path / "model_1") == tmp_path / "model_2"

    with claim_free_sibling(tmp_path / "model") as target:
        assert target == tmp_path / "model_2"
        target.mkdir()
    assert first_free_sibling(tmp_path / "model") == tmp_path / "model_3"


def test_reclaim_paths_spares_current_and_nested(tmp_path: Path) -> None:
    for name in ("old", "current", "current/inner", "outer/current2"):
        (tmp_path / name).mkdir(parents=True, exist_ok=True)
    report = TeardownReport()

    spared = reclaim_paths(
        [tmp_path / "old", tmp_path / "current", tmp_path / "current/inner", tmp_path / "outer"],
        tmp_path / "outer" / "current2",
        report,
    )

    assert not (tmp_path / "old").exists()
    assert not (tmp_path / "current").exists()
    assert spared == [tmp_path / "outer"]
    assert (tmp_path / "outer" / "current2").is_dir()
    assert report.ok


def test_remove_tree_best_effort_records_failures(tmp_path: Path, monkeypatch) -> None:
    import cascadenet.core.directory as directory

    (tmp_path / "t").mkdir()

    def _deny(path):
        raise PermissionError("denied")

    monkeypatch.setattr(directory.shutil, "rmtree", _deny)
    report = TeardownReport()
    remove_tree_best_effort(tmp_path / "t", report)
    remove_tree_best_effort(tmp_path / "absent", report)

    assert not report.ok
    assert len(report.errors) == 1
    assert "denied" in report.errors[0]
