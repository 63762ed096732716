# cascadenet/core/directory.py
from __future__ import annotations

import logging
import os
import re
import shutil
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, List, Literal

from filelock import SoftFileLock, Timeout

from cascadenet.core.errors import ModelIOError
from cascadenet.core.jsonutil import TMP_MARKER

logger = logging.getLogger(__name__)

Ownership = Literal["scratch", "persisted"]

LOCK_TIMEOUT_S = 30.0
_NUMERIC_SUFFIX = re.compile(r"^(?P<base>.+?)_(?P<n>\d+)$")


@dataclass(frozen=True)
class ModelDirectory:
    """
    Where a node lives on disk and who owns that path.

    scratch:   owned by the node, deleted when the node is closed.
    persisted: owned by the caller, flushed on close and never deleted.
    """

    path: Path
    ownership: Ownership

    @classmethod
    def scratch(cls, path: Path | str) -> "ModelDirectory":
        return cls(Path(path), "scratch")

    @classmethod
    def persisted(cls, path: Path | str) -> "ModelDirectory":
        return cls(Path(path), "persisted")

    @property
    def is_scratch(self) -> bool:
        return self.ownership == "scratch"


@dataclass
class TeardownReport:
    """Outcome of close(): what was flushed, what was removed, what failed."""

    flushed: List[Path] = field(default_factory=list)
    removed: List[Path] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def merge(self, other: "TeardownReport") -> "TeardownReport":
        self.flushed.extend(other.flushed)
        self.removed.extend(other.removed)
        self.errors.extend(other.errors)
        return self

    def record_error(self, what: str, exc: BaseException) -> None:
        msg = f"{what}: {exc}"
        logger.warning("Teardown step failed (continuing): %s", msg)
        self.errors.append(msg)


def _staging_sibling(path: Path, tag: str) -> Path:
    return path.with_name(f".{path.name}{TMP_MARKER}{tag}.{uuid.uuid4().hex[:12]}")


def remove_tree_best_effort(path: Path, report: TeardownReport) -> None:
    """Recursively delete `path`; failures are recorded, never raised."""
    path = Path(path)
    try:
        if not path.exists():
            return
        shutil.rmtree(path)
        report.removed.append(path)
        logger.debug("Removed %s", path)
    except OSError as exc:
        report.record_error(f"remove {path}", exc)


def reclaim_paths(history: List[Path], keep: Path, report: TeardownReport) -> List[Path]:
    """
    Delete obsolete scratch paths, sparing `keep` and anything nested with it.

    Returns the entries that were spared.
    """
    keep = Path(keep)
    spared = []
    for old in history:
        old = Path(old)
        if old == keep or old in keep.parents or keep in old.parents:
            spared.append(old)
            continue
        remove_tree_best_effort(old, report)
    return spared


def ensure_dir(path: Path) -> Path:
    path = Path(path)
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ModelIOError(path, f"cannot create directory ({exc})") from exc
    return path


def write_tree_staged(dest: Path, writer: Callable[[Path], None]) -> None:
    """
    Populate `dest` through `writer` without ever losing the previous copy.

    The writer fills a staging sibling; the existing `dest` (if any) is moved
    aside, the staging directory is renamed into place, and only then is the
    old copy discarded. On failure the old copy is restored.
    """
    dest = Path(dest)
    ensure_dir(dest.parent)
    staging = _staging_sibling(dest, "new")
    try:
        staging.mkdir()
        writer(staging)
    except OSError as exc:
        shutil.rmtree(staging, ignore_errors=True)
        raise ModelIOError(dest, f"staged write failed ({exc})") from exc
    except Exception:
        shutil.rmtree(staging, ignore_errors=True)
        raise

    previous = None
    try:
        if dest.exists():
            previous = _staging_sibling(dest, "old")
            os.rename(dest, previous)
        os.rename(staging, dest)
    except OSError as exc:
        if previous is not None and not dest.exists():
            try:
                os.rename(previous, dest)
                previous = None
            except OSError:
                logger.error("Could not restore %s from %s", dest, previous)
        shutil.rmtree(staging, ignore_errors=True)
        raise ModelIOError(dest, f"cannot move staged copy into place ({exc})") from exc

    if previous is not None:
        shutil.rmtree(previous, ignore_errors=True)


def copy_tree(src: Path, dst: Path) -> None:
    """Deep-copy `src` to the (unused) path `dst` through a staging sibling."""
    src, dst = Path(src), Path(dst)
    if not src.is_dir():
        raise ModelIOError(src, "source model directory does not exist")
    if dst.exists():
        raise ModelIOError(dst, "destination already exists")

    def _copy(staging: Path) -> None:
        staging.rmdir()
        shutil.copytree(src, staging)

    write_tree_staged(dst, _copy)


def sibling_base(path: Path) -> str:
    m = _NUMERIC_SUFFIX.match(Path(path).name)
    return m.group("base") if m else Path(path).name


def first_free_sibling(path: Path) -> Path:
    """First `<base>_<n>` (n = 1, 2, ...) next to `path` that does not exist yet."""
    path = Path(path)
    base = sibling_base(path)
    n = 1
    while True:
        candidate = path.with_name(f"{base}_{n}")
        if not candidate.exists():
            return candidate
        n += 1


@contextmanager
def claim_free_sibling(path: Path) -> Iterator[Path]:
    """
    Hold a lock on the parent directory while the caller populates a free sibling.

    Two processes duplicating the same source therefore never pick the same path.
    """
    path = Path(path)
    ensure_dir(path.parent)
    lock_path = path.parent / f".{sibling_base(path)}.cn-lock"
    lock = SoftFileLock(str(lock_path))
    try:
        lock.acquire(timeout=LOCK_TIMEOUT_S)
    except Timeout as exc:
        raise ModelIOError(lock_path, "timed out waiting for duplicate lock") from exc
    try:
        yield first_free_sibling(path)
    finally:
        lock.release()
