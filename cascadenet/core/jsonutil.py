# cascadenet/core/jsonutil.py
from __future__ import annotations

import hashlib
import json
import os
import uuid
from pathlib import Path
from typing import Any, Union

from pydantic import BaseModel

TMP_MARKER = ".cn-tmp."


def canonical_dumps(obj: Any) -> str:
    """
    Canonical JSON string used for every descriptor written to a model directory:

        json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    NaN/Infinity are forbidden; a descriptor carrying them is corrupt.
    """
    try:
        return json.dumps(
            obj,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )
    except TypeError as e:
        raise TypeError("canonical_dumps() requires a JSON-serializable object") from e


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def tree_sha256(root: Path) -> dict[str, str]:
    """Map each regular file under `root` (relative posix path) to its SHA256 digest."""
    root = Path(root)
    out: dict[str, str] = {}
    for p in sorted(root.rglob("*")):
        if p.is_file():
            out[p.relative_to(root).as_posix()] = sha256_hex(p.read_bytes())
    return out


def unique_tmp_path_for(path: Path) -> Path:
    """Unique sibling of `path` so that os.replace stays on one filesystem."""
    token = uuid.uuid4().hex[:12]
    tmp_name = f".{path.name}{TMP_MARKER}{token}.tmp"
    if len(tmp_name) > 240:
        tmp_name = f"{TMP_MARKER}{token}.tmp"
    return path.with_name(tmp_name)


def _fsync_dir_best_effort(dir_path: Path) -> None:
    try:
        if os.name != "posix":
            return
        fd = os.open(str(dir_path), os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except OSError:
        return


def atomic_write_text(path: Path, text: str, *, fsync: bool = False) -> None:
    """
    Atomic text write:

      1) write to a unique temp file in the same directory
      2) os.replace(tmp, path)
      3) best-effort cleanup of the temp file on failure
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = unique_tmp_path_for(path)
    try:
        with open(tmp, "w", encoding="utf-8", newline="\n") as f:
            f.write(text)
            if fsync:
                f.flush()
                os.fsync(f.fileno())
        os.replace(tmp, path)
        if fsync:
            _fsync_dir_best_effort(path.parent)
    except Exception:
        try:
            if tmp.exists():
                os.unlink(tmp)
        except OSError:
            pass
        raise


def atomic_write_json(path: Path, obj: Any, *, fsync: bool = False) -> None:
    atomic_write_text(path, canonical_dumps(obj) + "\n", fsync=fsync)


def atomic_write_pydantic_json(path: Path, model: BaseModel, *, fsync: bool = False) -> None:
    payload: Union[dict[str, Any], list[Any]] = model.model_dump(mode="json")
    atomic_write_json(path, payload, fsync=fsync)


def read_json_obj(path: Path) -> dict[str, Any]:
    """Read a JSON file and require a top-level object."""
    obj = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(obj, dict):
        raise TypeError(f"{Path(path).name} must be a JSON object")
    return obj
