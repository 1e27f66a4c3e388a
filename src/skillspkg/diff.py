from __future__ import annotations

import difflib
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class FileDiffStatus(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"


@dataclass(frozen=True)
class FileDiff:
    path: str
    status: FileDiffStatus
    patch: str = ""

    def to_dict(self) -> dict[str, str]:
        d = {"path": self.path, "status": self.status.value}
        if self.patch:
            d["patch"] = self.patch
        return d


def collect_files(root: str | Path | None) -> dict[str, bytes]:
    """Map slash-separated relative path to content. A missing directory has no files."""
    if not root:
        return {}
    base = Path(root)
    if not base.is_dir():
        return {}
    files: dict[str, bytes] = {}
    for dirpath, _dirnames, filenames in os.walk(base):
        for fn in filenames:
            p = Path(dirpath) / fn
            if p.is_file():
                files[p.relative_to(base).as_posix()] = p.read_bytes()
    return files


def is_binary(content: bytes) -> bool:
    return b"\x00" in content


def _patch_for(old: bytes, new: bytes) -> str:
    if is_binary(old) or is_binary(new):
        return ""
    return line_diff(old.decode("utf-8", errors="replace"), new.decode("utf-8", errors="replace"))


def line_diff(old: str, new: str) -> str:
    """Line-aligned diff: every line prefixed with " " (kept), "+" (added) or "-" (removed)."""
    a = old.splitlines(keepends=True)
    b = new.splitlines(keepends=True)
    out: list[str] = []

    def emit(prefix: str, lines: list[str]) -> None:
        for line in lines:
            if not line:
                continue
            if not line.endswith("\n"):
                line += "\n"
            out.append(prefix + line)

    for tag, i1, i2, j1, j2 in difflib.SequenceMatcher(None, a, b, autojunk=False).get_opcodes():
        if tag == "equal":
            emit(" ", a[i1:i2])
            continue
        emit("-", a[i1:i2])
        emit("+", b[j1:j2])
    return "".join(out)


def compute_file_diffs(old_dir: str | Path | None, new_dir: str | Path | None) -> list[FileDiff]:
    """Added, removed and modified files between two trees. Only modified text files carry a patch."""
    old_files = collect_files(old_dir)
    new_files = collect_files(new_dir)

    diffs: list[FileDiff] = []
    for path, new in new_files.items():
        old = old_files.get(path)
        if old is None:
            diffs.append(FileDiff(path=path, status=FileDiffStatus.ADDED))
        elif old != new:
            diffs.append(FileDiff(path=path, status=FileDiffStatus.MODIFIED, patch=_patch_for(old, new)))
    for path in old_files:
        if path not in new_files:
            diffs.append(FileDiff(path=path, status=FileDiffStatus.REMOVED))

    diffs.sort(key=lambda d: d.path)
    return diffs
