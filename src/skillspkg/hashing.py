from __future__ import annotations

import base64
import hashlib
import os
from dataclasses import dataclass
from pathlib import Path

from .context import Context
from .errors import FilesystemError

HASH_ALGORITHM = "sha256"
HASH_PREFIX = "h1:"
_CHUNK = 64 * 1024


@dataclass(frozen=True)
class HashResult:
    algorithm: str
    value: str


def list_files(root: Path) -> list[str]:
    """Relative, slash-separated paths of every regular file below ``root``, sorted."""
    names: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        base = Path(dirpath)
        for fn in filenames:
            p = base / fn
            if not p.is_file():
                continue
            names.append(p.relative_to(root).as_posix())
    names.sort()
    return names


def _file_sha256(path: Path, ctx: Context) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while chunk := f.read(_CHUNK):
            h.update(chunk)
    ctx.check("hash")
    return h.hexdigest()


class DirHashService:
    """Content hash of a directory tree in the ``h1:`` format used by module proxies."""

    algorithm = HASH_ALGORITHM

    def calculate_hash(self, ctx: Context, dir_path: str | Path) -> HashResult:
        root = Path(dir_path)
        if not root.exists():
            raise FilesystemError(f"directory does not exist: {root}", path=root)
        if not root.is_dir():
            raise FilesystemError(f"not a directory: {root}", path=root)

        summary = hashlib.sha256()
        try:
            for name in list_files(root):
                if "\n" in name:
                    raise FilesystemError(f"file name contains a newline: {name!r}", path=root / name)
                digest = _file_sha256(root / name, ctx)
                summary.update(f"{digest}  {name}\n".encode("utf-8"))
        except OSError as e:
            raise FilesystemError(f"failed to hash {root}: {e}", path=root) from e

        value = HASH_PREFIX + base64.b64encode(summary.digest()).decode("ascii")
        return HashResult(algorithm=self.algorithm, value=value)
