from __future__ import annotations

import os
import shutil
import tempfile
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Protocol

from .context import Context
from .errors import FilesystemError, InvalidSourceError

LATEST = "latest"


class SourceKind(str, Enum):
    GIT = "git"
    GO_MODULE = "go-module"

    @classmethod
    def values(cls) -> list[str]:
        return [k.value for k in cls]


@dataclass(frozen=True)
class Source:
    kind: str
    url: str
    options: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class DownloadResult:
    path: Path
    version: str
    from_external_lock: bool = False


class SourceAdapter(Protocol):
    source_kind: SourceKind

    def download(self, ctx: Context, source: Source, version: str) -> DownloadResult:
        ...

    def get_latest_version(self, ctx: Context, source: Source) -> str:
        ...

    def close(self) -> None:
        ...


def wants_latest(version: str) -> bool:
    return not version or version == LATEST


def staging_root(temp_dir: str | Path | None = None) -> Path | None:
    value = temp_dir or os.getenv("SKILLSPKG_TEMP_DIR")
    if not value:
        return None
    root = Path(value).expanduser()
    try:
        root.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FilesystemError(f"Could not create staging directory: {root}", path=root) from e
    return root


def make_staging_dir(prefix: str, temp_dir: str | Path | None = None) -> Path:
    """Create a fresh, empty directory that belongs to exactly one download."""
    root = staging_root(temp_dir)
    try:
        return Path(tempfile.mkdtemp(prefix=prefix, dir=root))
    except OSError as e:
        raise FilesystemError(f"Could not create staging directory under {root or tempfile.gettempdir()}") from e


def remove_tree(path: Path) -> None:
    shutil.rmtree(path, ignore_errors=True)


class SourceRegistry:
    def __init__(self, adapters: Iterable[SourceAdapter] = ()) -> None:
        self._by_kind: dict[SourceKind, SourceAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: SourceAdapter) -> None:
        kind = SourceKind(adapter.source_kind)
        if kind in self._by_kind:
            raise ValueError(f"duplicate source adapter for kind {kind.value!r}")
        self._by_kind[kind] = adapter

    def supported_kinds(self) -> list[str]:
        return [k.value for k in self._by_kind]

    def get(self, kind: str) -> SourceAdapter:
        try:
            return self._by_kind[SourceKind(kind)]
        except (ValueError, KeyError):
            raise InvalidSourceError(kind, self.supported_kinds()) from None

    def close(self) -> None:
        for adapter in self._by_kind.values():
            adapter.close()

    def __enter__(self) -> SourceRegistry:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
