from __future__ import annotations

import json
import os
import re
import shutil
import tempfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from .config import DEFAULT_GO_MOD_PATH, DEFAULT_HTTP_TIMEOUT_S
from .context import Context
from .errors import NetworkError, SkillsPkgError
from .git_source import checkout, list_remote_tags
from .log import get_logger
from .sources import DownloadResult, Source, SourceKind, make_staging_dir, remove_tree, staging_root, wants_latest

logger = get_logger("goproxy")

DEFAULT_PROXY = "https://proxy.golang.org"
DIRECT = "direct"
OFF = "off"

_CHUNK = 64 * 1024


@dataclass(frozen=True)
class ProxyEntry:
    url: str
    fallback: bool


def _default_chain() -> list[ProxyEntry]:
    return [ProxyEntry(url=DEFAULT_PROXY, fallback=True), ProxyEntry(url=DIRECT, fallback=True)]


def parse_proxy_chain(value: str | None) -> list[ProxyEntry]:
    """
    Parse a GOPROXY-style chain.

    Commas separate fallback groups, pipes separate peers inside a group.
    The first entry of each group is marked ``fallback``. Empty input yields
    the public proxy followed by ``direct``.
    """
    entries: list[ProxyEntry] = []
    for group in (value or "").split(","):
        peers = [p.strip() for p in group.split("|")]
        peers = [p for p in peers if p]
        for i, url in enumerate(peers):
            if url not in (DIRECT, OFF):
                url = url.rstrip("/")
            entries.append(ProxyEntry(url=url, fallback=i == 0))
    return entries or _default_chain()


def escape_path(value: str) -> str:
    """Case-encode a module path or version for proxy URLs (``A`` becomes ``!a``)."""
    return re.sub(r"[A-Z]", lambda m: "!" + m.group(0).lower(), value)


def read_go_mod_requirements(path: str | Path) -> dict[str, str]:
    """Module path to version for every ``require`` directive in a go.mod file."""
    p = Path(path)
    if not p.is_file():
        return {}
    reqs: dict[str, str] = {}
    in_block = False
    for raw in p.read_text(encoding="utf-8").splitlines():
        line = raw.split("//", 1)[0].strip()
        if not line:
            continue
        if in_block:
            if line == ")":
                in_block = False
                continue
            fields = line.split()
        elif line.startswith("require"):
            rest = line[len("require") :].strip()
            if rest == "(":
                in_block = True
                continue
            fields = rest.split()
        else:
            continue
        if len(fields) >= 2:
            reqs[fields[0]] = fields[1]
    return reqs


def extract_module_zip(zip_path: Path, dest: Path, module_path: str, version: str) -> int:
    """Extract the ``{module}@{version}/`` subtree of a module zip into ``dest``."""
    prefix = f"{module_path}@{version}/"
    base = dest.resolve()
    count = 0
    with zipfile.ZipFile(zip_path, "r") as zf:
        for info in zf.infolist():
            name = info.filename
            if not name.startswith(prefix):
                continue
            rel = name[len(prefix) :]
            if not rel:
                continue
            if rel.startswith("/"):
                raise SkillsPkgError(f"Archive contains an absolute path entry: {name!r}")
            target = (dest / rel).resolve()
            if not str(target).startswith(str(base) + os.sep) and target != base:
                raise SkillsPkgError(f"Archive contains an invalid path entry: {name!r}")

            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue

            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info, "r") as src, target.open("wb") as out:
                shutil.copyfileobj(src, out)
            mode = (info.external_attr >> 16) & 0o777
            if mode:
                os.chmod(target, mode)
            count += 1
    return count


class GoModuleSource:
    source_kind = SourceKind.GO_MODULE

    def __init__(
        self,
        *,
        goproxy: str | None = None,
        timeout_s: float = DEFAULT_HTTP_TIMEOUT_S,
        temp_dir: str | Path | None = None,
        go_mod_path: str | Path | None = DEFAULT_GO_MOD_PATH,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.proxies = parse_proxy_chain(goproxy if goproxy is not None else os.getenv("GOPROXY"))
        self.timeout_s = timeout_s
        self.temp_dir = temp_dir
        self.go_mod_path = go_mod_path
        self._http = http_client or httpx.Client(timeout=timeout_s, follow_redirects=True)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> GoModuleSource:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _chain_for(self, source: Source) -> list[ProxyEntry]:
        override = source.options.get("proxy") if source.options else None
        if override:
            return parse_proxy_chain(override)
        return self.proxies

    def _timeout(self, ctx: Context) -> float:
        left = ctx.remaining()
        return self.timeout_s if left is None else max(0.001, min(self.timeout_s, left))

    def get_latest_version(self, ctx: Context, source: Source) -> str:
        path = source.url
        failures: list[str] = []
        for entry in self._chain_for(source):
            ctx.check("latest version lookup")
            if entry.url == OFF:
                raise NetworkError(f"module lookup disabled by GOPROXY=off (module {path})")
            try:
                if entry.url == DIRECT:
                    return self._latest_direct(ctx, path)
                return self._latest_from_proxy(ctx, entry.url, path)
            except (NetworkError, httpx.HTTPError, ValueError) as e:
                logger.debug("proxy %s failed for %s: %s", entry.url, path, e)
                failures.append(f"{entry.url}: {e}")
        raise NetworkError(
            f"failed to fetch latest version for {path}: no proxy in the chain succeeded ({'; '.join(failures)})"
        )

    def download(self, ctx: Context, source: Source, version: str) -> DownloadResult:
        path = source.url
        from_lock = False
        if not version and self.go_mod_path:
            locked = read_go_mod_requirements(self.go_mod_path).get(path)
            if locked:
                version, from_lock = locked, True
                logger.debug("using %s@%s from %s", path, version, self.go_mod_path)
        if wants_latest(version):
            version = self.get_latest_version(ctx, source)

        failures: list[str] = []
        for entry in self._chain_for(source):
            ctx.check("download")
            if entry.url == OFF:
                raise NetworkError(f"module download disabled by GOPROXY=off (module {path})")
            dest = make_staging_dir("skillspkg-gomod-", self.temp_dir)
            try:
                if entry.url == DIRECT:
                    self._download_direct(ctx, path, version, dest)
                else:
                    self._download_from_proxy(ctx, entry.url, path, version, dest)
            except (NetworkError, httpx.HTTPError, zipfile.BadZipFile) as e:
                remove_tree(dest)
                logger.debug("proxy %s failed for %s@%s: %s", entry.url, path, version, e)
                failures.append(f"{entry.url}: {e}")
                continue
            except BaseException:
                remove_tree(dest)
                raise
            return DownloadResult(path=dest, version=version, from_external_lock=from_lock)

        raise NetworkError(
            f"failed to download {path}@{version}: no proxy in the chain succeeded ({'; '.join(failures)})"
        )

    def _stream_get(self, ctx: Context, url: str, out: Any) -> None:
        with self._http.stream("GET", url, timeout=self._timeout(ctx)) as resp:
            if resp.status_code == 404:
                raise NetworkError(f"module not found at {url}")
            if resp.status_code == 410:
                raise NetworkError(f"module removed from proxy at {url}")
            if resp.status_code != 200:
                raise NetworkError(f"unexpected HTTP status {resp.status_code} from {url}")
            for chunk in resp.iter_bytes(_CHUNK):
                ctx.check("download")
                out.write(chunk)

    def _latest_from_proxy(self, ctx: Context, proxy: str, path: str) -> str:
        url = f"{proxy}/{escape_path(path)}/@latest"
        with tempfile.SpooledTemporaryFile(max_size=1 << 20) as buf:
            self._stream_get(ctx, url, buf)
            buf.seek(0)
            data = json.loads(buf.read())
        version = data.get("Version") if isinstance(data, dict) else None
        if not version:
            raise NetworkError(f"empty version in response from {url}")
        return str(version)

    def _download_from_proxy(self, ctx: Context, proxy: str, path: str, version: str, dest: Path) -> None:
        url = f"{proxy}/{escape_path(path)}/@v/{escape_path(version)}.zip"
        with tempfile.NamedTemporaryFile(prefix="skillspkg-", suffix=".zip", dir=staging_root(self.temp_dir)) as tmp:
            self._stream_get(ctx, url, tmp)
            tmp.flush()
            extract_module_zip(Path(tmp.name), dest, path, version)

    def _latest_direct(self, ctx: Context, path: str) -> str:
        tags = list_remote_tags(ctx, f"https://{path}")
        if not tags:
            raise NetworkError(f"no tags found in repository https://{path}")
        return tags[-1]

    def _download_direct(self, ctx: Context, path: str, version: str, dest: Path) -> None:
        checkout(ctx, f"https://{path}", version, dest)
