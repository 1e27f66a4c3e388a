from __future__ import annotations

import base64
import os
import re
import shutil
import subprocess
from collections.abc import Sequence
from pathlib import Path

from .context import Context
from .errors import NetworkError, OperationCancelledError, SkillsPkgError
from .log import get_logger
from .sources import DownloadResult, Source, SourceKind, make_staging_dir, remove_tree, wants_latest

logger = get_logger("git")

_POLL_INTERVAL_S = 0.2
_COMMIT_RE = re.compile(r"^[0-9a-f]{40}$")
_TOKEN_ENV_VARS = ("GIT_TOKEN", "GITHUB_TOKEN", "GITLAB_TOKEN", "GITEA_TOKEN")


class GitCommandError(NetworkError):
    def __init__(self, args: Sequence[str], returncode: int, stderr: str) -> None:
        self.args_ = list(args)
        self.returncode = returncode
        self.stderr = stderr.strip()
        detail = self.stderr.splitlines()[-1] if self.stderr else f"exit status {returncode}"
        super().__init__(f"git {' '.join(self.args_[:2])} failed: {detail}")


def _https_auth_header() -> str | None:
    for name in _TOKEN_ENV_VARS:
        if token := os.getenv(name):
            return _basic_auth("token", token)
    username = os.getenv("GIT_USERNAME")
    password = os.getenv("GIT_PASSWORD")
    if username and password:
        return _basic_auth(username, password)
    return None


def _basic_auth(username: str, password: str) -> str:
    raw = f"{username}:{password}".encode("utf-8")
    return "Authorization: Basic " + base64.b64encode(raw).decode("ascii")


def _git_env(url: str | None) -> dict[str, str]:
    env = dict(os.environ)
    env["GIT_TERMINAL_PROMPT"] = "0"
    if url and url.startswith("https://"):
        header = _https_auth_header()
        if header:
            # Passed through the environment so the credential never shows up in argv.
            env["GIT_CONFIG_COUNT"] = "1"
            env["GIT_CONFIG_KEY_0"] = "http.extraHeader"
            env["GIT_CONFIG_VALUE_0"] = header
    return env


def run_git(ctx: Context, args: Sequence[str], *, cwd: Path | None = None, url: str | None = None) -> str:
    """Run ``git`` and return stdout. A cancelled context kills the process."""
    ctx.check("git")
    logger.debug("git %s", " ".join(args))
    try:
        proc = subprocess.Popen(
            ["git", *args],
            cwd=str(cwd) if cwd is not None else None,
            env=_git_env(url),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except FileNotFoundError as e:
        raise SkillsPkgError("git executable not found on PATH; it is required for git sources") from e

    while True:
        try:
            out, err = proc.communicate(timeout=_POLL_INTERVAL_S)
            break
        except subprocess.TimeoutExpired:
            if ctx.cancelled:
                proc.kill()
                proc.communicate()
                raise OperationCancelledError(f"git {args[0]} cancelled") from None

    if proc.returncode != 0:
        raise GitCommandError(args, proc.returncode, err)
    return out


def list_remote_tags(ctx: Context, url: str) -> list[str]:
    """Tag names in the order the remote lists them."""
    out = run_git(ctx, ["ls-remote", "--tags", "--refs", url], url=url)
    tags: list[str] = []
    for line in out.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        ref = parts[1]
        if ref.startswith("refs/tags/"):
            tags.append(ref[len("refs/tags/") :])
    return tags


def remote_head(ctx: Context, url: str) -> str:
    out = run_git(ctx, ["ls-remote", url, "HEAD"], url=url)
    for line in out.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[1] == "HEAD":
            return parts[0]
    raise NetworkError(f"repository {url} has no HEAD reference")


def checkout(ctx: Context, url: str, version: str, dest: Path) -> str:
    """
    Shallow-checkout ``version`` of ``url`` into the empty directory ``dest``.

    Returns the resolved version: the tag name when ``version`` is a tag,
    otherwise the checked-out commit. The ``.git`` directory is removed.
    """
    if wants_latest(version):
        run_git(ctx, ["clone", "--depth", "1", "--", url, str(dest)], url=url)
        resolved = run_git(ctx, ["rev-parse", "HEAD"], cwd=dest).strip()
    elif _COMMIT_RE.match(version):
        run_git(ctx, ["init", "--quiet", str(dest)])
        run_git(ctx, ["fetch", "--depth", "1", "--", url, version], cwd=dest, url=url)
        run_git(ctx, ["checkout", "--quiet", "--detach", "FETCH_HEAD"], cwd=dest)
        resolved = version
    else:
        run_git(ctx, ["clone", "--depth", "1", "--branch", version, "--", url, str(dest)], url=url)
        is_tag = bool(run_git(ctx, ["tag", "--list", version], cwd=dest).strip())
        resolved = version if is_tag else run_git(ctx, ["rev-parse", "HEAD"], cwd=dest).strip()

    shutil.rmtree(dest / ".git", ignore_errors=True)
    return resolved


class GitSource:
    source_kind = SourceKind.GIT

    def __init__(self, *, temp_dir: str | Path | None = None) -> None:
        self.temp_dir = temp_dir

    def get_latest_version(self, ctx: Context, source: Source) -> str:
        try:
            tags = list_remote_tags(ctx, source.url)
            if tags:
                # Remote listing order; no semantic-version comparison.
                return tags[-1]
            return remote_head(ctx, source.url)
        except NetworkError as e:
            raise NetworkError(f"failed to get latest version of {source.url}: {e}") from e

    def download(self, ctx: Context, source: Source, version: str) -> DownloadResult:
        dest = make_staging_dir("skillspkg-git-", self.temp_dir)
        try:
            resolved = checkout(ctx, source.url, version, dest)
        except NetworkError as e:
            remove_tree(dest)
            raise NetworkError(
                f"failed to clone repository {source.url}: {e}. "
                "Check the URL and your credentials (GIT_TOKEN, GITHUB_TOKEN, or an SSH agent)"
            ) from e
        except BaseException:
            remove_tree(dest)
            raise
        logger.debug("checked out %s@%s into %s", source.url, resolved, dest)
        return DownloadResult(path=dest, version=resolved)

    def close(self) -> None:
        pass
