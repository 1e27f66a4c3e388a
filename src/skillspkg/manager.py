from __future__ import annotations

import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from .context import Context, run_group
from .diff import FileDiff, compute_file_diffs
from .errors import (
    CLI_NAME,
    ConfigurationError,
    FilesystemError,
    InvalidSkillError,
    InvalidSourceError,
    SkillOperationError,
    SkillsNotFoundError,
    SkillsPkgError,
)
from .hashing import DirHashService
from .log import get_logger
from .manifest import Manifest, ManifestStore, Skill
from .sources import DownloadResult, Source, SourceRegistry, remove_tree

logger = get_logger("manager")


@dataclass(frozen=True)
class InstallOutcome:
    skill_name: str
    version: str
    hash_value: str
    targets: tuple[str, ...]
    warnings: tuple[str, ...] = ()
    skill: Skill | None = None


@dataclass(frozen=True)
class UpdateResult:
    skill_name: str
    old_version: str
    new_version: str
    file_diffs: list[FileDiff] = field(default_factory=list)

    @property
    def has_update(self) -> bool:
        return self.old_version != self.new_version

    def to_dict(self) -> dict[str, object]:
        return {
            "skill_name": self.skill_name,
            "current_version": self.old_version,
            "latest_version": self.new_version,
            "has_update": self.has_update,
            "file_diffs": [d.to_dict() for d in self.file_diffs],
        }


@dataclass(frozen=True)
class _UpdateOutcome:
    result: UpdateResult
    updated_skill: Skill | None


def _source_of(skill: Skill) -> Source:
    return Source(kind=skill.source, url=skill.url)


def resolve_subdir(download: DownloadResult, skill: Skill) -> Path:
    """Directory inside the download that holds the skill's content."""
    if not skill.subdir:
        return download.path
    base = download.path.resolve()
    root = (download.path / skill.subdir).resolve()
    if root != base and not str(root).startswith(str(base) + os.sep):
        raise InvalidSkillError(f"subdirectory '{skill.subdir}' of skill '{skill.name}' escapes the download")
    if not root.is_dir():
        raise InvalidSkillError(
            f"subdirectory '{skill.subdir}' not found in downloaded skill '{skill.name}'. "
            f"Downloaded content is in {download.path}; fix the subdir of '{skill.name}' in the configuration"
        )
    return root


def _copy_tree(ctx: Context, src: Path, dest: Path) -> None:
    def _copy(s: str, d: str) -> str:
        ctx.check("copy")
        return shutil.copy(s, d)

    shutil.copytree(src, dest, copy_function=_copy, dirs_exist_ok=True)


def replace_tree(ctx: Context, src: Path, dest: Path) -> None:
    """
    Make ``dest`` an exact copy of ``src``.

    The copy is staged next to ``dest`` and renamed into place, so a failed
    copy never leaves a partial tree behind; a previous copy is restored when
    the swap itself fails.
    """
    parent = dest.parent
    try:
        parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise FilesystemError(f"Could not create install directory: {parent}", path=parent) from e

    staging = Path(tempfile.mkdtemp(prefix=f".{dest.name}.staging-", dir=parent))
    backup = parent / f".{dest.name}.backup-{staging.name.rsplit('-', 1)[-1]}"
    try:
        try:
            _copy_tree(ctx, src, staging)
        except OSError as e:
            raise FilesystemError(f"failed to copy skill to {dest}: {e}", path=dest) from e

        had_existing = dest.exists()
        if had_existing:
            try:
                dest.rename(backup)
            except OSError as e:
                raise FilesystemError(f"failed to move previous copy of {dest} aside: {e}", path=dest) from e
        try:
            staging.rename(dest)
        except OSError as e:
            if had_existing and backup.exists():
                backup.rename(dest)
            raise FilesystemError(f"failed to move skill into {dest}: {e}", path=dest) from e
    finally:
        if staging.exists():
            shutil.rmtree(staging, ignore_errors=True)
        if backup.exists():
            shutil.rmtree(backup, ignore_errors=True)


class SkillManager:
    def __init__(
        self,
        store: ManifestStore,
        hash_service: DirHashService,
        registry: SourceRegistry,
        *,
        max_workers: int | None = None,
    ) -> None:
        self.store = store
        self.hash_service = hash_service
        self.registry = registry
        self.max_workers = max_workers

    # install

    def install(self, ctx: Context, name: str | None = None) -> list[InstallOutcome]:
        manifest = self.store.load()
        if name:
            skill = manifest.find_skill(name)
            if skill is None:
                raise SkillsNotFoundError([name])
            skills = [skill]
        else:
            skills = list(manifest.skills)

        if not skills:
            logger.info("No skills configured")
            return []

        logger.info("Installing %d skill(s)", len(skills))
        tasks = [self._install_task(manifest, s) for s in skills]
        outcomes = run_group(ctx, tasks, max_workers=self.max_workers)

        for outcome in outcomes:
            if outcome.skill is not None:
                manifest.replace_skill(outcome.skill)
        self.store.save(manifest)
        return outcomes

    def _install_task(self, manifest: Manifest, skill: Skill):
        def _task(ctx: Context) -> InstallOutcome:
            return self.install_single_skill(ctx, manifest, skill, persist_now=False)

        return _task

    def add(self, ctx: Context, skill: Skill) -> InstallOutcome:
        """Record a new skill and install it; nothing is saved if the download fails."""
        manifest = self.store.load()
        manifest.add_skill(skill)
        return self.install_single_skill(ctx, manifest, skill, persist_now=True)

    def install_single_skill(
        self,
        ctx: Context,
        manifest: Manifest,
        skill: Skill,
        persist_now: bool,
    ) -> InstallOutcome:
        """
        Download, hash, persist and copy one skill, in that order.

        With ``persist_now`` the updated record is saved to the manifest
        before any target is touched, so an interrupted copy can be resumed
        with ``install``. Without it the caller merges ``outcome.skill``.
        """
        logger.info("Installing skill '%s' from %s", skill.name, skill.source)

        try:
            adapter = self.registry.get(skill.source)
        except InvalidSourceError as e:
            raise SkillOperationError("install", skill.name, e) from e

        try:
            download = adapter.download(ctx, _source_of(skill), skill.version)
        except SkillOperationError:
            raise
        except SkillsPkgError as e:
            raise SkillOperationError("download", skill.name, e) from e

        try:
            root = resolve_subdir(download, skill)

            if download.from_external_lock:
                updated = skill.with_version("", "")
                logger.debug("skill '%s' is version-locked externally; hash not recorded", skill.name)
            else:
                try:
                    digest = self.hash_service.calculate_hash(ctx, root)
                except SkillsPkgError as e:
                    raise SkillOperationError("hash", skill.name, e) from e
                updated = skill.with_version(download.version, digest.value)

            if persist_now:
                if manifest.has_skill(updated.name):
                    manifest.replace_skill(updated)
                else:
                    manifest.add_skill(updated)
                self.store.save(manifest)

            targets = list(manifest.install_targets)
            if not targets:
                raise ConfigurationError(
                    "no install targets configured. "
                    f"Run '{CLI_NAME} init --install-dir <dir>' or '{CLI_NAME} add-target <dir>' first"
                )

            self._copy_to_targets(ctx, root, skill.name, targets)
            warnings = self._verify_targets(ctx, updated, targets)
        finally:
            remove_tree(download.path)

        logger.info("Installed '%s' %s to %d target(s)", skill.name, updated.version or "(external lock)", len(targets))
        return InstallOutcome(
            skill_name=skill.name,
            version=updated.version,
            hash_value=updated.hash_value,
            targets=tuple(targets),
            warnings=tuple(warnings),
            skill=updated,
        )

    def _copy_to_targets(self, ctx: Context, src: Path, skill_name: str, targets: list[str]) -> None:
        def _task_for(target: str):
            def _task(task_ctx: Context) -> None:
                dest = Path(target) / skill_name
                logger.debug("copying '%s' to %s", skill_name, dest)
                replace_tree(task_ctx, src, dest)

            return _task

        run_group(ctx, [_task_for(t) for t in targets], max_workers=self.max_workers)

    def _verify_targets(self, ctx: Context, skill: Skill, targets: list[str]) -> list[str]:
        if not skill.hash_value:
            return []
        warnings: list[str] = []
        for target in targets:
            install_dir = Path(target) / skill.name
            try:
                actual = self.hash_service.calculate_hash(ctx, install_dir).value
            except FilesystemError as e:
                msg = f"could not verify '{skill.name}' in {install_dir}: {e}"
                logger.warning(msg)
                warnings.append(msg)
                continue
            if actual != skill.hash_value:
                msg = (
                    f"hash mismatch for '{skill.name}' in {install_dir}: "
                    f"expected {skill.hash_value}, got {actual}"
                )
                logger.warning(msg)
                warnings.append(msg)
        return warnings

    # update

    def update(self, ctx: Context, names: list[str] | None = None, dry_run: bool = False) -> list[UpdateResult]:
        manifest = self.store.load()
        if names:
            missing = [n for n in names if not manifest.has_skill(n)]
            if missing:
                raise SkillsNotFoundError(missing)
            # Results follow the caller's order, not the manifest's.
            skills = [s for s in (manifest.find_skill(n) for n in dict.fromkeys(names)) if s is not None]
        else:
            skills = list(manifest.skills)

        if not skills:
            return []

        targets = list(manifest.install_targets)

        def _task_for(skill: Skill):
            def _task(task_ctx: Context) -> _UpdateOutcome:
                return self._update_one(task_ctx, skill, targets, dry_run)

            return _task

        outcomes = run_group(ctx, [_task_for(s) for s in skills], max_workers=self.max_workers)

        if not dry_run:
            for outcome in outcomes:
                if outcome.updated_skill is not None:
                    manifest.replace_skill(outcome.updated_skill)
            self.store.save(manifest)
        return [o.result for o in outcomes]

    def _update_one(self, ctx: Context, skill: Skill, targets: list[str], dry_run: bool) -> _UpdateOutcome:
        source = _source_of(skill)
        try:
            adapter = self.registry.get(skill.source)
            latest = adapter.get_latest_version(ctx, source)
            download = adapter.download(ctx, source, latest)
        except SkillsPkgError as e:
            raise SkillOperationError("update", skill.name, e) from e

        try:
            root = resolve_subdir(download, skill)
            diffs = compute_file_diffs(Path(targets[0]) / skill.name, root) if targets else []
            result = UpdateResult(
                skill_name=skill.name,
                old_version=skill.version,
                new_version=download.version,
                file_diffs=diffs,
            )
            if dry_run:
                return _UpdateOutcome(result=result, updated_skill=None)

            updated: Skill | None = None
            if skill.version:
                try:
                    digest = self.hash_service.calculate_hash(ctx, root)
                except SkillsPkgError as e:
                    raise SkillOperationError("hash", skill.name, e) from e
                updated = skill.with_version(download.version, digest.value)
            else:
                logger.debug("skill '%s' is version-locked externally; manifest left unchanged", skill.name)

            if targets:
                self._copy_to_targets(ctx, root, skill.name, targets)
            logger.info("Updated '%s': %s -> %s", skill.name, skill.version or "(none)", download.version)
            return _UpdateOutcome(result=result, updated_skill=updated)
        finally:
            remove_tree(download.path)

    # uninstall

    def uninstall(self, ctx: Context, name: str) -> None:
        manifest = self.store.load()
        if not manifest.has_skill(name):
            raise SkillsNotFoundError([name])

        for target in manifest.install_targets:
            ctx.check("uninstall")
            skill_dir = Path(target) / name
            if not skill_dir.exists():
                continue
            try:
                shutil.rmtree(skill_dir)
            except OSError as e:
                raise FilesystemError(f"failed to remove {skill_dir}: {e}", path=skill_dir) from e
            logger.info("Removed '%s' from %s", name, target)

        manifest.remove_skill(name)
        self.store.save(manifest)
