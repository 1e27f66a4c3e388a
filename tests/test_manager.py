import tempfile
import threading
import unittest
from pathlib import Path
from unittest.mock import patch

from skillspkg.context import Context
from skillspkg.diff import FileDiffStatus
from skillspkg.errors import (
    ConfigurationError,
    FilesystemError,
    InvalidSkillError,
    InvalidSourceError,
    NetworkError,
    OperationCancelledError,
    SkillOperationError,
    SkillsNotFoundError,
    is_network_error,
)
from skillspkg.hashing import DirHashService, HashResult
from skillspkg.manager import SkillManager, replace_tree
from skillspkg.manifest import ManifestStore, Skill
from skillspkg.sources import DownloadResult, Source, SourceKind, SourceRegistry, wants_latest
from skillspkg.verify import HashVerifier


class FakeSource:
    """Serves fixed file trees per version from local temp directories."""

    source_kind = SourceKind.GIT

    def __init__(
        self,
        versions: dict[str, dict[str, str]],
        latest: str,
        *,
        external_lock: bool = False,
        fail_urls: set[str] | None = None,
    ) -> None:
        self.versions = versions
        self.latest = latest
        self.external_lock = external_lock
        self.fail_urls = fail_urls or set()
        self.downloads: list[tuple[str, str]] = []
        self.paths: list[Path] = []
        self._lock = threading.Lock()

    def download(self, ctx: Context, source: Source, version: str) -> DownloadResult:
        ctx.check()
        if source.url in self.fail_urls:
            raise NetworkError(f"cannot reach {source.url}")
        resolved = self.latest if wants_latest(version) else version
        dest = Path(tempfile.mkdtemp(prefix="fake-source-"))
        for rel, content in self.versions[resolved].items():
            p = dest / rel
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_text(content, encoding="utf-8")
        with self._lock:
            self.downloads.append((source.url, version))
            self.paths.append(dest)
        return DownloadResult(path=dest, version=resolved, from_external_lock=self.external_lock)

    def get_latest_version(self, ctx: Context, source: Source) -> str:
        return self.latest

    def close(self) -> None:
        pass


class _MismatchingHashService(DirHashService):
    """Reports a foreign hash for every directory below the install targets."""

    def __init__(self, targets: list[str]) -> None:
        self.targets = [Path(t) for t in targets]

    def calculate_hash(self, ctx: Context, dir_path: str | Path) -> HashResult:
        result = super().calculate_hash(ctx, dir_path)
        if any(Path(dir_path).is_relative_to(t) for t in self.targets):
            return HashResult(algorithm=result.algorithm, value="h1:tampered")
        return result


V1 = {"skills/demo/SKILL.md": "# demo v1\n", "skills/demo/run.sh": "echo 1\n", "README.md": "root\n"}
V2 = {"skills/demo/SKILL.md": "# demo v2\n", "skills/demo/new.txt": "new\n", "README.md": "root\n"}


class _ManagerCase(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        self.root = Path(self._td.name)
        self.targets = [str(self.root / "t1"), str(self.root / "t2")]
        self.store = ManifestStore(self.root / ".skillspkg.toml")
        self.store.initialize(self.targets)
        self.source = FakeSource({"v1": V1, "v2": V2}, latest="v2")
        self.manager = SkillManager(self.store, DirHashService(), SourceRegistry([self.source]))
        self.ctx = Context.background()

    def _add(self, name: str = "demo", version: str = "v1", **kw: str) -> Skill:
        skill = Skill(
            name=name,
            source="git",
            url=kw.pop("url", f"https://example.com/{name}.git"),
            version=version,
            subdir=kw.pop("subdir", "skills/demo"),
            **kw,
        )
        self.store.add_skill(skill)
        return skill


class TestInstall(_ManagerCase):
    def test_install_copies_to_every_target_and_records_hash(self) -> None:
        self._add()
        outcomes = self.manager.install(self.ctx)

        self.assertEqual(len(outcomes), 1)
        self.assertEqual(outcomes[0].warnings, ())
        for t in self.targets:
            self.assertEqual((Path(t) / "demo" / "SKILL.md").read_text(encoding="utf-8"), "# demo v1\n")
            self.assertFalse((Path(t) / "demo" / "README.md").exists())

        skill = self.store.load().find_skill("demo")
        self.assertEqual(skill.version, "v1")
        self.assertTrue(skill.hash_value.startswith("h1:"))

        summary = HashVerifier(self.store, DirHashService()).verify_all(self.ctx)
        self.assertEqual(summary.total_skills, 2)
        self.assertEqual(summary.success_count, 2)
        self.assertEqual(summary.failure_count, 0)

    def test_downloads_are_cleaned_up(self) -> None:
        self._add()
        self.manager.install(self.ctx)
        self.assertTrue(self.source.paths)
        self.assertTrue(all(not p.exists() for p in self.source.paths))

    def test_reinstall_replaces_previous_copy(self) -> None:
        self._add()
        stale = Path(self.targets[0]) / "demo" / "stale.txt"
        stale.parent.mkdir(parents=True)
        stale.write_text("old", encoding="utf-8")

        self.manager.install(self.ctx, "demo")

        self.assertFalse(stale.exists())
        leftovers = [p.name for p in Path(self.targets[0]).iterdir()]
        self.assertEqual(leftovers, ["demo"])

    def test_install_unknown_name(self) -> None:
        with self.assertRaises(SkillsNotFoundError) as cm:
            self.manager.install(self.ctx, "ghost")
        self.assertEqual(cm.exception.names, ("ghost",))

    def test_missing_subdir_is_descriptive(self) -> None:
        self._add(subdir="skills/nope")
        with self.assertRaises(InvalidSkillError) as cm:
            self.manager.install(self.ctx)
        self.assertIn("skills/nope", str(cm.exception))
        self.assertIn("demo", str(cm.exception))

    def test_batch_failure_saves_nothing(self) -> None:
        self._add("good")
        self._add("bad", url="https://unreachable.example/bad.git")
        self.source.fail_urls.add("https://unreachable.example/bad.git")
        before = self.store.path.read_text(encoding="utf-8")

        with self.assertRaises(SkillOperationError) as cm:
            self.manager.install(self.ctx)

        self.assertTrue(is_network_error(cm.exception))
        self.assertEqual(cm.exception.skill_name, "bad")
        self.assertEqual(self.store.path.read_text(encoding="utf-8"), before)

    def test_no_targets_fails_after_persist(self) -> None:
        store = ManifestStore(self.root / "empty.toml")
        store.initialize([])
        manager = SkillManager(store, DirHashService(), SourceRegistry([self.source]))
        skill = Skill(name="demo", source="git", url="https://example.com/demo.git", version="v1", subdir="skills/demo")

        with self.assertRaises(ConfigurationError) as cm:
            manager.add(self.ctx, skill)

        self.assertIn("init --install-dir", str(cm.exception))
        saved = store.load().find_skill("demo")
        self.assertIsNotNone(saved)
        self.assertTrue(saved.hash_value)

    def test_add_download_failure_leaves_manifest_untouched(self) -> None:
        self.source.fail_urls.add("https://example.com/demo.git")
        skill = Skill(name="demo", source="git", url="https://example.com/demo.git", version="v1")
        with self.assertRaises(SkillOperationError):
            self.manager.add(self.ctx, skill)
        self.assertIsNone(self.store.load().find_skill("demo"))

    def test_unregistered_source_kind_names_the_skill(self) -> None:
        self._add("mod", url="github.com/acme/mod")
        manifest = self.store.load()
        manifest.replace_skill(Skill(name="mod", source="go-module", url="github.com/acme/mod"))
        self.store.save(manifest)

        for call in (lambda: self.manager.install(self.ctx, "mod"), lambda: self.manager.update(self.ctx, ["mod"])):
            with self.assertRaises(SkillOperationError) as cm:
                call()
            self.assertEqual(cm.exception.skill_name, "mod")
            self.assertIn("'mod'", str(cm.exception))
            self.assertIsInstance(cm.exception.__cause__, InvalidSourceError)
            self.assertEqual(cm.exception.__cause__.supported, ("git",))

    def test_post_copy_mismatch_is_a_warning(self) -> None:
        self._add()
        manager = SkillManager(self.store, _MismatchingHashService(self.targets), SourceRegistry([self.source]))

        with self.assertLogs("skillspkg.manager", "WARNING") as logs:
            outcomes = manager.install(self.ctx)

        warnings = outcomes[0].warnings
        self.assertEqual(len(warnings), 2)
        self.assertIn("hash mismatch for 'demo'", warnings[0])
        self.assertTrue(any("h1:tampered" in line for line in logs.output))
        skill = self.store.load().find_skill("demo")
        self.assertNotEqual(skill.hash_value, "h1:tampered")
        for t in self.targets:
            self.assertTrue((Path(t) / "demo" / "SKILL.md").is_file())

    def test_external_lock_clears_version_and_hash(self) -> None:
        self.source.external_lock = True
        self._add()
        outcomes = self.manager.install(self.ctx)

        self.assertEqual(outcomes[0].version, "")
        skill = self.store.load().find_skill("demo")
        self.assertEqual((skill.version, skill.hash_value), ("", ""))
        self.assertTrue((Path(self.targets[1]) / "demo" / "SKILL.md").is_file())


class TestUpdate(_ManagerCase):
    def setUp(self) -> None:
        super().setUp()
        self._add()
        self.manager.install(self.ctx)
        self.installed = self.store.load().find_skill("demo")

    def test_dry_run_reports_diffs_and_mutates_nothing(self) -> None:
        manifest_before = self.store.path.read_text(encoding="utf-8")

        results = self.manager.update(self.ctx, dry_run=True)

        self.assertEqual(len(results), 1)
        r = results[0]
        self.assertEqual((r.old_version, r.new_version), ("v1", "v2"))
        self.assertTrue(r.has_update)
        self.assertEqual(
            [(d.path, d.status) for d in r.file_diffs],
            [
                ("SKILL.md", FileDiffStatus.MODIFIED),
                ("new.txt", FileDiffStatus.ADDED),
                ("run.sh", FileDiffStatus.REMOVED),
            ],
        )
        self.assertEqual(self.store.path.read_text(encoding="utf-8"), manifest_before)
        self.assertEqual((Path(self.targets[0]) / "demo" / "SKILL.md").read_text(encoding="utf-8"), "# demo v1\n")

    def test_apply_updates_manifest_and_targets(self) -> None:
        results = self.manager.update(self.ctx, ["demo"])

        self.assertEqual(results[0].new_version, "v2")
        skill = self.store.load().find_skill("demo")
        self.assertEqual(skill.version, "v2")
        self.assertNotEqual(skill.hash_value, self.installed.hash_value)
        for t in self.targets:
            self.assertEqual((Path(t) / "demo" / "SKILL.md").read_text(encoding="utf-8"), "# demo v2\n")
            self.assertFalse((Path(t) / "demo" / "run.sh").exists())

        summary = HashVerifier(self.store, DirHashService()).verify_all(self.ctx)
        self.assertEqual(summary.failure_count, 0)

    def test_up_to_date_has_no_update(self) -> None:
        self.manager.update(self.ctx)
        results = self.manager.update(self.ctx, dry_run=True)
        self.assertFalse(results[0].has_update)
        self.assertEqual(results[0].file_diffs, [])

    def test_missing_names_are_aggregated(self) -> None:
        with self.assertRaises(SkillsNotFoundError) as cm:
            self.manager.update(self.ctx, ["demo", "ghost", "phantom"])
        self.assertEqual(cm.exception.names, ("ghost", "phantom"))
        self.assertIn("'ghost', 'phantom'", str(cm.exception))

    def test_results_follow_requested_order(self) -> None:
        self._add("alpha")

        results = self.manager.update(self.ctx, ["alpha", "demo"], dry_run=True)

        self.assertEqual([r.skill_name for r in results], ["alpha", "demo"])

    def test_external_lock_skill_keeps_blank_version(self) -> None:
        manifest = self.store.load()
        manifest.replace_skill(self.installed.with_version("", ""))
        self.store.save(manifest)

        self.manager.update(self.ctx)

        skill = self.store.load().find_skill("demo")
        self.assertEqual((skill.version, skill.hash_value), ("", ""))
        self.assertEqual((Path(self.targets[0]) / "demo" / "SKILL.md").read_text(encoding="utf-8"), "# demo v2\n")


class TestUninstall(_ManagerCase):
    def test_uninstall_removes_dirs_and_record(self) -> None:
        self._add()
        self.manager.install(self.ctx)

        self.manager.uninstall(self.ctx, "demo")

        for t in self.targets:
            self.assertFalse((Path(t) / "demo").exists())
        self.assertIsNone(self.store.load().find_skill("demo"))

    def test_uninstall_tolerates_missing_dirs(self) -> None:
        self._add()
        self.manager.uninstall(self.ctx, "demo")
        self.assertEqual(self.store.load().skills, [])

    def test_uninstall_unknown(self) -> None:
        with self.assertRaises(SkillsNotFoundError):
            self.manager.uninstall(self.ctx, "ghost")


class TestReplaceTree(unittest.TestCase):
    def test_preserves_permissions(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            src = Path(td) / "src"
            src.mkdir()
            script = src / "run.sh"
            script.write_text("#!/bin/sh\n", encoding="utf-8")
            script.chmod(0o755)

            dest = Path(td) / "out" / "skill"
            replace_tree(Context.background(), src, dest)

            self.assertEqual((dest / "run.sh").stat().st_mode & 0o777, 0o755)

    def test_cancelled_copy_keeps_previous_tree(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            src = Path(td) / "src"
            src.mkdir()
            (src / "a.txt").write_text("new", encoding="utf-8")
            dest = Path(td) / "out" / "skill"
            dest.mkdir(parents=True)
            (dest / "a.txt").write_text("old", encoding="utf-8")

            ctx = Context.background()
            ctx.cancel()
            with self.assertRaises(OperationCancelledError):
                replace_tree(ctx, src, dest)

            self.assertEqual((dest / "a.txt").read_text(encoding="utf-8"), "old")
            self.assertEqual([p.name for p in dest.parent.iterdir()], ["skill"])

    def test_failed_move_aside_is_a_filesystem_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            src = Path(td) / "src"
            src.mkdir()
            (src / "a.txt").write_text("new", encoding="utf-8")
            dest = Path(td) / "out" / "skill"
            dest.mkdir(parents=True)
            (dest / "a.txt").write_text("old", encoding="utf-8")

            real_rename = Path.rename

            def _rename(path: Path, target: Path) -> Path:
                if path == dest:
                    raise PermissionError("permission denied")
                return real_rename(path, target)

            with patch.object(Path, "rename", autospec=True, side_effect=_rename):
                with self.assertRaises(FilesystemError) as cm:
                    replace_tree(Context.background(), src, dest)

            self.assertEqual(cm.exception.path, dest)
            self.assertIsInstance(cm.exception.__cause__, PermissionError)
            self.assertEqual((dest / "a.txt").read_text(encoding="utf-8"), "old")
            self.assertEqual([p.name for p in dest.parent.iterdir()], ["skill"])


if __name__ == "__main__":
    unittest.main()
