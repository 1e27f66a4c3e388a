from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from .context import Context
from .errors import FilesystemError, SkillsNotFoundError
from .hashing import DirHashService
from .log import get_logger
from .manifest import ManifestStore, Skill

logger = get_logger("verify")


@dataclass(frozen=True)
class VerifyResult:
    skill_name: str
    install_dir: str
    expected: str
    actual: str
    match: bool


@dataclass(frozen=True)
class VerifySummary:
    total_skills: int = 0
    success_count: int = 0
    failure_count: int = 0
    results: list[VerifyResult] = field(default_factory=list)


class HashVerifier:
    def __init__(self, store: ManifestStore, hash_service: DirHashService) -> None:
        self.store = store
        self.hash_service = hash_service

    def verify(self, ctx: Context, skill_name: str, install_dir: str | Path) -> VerifyResult:
        """Compare the installed copy at ``install_dir`` with the recorded hash.

        A mismatch is returned as data; only a missing skill or a hashing
        failure raises.
        """
        manifest = self.store.load()
        skill = manifest.find_skill(skill_name)
        if skill is None:
            raise SkillsNotFoundError([skill_name])
        return self._compare(ctx, skill, Path(install_dir))

    def verify_all(self, ctx: Context) -> VerifySummary:
        manifest = self.store.load()
        results: list[VerifyResult] = []
        for skill in manifest.skills:
            for target in manifest.install_targets:
                ctx.check("verify")
                install_dir = Path(target) / skill.name
                try:
                    results.append(self._compare(ctx, skill, install_dir))
                except FilesystemError as e:
                    logger.debug("hashing %s failed: %s", install_dir, e)
                    results.append(
                        VerifyResult(
                            skill_name=skill.name,
                            install_dir=str(install_dir),
                            expected=skill.hash_value,
                            actual="",
                            match=False,
                        )
                    )

        success = sum(1 for r in results if r.match)
        return VerifySummary(
            total_skills=len(results),
            success_count=success,
            failure_count=len(results) - success,
            results=results,
        )

    def _compare(self, ctx: Context, skill: Skill, install_dir: Path) -> VerifyResult:
        actual = self.hash_service.calculate_hash(ctx, install_dir).value
        return VerifyResult(
            skill_name=skill.name,
            install_dir=str(install_dir),
            expected=skill.hash_value,
            actual=actual,
            match=actual == skill.hash_value,
        )
