from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any

import toml

from .errors import (
    FilesystemError,
    InstallTargetExistsError,
    InvalidSkillError,
    InvalidSourceError,
    ManifestError,
    ManifestExistsError,
    ManifestNotFoundError,
    SkillExistsError,
    SkillsNotFoundError,
)
from .sources import SourceKind

MANIFEST_FILENAME = ".skillspkg.toml"


class Integrity(str, Enum):
    SELF_VERIFIED = "self-verified"  # hash recorded in the manifest
    EXTERNAL = "external"  # version and hash owned by an external lock
    PENDING = "pending"  # version pinned, not installed yet


@dataclass(frozen=True)
class Skill:
    name: str
    source: str
    url: str
    version: str = ""
    hash_value: str = ""
    subdir: str = ""

    @property
    def integrity(self) -> Integrity:
        if self.hash_value:
            return Integrity.SELF_VERIFIED
        if not self.version:
            return Integrity.EXTERNAL
        return Integrity.PENDING

    def validate(self) -> None:
        if not self.name.strip():
            raise InvalidSkillError("skill name must not be empty")
        if not self.url.strip():
            raise InvalidSkillError(f"skill '{self.name}' has an empty source url")
        if self.source not in SourceKind.values():
            raise InvalidSourceError(self.source, SourceKind.values())

    def with_version(self, version: str, hash_value: str) -> Skill:
        return replace(self, version=version, hash_value=hash_value)

    def to_dict(self) -> dict[str, str]:
        d = {"name": self.name, "source": self.source, "url": self.url}
        for key in ("version", "hash_value", "subdir"):
            value = getattr(self, key)
            if value:
                d[key] = value
        return d

    @classmethod
    def from_dict(cls, raw: Any) -> Skill:
        if not isinstance(raw, dict):
            raise ManifestError(f"invalid skill entry: {raw!r}")
        return cls(
            name=str(raw.get("name") or ""),
            source=str(raw.get("source") or ""),
            url=str(raw.get("url") or ""),
            version=str(raw.get("version") or ""),
            hash_value=str(raw.get("hash_value") or ""),
            subdir=str(raw.get("subdir") or ""),
        )


@dataclass
class Manifest:
    skills: list[Skill] = field(default_factory=list)
    install_targets: list[str] = field(default_factory=list)

    def find_skill(self, name: str) -> Skill | None:
        for s in self.skills:
            if s.name == name:
                return s
        return None

    def has_skill(self, name: str) -> bool:
        return self.find_skill(name) is not None

    def add_skill(self, skill: Skill) -> None:
        skill.validate()
        if self.has_skill(skill.name):
            raise SkillExistsError(skill.name)
        self.skills.append(skill)

    def replace_skill(self, skill: Skill) -> None:
        for i, s in enumerate(self.skills):
            if s.name == skill.name:
                self.skills[i] = skill
                return
        raise SkillsNotFoundError([skill.name])

    def remove_skill(self, name: str) -> Skill:
        for i, s in enumerate(self.skills):
            if s.name == name:
                return self.skills.pop(i)
        raise SkillsNotFoundError([name])

    def add_install_target(self, target: str) -> None:
        target = target.strip()
        if not target:
            raise ManifestError("install target must not be empty")
        if target in self.install_targets:
            raise InstallTargetExistsError(target)
        self.install_targets.append(target)

    def validate(self) -> None:
        seen: set[str] = set()
        for skill in self.skills:
            skill.validate()
            if skill.name in seen:
                raise SkillExistsError(skill.name)
            seen.add(skill.name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "install_targets": list(self.install_targets),
            "skills": [s.to_dict() for s in self.skills],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Manifest:
        targets = raw.get("install_targets") or []
        if not isinstance(targets, list) or not all(isinstance(t, str) for t in targets):
            raise ManifestError("install_targets must be a list of strings")
        skills = raw.get("skills") or []
        if not isinstance(skills, list):
            raise ManifestError("skills must be a list of tables")
        return cls(skills=[Skill.from_dict(s) for s in skills], install_targets=list(targets))


class ManifestStore:
    """Load and save the project manifest (a TOML file)."""

    def __init__(self, path: str | Path = MANIFEST_FILENAME) -> None:
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    def initialize(self, install_targets: list[str]) -> Manifest:
        if self.path.exists():
            raise ManifestExistsError(self.path)
        manifest = Manifest()
        for target in install_targets:
            manifest.add_install_target(target)
        self.save(manifest)
        return manifest

    def load(self) -> Manifest:
        if not self.path.exists():
            raise ManifestNotFoundError(self.path)
        try:
            raw = toml.loads(self.path.read_text(encoding="utf-8"))
        except toml.TomlDecodeError as e:
            raise ManifestError(f"Could not parse {self.path}: {e}") from e
        except OSError as e:
            raise FilesystemError(f"Could not read {self.path}", path=self.path) from e

        manifest = Manifest.from_dict(raw)
        try:
            manifest.validate()
        except (InvalidSkillError, InvalidSourceError, SkillExistsError) as e:
            raise ManifestError(f"Invalid configuration in {self.path}: {e}") from e
        return manifest

    def save(self, manifest: Manifest) -> None:
        manifest.validate()
        body = toml.dumps(manifest.to_dict())
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_name(self.path.name + ".tmp")
            tmp.write_text(body, encoding="utf-8")
            tmp.replace(self.path)
        except OSError as e:
            raise FilesystemError(f"Could not write {self.path}", path=self.path) from e

    def add_skill(self, skill: Skill) -> Manifest:
        manifest = self.load()
        manifest.add_skill(skill)
        self.save(manifest)
        return manifest

    def remove_skill(self, name: str) -> Manifest:
        manifest = self.load()
        manifest.remove_skill(name)
        self.save(manifest)
        return manifest

    def add_install_target(self, target: str) -> Manifest:
        manifest = self.load()
        manifest.add_install_target(target)
        self.save(manifest)
        return manifest

    def list_skills(self) -> list[Skill]:
        return list(self.load().skills)
