from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from pathlib import Path

CLI_NAME = "skills-pkg"


class SkillsPkgError(RuntimeError):
    pass


class ManifestError(SkillsPkgError):
    pass


class ManifestNotFoundError(ManifestError):
    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(
            f"Configuration file not found: {path}. Run '{CLI_NAME} init' to create one."
        )


class ManifestExistsError(ManifestError):
    def __init__(self, path: Path) -> None:
        self.path = path
        super().__init__(f"Configuration file already exists: {path}")


class SkillsNotFoundError(SkillsPkgError):
    def __init__(self, names: Iterable[str]) -> None:
        self.names = tuple(names)
        quoted = ", ".join(f"'{n}'" for n in self.names)
        if len(self.names) == 1:
            msg = (
                f"skill {quoted} not found in configuration. "
                f"Use '{CLI_NAME} add {self.names[0]} --source <type> --url <url>' to add it first"
            )
        else:
            msg = (
                f"skills {quoted} not found in configuration. "
                f"Use '{CLI_NAME} add <name> --source <type> --url <url>' to add them first"
            )
        super().__init__(msg)


class SkillExistsError(SkillsPkgError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"skill '{name}' already exists in configuration")


class InstallTargetExistsError(SkillsPkgError):
    def __init__(self, target: str) -> None:
        self.target = target
        super().__init__(f"install target '{target}' is already configured")


class InvalidInputError(SkillsPkgError):
    pass


class InvalidSkillError(SkillsPkgError):
    pass


class InvalidSourceError(SkillsPkgError):
    def __init__(self, kind: str, supported: Sequence[str]) -> None:
        self.kind = kind
        self.supported = tuple(supported)
        kinds = ", ".join(self.supported) or "none"
        if kind:
            msg = f"unsupported source type '{kind}'. Supported source types: {kinds}"
        else:
            msg = f"source type is empty. Supported source types: {kinds}"
        super().__init__(msg)


class NetworkError(SkillsPkgError):
    pass


class FilesystemError(SkillsPkgError):
    def __init__(self, message: str, *, path: Path | str | None = None) -> None:
        self.path = Path(path) if path is not None else None
        super().__init__(message)


class ConfigurationError(SkillsPkgError):
    pass


class OperationCancelledError(SkillsPkgError):
    pass


class SkillOperationError(SkillsPkgError):
    """A failure while working on one skill, wrapping the underlying cause."""

    def __init__(self, operation: str, skill_name: str, cause: BaseException) -> None:
        self.operation = operation
        self.skill_name = skill_name
        super().__init__(f"failed to {operation} skill '{skill_name}': {cause}")


def iter_causes(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    cur: BaseException | None = exc
    while cur is not None and id(cur) not in seen:
        seen.add(id(cur))
        yield cur
        cur = cur.__cause__ or cur.__context__


def is_network_error(exc: BaseException) -> bool:
    return any(isinstance(e, NetworkError) for e in iter_causes(exc))
