from ._version import __version__
from .context import Context, run_group
from .errors import SkillsPkgError
from .hashing import DirHashService, HashResult
from .manager import InstallOutcome, SkillManager, UpdateResult
from .manifest import Manifest, ManifestStore, Skill
from .sources import DownloadResult, Source, SourceKind, SourceRegistry
from .verify import HashVerifier, VerifyResult, VerifySummary

__all__ = [
    "Context",
    "DirHashService",
    "DownloadResult",
    "HashResult",
    "HashVerifier",
    "InstallOutcome",
    "Manifest",
    "ManifestStore",
    "Skill",
    "SkillManager",
    "SkillsPkgError",
    "Source",
    "SourceKind",
    "SourceRegistry",
    "UpdateResult",
    "VerifyResult",
    "VerifySummary",
    "__version__",
    "run_group",
]
