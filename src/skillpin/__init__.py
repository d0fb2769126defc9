from ._version import __version__
from .cache import CacheEntry, CacheStore
from .errors import (
    ConflictError,
    IntegrityError,
    NetworkError,
    ReferenceSyntaxError,
    RegistryHTTPError,
    SkillNotFoundError,
    SkillpinError,
    SubpathNotFoundError,
    VersionNotFoundError,
)
from .installer import Installer, InstallResult
from .lock import LockedSkill, LockStore
from .manager import BatchReport, InstallOutcome, SkillManager
from .refs import ParsedReference, VersionSpec, parse_reference

__all__ = [
    "__version__",
    "BatchReport",
    "CacheEntry",
    "CacheStore",
    "ConflictError",
    "InstallOutcome",
    "InstallResult",
    "Installer",
    "IntegrityError",
    "LockStore",
    "LockedSkill",
    "NetworkError",
    "ParsedReference",
    "ReferenceSyntaxError",
    "RegistryHTTPError",
    "SkillManager",
    "SkillNotFoundError",
    "SkillpinError",
    "SubpathNotFoundError",
    "VersionNotFoundError",
    "VersionSpec",
    "parse_reference",
]
