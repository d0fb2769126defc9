from __future__ import annotations

from dataclasses import dataclass


class SkillpinError(RuntimeError):
    pass


class ReferenceSyntaxError(SkillpinError):
    pass


class SubpathNotFoundError(SkillpinError):
    pass


class VersionNotFoundError(SkillpinError):
    pass


class SkillNotFoundError(SkillpinError):
    pass


class NetworkError(SkillpinError):
    pass


class ConflictError(SkillpinError):
    pass


class IntegrityError(SkillpinError):
    pass


@dataclass(frozen=True)
class RegistryHTTPError(NetworkError):
    status_code: int
    body: str

    def __str__(self) -> str:  # pragma: no cover
        return f"HTTP {self.status_code}: {self.body}"
