from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from .client import RegistryClient, RegistryRelease
from .config import DEFAULT_TIMEOUT_S, PUBLIC_REGISTRY_URL
from .errors import ReferenceSyntaxError, SkillpinError, VersionNotFoundError
from .git import default_branch, list_remote_tags, remote_commit
from .refs import ParsedReference
from .versions import max_satisfying, sort_versions

logger = logging.getLogger(__name__)

WELL_KNOWN_GIT_HOSTS = {
    "github": "https://github.com",
    "gitlab": "https://gitlab.com",
}


@dataclass(frozen=True)
class ResolvedVersion:
    version: str  # label recorded in the lock file and used as cache key
    clone_ref: str | None  # what to hand to git; None means the default branch
    commit: str = ""
    mutable: bool = False  # branch heads move, tags and commits do not


def git_repo_url(ref: ParsedReference, registries: dict[str, str] | None = None) -> str:
    if not ref.is_git:
        raise SkillpinError(f"{ref.raw} is not a Git reference")
    if ref.url:
        return ref.url
    alias = ref.registry_alias or "github"
    base = (registries or {}).get(alias) or WELL_KNOWN_GIT_HOSTS.get(alias)
    if base is None and "." in alias:
        base = f"https://{alias}"
    if base is None:
        raise ReferenceSyntaxError(
            f"Unknown registry alias {alias!r} in {ref.raw!r}. "
            "Add it to the \"registries\" section of skills.json."
        )
    if base.endswith(":"):
        # scp-style base such as "git@gitlab.example.com:"
        return f"{base}{ref.owner}/{ref.repository}.git"
    return f"{base.rstrip('/')}/{ref.owner}/{ref.repository}.git"


class GitResolver:
    def __init__(self, registries: dict[str, str] | None = None) -> None:
        self.registries = dict(registries or {})

    def repo_url(self, ref: ParsedReference) -> str:
        return git_repo_url(ref, self.registries)

    def resolve(self, ref: ParsedReference) -> ResolvedVersion:
        spec = ref.version
        if spec.kind == "exact":
            return ResolvedVersion(version=str(spec.value), clone_ref=spec.value)
        if spec.kind == "branch":
            return ResolvedVersion(version=str(spec.value), clone_ref=spec.value, mutable=True)
        if spec.kind == "commit":
            return ResolvedVersion(version=str(spec.value), clone_ref=spec.value, commit=str(spec.value))

        url = self.repo_url(ref)
        if spec.kind == "unspecified":
            name, sha = default_branch(url)
            logger.debug("Default branch of %s is %s (%s)", url, name, sha[:12])
            return ResolvedVersion(version=name, clone_ref=name, commit=sha, mutable=True)

        tags = list_remote_tags(url)
        wanted = spec.value if spec.kind == "range" else None
        best = max_satisfying(tags.keys(), wanted)
        if best is None:
            available = ", ".join(sort_versions([t for t in tags], reverse=True)[:10]) or "none"
            what = f"satisfying {wanted}" if wanted else "with a semantic version"
            raise VersionNotFoundError(f"No tag {what} found for {ref.raw} (tags: {available})")
        logger.debug("Resolved %s to tag %s", ref.raw, best)
        return ResolvedVersion(version=best, clone_ref=best, commit=tags[best])

    def remote_commit(self, ref: ParsedReference, clone_ref: str) -> str:
        return remote_commit(self.repo_url(ref), clone_ref)


class RegistryResolver:
    """
    Resolves ``@scope/name`` and bare ``name`` references against npm-style
    registries. Scoped names need a registry configured for their scope;
    unscoped names go to the public registry.
    """

    def __init__(
        self,
        *,
        registries: dict[str, str] | None = None,
        override_url: str | None = None,
        default_url: str | None = None,
        token: str | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        client_factory: Callable[..., RegistryClient] = RegistryClient,
    ) -> None:
        self.registries = dict(registries or {})
        self.override_url = override_url
        self.default_url = default_url or PUBLIC_REGISTRY_URL
        self.token = token
        self.timeout_s = timeout_s
        self._client_factory = client_factory
        self._clients: dict[str, RegistryClient] = {}

    def registry_url_for(self, ref: ParsedReference) -> str:
        if self.override_url:
            return self.override_url
        if not ref.scope:
            return self.default_url
        url = self.registries.get(ref.scope) or self.registries.get(ref.scope.lstrip("@"))
        if not url:
            raise SkillpinError(
                f"Unknown scope {ref.scope} in {ref.raw}. "
                "Add the scope to the \"registries\" section of skills.json or pass --registry."
            )
        return url

    def client_for(self, ref: ParsedReference) -> RegistryClient:
        url = self.registry_url_for(ref)
        if url not in self._clients:
            self._clients[url] = self._client_factory(url, token=self.token, timeout_s=self.timeout_s)
        return self._clients[url]

    def resolve(self, ref: ParsedReference) -> RegistryRelease:
        client = self.client_for(ref)
        spec = ref.version
        wanted = None if spec.kind == "unspecified" else str(spec)
        version = client.resolve_version(ref.full_name, wanted)
        return client.release(ref.full_name, version)

    def download(self, ref: ParsedReference, release: RegistryRelease) -> tuple[bytes, str | None]:
        return self.client_for(ref).download(release)

    def close(self) -> None:
        for client in self._clients.values():
            client.close()
        self._clients.clear()
