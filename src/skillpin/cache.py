"""Machine-wide cache of fetched skill snapshots.

Layout::

    <root>/<alias>/<owner>/<repository>/[<sub_path>/]<version>/
    <root>/registry/<scope|_public>/<name>/<version>/
    <root>/http/<host>/<path>/[q-<query digest>/]<version>/

The path is the key; there is no separate index. Each entry holds a
``.skillpin-commit`` marker (and ``.skillpin-source`` for HTTP sources).
Concurrent writers to the same key are not coordinated.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable
from urllib.parse import urlsplit

from .client import calculate_integrity, download_bytes, verify_integrity
from .config import DEFAULT_TIMEOUT_S, default_cache_dir
from .errors import IntegrityError, NetworkError, SkillpinError, SubpathNotFoundError
from .git import shallow_clone
from .refs import ParsedReference
from .skill_files import (
    COMMIT_MARKER,
    SOURCE_MARKER,
    copy_skill_tree,
    remove_path,
    safe_extract_archive,
    unwrap_single_dir,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    path: Path
    commit: str
    source: str | None = None


@dataclass(frozen=True)
class CachedSkill:
    key: str
    version: str
    path: Path
    commit: str


def version_label(version: str) -> str:
    # Branch names may contain "/", which must not add directory levels.
    return version.replace("\\", "%5C").replace("/", "%2F") or "_default"


def pseudo_commit(url: str, version: str) -> str:
    # HTTP sources have no commit; a digest of url@version stands in for one.
    return hashlib.sha256(f"{url}@{version}".encode("utf-8")).hexdigest()[:40]


def http_download_url(url: str) -> str:
    parts = urlsplit(url)
    if parts.scheme in ("http", "https"):
        return url
    if parts.scheme == "s3":
        return f"https://{parts.netloc}.s3.amazonaws.com{parts.path}"
    raise NetworkError(
        f"Cannot download {url} directly: {parts.scheme}:// needs a signed URL. Use an https:// link instead."
    )


class CacheStore:
    def __init__(self, cache_dir: str | Path | None = None, *, timeout_s: float = DEFAULT_TIMEOUT_S) -> None:
        self.root = Path(cache_dir).expanduser() if cache_dir else default_cache_dir()
        self.timeout_s = timeout_s

    def key_parts(self, ref: ParsedReference) -> list[str]:
        if ref.is_registry:
            scope = ref.scope.lstrip("@") if ref.scope else "_public"
            return ["registry", scope, str(ref.name)]
        if ref.is_archive:
            parts = urlsplit(str(ref.url))
            # The file name keeps its extension; a.zip and a.tar.gz are different archives.
            segments = [s.replace(".", "%2E") if s in (".", "..") else s for s in parts.path.split("/") if s]
            if parts.query:
                segments.append("q-" + hashlib.sha256(parts.query.encode("utf-8")).hexdigest()[:12])
            return ["http", parts.netloc or parts.scheme, *segments]
        parts = [str(ref.registry_alias or "github"), *ref.owner.split("/"), ref.repository]
        # Distinct skills of one monorepo must never share a cache directory.
        if ref.sub_path:
            parts.extend(ref.sub_path.split("/"))
        return parts

    def cache_path(self, ref: ParsedReference, version: str) -> Path:
        return self.root.joinpath(*self.key_parts(ref), version_label(version))

    def is_cached(self, ref: ParsedReference, version: str) -> bool:
        return self.cache_path(ref, version).is_dir()

    def get(self, ref: ParsedReference, version: str) -> CacheEntry | None:
        path = self.cache_path(ref, version)
        if not path.is_dir():
            return None
        return self._read_entry(path)

    def _read_entry(self, path: Path) -> CacheEntry:
        commit = ""
        source = None
        marker = path / COMMIT_MARKER
        if marker.is_file():
            commit = marker.read_text(encoding="utf-8").strip()
        src_marker = path / SOURCE_MARKER
        if src_marker.is_file():
            source = src_marker.read_text(encoding="utf-8").strip() or None
        return CacheEntry(path=path, commit=commit, source=source)

    def get_or_fetch(
        self,
        ref: ParsedReference,
        version: str,
        fetcher: Callable[[], CacheEntry],
        *,
        refresh: bool = False,
    ) -> CacheEntry:
        if not refresh:
            hit = self.get(ref, version)
            if hit is not None:
                logger.debug("Cache hit for %s@%s at %s", ref.full_name, version, hit.path)
                return hit
        logger.debug("Cache miss for %s@%s", ref.full_name, version)
        return fetcher()

    def _commit_entry(self, staged: Path, final: Path, *, commit: str, source: str | None = None) -> CacheEntry:
        (staged / COMMIT_MARKER).write_text(commit, encoding="utf-8")
        if source:
            (staged / SOURCE_MARKER).write_text(source, encoding="utf-8")
        if final.exists() or final.is_symlink():
            remove_path(final)
        staged.rename(final)
        return CacheEntry(path=final, commit=commit, source=source)

    def cache_from_git(
        self,
        repo_url: str,
        ref: ParsedReference,
        version: str,
        clone_ref: str | None,
    ) -> CacheEntry:
        final = self.cache_path(ref, version)
        final.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix=".skillpin-", dir=final.parent) as td:
            checkout = Path(td) / "checkout"
            commit = shallow_clone(repo_url, checkout, clone_ref)

            source = checkout
            if ref.sub_path:
                source = checkout / ref.sub_path
                if not source.is_dir():
                    raise SubpathNotFoundError(
                        f"Sub-path {ref.sub_path!r} not found in {ref.raw} at {version}."
                    )

            staged = Path(td) / "staged"
            copy_skill_tree(source, staged, exclude=(), exclude_prefix=None)
            entry = self._commit_entry(staged, final, commit=commit)
        logger.info("Cached %s@%s (%s)", ref.full_name, version, commit[:12])
        return entry

    def _cache_archive(
        self,
        data: bytes,
        ref: ParsedReference,
        version: str,
        *,
        commit: str,
        source: str | None,
    ) -> CacheEntry:
        final = self.cache_path(ref, version)
        final.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix=".skillpin-", dir=final.parent) as td:
            unpacked = Path(td) / "unpacked"
            safe_extract_archive(data, unpacked)
            root = unwrap_single_dir(unpacked)
            if ref.sub_path:
                root = root / ref.sub_path
                if not root.is_dir():
                    raise SubpathNotFoundError(f"Sub-path {ref.sub_path!r} not found in archive {ref.raw}.")
            staged = Path(td) / "staged"
            copy_skill_tree(root, staged, exclude=(), exclude_prefix=None)
            return self._commit_entry(staged, final, commit=commit, source=source)

    def cache_from_http(self, url: str, ref: ParsedReference, version: str) -> CacheEntry:
        data = download_bytes(http_download_url(url), timeout_s=self.timeout_s)
        entry = self._cache_archive(data, ref, version, commit=pseudo_commit(url, version), source=url)
        logger.info("Cached %s@%s from %s", ref.full_name, version, url)
        return entry

    def cache_from_tarball(
        self,
        data: bytes,
        ref: ParsedReference,
        version: str,
        integrity: str | None,
    ) -> CacheEntry:
        if integrity:
            if not verify_integrity(data, integrity):
                raise IntegrityError(
                    f"Integrity check failed for {ref.raw}@{version}: expected {integrity}, "
                    f"got {calculate_integrity(data)}. The download was discarded."
                )
        else:
            logger.warning("Registry declared no integrity for %s@%s; skipping verification", ref.raw, version)
        commit = hashlib.sha256(data).hexdigest()[:40]
        return self._cache_archive(data, ref, version, commit=commit, source=None)

    def copy_to(self, ref: ParsedReference, version: str, dest: Path) -> None:
        entry = self.get(ref, version)
        if entry is None:
            raise SkillpinError(f"Skill {ref.raw} version {version} not found in cache")
        if dest.exists() or dest.is_symlink():
            remove_path(dest)
        copy_skill_tree(entry.path, dest)

    def clear_skill(self, ref: ParsedReference, version: str | None = None) -> None:
        if version:
            target = self.cache_path(ref, version)
        else:
            target = self.root.joinpath(*self.key_parts(ref))
        if target.exists():
            shutil.rmtree(target)

    def clear_all(self) -> None:
        if self.root.exists():
            shutil.rmtree(self.root)

    def list_cached(self) -> list[CachedSkill]:
        if not self.root.is_dir():
            return []
        out: list[CachedSkill] = []
        for marker in sorted(self.root.rglob(COMMIT_MARKER)):
            entry_dir = marker.parent
            rel = entry_dir.relative_to(self.root)
            if any(part.startswith(".skillpin-") for part in rel.parts):
                continue  # staging directory of an in-flight fetch
            out.append(
                CachedSkill(
                    key=rel.parent.as_posix(),
                    version=rel.name,
                    path=entry_dir,
                    commit=marker.read_text(encoding="utf-8").strip(),
                )
            )
        return out

    def stats(self) -> dict[str, object]:
        cached = self.list_cached()
        registries = sorted({c.key.split("/", 1)[0] for c in cached})
        size = 0
        if self.root.is_dir():
            size = sum(p.stat().st_size for p in self.root.rglob("*") if p.is_file())
        return {
            "total_entries": len(cached),
            "total_skills": len({c.key for c in cached}),
            "registries": registries,
            "size_bytes": size,
        }
