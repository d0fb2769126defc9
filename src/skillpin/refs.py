from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable
from urllib.parse import urlsplit

from .errors import ReferenceSyntaxError

GIT_SHORTHAND = "git-shorthand"
GIT_URL_HTTPS = "git-url-https"
GIT_URL_SSH = "git-url-ssh"
GIT_WEB_URL = "git-web-url"
HTTP_ARCHIVE = "http-archive"
REGISTRY_SCOPED = "registry-scoped"
REGISTRY_PUBLIC = "registry-public"

GIT_KINDS = frozenset({GIT_SHORTHAND, GIT_URL_HTTPS, GIT_URL_SSH, GIT_WEB_URL})
REGISTRY_KINDS = frozenset({REGISTRY_SCOPED, REGISTRY_PUBLIC})

DEFAULT_GIT_ALIAS = "github"

ARCHIVE_SCHEMES = ("http://", "https://", "oss://", "s3://")
ARCHIVE_EXTENSIONS = (".tar.gz", ".tgz", ".tar", ".zip")
WEB_MARKERS = ("tree", "blob", "raw")

_NAME_RE = re.compile(r"^[A-Za-z0-9._-]+$")
_ALIAS_PREFIX_RE = re.compile(r"^[A-Za-z0-9.-]+:[^@]")
_ALIAS_RE = re.compile(r"^([A-Za-z0-9.-]+):(.+)$")
_SCP_RE = re.compile(r"^[A-Za-z0-9._-]+@[A-Za-z0-9.-]+:")
_SCOPED_RE = re.compile(r"^@([A-Za-z0-9._-]+)/([A-Za-z0-9._-]+)(?:@([A-Za-z0-9._^~<>=*-]+))?$")
_PUBLIC_RE = re.compile(r"^([A-Za-z0-9._-]+)(?:@([A-Za-z0-9._^~<>=*-]+))?$")


@dataclass(frozen=True)
class VersionSpec:
    kind: str  # exact | latest | range | branch | commit | unspecified
    value: str | None = None

    @property
    def needs_remote_query(self) -> bool:
        return self.kind in ("latest", "range", "unspecified")

    def __str__(self) -> str:
        if self.kind == "latest":
            return "latest"
        if self.kind == "branch":
            return f"branch:{self.value}"
        if self.kind == "commit":
            return f"commit:{self.value}"
        if self.kind == "unspecified":
            return ""
        return self.value or ""


UNSPECIFIED = VersionSpec("unspecified")
LATEST = VersionSpec("latest")


def exact(tag: str) -> VersionSpec:
    return VersionSpec("exact", tag)


def branch(name: str) -> VersionSpec:
    return VersionSpec("branch", name)


def commit(sha: str) -> VersionSpec:
    return VersionSpec("commit", sha)


def parse_version_spec(text: str | None) -> VersionSpec:
    raw = (text or "").strip()
    if not raw:
        return UNSPECIFIED
    if raw == "latest":
        return LATEST
    if raw.startswith(("^", "~")):
        return VersionSpec("range", raw)
    if raw.startswith("branch:"):
        name = raw[len("branch:") :].strip()
        if not name:
            raise ReferenceSyntaxError(f"Empty branch name in version {text!r}")
        return branch(name)
    if raw.startswith("commit:"):
        sha = raw[len("commit:") :].strip()
        if not sha:
            raise ReferenceSyntaxError(f"Empty commit hash in version {text!r}")
        return commit(sha)
    return exact(raw)


@dataclass(frozen=True)
class ParsedReference:
    source_kind: str
    raw: str
    version: VersionSpec = UNSPECIFIED
    registry_alias: str | None = None
    owner: str = ""
    repository: str = ""
    sub_path: str | None = None
    scope: str | None = None  # "@scope", registry sources only
    name: str | None = None  # registry package name without scope
    url: str | None = None  # archive URL or explicit git URL
    skill_name: str | None = None  # "#name" selection inside a multi-skill source

    @property
    def is_git(self) -> bool:
        return self.source_kind in GIT_KINDS

    @property
    def is_registry(self) -> bool:
        return self.source_kind in REGISTRY_KINDS

    @property
    def is_archive(self) -> bool:
        return self.source_kind == HTTP_ARCHIVE

    @property
    def full_name(self) -> str:
        if self.is_registry:
            return f"{self.scope}/{self.name}" if self.scope else str(self.name)
        if self.is_archive:
            return str(self.url)
        base = f"{self.owner}/{self.repository}"
        return f"{base}/{self.sub_path}" if self.sub_path else base

    @property
    def short_name(self) -> str:
        if self.skill_name:
            return self.skill_name
        if self.is_registry:
            return str(self.name)
        if self.is_archive:
            return archive_stem(str(self.url))
        if self.sub_path:
            return self.sub_path.rstrip("/").rsplit("/", 1)[-1]
        return self.repository

    @property
    def persisted_ref(self) -> str:
        return self.raw


def with_skill_name(ref: ParsedReference, skill_name: str) -> ParsedReference:
    raw, _ = split_fragment(ref.raw)
    return ParsedReference(
        source_kind=ref.source_kind,
        raw=f"{raw}#{skill_name}",
        version=ref.version,
        registry_alias=ref.registry_alias,
        owner=ref.owner,
        repository=ref.repository,
        sub_path=ref.sub_path,
        scope=ref.scope,
        name=ref.name,
        url=ref.url,
        skill_name=skill_name,
    )


def with_version(ref: ParsedReference, version: VersionSpec) -> ParsedReference:
    return ParsedReference(
        source_kind=ref.source_kind,
        raw=ref.raw,
        version=version,
        registry_alias=ref.registry_alias,
        owner=ref.owner,
        repository=ref.repository,
        sub_path=ref.sub_path,
        scope=ref.scope,
        name=ref.name,
        url=ref.url,
        skill_name=ref.skill_name,
    )


def archive_stem(url: str) -> str:
    path = urlsplit(url).path if "://" in url else url
    last = path.rstrip("/").rsplit("/", 1)[-1]
    lowered = last.lower()
    for ext in ARCHIVE_EXTENSIONS:
        if lowered.endswith(ext):
            return last[: -len(ext)] or last
    return last


def split_fragment(value: str) -> tuple[str, str | None]:
    if "#" not in value:
        return value, None
    body, fragment = value.rsplit("#", 1)
    fragment = fragment.strip()
    if not fragment or "/" in fragment or not _NAME_RE.match(fragment):
        raise ReferenceSyntaxError(f"Invalid skill selector #{fragment} in {value!r}")
    return body, fragment


def _path_start(body: str) -> int:
    # Index where the repository path begins; any "@" before it belongs to
    # userinfo (git@host) rather than to a version suffix.
    if "://" in body:
        idx = body.index("://") + 3
        slash = body.find("/", idx)
        return slash if slash >= 0 else len(body)
    if _SCP_RE.match(body):
        return body.index(":")
    return 0


def split_version_suffix(body: str) -> tuple[str, str | None]:
    at = body.find("@", _path_start(body))
    if at < 0:
        return body, None
    version = body[at + 1 :].strip()
    if not version:
        raise ReferenceSyntaxError(f"Empty version after '@' in {body!r}")
    return body[:at], version


# --- predicates -----------------------------------------------------------


def is_registry_ref(raw: str) -> bool:
    ref = raw.strip()
    if not ref:
        return False
    if ref.startswith(("git@", "git://")):
        return False
    if ".git" in ref:
        return False
    if ref.startswith(ARCHIVE_SCHEMES):
        return False
    if _ALIAS_PREFIX_RE.match(ref):
        return False
    if ref.startswith("@"):
        return bool(_SCOPED_RE.match(ref))
    return bool(_PUBLIC_RE.match(ref))


def is_archive_ref(raw: str) -> bool:
    try:
        body, _ = split_fragment(raw.strip())
        body, _ = split_version_suffix(body)
    except ReferenceSyntaxError:
        return False
    if not body.startswith(ARCHIVE_SCHEMES):
        return False
    if body.endswith(".git") or ".git/" in body:
        return False
    if any(marker in body for marker in ("/tree/", "/blob/", "/raw/")):
        return False
    return True


# --- parsers --------------------------------------------------------------


def parse_registry_ref(raw: str) -> ParsedReference:
    ref = raw.strip()
    m = _SCOPED_RE.match(ref)
    if m:
        scope, name, version = m.group(1), m.group(2), m.group(3)
        return ParsedReference(
            source_kind=REGISTRY_SCOPED,
            raw=ref,
            version=parse_version_spec(version),
            scope=f"@{scope}",
            name=name,
        )
    m = _PUBLIC_RE.match(ref)
    if not m:
        raise ReferenceSyntaxError(f"Invalid registry reference: {raw!r}")
    return ParsedReference(
        source_kind=REGISTRY_PUBLIC,
        raw=ref,
        version=parse_version_spec(m.group(2)),
        name=m.group(1),
    )


def parse_archive_ref(raw: str) -> ParsedReference:
    ref = raw.strip()
    body, skill_name = split_fragment(ref)
    url, version = split_version_suffix(body)
    parts = urlsplit(url)
    if not parts.netloc or not parts.path.strip("/"):
        raise ReferenceSyntaxError(f"Archive URL must include a host and a path: {raw!r}")
    return ParsedReference(
        source_kind=HTTP_ARCHIVE,
        raw=ref,
        version=exact(version) if version else UNSPECIFIED,
        url=url,
        skill_name=skill_name,
    )


def _check_name(value: str, what: str, raw: str) -> str:
    if not value or not _NAME_RE.match(value) or value in (".", ".."):
        raise ReferenceSyntaxError(f"Invalid {what} {value!r} in reference {raw!r}")
    return value


def _join_sub_path(segments: list[str], raw: str) -> str | None:
    parts = [s for s in segments if s]
    for p in parts:
        if p in (".", ".."):
            raise ReferenceSyntaxError(f"Sub-path must not contain '.' or '..' segments: {raw!r}")
    return "/".join(parts) or None


def _decode_web_segments(rest: list[str], raw: str) -> tuple[str | None, str | None]:
    """
    Split the segments that follow ``owner/repo`` into (branch, sub_path).

    ``tree``/``blob``/``raw`` switch to web-URL decoding only when they are the
    first segment and a branch segment follows; otherwise every segment is a
    literal sub-path.
    """
    if len(rest) >= 2 and rest[0] in WEB_MARKERS and rest[1]:
        marker, ref_name, tail = rest[0], rest[1], list(rest[2:])
        if marker in ("blob", "raw") and tail and "." in tail[-1]:
            tail = tail[:-1]
        return ref_name, _join_sub_path(tail, raw)
    return None, _join_sub_path(rest, raw)


def _resolve_version(explicit: str | None, web_branch: str | None) -> VersionSpec:
    # An explicit "@version" always beats the branch named by a web URL.
    if explicit is not None:
        return parse_version_spec(explicit)
    if web_branch:
        return branch(web_branch)
    return UNSPECIFIED


def _strip_git_suffix(segments: list[str]) -> tuple[list[str], list[str]]:
    # "org/repo.git/skills/pdf" -> (["org", "repo"], ["skills", "pdf"])
    for i, seg in enumerate(segments):
        if seg.endswith(".git"):
            head = segments[:i] + [seg[: -len(".git")]]
            return head, segments[i + 1 :]
    return segments, []


def _parse_url_git(body: str, explicit: str | None, skill_name: str | None, raw: str) -> ParsedReference:
    parts = urlsplit(body)
    scheme = parts.scheme.lower()
    host = parts.hostname or ""
    if not host:
        raise ReferenceSyntaxError(f"Git URL must include a host: {raw!r}")
    segments = [s for s in parts.path.split("/") if s]
    if len(segments) < 2:
        raise ReferenceSyntaxError(f"Git URL must include owner and repository: {raw!r}")

    if scheme in ("ssh", "git", "git+ssh"):
        head, tail = _strip_git_suffix(segments)
        if len(head) < 2:
            raise ReferenceSyntaxError(f"Git URL must include owner and repository: {raw!r}")
        owner = "/".join(_check_name(s, "owner", raw) for s in head[:-1])
        repo = _check_name(head[-1], "repository", raw)
        return ParsedReference(
            source_kind=GIT_URL_SSH,
            raw=raw,
            version=_resolve_version(explicit, None),
            registry_alias=host,
            owner=owner,
            repository=repo,
            sub_path=_join_sub_path(tail, raw),
            url=f"{parts.scheme}://{parts.netloc}/{'/'.join(head)}.git",
            skill_name=skill_name,
        )

    if scheme not in ("http", "https"):
        raise ReferenceSyntaxError(f"Unsupported URL scheme {scheme!r} in reference {raw!r}")

    if any(s.endswith(".git") for s in segments):
        head, tail = _strip_git_suffix(segments)
        owner = "/".join(_check_name(s, "owner", raw) for s in head[:-1])
        repo = _check_name(head[-1], "repository", raw)
        return ParsedReference(
            source_kind=GIT_URL_HTTPS,
            raw=raw,
            version=_resolve_version(explicit, None),
            registry_alias=host,
            owner=owner,
            repository=repo,
            sub_path=_join_sub_path(tail, raw),
            url=f"{parts.scheme}://{parts.netloc}/{'/'.join(head)}.git",
            skill_name=skill_name,
        )

    # Web URL: tree/blob/raw follows owner/repo directly, or a "-" segment on
    # GitLab, where nested groups may come first.
    marker_at = None
    for i in range(2, len(segments)):
        if segments[i] in WEB_MARKERS and i + 1 < len(segments) and (i == 2 or segments[i - 1] == "-"):
            marker_at = i
            break
    if marker_at is None and any(s in WEB_MARKERS for s in segments[2:]):
        # A marker word deeper in the path is a directory name.
        repo_segments, rest = segments[:2], segments[2:]
    elif marker_at is None:
        repo_segments, rest = segments, []
    else:
        repo_segments, rest = segments[:marker_at], segments[marker_at:]
        if repo_segments and repo_segments[-1] == "-":
            repo_segments = repo_segments[:-1]
    if len(repo_segments) < 2:
        raise ReferenceSyntaxError(f"Git URL must include owner and repository: {raw!r}")
    owner = "/".join(_check_name(s, "owner", raw) for s in repo_segments[:-1])
    repo = _check_name(repo_segments[-1], "repository", raw)
    web_branch, sub_path = _decode_web_segments(rest, raw)
    return ParsedReference(
        source_kind=GIT_WEB_URL,
        raw=raw,
        version=_resolve_version(explicit, web_branch),
        registry_alias=host,
        owner=owner,
        repository=repo,
        sub_path=sub_path,
        url=f"{parts.scheme}://{parts.netloc}/{owner}/{repo}.git",
        skill_name=skill_name,
    )


def _parse_scp_git(body: str, explicit: str | None, skill_name: str | None, raw: str) -> ParsedReference:
    userhost, path = body.split(":", 1)
    host = userhost.split("@", 1)[1]
    segments = [s for s in path.split("/") if s]
    head, tail = _strip_git_suffix(segments)
    if len(head) < 2:
        raise ReferenceSyntaxError(f"Git SSH reference must include owner and repository: {raw!r}")
    owner = "/".join(_check_name(s, "owner", raw) for s in head[:-1])
    repo = _check_name(head[-1], "repository", raw)
    return ParsedReference(
        source_kind=GIT_URL_SSH,
        raw=raw,
        version=_resolve_version(explicit, None),
        registry_alias=host,
        owner=owner,
        repository=repo,
        sub_path=_join_sub_path(tail, raw),
        url=f"{userhost}:{'/'.join(head)}.git",
        skill_name=skill_name,
    )


def parse_git_ref(raw: str) -> ParsedReference:
    ref = raw.strip()
    body, skill_name = split_fragment(ref)
    body, explicit = split_version_suffix(body)

    if "://" in body:
        return _parse_url_git(body, explicit, skill_name, ref)
    if _SCP_RE.match(body):
        return _parse_scp_git(body, explicit, skill_name, ref)

    alias = DEFAULT_GIT_ALIAS
    m = _ALIAS_RE.match(body)
    if m:
        alias, body = m.group(1), m.group(2)

    segments = body.split("/")
    if len(segments) < 2 or not segments[0] or not segments[1]:
        raise ReferenceSyntaxError(
            f"Unrecognized skill reference {raw!r}. Expected owner/repo, alias:owner/repo, a Git URL, "
            "an archive URL or a registry name."
        )
    owner = _check_name(segments[0], "owner", ref)
    repo = segments[1]
    if repo.endswith(".git"):
        repo = repo[: -len(".git")]
    repo = _check_name(repo, "repository", ref)
    web_branch, sub_path = _decode_web_segments(segments[2:], ref)
    return ParsedReference(
        source_kind=GIT_SHORTHAND,
        raw=ref,
        version=_resolve_version(explicit, web_branch),
        registry_alias=alias,
        owner=owner,
        repository=repo,
        sub_path=sub_path,
        skill_name=skill_name,
    )


# Order matters: registry and archive syntaxes overlap with git shorthand and
# are tried first with their stricter exclusion rules. Anything else is git.
SOURCE_DISPATCH: tuple[tuple[str, Callable[[str], bool], Callable[[str], ParsedReference]], ...] = (
    ("registry", is_registry_ref, parse_registry_ref),
    ("archive", is_archive_ref, parse_archive_ref),
)


def source_family(raw: str) -> str:
    value = raw.strip()
    for family, accepts, _ in SOURCE_DISPATCH:
        if accepts(value):
            return family
    return "git"


def parse_reference(raw: str) -> ParsedReference:
    value = (raw or "").strip()
    if not value:
        raise ReferenceSyntaxError("Empty skill reference.")
    for _, accepts, parse in SOURCE_DISPATCH:
        if accepts(value):
            return parse(value)
    return parse_git_ref(value)
