from __future__ import annotations

import base64
import hashlib
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote, urlsplit, urlunsplit

import httpx

from ._version import __version__
from .config import DEFAULT_TIMEOUT_S
from .errors import NetworkError, RegistryHTTPError, SkillpinError, VersionNotFoundError
from .versions import max_satisfying, sort_versions

logger = logging.getLogger(__name__)

API_PREFIX = "/api"
INTEGRITY_HEADER = "x-integrity"


@dataclass(frozen=True)
class RegistryRelease:
    name: str
    version: str
    integrity: str | None = None
    tarball_url: str | None = None


def calculate_integrity(data: bytes) -> str:
    digest = hashlib.sha256(data).digest()
    return "sha256-" + base64.b64encode(digest).decode("ascii")


def verify_integrity(data: bytes, integrity: str) -> bool:
    algo, _, expected = integrity.strip().partition("-")
    algo = algo.lower()
    if algo not in ("sha256", "sha384", "sha512") or not expected:
        return False
    actual = base64.b64encode(hashlib.new(algo, data).digest()).decode("ascii")
    return actual == expected


def _origin(url: str) -> str | None:
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return urlunsplit((parts.scheme, parts.netloc, "", "", "")).rstrip("/")


def _unwrap_success_envelope(obj: Any) -> Any:
    if not isinstance(obj, dict):
        return obj
    if obj.get("success") is True and "data" in obj:
        return obj["data"]
    if obj.get("success") is False and "error" in obj:
        raise SkillpinError(f"Registry error: {obj.get('error')}")
    return obj


class RegistryClient:
    """
    Client for an npm-style skill registry.

    Metadata lives at ``{registry}/api/skills/{name}`` and carries ``dist-tags``
    and a ``versions`` map whose entries may declare ``integrity`` and a
    ``tarball`` URL. The bearer token is only sent to the registry's own origin.
    """

    def __init__(
        self,
        registry_url: str,
        *,
        token: str | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        http: httpx.Client | None = None,
    ) -> None:
        self.registry_url = registry_url.rstrip("/")
        self.token = token
        self.timeout_s = timeout_s
        self._http = http or httpx.Client(
            timeout=timeout_s,
            follow_redirects=True,
            headers={"user-agent": f"skillpin/{__version__}"},
        )
        self._metadata_cache: dict[str, dict[str, Any]] = {}

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "RegistryClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        if not path.startswith("/"):
            path = "/" + path
        return f"{self.registry_url}{path}"

    def _auth_for_url(self, url: str) -> bool:
        if not self.token:
            return False
        return _origin(url) == _origin(self.registry_url)

    def request(self, method: str, path: str, *, params: dict[str, Any] | None = None) -> httpx.Response:
        url = self._url(path)
        headers: dict[str, str] = {}
        if self._auth_for_url(url):
            headers["Authorization"] = f"Bearer {self.token}"
        logger.debug("%s %s", method.upper(), url)
        try:
            resp = self._http.request(method.upper(), url, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise NetworkError(f"Request to {url} failed: {e}") from e
        if resp.status_code >= 400:
            raise RegistryHTTPError(resp.status_code, resp.text)
        return resp

    def skill_path(self, name: str) -> str:
        return f"{API_PREFIX}/skills/{quote(name, safe='')}"

    def get_metadata(self, name: str) -> dict[str, Any]:
        if name in self._metadata_cache:
            return self._metadata_cache[name]
        try:
            resp = self.request("GET", self.skill_path(name))
        except RegistryHTTPError as e:
            if e.status_code == 404:
                raise VersionNotFoundError(f"Skill {name} not found on registry {self.registry_url}") from e
            raise
        try:
            data = _unwrap_success_envelope(resp.json())
        except ValueError as e:
            raise NetworkError(f"Registry {self.registry_url} returned invalid JSON for {name}") from e
        if not isinstance(data, dict):
            raise NetworkError(f"Registry {self.registry_url} returned unexpected metadata for {name}")
        self._metadata_cache[name] = data
        return data

    def list_versions(self, name: str) -> list[str]:
        versions = self.get_metadata(name).get("versions")
        if isinstance(versions, dict):
            return sort_versions([v for v in versions if isinstance(v, str)], reverse=True)
        if isinstance(versions, list):
            out: list[str] = []
            for item in versions:
                if isinstance(item, str):
                    out.append(item)
                elif isinstance(item, dict) and isinstance(item.get("version"), str):
                    out.append(item["version"])
            return sort_versions(out, reverse=True)
        return []

    def _version_entry(self, name: str, version: str) -> dict[str, Any]:
        versions = self.get_metadata(name).get("versions")
        if isinstance(versions, dict) and isinstance(versions.get(version), dict):
            return versions[version]
        if isinstance(versions, list):
            for item in versions:
                if isinstance(item, dict) and item.get("version") == version:
                    return item
        return {}

    def resolve_version(self, name: str, spec: str | None) -> str:
        """
        Turn a tag alias (``latest``, ``beta``), a range or an exact version into
        a concrete version published on the registry.
        """
        meta = self.get_metadata(name)
        tags = meta.get("dist-tags") if isinstance(meta.get("dist-tags"), dict) else {}
        wanted = (spec or "latest").strip()
        if wanted in tags and isinstance(tags[wanted], str):
            return tags[wanted]

        versions = self.list_versions(name)
        if wanted == "latest":
            best = max_satisfying(versions)
            if best:
                return best
            raise VersionNotFoundError(f"No published versions for {name} on {self.registry_url}")
        if wanted.startswith(("^", "~")):
            best = max_satisfying(versions, wanted)
            if best:
                return best
            raise VersionNotFoundError(f"No version of {name} satisfies {wanted} (available: {', '.join(versions) or 'none'})")
        if wanted in versions:
            return wanted
        raise VersionNotFoundError(f"Version {wanted} of {name} not found on {self.registry_url}")

    def release(self, name: str, version: str) -> RegistryRelease:
        entry = self._version_entry(name, version)
        integrity = entry.get("integrity")
        if not isinstance(integrity, str):
            dist = entry.get("dist") if isinstance(entry.get("dist"), dict) else {}
            integrity = dist.get("integrity") if isinstance(dist.get("integrity"), str) else None
        tarball = entry.get("tarball")
        if not isinstance(tarball, str):
            dist = entry.get("dist") if isinstance(entry.get("dist"), dict) else {}
            tarball = dist.get("tarball") if isinstance(dist.get("tarball"), str) else None
        return RegistryRelease(name=name, version=version, integrity=integrity, tarball_url=tarball)

    def download(self, release: RegistryRelease) -> tuple[bytes, str | None]:
        path = release.tarball_url or f"{self.skill_path(release.name)}/versions/{quote(release.version, safe='')}/download"
        resp = self.request("GET", path)
        integrity = release.integrity or resp.headers.get(INTEGRITY_HEADER)
        return resp.content, integrity


def download_bytes(url: str, *, timeout_s: float = DEFAULT_TIMEOUT_S, http: httpx.Client | None = None) -> bytes:
    client = http or httpx.Client(timeout=timeout_s, follow_redirects=True)
    try:
        resp = client.get(url)
    except httpx.HTTPError as e:
        raise NetworkError(f"Download of {url} failed: {e}") from e
    finally:
        if http is None:
            client.close()
    if resp.status_code >= 400:
        raise NetworkError(f"Download of {url} failed: HTTP {resp.status_code}")
    return resp.content
