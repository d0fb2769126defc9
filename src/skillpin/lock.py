from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .errors import SkillpinError
from .skill_files import write_json_atomic

logger = logging.getLogger(__name__)

LOCK_FILENAME = "skills.lock"
LOCKFILE_VERSION = 1


@dataclass(frozen=True)
class LockedSkill:
    name: str
    ref: str
    resolved_version: str
    commit: str
    installed_at: str
    integrity: str | None = None

    def to_json(self) -> dict[str, Any]:
        item: dict[str, Any] = {
            "ref": self.ref,
            "resolved_version": self.resolved_version,
            "commit": self.commit,
            "installed_at": self.installed_at,
        }
        if self.integrity:
            item["integrity"] = self.integrity
        return item


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_item(name: str, raw: Any) -> LockedSkill | None:
    if not isinstance(raw, dict):
        return None
    ref = raw.get("ref")
    version = raw.get("resolved_version")
    if not isinstance(ref, str) or not isinstance(version, str):
        return None
    commit = raw.get("commit") if isinstance(raw.get("commit"), str) else ""
    installed_at = raw.get("installed_at") if isinstance(raw.get("installed_at"), str) else ""
    integrity = raw.get("integrity") if isinstance(raw.get("integrity"), str) else None
    return LockedSkill(
        name=name,
        ref=ref,
        resolved_version=version,
        commit=commit,
        installed_at=installed_at,
        integrity=integrity,
    )


class LockStore:
    """
    Reads and writes ``skills.lock``.

    Each successful install records the reference as written by the user, the
    concrete version it resolved to and the commit (or content digest) that was
    cached. Entries are never written for installs where every target failed;
    the caller is responsible for that.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _load(self) -> dict[str, LockedSkill]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise SkillpinError(f"Lock file {self.path} is not valid JSON: {e}") from e
        if not isinstance(raw, dict):
            return {}
        version = raw.get("lockfileVersion", LOCKFILE_VERSION)
        if isinstance(version, int) and version > LOCKFILE_VERSION:
            logger.warning("%s has lockfileVersion %s; this skillpin understands %s", self.path, version, LOCKFILE_VERSION)
        skills = raw.get("skills")
        if not isinstance(skills, dict):
            return {}
        out: dict[str, LockedSkill] = {}
        for name, item in skills.items():
            if not isinstance(name, str):
                continue
            parsed = _parse_item(name, item)
            if parsed is None:
                logger.warning("Ignoring malformed lock entry %r in %s", name, self.path)
                continue
            out[name] = parsed
        return out

    def _save(self, entries: dict[str, LockedSkill]) -> None:
        payload = {
            "lockfileVersion": LOCKFILE_VERSION,
            "skills": {name: entries[name].to_json() for name in sorted(entries)},
        }
        write_json_atomic(self.path, payload)

    def exists(self) -> bool:
        return self.path.exists()

    def record(
        self,
        name: str,
        *,
        ref: str,
        resolved_version: str,
        commit: str,
        integrity: str | None = None,
    ) -> LockedSkill:
        entries = self._load()
        entry = LockedSkill(
            name=name,
            ref=ref,
            resolved_version=resolved_version,
            commit=commit,
            installed_at=_utc_now(),
            integrity=integrity,
        )
        entries[name] = entry
        self._save(entries)
        logger.debug("Locked %s at %s (%s)", name, resolved_version, commit[:12])
        return entry

    def get(self, name: str) -> LockedSkill | None:
        return self._load().get(name)

    def has(self, name: str) -> bool:
        return name in self._load()

    def all(self) -> dict[str, LockedSkill]:
        return self._load()

    def remove(self, name: str) -> bool:
        entries = self._load()
        if name not in entries:
            return False
        del entries[name]
        self._save(entries)
        return True

    def matches(self, name: str, ref: str, resolved_version: str) -> bool:
        entry = self.get(name)
        return entry is not None and entry.ref == ref and entry.resolved_version == resolved_version
