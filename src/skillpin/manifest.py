from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .errors import SkillpinError
from .installer import INSTALL_MODES, SYMLINK
from .skill_files import write_json_atomic

MANIFEST_FILENAME = "skills.json"


@dataclass(frozen=True)
class ManifestDefaults:
    target_agents: tuple[str, ...] = ()
    install_mode: str = SYMLINK
    registry: str | None = None


@dataclass
class Manifest:
    skills: dict[str, str] = field(default_factory=dict)
    defaults: ManifestDefaults = field(default_factory=ManifestDefaults)
    registries: dict[str, str] = field(default_factory=dict)


def _str_map(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    return {k: v for k, v in raw.items() if isinstance(k, str) and isinstance(v, str)}


def _parse_defaults(raw: Any) -> ManifestDefaults:
    if not isinstance(raw, dict):
        return ManifestDefaults()
    agents = raw.get("targetAgents")
    target_agents = tuple(a for a in agents if isinstance(a, str)) if isinstance(agents, list) else ()
    mode = raw.get("installMode")
    if mode not in INSTALL_MODES:
        mode = SYMLINK
    registry = raw.get("registry") if isinstance(raw.get("registry"), str) else None
    return ManifestDefaults(target_agents=target_agents, install_mode=mode, registry=registry)


class ProjectManifest:
    """``skills.json``: the project's declared skills, install defaults and registries."""

    def __init__(self, project_root: str | Path | None = None) -> None:
        self.project_root = Path(project_root) if project_root else Path.cwd()
        self.path = self.project_root / MANIFEST_FILENAME

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Manifest:
        if not self.path.exists():
            return Manifest()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise SkillpinError(f"{self.path} is not valid JSON: {e}") from e
        if not isinstance(raw, dict):
            raise SkillpinError(f"{self.path} must contain a JSON object")
        return Manifest(
            skills=_str_map(raw.get("skills")),
            defaults=_parse_defaults(raw.get("defaults")),
            registries=_str_map(raw.get("registries")),
        )

    def save(self, manifest: Manifest) -> None:
        defaults: dict[str, Any] = {"installMode": manifest.defaults.install_mode}
        if manifest.defaults.target_agents:
            defaults["targetAgents"] = list(manifest.defaults.target_agents)
        if manifest.defaults.registry:
            defaults["registry"] = manifest.defaults.registry
        payload: dict[str, Any] = {
            "skills": {k: manifest.skills[k] for k in sorted(manifest.skills)},
            "defaults": defaults,
        }
        if manifest.registries:
            payload["registries"] = dict(manifest.registries)
        write_json_atomic(self.path, payload)

    def add_skill(self, name: str, ref: str) -> None:
        manifest = self.load()
        manifest.skills[name] = ref
        self.save(manifest)

    def remove_skill(self, name: str) -> bool:
        manifest = self.load()
        if name not in manifest.skills:
            return False
        del manifest.skills[name]
        self.save(manifest)
        return True

    def get_skills(self) -> dict[str, str]:
        return self.load().skills

    def get_defaults(self) -> ManifestDefaults:
        return self.load().defaults

    def update_defaults(
        self,
        *,
        target_agents: list[str] | None = None,
        install_mode: str | None = None,
        registry: str | None = None,
    ) -> ManifestDefaults:
        if install_mode is not None and install_mode not in INSTALL_MODES:
            raise SkillpinError(f"Invalid install mode {install_mode!r}. Expected one of: {', '.join(INSTALL_MODES)}")
        manifest = self.load()
        defaults = manifest.defaults
        if target_agents is not None:
            defaults = replace(defaults, target_agents=tuple(target_agents))
        if install_mode is not None:
            defaults = replace(defaults, install_mode=install_mode)
        if registry is not None:
            defaults = replace(defaults, registry=registry or None)
        manifest.defaults = defaults
        self.save(manifest)
        return defaults

    def registries(self) -> dict[str, str]:
        return self.load().registries
