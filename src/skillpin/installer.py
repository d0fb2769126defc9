from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from .agents import agent_skills_dir
from .errors import ConflictError, SkillpinError
from .skill_files import INSTALL_MARKER, copy_skill_tree, remove_path

logger = logging.getLogger(__name__)

SYMLINK = "symlink"
COPY = "copy"
INSTALL_MODES = (SYMLINK, COPY)

AGENTS_DIR = ".agents"
SKILLS_SUBDIR = "skills"


@dataclass(frozen=True)
class InstallResult:
    success: bool
    path: Path
    mode: str
    canonical_path: Path | None = None
    symlink_failed: bool = False
    already_installed: bool = False
    error: str | None = None
    conflict: bool = False


def _same_path(a: Path, b: Path) -> bool:
    try:
        return a.resolve() == b.resolve()
    except OSError:
        return False


def _exists(path: Path) -> bool:
    return path.exists() or path.is_symlink()


class Installer:
    """
    Materializes a cached skill into agent skills directories.

    Every skill is stored once under ``.agents/skills/<name>`` (or the same path
    under the home directory for global installs). In symlink mode each agent
    directory links to that canonical copy; in copy mode each agent gets its
    own independent copy.
    """

    def __init__(self, cwd: str | Path | None = None, *, global_: bool = False, home: str | Path | None = None) -> None:
        self.cwd = Path(cwd) if cwd else Path.cwd()
        self.home = Path(home) if home else Path.home()
        self.global_ = global_

    @property
    def canonical_dir(self) -> Path:
        base = self.home if self.global_ else self.cwd
        return base / AGENTS_DIR / SKILLS_SUBDIR

    def canonical_path(self, skill_name: str) -> Path:
        return self.canonical_dir / _check_skill_name(skill_name)

    def agent_dir(self, agent: str) -> Path:
        return agent_skills_dir(agent, global_=self.global_, cwd=self.cwd, home=self.home)

    def agent_path(self, skill_name: str, agent: str) -> Path:
        return self.agent_dir(agent) / _check_skill_name(skill_name)

    def is_managed(self, dest: Path, canonical: Path) -> bool:
        return dest.is_symlink() and _same_path(dest, canonical)

    def owns(self, path: Path) -> bool:
        """True for a canonical copy skillpin wrote itself."""
        return path.is_dir() and not path.is_symlink() and (path / INSTALL_MARKER).is_file()

    def _check_canonical(self, canonical: Path, *, force: bool) -> None:
        if not _exists(canonical) or self.owns(canonical) or force:
            return
        raise ConflictError(f"{canonical} already exists and is not managed by skillpin. Use --force to replace it.")

    def _check_destination(self, dest: Path, canonical: Path | None, *, force: bool) -> None:
        if not _exists(dest) or force:
            return
        if canonical is not None and self.is_managed(dest, canonical):
            return
        raise ConflictError(f"{dest} already exists and is not managed by skillpin. Use --force to replace it.")

    def _prepare_destination(self, dest: Path, canonical: Path | None, *, force: bool) -> None:
        if not _exists(dest):
            return
        self._check_destination(dest, canonical, force=force)
        if not (canonical is not None and self.is_managed(dest, canonical)):
            logger.info("Replacing existing %s (--force)", dest)
        remove_path(dest)

    def check_target(self, skill_name: str, agent: str, *, force: bool = False, lock_match: bool = False) -> None:
        """
        Raise ConflictError if a symlink install for ``agent`` would replace files
        skillpin does not own. Nothing is written.
        """
        dest = self.agent_path(skill_name, agent)
        canonical = self.canonical_path(skill_name)
        if lock_match and _exists(dest):
            return
        if _same_path(dest, canonical) and not dest.is_symlink():
            self._check_canonical(canonical, force=force)
            return
        self._check_destination(dest, canonical, force=force)

    def _write_canonical(self, source: Path, skill_name: str, *, reuse: bool, force: bool = False) -> Path:
        canonical = self.canonical_path(skill_name)
        if reuse and self.owns(canonical):
            return canonical
        self._check_canonical(canonical, force=force)
        if _exists(canonical):
            if not self.owns(canonical):
                logger.info("Replacing existing %s (--force)", canonical)
            remove_path(canonical)
        copy_skill_tree(source, canonical)
        (canonical / INSTALL_MARKER).write_text(skill_name + "\n", encoding="utf-8")
        return canonical

    def _link(self, canonical: Path, dest: Path) -> bool:
        """Symlink ``dest`` -> ``canonical``; returns False when the platform refuses."""
        dest.parent.mkdir(parents=True, exist_ok=True)
        target = os.path.relpath(canonical, dest.parent)
        try:
            os.symlink(target, dest, target_is_directory=True)
        except (OSError, NotImplementedError) as e:
            logger.warning("Symlink %s -> %s failed (%s); copying instead", dest, canonical, e)
            return False
        return True

    def _failure(self, skill_name: str, agent: str, mode: str, error: Exception, canonical: Path | None = None) -> InstallResult:
        return InstallResult(
            success=False,
            path=self.agent_path(skill_name, agent),
            mode=mode,
            canonical_path=canonical,
            error=str(error),
            conflict=isinstance(error, ConflictError),
        )

    def install_for_agent(
        self,
        source: Path,
        skill_name: str,
        agent: str,
        *,
        mode: str = SYMLINK,
        force: bool = False,
        lock_match: bool = False,
        canonical: Path | None = None,
    ) -> InstallResult:
        if mode not in INSTALL_MODES:
            raise SkillpinError(f"Invalid install mode {mode!r}. Expected one of: {', '.join(INSTALL_MODES)}")
        dest = self.agent_path(skill_name, agent)

        if lock_match and _exists(dest):
            logger.debug("%s already installed for %s", skill_name, agent)
            return InstallResult(
                success=True,
                path=dest,
                mode=mode,
                canonical_path=canonical,
                already_installed=True,
            )

        if mode == COPY:
            self._prepare_destination(dest, None, force=force)
            copy_skill_tree(source, dest)
            return InstallResult(success=True, path=dest, mode=COPY)

        if canonical is None:
            self.check_target(skill_name, agent, force=force)
            canonical = self._write_canonical(source, skill_name, reuse=False, force=force)
        if _same_path(dest, canonical) and not dest.is_symlink():
            # The agent reads the canonical directory itself.
            return InstallResult(success=True, path=dest, mode=SYMLINK, canonical_path=canonical)

        self._prepare_destination(dest, canonical, force=force)
        if self._link(canonical, dest):
            return InstallResult(success=True, path=dest, mode=SYMLINK, canonical_path=canonical)
        copy_skill_tree(canonical, dest)
        return InstallResult(success=True, path=dest, mode=SYMLINK, canonical_path=canonical, symlink_failed=True)

    def install_to_agents(
        self,
        source: Path,
        skill_name: str,
        agents: Iterable[str],
        *,
        mode: str = SYMLINK,
        force: bool = False,
        lock_match: bool = False,
    ) -> dict[str, InstallResult]:
        """
        Install into every agent; one target failing never stops the others.

        In symlink mode every destination is checked before the canonical copy
        is touched, so a call where all targets conflict leaves the previous
        install exactly as it was.
        """
        results: dict[str, InstallResult] = {}
        targets = list(dict.fromkeys(agents))
        ready = targets
        canonical: Path | None = None
        if mode == SYMLINK:
            ready = []
            for agent in targets:
                try:
                    self.check_target(skill_name, agent, force=force, lock_match=lock_match)
                except ConflictError as e:
                    results[agent] = self._failure(skill_name, agent, mode, e)
                else:
                    ready.append(agent)
            if not ready:
                return results
            try:
                canonical = self._write_canonical(source, skill_name, reuse=lock_match, force=force)
            except ConflictError as e:
                for agent in ready:
                    results[agent] = self._failure(skill_name, agent, mode, e)
                return {a: results[a] for a in targets}
            except OSError as e:
                error = SkillpinError(f"Could not write {self.canonical_path(skill_name)}: {e}")
                for agent in ready:
                    results[agent] = self._failure(skill_name, agent, mode, error)
                return {a: results[a] for a in targets}

        for agent in ready:
            try:
                results[agent] = self.install_for_agent(
                    source,
                    skill_name,
                    agent,
                    mode=mode,
                    force=force,
                    lock_match=lock_match,
                    canonical=canonical,
                )
            except (SkillpinError, OSError) as e:
                results[agent] = self._failure(skill_name, agent, mode, e, canonical)
        return {a: results[a] for a in targets}

    def installed_agents(self, skill_name: str, agents: Iterable[str]) -> list[str]:
        return [a for a in agents if _exists(self.agent_path(skill_name, a))]

    def is_installed(self, skill_name: str) -> bool:
        return self.owns(self.canonical_path(skill_name))

    def list_installed(self) -> list[str]:
        root = self.canonical_dir
        if not root.is_dir():
            return []
        return sorted(p.name for p in root.iterdir() if not p.name.startswith(".") and self.owns(p))

    def uninstall(self, skill_name: str, agents: Iterable[str]) -> list[Path]:
        removed: list[Path] = []
        canonical = self.canonical_path(skill_name)
        for agent in agents:
            dest = self.agent_path(skill_name, agent)
            if _exists(dest) and not (_same_path(dest, canonical) and not dest.is_symlink()):
                remove_path(dest)
                removed.append(dest)
        if self.owns(canonical):
            remove_path(canonical)
            removed.append(canonical)
        return removed


def _check_skill_name(name: str) -> str:
    if not name or name in (".", "..") or "/" in name or "\\" in name or "\0" in name:
        raise SkillpinError(f"Invalid skill name {name!r}")
    return name
