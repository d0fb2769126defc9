from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from .agents import all_agent_types, detect_installed_agents, get_agent
from .cache import CachedSkill, CacheEntry, CacheStore, pseudo_commit
from .client import RegistryRelease
from .config import DEFAULT_TIMEOUT_S
from .errors import ConflictError, SkillNotFoundError, SkillpinError
from .installer import INSTALL_MODES, SYMLINK, Installer, InstallResult
from .lock import LOCK_FILENAME, LockedSkill, LockStore
from .manifest import ManifestDefaults, ProjectManifest
from .refs import ParsedReference, exact, parse_reference, with_skill_name, with_version
from .resolver import GitResolver, RegistryResolver
from .skill_files import SKILL_FILENAME, discover_skills, select_skill

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolution:
    version: str
    clone_ref: str | None = None
    commit: str = ""
    mutable: bool = False
    release: RegistryRelease | None = None
    integrity: str | None = None


@dataclass(frozen=True)
class InstallOutcome:
    skill: str
    ref: str
    version: str
    commit: str
    results: dict[str, InstallResult] = field(default_factory=dict)
    up_to_date: bool = False

    @property
    def ok(self) -> bool:
        return any(r.success for r in self.results.values())

    @property
    def symlink_fallbacks(self) -> list[str]:
        return [agent for agent, r in self.results.items() if r.symlink_failed]

    @property
    def failed_targets(self) -> dict[str, str]:
        return {agent: r.error or "unknown error" for agent, r in self.results.items() if not r.success}


@dataclass(frozen=True)
class InstallFailure:
    ref: str
    error: Exception


@dataclass
class BatchReport:
    successes: list[InstallOutcome] = field(default_factory=list)
    failures: list[InstallFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class SkillManager:
    """
    Drives a reference through parse, resolve, cache, install and lock.

    The cache, lock store, installer and resolvers are injectable so that
    callers (and tests) can swap in isolated instances.
    """

    def __init__(
        self,
        project_root: str | Path | None = None,
        *,
        cache: CacheStore | None = None,
        lock: LockStore | None = None,
        installer: Installer | None = None,
        manifest: ProjectManifest | None = None,
        registry_url: str | None = None,
        default_registry_url: str | None = None,
        token: str | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        git_resolver: GitResolver | None = None,
        registry_resolver: RegistryResolver | None = None,
        global_: bool = False,
        home: str | Path | None = None,
    ) -> None:
        self.project_root = Path(project_root) if project_root else Path.cwd()
        self.home = Path(home) if home else Path.home()
        self.global_ = global_
        self.manifest = manifest or ProjectManifest(self.project_root)
        self.cache = cache or CacheStore(timeout_s=timeout_s)
        self.installer = installer or Installer(self.project_root, global_=global_, home=self.home)
        if lock is None:
            lock_dir = self.installer.canonical_dir.parent if global_ else self.project_root
            lock = LockStore(lock_dir / LOCK_FILENAME)
        self.lock = lock

        manifest_data = self.manifest.load()
        registries = manifest_data.registries
        self.defaults: ManifestDefaults = manifest_data.defaults
        self.git_resolver = git_resolver or GitResolver(registries)
        self.registry_resolver = registry_resolver or RegistryResolver(
            registries=registries,
            override_url=registry_url,
            default_url=default_registry_url or self.defaults.registry,
            token=token,
            timeout_s=timeout_s,
        )

    def close(self) -> None:
        self.registry_resolver.close()

    def __enter__(self) -> "SkillManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --- options ----------------------------------------------------------

    def target_agents(self, agents: Iterable[str] | None = None) -> list[str]:
        chosen = list(agents or ()) or list(self.defaults.target_agents)
        if not chosen:
            chosen = detect_installed_agents(self.project_root, self.home)
        if not chosen:
            raise SkillpinError("No target agents found. Pass one or more with --agent (e.g. -a claude-code).")
        for name in chosen:
            get_agent(name)
        return list(dict.fromkeys(chosen))

    def install_mode(self, mode: str | None = None) -> str:
        chosen = mode or self.defaults.install_mode or SYMLINK
        if chosen not in INSTALL_MODES:
            raise SkillpinError(f"Invalid install mode {chosen!r}. Expected one of: {', '.join(INSTALL_MODES)}")
        return chosen

    # --- pipeline stages --------------------------------------------------

    def resolve(self, ref: ParsedReference) -> Resolution:
        if ref.is_registry:
            release = self.registry_resolver.resolve(ref)
            return Resolution(version=release.version, release=release, integrity=release.integrity)
        if ref.is_archive:
            version = ref.version.value if ref.version.kind == "exact" and ref.version.value else "latest"
            return Resolution(version=version, commit=pseudo_commit(str(ref.url), version))
        resolved = self.git_resolver.resolve(ref)
        commit = resolved.commit
        if resolved.mutable and not commit:
            # A cached branch head is only reused while it matches the remote.
            commit = self.git_resolver.remote_commit(ref, resolved.clone_ref)
        return Resolution(
            version=resolved.version,
            clone_ref=resolved.clone_ref,
            commit=commit,
            mutable=resolved.mutable,
        )

    def _resolution_from_lock(self, ref: ParsedReference, locked: LockedSkill) -> Resolution:
        # Locked versions are used verbatim; latest and ranges are not re-resolved.
        if ref.is_registry or ref.is_archive:
            return Resolution(version=locked.resolved_version, commit=locked.commit, integrity=locked.integrity)
        return Resolution(
            version=locked.resolved_version,
            clone_ref=locked.commit or locked.resolved_version,
            commit=locked.commit,
        )

    def _remote_commit(self, ref: ParsedReference, res: Resolution) -> str:
        if res.commit:
            return res.commit
        if ref.is_git and res.clone_ref:
            return self.git_resolver.remote_commit(ref, res.clone_ref)
        return ""

    def _fetch(self, ref: ParsedReference, res: Resolution, *, force: bool = False) -> CacheEntry:
        hit = self.cache.get(ref, res.version)
        refresh = force or (hit is not None and bool(res.commit) and ref.is_git and hit.commit != res.commit)
        if refresh and hit is not None:
            logger.info("Refreshing cached %s@%s", ref.full_name, res.version)

        def fetcher() -> CacheEntry:
            if ref.is_registry:
                release = res.release or self.registry_resolver.resolve(with_version(ref, exact(res.version)))
                data, served = self.registry_resolver.download(ref, release)
                return self.cache.cache_from_tarball(data, ref, res.version, res.integrity or served)
            if ref.is_archive:
                return self.cache.cache_from_http(str(ref.url), ref, res.version)
            return self.cache.cache_from_git(self.git_resolver.repo_url(ref), ref, res.version, res.clone_ref)

        return self.cache.get_or_fetch(ref, res.version, fetcher, refresh=refresh)

    def select_source(self, ref: ParsedReference, root: Path) -> tuple[str, Path]:
        """Pick the skill directory inside a cached tree and the name to install it under."""
        if ref.skill_name:
            found = select_skill(root, ref.skill_name)
            if found is None:
                available = ", ".join(s.name for s in discover_skills(root)) or "none"
                raise SkillNotFoundError(f"Skill {ref.skill_name!r} not found in {ref.raw} (available: {available})")
            return ref.skill_name, found.path
        if (root / SKILL_FILENAME).is_file():
            return ref.short_name, root
        skills = discover_skills(root)
        if len(skills) == 1:
            return ref.short_name, skills[0].path
        if not skills:
            raise SkillNotFoundError(f"No {SKILL_FILENAME} found in {ref.raw}")
        names = ", ".join(s.name for s in skills)
        raise SkillNotFoundError(
            f"{ref.raw} contains {len(skills)} skills ({names}). Select one with {ref.raw}#<name>."
        )

    def _installed_source(self, name: str, agents: list[str], mode: str) -> Path | None:
        if mode == SYMLINK:
            canonical = self.installer.canonical_path(name)
            return canonical if self.installer.owns(canonical) else None
        paths = [self.installer.agent_path(name, a) for a in agents]
        if paths and all(p.exists() for p in paths):
            return paths[0]
        return None

    def _ensure_installed(self, outcome_name: str, results: dict[str, InstallResult], raw: str) -> None:
        if any(r.success for r in results.values()):
            return
        errors = "; ".join(f"{agent}: {r.error}" for agent, r in results.items())
        if any(r.conflict for r in results.values()):
            raise ConflictError(f"Could not install {raw} as {outcome_name}: {errors}")
        raise SkillpinError(f"Could not install {raw} as {outcome_name}: {errors}")

    def _run(
        self,
        ref: ParsedReference,
        res: Resolution,
        *,
        agents: list[str],
        mode: str,
        force: bool,
        locked: LockedSkill | None,
        pinned: bool = False,
    ) -> InstallOutcome:
        raw = ref.persisted_ref
        name = ref.skill_name or ref.short_name
        same_lock = locked is not None and locked.ref == raw and locked.resolved_version == res.version

        if same_lock and not force and locked is not None:
            present = self._installed_source(name, agents, mode)
            if present is not None:
                current = locked.commit if pinned else self._remote_commit(ref, res)
                if ref.is_registry or (current and current == locked.commit):
                    logger.info("%s is up to date (%s)", name, res.version)
                    results = self.installer.install_to_agents(present, name, agents, mode=mode, lock_match=True)
                    self._ensure_installed(name, results, raw)
                    return InstallOutcome(
                        skill=name,
                        ref=raw,
                        version=res.version,
                        commit=locked.commit,
                        results=results,
                        up_to_date=True,
                    )
                if current:
                    res = Resolution(
                        version=res.version,
                        clone_ref=res.clone_ref,
                        commit=current,
                        mutable=res.mutable,
                        release=res.release,
                        integrity=res.integrity,
                    )

        entry = self._fetch(ref, res, force=force)
        name, source = self.select_source(ref, entry.path)
        lock_match = same_lock and not force and locked is not None and (not entry.commit or entry.commit == locked.commit)
        results = self.installer.install_to_agents(source, name, agents, mode=mode, force=force, lock_match=lock_match)
        self._ensure_installed(name, results, raw)

        commit = entry.commit or res.commit
        self.lock.record(name, ref=raw, resolved_version=res.version, commit=commit, integrity=res.integrity)
        for agent, result in results.items():
            if result.symlink_failed:
                logger.warning("Symlink not supported for %s; copied %s instead", agent, name)
            elif not result.success:
                logger.warning("Install of %s for %s failed: %s", name, agent, result.error)
        return InstallOutcome(skill=name, ref=raw, version=res.version, commit=commit, results=results)

    # --- public API -------------------------------------------------------

    def install_one(
        self,
        raw: str,
        *,
        agents: Iterable[str] | None = None,
        mode: str | None = None,
        force: bool = False,
        save: bool = True,
    ) -> InstallOutcome:
        ref = parse_reference(raw)
        target_agents = self.target_agents(agents)
        install_mode = self.install_mode(mode)
        res = self.resolve(ref)
        name = ref.skill_name or ref.short_name
        outcome = self._run(
            ref,
            res,
            agents=target_agents,
            mode=install_mode,
            force=force,
            locked=self.lock.get(name),
        )
        if save and not self.global_:
            self.manifest.add_skill(outcome.skill, ref.persisted_ref)
            self.defaults = self.manifest.update_defaults(target_agents=target_agents, install_mode=install_mode)
        return outcome

    resolve_and_install = install_one

    def install_many(
        self,
        raws: Iterable[str],
        *,
        agents: Iterable[str] | None = None,
        mode: str | None = None,
        force: bool = False,
        save: bool = True,
    ) -> BatchReport:
        report = BatchReport()
        agent_list = list(agents) if agents is not None else None
        for raw in raws:
            try:
                report.successes.append(self.install_one(raw, agents=agent_list, mode=mode, force=force, save=save))
            except (SkillpinError, OSError) as e:
                logger.error("Failed to install %s: %s", raw, e)
                report.failures.append(InstallFailure(ref=raw, error=e))
        return report

    def _install_locked(self, locked: LockedSkill, *, agents: list[str], mode: str, force: bool) -> InstallOutcome:
        ref = parse_reference(locked.ref)
        if ref.skill_name is None and locked.name != ref.short_name:
            ref = with_skill_name(ref, locked.name)
        res = self._resolution_from_lock(ref, locked)
        return self._run(ref, res, agents=agents, mode=mode, force=force, locked=locked, pinned=True)

    def reinstall_all(
        self,
        *,
        agents: Iterable[str] | None = None,
        mode: str | None = None,
        force: bool = False,
    ) -> BatchReport:
        """Install everything from the lock file, then manifest skills that were never locked."""
        report = BatchReport()
        target_agents = self.target_agents(agents)
        install_mode = self.install_mode(mode)
        locked = self.lock.all()
        for name, entry in locked.items():
            try:
                report.successes.append(self._install_locked(entry, agents=target_agents, mode=install_mode, force=force))
            except (SkillpinError, OSError) as e:
                logger.error("Failed to reinstall %s: %s", name, e)
                report.failures.append(InstallFailure(ref=entry.ref, error=e))

        unlocked = [ref for name, ref in self.manifest.get_skills().items() if name not in locked]
        more = self.install_many(unlocked, agents=target_agents, mode=install_mode, force=force, save=False)
        report.successes.extend(more.successes)
        report.failures.extend(more.failures)
        return report

    def check_needs_update(self, name: str) -> bool:
        """
        True when the remote has moved past the locked commit (or, for registry
        skills, when the requested tag or range now resolves to another version).
        """
        locked = self.lock.get(name)
        if locked is None:
            raise SkillNotFoundError(f"{name} is not in {self.lock.path}")
        ref = parse_reference(locked.ref)
        res = self.resolve(ref)
        if ref.is_registry or ref.is_archive:
            return res.version != locked.resolved_version
        current = self._remote_commit(ref, res)
        if not current:
            logger.warning("Could not determine the remote commit for %s", locked.ref)
            return True
        return current != locked.commit

    def outdated(self) -> dict[str, bool]:
        out: dict[str, bool] = {}
        for name in self.lock.all():
            out[name] = self.check_needs_update(name)
        return out

    def uninstall(self, name: str, agents: Iterable[str] | None = None) -> list[Path]:
        removed = self.installer.uninstall(name, list(agents or ()) or all_agent_types())
        locked = self.lock.remove(name)
        saved = self.manifest.remove_skill(name) if not self.global_ and self.manifest.exists() else False
        if not (removed or locked or saved):
            raise SkillNotFoundError(f"{name} is not installed")
        return removed

    def list_installed(self) -> dict[str, LockedSkill | None]:
        locked = self.lock.all()
        names = set(self.installer.list_installed()) | set(locked)
        return {name: locked.get(name) for name in sorted(names)}

    def list_cached(self) -> list[CachedSkill]:
        return self.cache.list_cached()

    def clear_cache(self, raw: str | None = None) -> None:
        if raw is None:
            self.cache.clear_all()
            return
        ref = parse_reference(raw)
        version = ref.version.value if ref.version.kind in ("exact", "branch", "commit") else None
        self.cache.clear_skill(ref, version)
