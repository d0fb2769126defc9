from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from ._version import __version__
from .agents import all_agent_types
from .cache import CacheStore
from .config import Config, apply_env, color_enabled, config_path, load_config, save_config
from .errors import ConflictError, RegistryHTTPError, SkillpinError
from .installer import INSTALL_MODES
from .log import debug_enabled, setup_logging
from .manager import BatchReport, InstallOutcome, SkillManager


def _style(text: str, code: str) -> str:
    if not color_enabled() or not sys.stdout.isatty():
        return text
    return f"\033[{code}m{text}\033[0m"


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _make_manager(args: argparse.Namespace) -> SkillManager:
    # Env overrides the config file; --registry overrides both.
    cfg = apply_env(load_config())
    return SkillManager(
        Path(args.dir).expanduser() if getattr(args, "dir", None) else None,
        cache=CacheStore(cfg.cache_dir, timeout_s=cfg.timeout_s),
        registry_url=getattr(args, "registry", None),
        default_registry_url=cfg.registry_url,
        token=cfg.token,
        timeout_s=cfg.timeout_s,
        global_=bool(getattr(args, "global_", False)),
    )


def _outcome_json(outcome: InstallOutcome) -> dict[str, Any]:
    return {
        "skill": outcome.skill,
        "ref": outcome.ref,
        "version": outcome.version,
        "commit": outcome.commit,
        "up_to_date": outcome.up_to_date,
        "failed_targets": outcome.failed_targets,
        "targets": {
            agent: {
                "success": r.success,
                "path": str(r.path),
                "mode": r.mode,
                "symlink_failed": r.symlink_failed,
                "already_installed": r.already_installed,
                "error": r.error,
            }
            for agent, r in outcome.results.items()
        },
    }


def _print_report(report: BatchReport, *, as_json: bool) -> None:
    if as_json:
        payload = {
            "ok": report.ok,
            "successes": [_outcome_json(o) for o in report.successes],
            "failures": [{"ref": f.ref, "error": str(f.error)} for f in report.failures],
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return

    for outcome in report.successes:
        status = "up to date" if outcome.up_to_date else "installed"
        print(f"{_style(status, '32')}: {outcome.skill}@{outcome.version} ({outcome.ref})")
        for agent, r in outcome.results.items():
            if not r.success:
                print(f"  {_style('failed', '31')} {agent}: {r.error}")
            elif r.symlink_failed:
                print(f"  {agent}: {r.path} (copied, symlink not supported)")
            else:
                print(f"  {agent}: {r.path}")
    for failure in report.failures:
        hint = " (use --force to replace it)" if isinstance(failure.error, ConflictError) else ""
        print(f"{_style('error', '31')}: {failure.ref}: {failure.error}{hint}", file=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="skillpin", description="Install versioned agent skills from Git, archives and registries")
    p.add_argument("--version", action="version", version=f"skillpin {__version__}")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging (same as SKILLPIN_DEBUG=1)")

    sub = p.add_subparsers(dest="cmd", required=True)

    def _project_args(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--dir", help="Project directory (default: current directory)")
        parser.add_argument("-g", "--global", dest="global_", action="store_true", help="Use the home directory instead of the project")
        parser.add_argument("--json", action="store_true", help="Output JSON")

    install = sub.add_parser("install", aliases=["i"], help="Install skills (all skills from skills.lock when no reference is given)")
    install.add_argument("refs", nargs="*", help="Skill references, e.g. github:owner/repo/path@v1.2.0 or @scope/name@^1.0")
    install.add_argument(
        "-a",
        "--agent",
        dest="agents",
        action="append",
        choices=all_agent_types(),
        help="Target agent (repeatable; default: skills.json defaults or detected agents)",
    )
    install.add_argument("--mode", choices=INSTALL_MODES, help="symlink (default) or copy")
    install.add_argument("-f", "--force", action="store_true", help="Replace existing destinations and re-fetch")
    install.add_argument("--no-save", action="store_true", help="Do not record the skill in skills.json")
    install.add_argument("--registry", help="Registry URL for registry references (overrides config/env)")
    _project_args(install)

    uninstall = sub.add_parser("uninstall", aliases=["remove", "rm"], help="Remove an installed skill")
    uninstall.add_argument("name")
    uninstall.add_argument("-a", "--agent", dest="agents", action="append", choices=all_agent_types())
    _project_args(uninstall)

    ls = sub.add_parser("list", aliases=["ls"], help="List installed skills")
    _project_args(ls)

    outdated = sub.add_parser("outdated", help="Check locked skills against their remotes")
    outdated.add_argument("names", nargs="*", help="Skill names (default: every locked skill)")
    outdated.add_argument("--registry", help="Registry URL for registry references")
    _project_args(outdated)

    cache = sub.add_parser("cache", help="Manage the skill cache")
    cache_sub = cache.add_subparsers(dest="subcmd", required=True)
    cache_list = cache_sub.add_parser("list", help="List cached skills")
    cache_list.add_argument("--json", action="store_true", help="Output JSON")
    cache_clear = cache_sub.add_parser("clear", help="Remove cached skills")
    cache_clear.add_argument("ref", nargs="?", help="Only clear this reference (default: everything)")
    cache_sub.add_parser("path", help="Print the cache directory")

    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config (token redacted)")
    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--registry-url")
    cfg_set.add_argument("--token")
    cfg_set.add_argument("--timeout-s", type=float)
    cfg_set.add_argument("--cache-dir")

    return p


def cmd_install(args: argparse.Namespace) -> int:
    with _make_manager(args) as manager:
        if args.refs:
            report = manager.install_many(
                args.refs,
                agents=args.agents,
                mode=args.mode,
                force=args.force,
                save=not args.no_save,
            )
        else:
            report = manager.reinstall_all(agents=args.agents, mode=args.mode, force=args.force)
            if not report.successes and not report.failures and not args.json:
                print("Nothing to install: skills.lock and skills.json list no skills.")
    _print_report(report, as_json=args.json)
    return 0 if report.ok else 1


def cmd_uninstall(args: argparse.Namespace) -> int:
    with _make_manager(args) as manager:
        removed = manager.uninstall(args.name, args.agents)
    if args.json:
        print(json.dumps({"skill": args.name, "removed": [str(p) for p in removed]}, indent=2, sort_keys=True))
        return 0
    for path in removed:
        print(f"removed: {path}")
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    with _make_manager(args) as manager:
        installed = manager.list_installed()
    if args.json:
        payload = {
            name: ({"ref": e.ref, "version": e.resolved_version, "commit": e.commit} if e else None)
            for name, e in installed.items()
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0
    if not installed:
        print("No skills installed.")
        return 0
    rows = [["NAME", "VERSION", "COMMIT", "REF"]]
    for name, entry in installed.items():
        if entry is None:
            rows.append([name, "-", "-", "(not locked)"])
        else:
            rows.append([name, entry.resolved_version, entry.commit[:12], entry.ref])
    _print_table(rows)
    return 0


def cmd_outdated(args: argparse.Namespace) -> int:
    with _make_manager(args) as manager:
        names = args.names or list(manager.lock.all())
        status: dict[str, Any] = {}
        failed = False
        for name in names:
            try:
                status[name] = manager.check_needs_update(name)
            except SkillpinError as e:
                status[name] = {"error": str(e)}
                failed = True
    if args.json:
        print(json.dumps(status, indent=2, sort_keys=True))
        return 1 if failed else 0
    rows = [["NAME", "STATUS"]]
    for name, value in status.items():
        if isinstance(value, dict):
            rows.append([name, f"error: {value['error']}"])
        else:
            rows.append([name, "update available" if value else "up to date"])
    _print_table(rows)
    return 1 if failed else 0


def cmd_cache(args: argparse.Namespace) -> int:
    cfg = apply_env(load_config())
    cache = CacheStore(cfg.cache_dir, timeout_s=cfg.timeout_s)
    if args.subcmd == "path":
        print(str(cache.root))
        return 0

    if args.subcmd == "list":
        entries = cache.list_cached()
        if args.json:
            payload = [{"key": e.key, "version": e.version, "commit": e.commit, "path": str(e.path)} for e in entries]
            print(json.dumps(payload, indent=2, sort_keys=True))
            return 0
        if not entries:
            print("Cache is empty.")
            return 0
        rows = [["SKILL", "VERSION", "COMMIT"]]
        for e in entries:
            rows.append([e.key, e.version, e.commit[:12]])
        _print_table(rows)
        return 0

    if args.subcmd == "clear":
        if args.ref:
            manager = SkillManager(cache=cache)
            manager.clear_cache(args.ref)
            print(f"Cleared {args.ref} from {cache.root}")
        else:
            cache.clear_all()
            print(f"Cleared {cache.root}")
        return 0

    raise AssertionError("unreachable")


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        print(json.dumps(load_config().redacted(), indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        new_cfg = Config(
            registry_url=args.registry_url if args.registry_url is not None else cfg.registry_url,
            token=args.token if args.token is not None else cfg.token,
            timeout_s=args.timeout_s if args.timeout_s is not None else cfg.timeout_s,
            cache_dir=args.cache_dir if args.cache_dir is not None else cfg.cache_dir,
        )
        path = save_config(new_cfg)
        print(f"Saved config to {path}")
        return 0

    raise AssertionError("unreachable")


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging("DEBUG" if args.verbose or debug_enabled() else "WARNING")
    try:
        if args.cmd in ("install", "i"):
            return cmd_install(args)
        if args.cmd in ("uninstall", "remove", "rm"):
            return cmd_uninstall(args)
        if args.cmd in ("list", "ls"):
            return cmd_list(args)
        if args.cmd == "outdated":
            return cmd_outdated(args)
        if args.cmd == "cache":
            return cmd_cache(args)
        if args.cmd == "config":
            return cmd_config(args)
        raise AssertionError("unreachable")
    except RegistryHTTPError as e:
        print(f"error: registry returned {e}", file=sys.stderr)
        return 1
    except SkillpinError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
