"""Thin wrappers around the ``git`` executable.

Every call runs non-interactively: credential prompts are disabled and SSH
runs in batch mode, accepting unknown host keys while still rejecting changed
ones. A first connection to a new host therefore fails fast instead of
waiting on a prompt nobody will answer.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess  # nosec B404 - git is invoked with argument lists only
from pathlib import Path

from .config import GIT_TIMEOUT_S, LS_REMOTE_TIMEOUT_S
from .errors import NetworkError

logger = logging.getLogger(__name__)

SSH_COMMAND = "ssh -o BatchMode=yes -o StrictHostKeyChecking=accept-new"
_SHA_RE = re.compile(r"^[0-9a-f]{7,40}$")


def git_env(base: dict[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ if base is None else base)
    env["GIT_TERMINAL_PROMPT"] = "0"
    env["GCM_INTERACTIVE"] = "never"
    # Respect a user-provided ssh command but force batch mode onto it.
    user_ssh = env.get("GIT_SSH_COMMAND")
    if user_ssh:
        if "BatchMode" not in user_ssh:
            user_ssh += " -o BatchMode=yes"
        env["GIT_SSH_COMMAND"] = user_ssh
    else:
        env["GIT_SSH_COMMAND"] = SSH_COMMAND
    return env


def looks_like_commit(ref: str) -> bool:
    return bool(_SHA_RE.match(ref.strip().lower()))


def run_git(
    args: list[str],
    *,
    cwd: str | Path | None = None,
    timeout: float = LS_REMOTE_TIMEOUT_S,
    context: str = "",
) -> subprocess.CompletedProcess[str]:
    cmd = ["git"] + args
    logger.debug("Running: %s%s", " ".join(cmd), f" in {cwd}" if cwd else "")
    try:
        result = subprocess.run(  # nosec B603 B607 - fixed git argument list
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=git_env(),
        )
    except FileNotFoundError as e:
        raise NetworkError("git executable not found. Install git to use Git skill sources.") from e
    except subprocess.TimeoutExpired as e:
        where = f" for {context}" if context else ""
        raise NetworkError(f"git {args[0]} timed out after {timeout:.0f}s{where}") from e

    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        where = f" for {context}" if context else ""
        raise NetworkError(f"git {args[0]} failed{where}: {stderr or f'exit code {result.returncode}'}")
    return result


def _parse_ls_remote(output: str) -> list[tuple[str, str]]:
    pairs: list[tuple[str, str]] = []
    for line in output.splitlines():
        line = line.strip()
        if not line or "\t" not in line:
            continue
        sha, name = line.split("\t", 1)
        pairs.append((sha.strip(), name.strip()))
    return pairs


def list_remote_tags(url: str) -> dict[str, str]:
    """Map tag name -> commit for every tag on the remote (peeled when annotated)."""
    result = run_git(["ls-remote", "--tags", url], context=url)
    tags: dict[str, str] = {}
    for sha, name in _parse_ls_remote(result.stdout):
        if not name.startswith("refs/tags/"):
            continue
        tag = name[len("refs/tags/") :]
        if tag.endswith("^{}"):
            tags[tag[:-3]] = sha
            continue
        tags.setdefault(tag, sha)
    return tags


def default_branch(url: str) -> tuple[str, str]:
    """Return (branch name, head commit) of the remote's default branch."""
    result = run_git(["ls-remote", "--symref", url, "HEAD"], context=url)
    name = ""
    sha = ""
    for line in result.stdout.splitlines():
        line = line.strip()
        if line.startswith("ref:") and line.endswith("HEAD"):
            target = line[len("ref:") :].split("\t", 1)[0].strip()
            if target.startswith("refs/heads/"):
                name = target[len("refs/heads/") :]
            continue
        if "\t" in line:
            sha = line.split("\t", 1)[0].strip()
    if not name:
        # Old servers omit the symref line.
        name = "main"
    return name, sha


def remote_commit(url: str, ref: str) -> str:
    """
    Resolve ``ref`` on the remote without cloning. Returns "" when the ref is
    unknown, so callers treat it as "needs update".
    """
    if looks_like_commit(ref):
        return ref
    result = run_git(["ls-remote", url, ref], context=url)
    pairs = _parse_ls_remote(result.stdout)
    wanted = (f"refs/tags/{ref}^{{}}", f"refs/tags/{ref}", f"refs/heads/{ref}", ref)
    for name in wanted:
        for sha, got in pairs:
            if got == name:
                return sha
    if pairs:
        return pairs[0][0]

    result = run_git(["ls-remote", url], context=url)
    for sha, got in _parse_ls_remote(result.stdout):
        if got in (f"refs/heads/{ref}", f"refs/tags/{ref}", ref):
            return sha
    return ""


def head_commit(repo_dir: str | Path) -> str:
    result = run_git(["rev-parse", "HEAD"], cwd=repo_dir, context=str(repo_dir))
    return result.stdout.strip()


def shallow_clone(url: str, dest: str | Path, ref: str | None = None, *, depth: int = 1) -> str:
    """
    Shallow-clone ``url`` at ``ref`` into ``dest`` and return the checked-out
    commit. Commit refs cannot be passed to ``clone -b``; they are fetched
    directly instead.
    """
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    try:
        if ref and looks_like_commit(ref):
            dest.mkdir(parents=True, exist_ok=True)
            run_git(["init", "-q"], cwd=dest, context=url)
            run_git(["remote", "add", "origin", url], cwd=dest, context=url)
            run_git(["fetch", "--depth", str(depth), "origin", ref], cwd=dest, timeout=GIT_TIMEOUT_S, context=url)
            run_git(["checkout", "-q", "FETCH_HEAD"], cwd=dest, context=url)
        else:
            cmd = ["clone", "--depth", str(depth), "--single-branch"]
            if ref:
                cmd += ["--branch", ref]
            cmd += [url, str(dest)]
            run_git(cmd, timeout=GIT_TIMEOUT_S, context=url)
        return head_commit(dest)
    except NetworkError:
        if dest.exists():
            shutil.rmtree(dest, ignore_errors=True)
        raise
