from __future__ import annotations

import io
import json
import os
import re
import shutil
import tarfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from .errors import SkillpinError

SKILL_FILENAME = "SKILL.md"
COMMIT_MARKER = ".skillpin-commit"
SOURCE_MARKER = ".skillpin-source"
# Written into every canonical copy skillpin owns.
INSTALL_MARKER = ".skillpin-install"

# Never copied out of the cache into an installed skill.
DEFAULT_EXCLUDE_FILES = ("README.md", "metadata.json", COMMIT_MARKER, SOURCE_MARKER, INSTALL_MARKER)
# Names starting with this prefix are private scaffolding of the skill author.
DEFAULT_EXCLUDE_PREFIX = "_"

# Directory/file names to skip anywhere in the tree.
VCS_EXCLUDE_NAMES = {
    ".git",
    ".hg",
    ".svn",
    ".DS_Store",
    "__pycache__",
    ".pytest_cache",
    ".mypy_cache",
    ".ruff_cache",
    "node_modules",
}

_FRONT_MATTER_RE = re.compile(r"\A---\s*\n(.*?)\n---\s*(\n|\Z)", re.DOTALL)
_NAME_LINE_RE = re.compile(r"^name\s*:\s*(.+?)\s*$", re.MULTILINE)


@dataclass(frozen=True)
class DiscoveredSkill:
    name: str
    path: Path
    rel_path: str


def _should_skip(name: str, exclude: Iterable[str], exclude_prefix: str | None) -> bool:
    if name in VCS_EXCLUDE_NAMES:
        return True
    if name in exclude:
        return True
    if exclude_prefix and name.startswith(exclude_prefix):
        return True
    return False


def copy_skill_tree(
    src: Path,
    dest: Path,
    *,
    exclude: Iterable[str] = DEFAULT_EXCLUDE_FILES,
    exclude_prefix: str | None = DEFAULT_EXCLUDE_PREFIX,
) -> int:
    """Copy ``src`` into ``dest`` applying the exclude rules; returns the file count."""
    exclude_set = set(exclude)
    dest.mkdir(parents=True, exist_ok=True)
    copied = 0
    for entry in sorted(src.iterdir(), key=lambda p: p.name):
        if _should_skip(entry.name, exclude_set, exclude_prefix):
            continue
        target = dest / entry.name
        if entry.is_symlink():
            # Links inside a skill would point outside the cache after install.
            continue
        if entry.is_dir():
            copied += copy_skill_tree(entry, target, exclude=exclude_set, exclude_prefix=exclude_prefix)
        elif entry.is_file():
            shutil.copy2(entry, target)
            copied += 1
    return copied


def remove_path(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.exists():
        shutil.rmtree(path)


def write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)


def _check_member(name: str, dest: Path) -> Path:
    if name.startswith("/") or name.startswith("\\"):
        raise SkillpinError(f"Archive contains an absolute path entry: {name!r}")
    target = (dest / name).resolve()
    base = dest.resolve()
    if not str(target).startswith(str(base) + os.sep) and target != base:
        raise SkillpinError(f"Archive contains an invalid path entry: {name!r}")
    return target


def _extract_zip(data: bytes, dest: Path) -> None:
    with zipfile.ZipFile(io.BytesIO(data), "r") as zf:
        for info in zf.infolist():
            name = info.filename
            if not name:
                continue
            target = _check_member(name, dest)
            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info, "r") as src, target.open("wb") as out:
                shutil.copyfileobj(src, out)


def _extract_tar(data: bytes, dest: Path) -> None:
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tf:
        for member in tf.getmembers():
            if not member.name or member.name in (".", "./"):
                continue
            target = _check_member(member.name, dest)
            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            if not member.isfile():
                # Links and devices are not part of a skill.
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            src = tf.extractfile(member)
            if src is None:
                continue
            with src, target.open("wb") as out:
                shutil.copyfileobj(src, out)


def safe_extract_archive(data: bytes, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    if data[:4] == b"PK\x03\x04":
        _extract_zip(data, dest)
        return
    try:
        _extract_tar(data, dest)
    except tarfile.TarError as e:
        raise SkillpinError(f"Unsupported or corrupt archive: {e}") from e


def unwrap_single_dir(root: Path) -> Path:
    """Descend into a lone top-level directory (``package/`` in npm-style tarballs)."""
    if (root / SKILL_FILENAME).is_file():
        return root
    children = [p for p in root.iterdir() if p.name not in VCS_EXCLUDE_NAMES]
    if len(children) == 1 and children[0].is_dir():
        return children[0]
    return root


def read_skill_name(skill_dir: Path) -> str | None:
    skill_md = skill_dir / SKILL_FILENAME
    if not skill_md.is_file():
        return None
    try:
        text = skill_md.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None
    m = _FRONT_MATTER_RE.match(text)
    if not m:
        return None
    nm = _NAME_LINE_RE.search(m.group(1))
    if not nm:
        return None
    return nm.group(1).strip().strip("'\"") or None


def discover_skills(root: Path, *, max_depth: int = 4) -> list[DiscoveredSkill]:
    found: list[DiscoveredSkill] = []

    def _walk(path: Path, depth: int) -> None:
        if (path / SKILL_FILENAME).is_file():
            rel = path.relative_to(root).as_posix()
            name = read_skill_name(path) or (path.name if rel != "." else root.name)
            found.append(DiscoveredSkill(name=name, path=path, rel_path=rel))
        if depth >= max_depth:
            return
        for child in sorted(path.iterdir(), key=lambda p: p.name):
            if not child.is_dir() or child.is_symlink():
                continue
            if _should_skip(child.name, (), DEFAULT_EXCLUDE_PREFIX) or child.name.startswith("."):
                continue
            _walk(child, depth + 1)

    if root.is_dir():
        _walk(root, 0)
    return found


def select_skill(root: Path, name: str) -> DiscoveredSkill | None:
    for skill in discover_skills(root):
        if skill.name == name or Path(skill.rel_path).name == name:
            return skill
    return None
