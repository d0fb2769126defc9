from __future__ import annotations

import operator
import re
from dataclasses import dataclass
from functools import cmp_to_key
from typing import Any, Callable, Iterable

from .errors import ReferenceSyntaxError

_VERSION_RE = re.compile(
    r"^[vV]?(\d+)(?:\.(\d+))?(?:\.(\d+))?(?:-([0-9A-Za-z.\-]+))?(?:\+[0-9A-Za-z.\-]+)?$"
)
_LOOSE_OPERATOR_RE = re.compile(r"(>=|<=|==|>|<|=)\s+")

# Longest operators first so ">=" is not read as ">".
_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    ">=": operator.ge,
    "<=": operator.le,
    "==": operator.eq,
    ">": operator.gt,
    "<": operator.lt,
    "=": operator.eq,
}


@dataclass(frozen=True)
class SemVer:
    major: int
    minor: int = 0
    patch: int = 0
    pre: tuple[str, ...] = ()

    @classmethod
    def parse(cls, text: str) -> "SemVer":
        """Parse ``1``, ``1.2``, ``v1.2.3`` or ``1.2.3-rc.1+build``; raises ValueError."""
        m = _VERSION_RE.match(text.strip())
        if not m:
            raise ValueError(f"Unsupported version format: {text!r}")
        major, minor, patch, pre = m.groups()
        return cls(int(major), int(minor or 0), int(patch or 0), tuple(p for p in (pre or "").split(".") if p))

    @property
    def is_prerelease(self) -> bool:
        return bool(self.pre)

    def key(self) -> tuple:
        # A release sorts after its pre-releases; numeric identifiers sort before alphanumeric ones.
        pre = tuple((0, int(p), "") if p.isdigit() else (1, 0, p) for p in self.pre)
        return (self.major, self.minor, self.patch, not self.pre, pre)


Comparator = tuple[Callable[[Any, Any], bool], SemVer]


def is_semver_tag(tag: str) -> bool:
    return bool(_VERSION_RE.match(tag.strip()))


def compare_versions(a: str, b: str) -> int:
    """Return -1, 0 or 1. Strings that are not versions fall back to plain string order."""
    try:
        ka: Any = SemVer.parse(a).key()
        kb: Any = SemVer.parse(b).key()
    except ValueError:
        ka, kb = a, b
    return (ka > kb) - (ka < kb)


def sort_versions(versions: Iterable[str], *, reverse: bool = False) -> list[str]:
    return sorted(versions, key=cmp_to_key(compare_versions), reverse=reverse)


def _given(text: str) -> int:
    """How many of major, minor and patch ``text`` spells out."""
    core = re.split(r"[-+]", text.strip().lstrip("vV"), maxsplit=1)[0]
    return core.count(".") + 1


def _caret_upper(base: SemVer, given: int) -> SemVer:
    # ^1 and ^0 allow the whole major; ^0.0 allows the whole 0.0 line.
    if base.major or given == 1:
        return SemVer(base.major + 1)
    if base.minor or given == 2:
        return SemVer(0, base.minor + 1)
    return SemVer(0, 0, base.patch + 1)


def _tilde_upper(base: SemVer, given: int) -> SemVer:
    if given == 1:
        return SemVer(base.major + 1)
    return SemVer(base.major, base.minor + 1)


def _split_operator(token: str) -> tuple[Callable[[Any, Any], bool], str]:
    for symbol, op in _OPERATORS.items():
        if token.startswith(symbol):
            return op, token[len(symbol):]
    return operator.eq, token


def parse_range(specifier: str) -> list[Comparator]:
    """
    Comparators for ``^1.2.0``, ``~1.2``, ``>=1.0 <2`` or ``>=1.0, <2``.

    All of them must hold. An empty specifier, ``*`` and ``latest`` match any
    version.
    """
    text = _LOOSE_OPERATOR_RE.sub(r"\1", specifier.replace(",", " "))
    out: list[Comparator] = []
    for token in text.split():
        if token.lower() in ("*", "latest"):
            continue
        try:
            if token[0] in "^~":
                base = SemVer.parse(token[1:])
                upper = (_caret_upper if token[0] == "^" else _tilde_upper)(base, _given(token[1:]))
                out += [(operator.ge, base), (operator.lt, upper)]
            else:
                op, version = _split_operator(token)
                out.append((op, SemVer.parse(version)))
        except ValueError as e:
            raise ReferenceSyntaxError(f"Invalid version range {specifier!r}: {token!r}") from e
    return out


def _matches(version: SemVer, comparators: list[Comparator]) -> bool:
    key = version.key()
    return all(op(key, bound.key()) for op, bound in comparators)


def version_satisfies(version: str, specifier: str) -> bool:
    comparators = parse_range(specifier)
    try:
        parsed = SemVer.parse(version)
    except ValueError:
        return False
    return _matches(parsed, comparators)


def max_satisfying(candidates: Iterable[str], specifier: str | None = None) -> str | None:
    """
    Highest candidate that is a semantic version and satisfies ``specifier``.

    Candidates keep their original spelling, so a tag ``v1.2.0`` comes back as
    ``v1.2.0`` and can be used directly as a clone ref. Pre-releases only match
    when the specifier itself names a pre-release.
    """
    comparators = parse_range(specifier or "")
    allow_pre = bool(specifier and "-" in specifier)
    best: str | None = None
    best_key: tuple | None = None
    for cand in candidates:
        try:
            parsed = SemVer.parse(cand)
        except ValueError:
            continue
        if parsed.is_prerelease and not allow_pre:
            continue
        if not _matches(parsed, comparators):
            continue
        key = parsed.key()
        if best_key is None or key > best_key:
            best, best_key = cand, key
    return best
