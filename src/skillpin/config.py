from __future__ import annotations

import json
import os
import stat
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any

from platformdirs import user_cache_path, user_config_path

from .errors import SkillpinError
from .skill_files import write_json_atomic

APP_NAME = "skillpin"
PUBLIC_REGISTRY_URL = "https://registry.skillpin.dev/"
DEFAULT_TIMEOUT_S = 30.0
GIT_TIMEOUT_S = 300.0
LS_REMOTE_TIMEOUT_S = 60.0


@dataclass(frozen=True)
class Config:
    registry_url: str | None = None
    token: str | None = None
    timeout_s: float = DEFAULT_TIMEOUT_S
    cache_dir: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Config":
        # Keys written by other versions are dropped.
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in raw.items() if k in known})

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def redacted(self) -> dict[str, Any]:
        out = self.to_dict()
        out["token"] = redact_token(self.token)
        return out


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("SKILLPIN_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path(APP_NAME) / "config.json"


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.is_file():
        return Config()
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise SkillpinError(f"Config file {path} is not valid JSON: {e}") from e
    return Config.from_dict(raw) if isinstance(raw, dict) else Config()


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    write_json_atomic(path, cfg.to_dict())
    try:
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        # Filesystems without POSIX modes keep their defaults.
        pass
    return path


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def apply_env(cfg: Config) -> Config:
    """Layer ``SKILLPIN_*`` variables over a loaded config. CLI flags go on top of this."""
    return replace(
        cfg,
        registry_url=os.getenv("SKILLPIN_REGISTRY") or cfg.registry_url,
        token=os.getenv("SKILLPIN_TOKEN") or cfg.token,
        timeout_s=_env_float("SKILLPIN_TIMEOUT_S", cfg.timeout_s),
        cache_dir=os.getenv("SKILLPIN_CACHE_DIR") or cfg.cache_dir,
    )


def default_cache_dir() -> Path:
    if env := os.getenv("SKILLPIN_CACHE_DIR"):
        return Path(env).expanduser()
    return user_cache_path(APP_NAME)


def color_enabled() -> bool:
    return not os.getenv("NO_COLOR")


def redact_token(token: str | None) -> str | None:
    if not token:
        return token
    keep = (2, 2) if len(token) <= 10 else (6, 4)
    return f"{token[:keep[0]]}...{token[-keep[1]:]}"
