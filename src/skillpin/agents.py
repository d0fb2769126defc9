from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .errors import SkillpinError


@dataclass(frozen=True)
class AgentConfig:
    name: str
    display_name: str
    skills_dir: str  # relative to the project root
    global_skills_dir: str  # relative to the home directory

    @property
    def config_dir(self) -> str:
        return self.skills_dir.split("/", 1)[0]


AGENTS: dict[str, AgentConfig] = {
    a.name: a
    for a in (
        AgentConfig("claude-code", "Claude Code", ".claude/skills", ".claude/skills"),
        AgentConfig("cursor", "Cursor", ".cursor/skills", ".cursor/skills"),
        AgentConfig("codex", "Codex", ".codex/skills", ".codex/skills"),
        AgentConfig("windsurf", "Windsurf", ".windsurf/skills", ".codeium/windsurf/skills"),
        AgentConfig("github-copilot", "GitHub Copilot", ".github/skills", ".copilot/skills"),
        AgentConfig("opencode", "OpenCode", ".opencode/skill", ".config/opencode/skill"),
        AgentConfig("gemini-cli", "Gemini CLI", ".gemini/skills", ".gemini/skills"),
        AgentConfig("amp", "Amp", ".agents/skills", ".config/agents/skills"),
    )
}


def all_agent_types() -> list[str]:
    return list(AGENTS)


def is_valid_agent(name: str) -> bool:
    return name in AGENTS


def get_agent(name: str) -> AgentConfig:
    try:
        return AGENTS[name]
    except KeyError as e:
        valid = ", ".join(AGENTS)
        raise SkillpinError(f"Unknown agent {name!r}. Valid agents: {valid}") from e


def agent_skills_dir(name: str, *, global_: bool = False, cwd: Path | None = None, home: Path | None = None) -> Path:
    agent = get_agent(name)
    if global_:
        return (home or Path.home()) / agent.global_skills_dir
    return (cwd or Path.cwd()) / agent.skills_dir


def detect_installed_agents(cwd: Path | None = None, home: Path | None = None) -> list[str]:
    """Agents whose config directory exists in the project or in the home directory."""
    project = cwd or Path.cwd()
    home_dir = home or Path.home()
    found: list[str] = []
    for name, agent in AGENTS.items():
        global_root = agent.global_skills_dir.rsplit("/", 1)[0]
        if (project / agent.config_dir).is_dir() or (home_dir / global_root).is_dir():
            found.append(name)
    return found
