from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .errors import InvalidInputError


@dataclass(frozen=True)
class AgentDirs:
    name: str
    project_dir: str  # relative to the project root
    user_parts: tuple[str, ...]  # below the home directory

    def user_dir(self, home: Path | None = None) -> Path:
        return (home or Path.home()).joinpath(*self.user_parts)


def _agent(name: str, project_dir: str, *user_parts: str) -> AgentDirs:
    return AgentDirs(name=name, project_dir=project_dir, user_parts=user_parts)


AGENTS: dict[str, AgentDirs] = {
    a.name: a
    for a in (
        _agent("claude", ".claude/skills", ".claude", "skills"),
        _agent("claude-code", ".claude/skills", ".claude", "skills"),
        _agent("codex", ".codex/skills", ".codex", "skills"),
        _agent("copilot", ".github/skills", ".github", "skills"),
        _agent("github-copilot", ".agents/skills", ".copilot", "skills"),
        _agent("cursor", ".cursor/rules", ".cursor", "rules"),
        _agent("gemini", ".gemini/skills", ".gemini", "skills"),
        _agent("gemini-cli", ".agents/skills", ".gemini", "skills"),
        _agent("goose", ".goose/skills", ".config", "goose", "skills"),
        _agent("opencode", ".agents/skills", ".config", "opencode", "skill"),
        _agent("amp", ".agents/skills", ".config", "agents", "skills"),
        _agent("factory", ".factory/skills", ".factory", "skills"),
        _agent("universal", ".agents/skills", ".config", "agents", "skills"),
        _agent("cline", ".cline/skills", ".cline", "skills"),
        _agent("continue", ".continue/skills", ".continue", "skills"),
        _agent("roo", ".roo/skills", ".roo", "skills"),
        _agent("windsurf", ".windsurf/skills", ".codeium", "windsurf", "skills"),
        _agent("qwen-code", ".qwen/skills", ".qwen", "skills"),
        _agent("kiro-cli", ".kiro/skills", ".kiro", "skills"),
        _agent("openhands", ".openhands/skills", ".openhands", "skills"),
    )
}


def supported_agents() -> list[str]:
    return sorted(AGENTS)


def get_agent(name: str) -> AgentDirs:
    name = name.strip()
    if not name:
        raise InvalidInputError("agent name cannot be empty")
    agent = AGENTS.get(name)
    if agent is None:
        raise InvalidInputError(
            f"unsupported agent: {name}. Supported agents: {', '.join(supported_agents())}"
        )
    return agent


def resolve_agent_dir(name: str, *, global_: bool = False, home: Path | None = None) -> str:
    """Install directory for ``name``: project-relative, or under the home directory with ``global_``."""
    agent = get_agent(name)
    if global_:
        return str(agent.user_dir(home))
    return agent.project_dir
