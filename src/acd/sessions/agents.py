"""
Agent profiles.

An AgentConfig describes how to launch one coding agent: its command, fixed
base arguments, user-selectable options, and which detection strategy reads its
terminal output. The built-in catalog covers claude, codex, gemini and a plain
login shell.
"""

import logging
import os
import sys
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from acd.errors import InvalidAgentOptionsError, UnknownAgentError

logger = logging.getLogger(__name__)

OptionValue = Union[bool, str]

SHELL_COMMAND = "$SHELL"


class OptionChoice(BaseModel):
    value: str
    label: Optional[str] = None


class AgentOption(BaseModel):
    """A single command-line option the user may toggle or fill in."""

    id: str
    flag: Optional[str] = None  # None means positional
    label: Optional[str] = None
    description: Optional[str] = None
    type: Literal["boolean", "string"] = "boolean"
    default: Optional[OptionValue] = None
    choices: List[OptionChoice] = Field(default_factory=list)
    group: Optional[str] = None  # mutual exclusion group


class AgentConfig(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    kind: Literal["agent", "terminal"] = "agent"
    command: str
    base_args: List[str] = Field(default_factory=list)
    options: List[AgentOption] = Field(default_factory=list)
    detection_strategy: Optional[str] = None

    def option(self, option_id: str) -> Optional[AgentOption]:
        for option in self.options:
            if option.id == option_id:
                return option
        return None


def _is_enabled(value: Optional[OptionValue]) -> bool:
    return value is not None and value is not False and value != ""


def validate_options(agent: AgentConfig, selected: Dict[str, OptionValue]) -> List[str]:
    """
    Check selected options against an agent's declared options.

    Args:
        agent: Agent profile
        selected: Option id -> value (bool for flags, str for inputs)

    Returns:
        List of error messages; empty when valid
    """
    errors: List[str] = []
    enabled_by_group: Dict[str, List[str]] = {}

    for option_id, value in selected.items():
        option = agent.option(option_id)
        if option is None:
            errors.append(f"Unknown option '{option_id}' for agent '{agent.id}'")
            continue

        if option.type == "boolean" and not isinstance(value, bool):
            errors.append(f"Option '{option_id}' expects a boolean")
            continue
        if option.type == "string" and not isinstance(value, str):
            errors.append(f"Option '{option_id}' expects a string")
            continue

        if option.choices and isinstance(value, str) and value:
            allowed = [choice.value for choice in option.choices]
            if value not in allowed:
                errors.append(f"Option '{option_id}' must be one of: {', '.join(allowed)}")
                continue

        if option.group and _is_enabled(value):
            enabled_by_group.setdefault(option.group, []).append(option_id)

    for group, option_ids in enabled_by_group.items():
        if len(option_ids) > 1:
            errors.append(f"Options {', '.join(option_ids)} are mutually exclusive ({group})")

    return errors


def build_args(agent: AgentConfig, selected: Dict[str, OptionValue]) -> List[str]:
    """
    Assemble argv (without the command) from base args and selected options.

    Options are emitted in declaration order. Declared defaults apply to options
    the caller did not mention.
    """
    args = list(agent.base_args)

    for option in agent.options:
        value = selected.get(option.id, option.default)
        if not _is_enabled(value):
            continue

        if option.type == "boolean" and value is True:
            if option.flag:
                args.append(option.flag)
        elif option.type == "string" and isinstance(value, str):
            if option.flag:
                args.extend([option.flag, value])
            else:
                args.append(value)

    return args


def default_shell() -> str:
    if sys.platform == "win32":
        return os.environ.get("COMSPEC", "cmd.exe")
    return os.environ.get("SHELL", "/bin/sh")


def resolve_command(agent: AgentConfig) -> List[str]:
    """Split the agent command into argv, expanding $SHELL for terminals."""
    if agent.command == SHELL_COMMAND:
        return [default_shell()]
    return agent.command.split()


# =============================================================================
# Built-in catalog
# =============================================================================

BUILTIN_AGENTS: List[AgentConfig] = [
    AgentConfig(
        id="claude",
        name="Claude Code",
        description="Anthropic Claude CLI for coding assistance",
        command="claude",
        detection_strategy="claude",
        options=[
            AgentOption(id="yolo", flag="--dangerously-skip-permissions", label="YOLO Mode",
                        description="Skip all permission prompts", type="boolean", default=False),
            AgentOption(id="continue", flag="--continue", label="Continue",
                        description="Continue the most recent conversation", type="boolean",
                        default=False, group="resume-mode"),
            AgentOption(id="resume", flag="--resume", label="Resume",
                        description="Resume a specific conversation by ID", type="string",
                        group="resume-mode"),
            AgentOption(id="model", flag="--model", label="Model", description="Model to use",
                        type="string", choices=[OptionChoice(value="sonnet", label="Sonnet"),
                                                OptionChoice(value="opus", label="Opus"),
                                                OptionChoice(value="haiku", label="Haiku")]),
        ],
    ),
    AgentConfig(
        id="codex",
        name="Codex CLI",
        description="OpenAI Codex CLI",
        command="codex",
        detection_strategy="codex",
        options=[
            AgentOption(id="yolo", flag="--dangerously-bypass-approvals-and-sandbox", label="YOLO Mode",
                        description="Skip all permission checks and sandbox", type="boolean",
                        default=False, group="auto-mode"),
            AgentOption(id="full-auto", flag="--full-auto", label="Full Auto",
                        description="Auto-approve with workspace sandbox", type="boolean",
                        default=False, group="auto-mode"),
            AgentOption(id="model", flag="-m", label="Model", description="Model to use", type="string"),
        ],
    ),
    AgentConfig(
        id="gemini",
        name="Gemini CLI",
        description="Google Gemini CLI",
        command="gemini",
        detection_strategy="gemini",
        options=[
            AgentOption(id="yolo", flag="-y", label="YOLO Mode", description="Auto-approve all actions",
                        type="boolean", default=False),
            AgentOption(id="resume", flag="-r", label="Resume",
                        description='Resume session ("latest" or index)', type="string"),
            AgentOption(id="model", flag="-m", label="Model", description="Model to use", type="string"),
        ],
    ),
    AgentConfig(
        id="terminal",
        name="Terminal",
        description="Plain login shell",
        kind="terminal",
        command=SHELL_COMMAND,
    ),
]


class AgentCatalog:
    """Lookup of agent profiles by id."""

    def __init__(self, agents: Optional[List[AgentConfig]] = None):
        source = BUILTIN_AGENTS if agents is None else agents
        self._agents: Dict[str, AgentConfig] = {agent.id: agent for agent in source}

    def list(self) -> List[AgentConfig]:
        return list(self._agents.values())

    def get(self, agent_id: str) -> AgentConfig:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise UnknownAgentError(agent_id)
        return agent

    def register(self, agent: AgentConfig) -> None:
        self._agents[agent.id] = agent

    def prepare_command(self, agent_id: str, options: Dict[str, OptionValue]) -> List[str]:
        """
        Validate options and return the full argv for an agent.

        Raises:
            UnknownAgentError: No such agent
            InvalidAgentOptionsError: Options failed validation
        """
        agent = self.get(agent_id)
        errors = validate_options(agent, options)
        if errors:
            raise InvalidAgentOptionsError(errors)
        argv = resolve_command(agent) + build_args(agent, options)
        logger.info(f"Built command for {agent.id}: {argv}")
        return argv
