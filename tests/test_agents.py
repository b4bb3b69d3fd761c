"""Tests for agent profiles, option validation and argv building."""

import sys

import pytest

from acd.errors import InvalidAgentOptionsError, UnknownAgentError
from acd.sessions.agents import (
    AgentCatalog,
    AgentConfig,
    AgentOption,
    OptionChoice,
    build_args,
    resolve_command,
    validate_options,
)


@pytest.fixture
def catalog() -> AgentCatalog:
    return AgentCatalog()


class TestCatalog:
    """Test the built-in catalog and lookup."""

    def test_builtin_agents(self, catalog: AgentCatalog):
        assert [agent.id for agent in catalog.list()] == ["claude", "codex", "gemini", "terminal"]

    def test_unknown_agent(self, catalog: AgentCatalog):
        with pytest.raises(UnknownAgentError) as exc_info:
            catalog.get("nope")
        assert exc_info.value.status_code == 404
        assert exc_info.value.message == "Agent not found: nope"

    def test_register(self, catalog: AgentCatalog):
        catalog.register(AgentConfig(id="aider", name="Aider", command="aider"))
        assert catalog.get("aider").command == "aider"

    def test_custom_catalog(self):
        catalog = AgentCatalog([AgentConfig(id="only", name="Only", command="only")])
        assert [agent.id for agent in catalog.list()] == ["only"]


class TestValidateOptions:
    """Test option validation errors."""

    def test_valid(self, catalog: AgentCatalog):
        assert validate_options(catalog.get("claude"), {"yolo": True, "model": "opus"}) == []

    def test_unknown_option(self, catalog: AgentCatalog):
        errors = validate_options(catalog.get("claude"), {"turbo": True})
        assert errors == ["Unknown option 'turbo' for agent 'claude'"]

    def test_wrong_types(self, catalog: AgentCatalog):
        errors = validate_options(catalog.get("claude"), {"yolo": "yes", "model": True})
        assert "Option 'yolo' expects a boolean" in errors
        assert "Option 'model' expects a string" in errors

    def test_invalid_choice(self, catalog: AgentCatalog):
        errors = validate_options(catalog.get("claude"), {"model": "gpt"})
        assert errors == ["Option 'model' must be one of: sonnet, opus, haiku"]

    def test_mutually_exclusive(self, catalog: AgentCatalog):
        errors = validate_options(catalog.get("codex"), {"yolo": True, "full-auto": True})
        assert errors == ["Options yolo, full-auto are mutually exclusive (auto-mode)"]

    def test_disabled_group_member_is_fine(self, catalog: AgentCatalog):
        assert validate_options(catalog.get("codex"), {"yolo": True, "full-auto": False}) == []

    def test_mixed_type_group(self, catalog: AgentCatalog):
        errors = validate_options(catalog.get("claude"), {"continue": True, "resume": "abc123"})
        assert errors == ["Options continue, resume are mutually exclusive (resume-mode)"]


class TestBuildArgs:
    """Test argv assembly."""

    def test_no_options(self, catalog: AgentCatalog):
        assert build_args(catalog.get("claude"), {}) == []

    def test_flags_in_declaration_order(self, catalog: AgentCatalog):
        args = build_args(catalog.get("claude"), {"model": "opus", "yolo": True})
        assert args == ["--dangerously-skip-permissions", "--model", "opus"]

    def test_false_and_empty_are_skipped(self, catalog: AgentCatalog):
        assert build_args(catalog.get("gemini"), {"yolo": False, "model": ""}) == []

    def test_defaults_apply(self):
        agent = AgentConfig(
            id="x",
            name="X",
            command="x",
            base_args=["--base"],
            options=[
                AgentOption(id="fast", flag="--fast", default=True),
                AgentOption(id="target", type="string"),
            ],
        )
        assert build_args(agent, {"target": "src/"}) == ["--base", "--fast", "src/"]
        assert build_args(agent, {"fast": False}) == ["--base"]

    def test_choices_model(self):
        option = AgentOption(id="m", flag="-m", type="string", choices=[OptionChoice(value="a")])
        agent = AgentConfig(id="x", name="X", command="x", options=[option])
        assert build_args(agent, {"m": "a"}) == ["-m", "a"]


class TestPrepareCommand:
    def test_full_argv(self, catalog: AgentCatalog):
        argv = catalog.prepare_command("codex", {"full-auto": True, "model": "o3"})
        assert argv == ["codex", "--full-auto", "-m", "o3"]

    def test_validation_errors_joined(self, catalog: AgentCatalog):
        with pytest.raises(InvalidAgentOptionsError) as exc_info:
            catalog.prepare_command("claude", {"turbo": True, "model": "gpt"})
        assert exc_info.value.status_code == 400
        assert exc_info.value.message == (
            "Unknown option 'turbo' for agent 'claude'; Option 'model' must be one of: sonnet, opus, haiku"
        )

    def test_unknown_agent(self, catalog: AgentCatalog):
        with pytest.raises(UnknownAgentError):
            catalog.prepare_command("nope", {})


class TestResolveCommand:
    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell lookup")
    def test_terminal_uses_shell(self, monkeypatch, catalog: AgentCatalog):
        monkeypatch.setenv("SHELL", "/bin/zsh")
        assert resolve_command(catalog.get("terminal")) == ["/bin/zsh"]

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell lookup")
    def test_terminal_without_shell_env(self, monkeypatch, catalog: AgentCatalog):
        monkeypatch.delenv("SHELL", raising=False)
        assert resolve_command(catalog.get("terminal")) == ["/bin/sh"]

    def test_multi_word_command(self):
        agent = AgentConfig(id="x", name="X", command="npx some-agent")
        assert resolve_command(agent) == ["npx", "some-agent"]
