"""
Agent state detection from terminal output.

Each strategy looks at the ANSI-stripped tail of a session's output (the last 30
non-empty lines) and classifies the agent as busy, idle or waiting for input.
Detection runs on every output event; nothing polls.
"""

import logging
import re
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from .models import SessionState

logger = logging.getLogger(__name__)

TAIL_LINES = 30

# CSI sequences, OSC sequences (BEL or ST terminated), and single-char escapes
_ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[@-Z\\-_]"
)
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b-\x0c\x0e-\x1f\x7f]")


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences and stray control characters."""
    return _CONTROL_RE.sub("", _ANSI_RE.sub("", text))


class OutputBuffer:
    """
    Rolling screen approximation built from raw PTY output.

    Keeps the last `max_lines` complete lines plus the line being written.
    A carriage return without newline rewinds the current line, which is how
    spinners and prompts redraw themselves.
    """

    def __init__(self, max_lines: int = 500):
        self.max_lines = max_lines
        self._lines: Deque[str] = deque(maxlen=max_lines)
        self._current = ""

    def feed(self, data: str) -> None:
        text = strip_ansi(data)
        for index, segment in enumerate(text.split("\n")):
            if index > 0:
                self._lines.append(self._current)
                self._current = ""
            for part_index, part in enumerate(segment.split("\r")):
                if part_index == 0:
                    self._current += part
                else:
                    # Overwrite from column 0
                    self._current = part + self._current[len(part):]

    def lines(self) -> List[str]:
        lines = list(self._lines)
        if self._current:
            lines.append(self._current)
        return lines

    def tail(self, max_lines: int = TAIL_LINES) -> str:
        """Last `max_lines` non-blank lines."""
        collected = []
        for line in reversed(self.lines()):
            if len(collected) >= max_lines:
                break
            if line.strip():
                collected.append(line.rstrip())
        return "\n".join(reversed(collected))


# =============================================================================
# Strategies
# =============================================================================

Detector = Callable[[str, SessionState], SessionState]

_CLAUDE_PROMPT = re.compile(r"(?:do you want|would you like).+\n+[\s\S]*?(?:yes|❯)")
_CODEX_CONFIRM = re.compile(r"confirm with .+ enter", re.IGNORECASE)
_CODEX_PROMPT = re.compile(r"(do you want|would you like)[\s\S]*?\n+[\s\S]*?\byes\b")
_CODEX_BUSY = re.compile(r"esc.*interrupt", re.IGNORECASE)
_GEMINI_PROMPT = re.compile(r"(allow execution|do you want to|apply this change)[\s\S]*?\n+[\s\S]*?\byes\b")
_CURSOR_AUTO = re.compile(r"auto .* \(shift\+tab\)")
_CLINE_PROMPT = re.compile(r"\[(act|plan) mode\].*?\n.*yes|let cline use this tool", re.IGNORECASE)
_CLINE_READY = re.compile(r"cline is ready for your message", re.IGNORECASE)
_PI_CONFIRM = re.compile(r"press (enter|return) to (confirm|continue)", re.IGNORECASE)
_PI_PROMPT = re.compile(r"(do you want|would you like|select a session|choose a session)", re.IGNORECASE)


def detect_claude(content: str, current: SessionState) -> SessionState:
    lower = content.lower()
    # Transcript view hides the live prompt; keep whatever we had
    if "ctrl+r to toggle" in lower:
        return current
    if _CLAUDE_PROMPT.search(lower) or "esc to cancel" in lower:
        return SessionState.WAITING_INPUT
    if "ctrl+c to interrupt" in lower or "esc to interrupt" in lower:
        return SessionState.BUSY
    return SessionState.IDLE


def detect_codex(content: str, current: SessionState) -> SessionState:
    lower = content.lower()
    if "press enter to confirm or esc to cancel" in lower or _CODEX_CONFIRM.search(content):
        return SessionState.WAITING_INPUT
    if "allow command?" in lower or "[y/n]" in lower or "yes (y)" in lower:
        return SessionState.WAITING_INPUT
    if _CODEX_PROMPT.search(lower):
        return SessionState.WAITING_INPUT
    if _CODEX_BUSY.search(lower):
        return SessionState.BUSY
    return SessionState.IDLE


def detect_gemini(content: str, current: SessionState) -> SessionState:
    lower = content.lower()
    if "waiting for user confirmation" in lower:
        return SessionState.WAITING_INPUT
    if any(marker in content for marker in ("│ Apply this change", "│ Allow execution", "│ Do you want to proceed")):
        return SessionState.WAITING_INPUT
    if _GEMINI_PROMPT.search(lower):
        return SessionState.WAITING_INPUT
    if "esc to cancel" in lower:
        return SessionState.BUSY
    return SessionState.IDLE


def detect_cursor(content: str, current: SessionState) -> SessionState:
    lower = content.lower()
    if "(y) (enter)" in lower or "keep (n)" in lower or _CURSOR_AUTO.search(lower):
        return SessionState.WAITING_INPUT
    if "ctrl+c to stop" in lower:
        return SessionState.BUSY
    return SessionState.IDLE


def detect_github_copilot(content: str, current: SessionState) -> SessionState:
    lower = content.lower()
    if _CODEX_CONFIRM.search(content) or "│ do you want" in lower:
        return SessionState.WAITING_INPUT
    if "esc to cancel" in lower:
        return SessionState.BUSY
    return SessionState.IDLE


def detect_cline(content: str, current: SessionState) -> SessionState:
    lower = content.lower()
    if _CLINE_PROMPT.search(lower):
        return SessionState.WAITING_INPUT
    if _CLINE_READY.search(lower):
        return SessionState.IDLE
    return SessionState.BUSY


def detect_pi(content: str, current: SessionState) -> SessionState:
    lower = content.lower()
    if "[y/n]" in lower or _PI_CONFIRM.search(content) or _PI_PROMPT.search(content):
        return SessionState.WAITING_INPUT
    if "ctrl+c to interrupt" in lower or "esc to interrupt" in lower or "esc to cancel" in lower:
        return SessionState.BUSY
    return SessionState.IDLE


STRATEGIES: Dict[str, Detector] = {
    "claude": detect_claude,
    "codex": detect_codex,
    "gemini": detect_gemini,
    "cursor": detect_cursor,
    "github-copilot": detect_github_copilot,
    "cline": detect_cline,
    "pi": detect_pi,
}


def get_detector(strategy: Optional[str]) -> Optional[Detector]:
    """
    Look up a detection strategy.

    Returns None for no strategy (plain terminals), and falls back to the
    claude rules for unknown names.
    """
    if strategy is None:
        return None
    detector = STRATEGIES.get(strategy)
    if detector is None:
        logger.warning(f"Unknown detection strategy '{strategy}', using claude rules")
        return detect_claude
    return detector


def detect_state(strategy: Optional[str], buffer: OutputBuffer, current: SessionState) -> SessionState:
    """Classify the buffer's tail with the given strategy."""
    detector = get_detector(strategy)
    if detector is None:
        return current
    return detector(buffer.tail(TAIL_LINES), current)
