"""Prompt and banner patterns for each supported agent CLI."""

from __future__ import annotations

import re

from ..models import SessionState

WAITING = SessionState.WAITING_INPUT
BUSY = SessionState.BUSY
IDLE = SessionState.IDLE

_CLAUDE_QUESTION = re.compile(r"(?:do you want|would you like).+\n+[\s\S]*?(?:yes|❯)")
_CLAUDE_BACKGROUND = re.compile(r"(\d+)\s+(?:background\s+task|local\s+agent)")
_CLAUDE_TEAM = re.compile(r"(\d+)\s+teammates?\b")
_CONFIRM_WITH_ENTER = re.compile(r"confirm with .+ enter", re.IGNORECASE)
_CODEX_QUESTION = re.compile(r"(do you want|would you like)[\s\S]*?\n+[\s\S]*?\byes\b")
_ESC_INTERRUPT = re.compile(r"esc.*interrupt", re.IGNORECASE)
_GEMINI_QUESTION = re.compile(
    r"(allow execution|do you want to|apply this change)[\s\S]*?\n+[\s\S]*?\byes\b"
)
_CURSOR_AUTO = re.compile(r"auto .* \(shift\+tab\)")
_CLINE_TOOL_PROMPT = re.compile(r"\[(?:act|plan) mode\].*?\n.*yes")


def detect_claude(content: str, previous: SessionState) -> SessionState:
    lower = content.lower()
    # transcript view hides the live prompt
    if "ctrl+r to toggle" in lower:
        return previous
    if _CLAUDE_QUESTION.search(lower) or "esc to cancel" in lower:
        return WAITING
    if "esc to interrupt" in lower or "ctrl+c to interrupt" in lower:
        return BUSY
    return IDLE


def claude_background_tasks(content: str) -> int:
    lower = content.lower()
    match = _CLAUDE_BACKGROUND.search(lower)
    if match:
        return int(match.group(1))
    return 1 if "(running)" in lower else 0


def claude_team_members(content: str) -> int:
    match = _CLAUDE_TEAM.search(content.lower())
    return int(match.group(1)) if match else 0


def detect_codex(content: str, previous: SessionState) -> SessionState:
    lower = content.lower()
    if "press enter to confirm or esc to cancel" in lower or _CONFIRM_WITH_ENTER.search(content):
        return WAITING
    if "allow command?" in lower or "[y/n]" in lower or "yes (y)" in lower:
        return WAITING
    if _CODEX_QUESTION.search(lower):
        return WAITING
    if _ESC_INTERRUPT.search(lower):
        return BUSY
    return IDLE


def detect_gemini(content: str, previous: SessionState) -> SessionState:
    lower = content.lower()
    if "waiting for user confirmation" in lower:
        return WAITING
    if any(
        marker in content
        for marker in ("│ Apply this change", "│ Allow execution", "│ Do you want to proceed")
    ):
        return WAITING
    if _GEMINI_QUESTION.search(lower):
        return WAITING
    if "esc to cancel" in lower:
        return BUSY
    return IDLE


def detect_cursor(content: str, previous: SessionState) -> SessionState:
    lower = content.lower()
    if "(y) (enter)" in lower or "keep (n)" in lower or _CURSOR_AUTO.search(lower):
        return WAITING
    if "ctrl+c to stop" in lower:
        return BUSY
    return IDLE


def detect_github_copilot(content: str, previous: SessionState) -> SessionState:
    if _CONFIRM_WITH_ENTER.search(content):
        return WAITING
    lower = content.lower()
    if "│ do you want" in lower:
        return WAITING
    if "esc to cancel" in lower:
        return BUSY
    return IDLE


_KIMI_PROMPTS = ("allow?", "confirm?", "approve?", "proceed?", "[y/n]", "(y/n)")
_KIMI_BUSY = (
    "thinking",
    "processing",
    "generating",
    "waiting for response",
    "ctrl+c to cancel",
    "ctrl-c to cancel",
    "press ctrl+c",
)


def detect_kimi(content: str, previous: SessionState) -> SessionState:
    lower = content.lower()
    if any(prompt in lower for prompt in _KIMI_PROMPTS):
        return WAITING
    if any(marker in lower for marker in _KIMI_BUSY):
        return BUSY
    return IDLE


def detect_cline(content: str, previous: SessionState) -> SessionState:
    lower = content.lower()
    if _CLINE_TOOL_PROMPT.search(lower) or "let cline use this tool" in lower:
        return WAITING
    # cline draws no busy marker; anything short of a tool prompt counts as idle
    return IDLE


def detect_opencode(content: str, previous: SessionState) -> SessionState:
    if "△ Permission required" in content:
        return WAITING
    if _ESC_INTERRUPT.search(content):
        return BUSY
    return IDLE


__all__ = [
    "claude_background_tasks",
    "claude_team_members",
    "detect_claude",
    "detect_cline",
    "detect_codex",
    "detect_cursor",
    "detect_gemini",
    "detect_github_copilot",
    "detect_kimi",
    "detect_opencode",
]
