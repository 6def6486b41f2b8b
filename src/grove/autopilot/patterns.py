"""Regex library of common agent failure modes."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Iterable, Literal

PatternPriority = Literal["critical", "high", "medium", "low"]

PRIORITY_ORDER: dict[str, int] = {"critical": 0, "high": 1, "medium": 2, "low": 3}
PRIORITY_BONUS: dict[str, float] = {"critical": 0.3, "high": 0.2, "medium": 0.1, "low": 0.05}
DEFAULT_SENSITIVITY: dict[str, float] = {"critical": 0.1, "high": 0.3, "medium": 0.5, "low": 0.7}


@dataclass(slots=True, frozen=True)
class DetectionPattern:
    id: str
    name: str
    description: str
    category: str
    priority: PatternPriority
    regex: re.Pattern[str]
    guidance: str
    min_matches: int = 1
    cooldown_seconds: float | None = None
    enabled: bool = True


@dataclass(slots=True, frozen=True)
class PatternMatch:
    pattern: DetectionPattern
    count: int
    confidence: float


def _pattern(
    id: str,
    name: str,
    description: str,
    category: str,
    priority: PatternPriority,
    regex: str,
    flags: int,
    guidance: str,
    *,
    min_matches: int = 1,
    cooldown_seconds: float | None = None,
) -> DetectionPattern:
    return DetectionPattern(
        id=id,
        name=name,
        description=description,
        category=category,
        priority=priority,
        regex=re.compile(regex, flags),
        guidance=guidance,
        min_matches=min_matches,
        cooldown_seconds=cooldown_seconds,
    )


DEFAULT_PATTERNS: tuple[DetectionPattern, ...] = (
    _pattern(
        "unhandled_error",
        "Unhandled Error",
        "Error messages being ignored or not addressed",
        "error_detection",
        "critical",
        r"Error:|Exception:|Failed:|❌|✗|ERROR",
        re.IGNORECASE,
        "I notice there are errors in the output. Please review and address them before continuing.",
        min_matches=2,
    ),
    _pattern(
        "command_not_found",
        "Command Not Found",
        "Command not found errors",
        "error_detection",
        "critical",
        r"command not found|No such file or directory|Permission denied",
        re.IGNORECASE,
        "Command execution failed. Please check the command syntax and file permissions.",
    ),
    _pattern(
        "syntax_error",
        "Syntax Error",
        "Syntax errors in code",
        "error_detection",
        "critical",
        r"SyntaxError|ParseError|Unexpected token|Unexpected end",
        re.IGNORECASE,
        "Syntax errors detected. Please review the code syntax and fix any issues.",
    ),
    _pattern(
        "exposed_secrets",
        "Exposed Secrets",
        "Potential API keys or secrets in output",
        "security",
        "critical",
        r"(?:api[_-]?key|secret|token|password)\s*[=:]\s*['\"]?[a-zA-Z0-9]{20,}",
        re.IGNORECASE,
        "Potential secrets detected in output. Please review and ensure no sensitive data is exposed.",
    ),
    _pattern(
        "repetitive_commands",
        "Repetitive Commands",
        "Same command being repeated multiple times",
        "repetitive_behavior",
        "high",
        r"^(\$\s*\w+.*?)(\n\$\s*\1){2,}",
        re.MULTILINE,
        "I notice you're repeating similar commands. Consider a different approach or break this into smaller steps.",
        cooldown_seconds=300,
    ),
    _pattern(
        "circular_logic",
        "Circular Logic",
        "Circular reasoning or going in loops",
        "repetitive_behavior",
        "high",
        r"(?:Let me try|I'll try|Let's try).*(?:again|once more|different approach).*(?:Let me try|I'll try|Let's try)",
        re.IGNORECASE | re.DOTALL,
        "You seem to be going in circles. Try stepping back and considering a fundamentally different approach.",
        cooldown_seconds=600,
    ),
    _pattern(
        "analysis_paralysis",
        "Analysis Paralysis",
        "Too much analysis without action",
        "overthinking",
        "medium",
        r"(?:Let me think|I need to consider|Let me analyze|I should check)(?:.*\n){10,}",
        re.MULTILINE,
        "You're analyzing a lot. Consider taking action with a simple first step.",
        cooldown_seconds=900,
    ),
    _pattern(
        "debug_code_left",
        "Debug Code Left Behind",
        "Debug statements left in code",
        "code_quality",
        "medium",
        r"console\.log|debugger|print\(|puts |echo ",
        re.IGNORECASE,
        "Debug statements detected. Consider removing them before finalizing.",
        min_matches=3,
    ),
    _pattern(
        "todo_comments",
        "TODO Comments",
        "Many TODO comments indicating incomplete work",
        "code_quality",
        "low",
        r"//\s*TODO|#\s*TODO|/\*\s*TODO",
        re.IGNORECASE,
        "Multiple TODOs found. Consider addressing some of them before adding more features.",
        min_matches=5,
    ),
    _pattern(
        "uncommitted_changes",
        "Many Uncommitted Changes",
        "Many files changed without committing",
        "git_workflow",
        "medium",
        r"modified:\s+.*\n(?:.*modified:\s+.*\n){5,}",
        re.MULTILINE,
        "You have many uncommitted changes. Consider committing your progress to avoid losing work.",
    ),
    _pattern(
        "merge_conflicts",
        "Merge Conflicts",
        "Merge conflict indicators in output",
        "git_workflow",
        "high",
        r"<<<<<<< |>>>>>>> |^=======$",
        re.MULTILINE,
        "Merge conflicts detected. Please resolve them before continuing.",
    ),
)


def score_matches(pattern: DetectionPattern, matches: list[re.Match[str]]) -> float:
    """Confidence grows with match count, pattern priority, match length and spread."""

    count = len(matches)
    base = min(0.8, math.log10(count + 1))
    average_length = sum(len(match.group(0)) for match in matches) / count
    length_score = min(0.2, average_length / 100)
    positions = [match.start() for match in matches]
    spread_score = 0.1 if max(positions) - min(positions) > 1000 else 0.0
    return min(1.0, base + PRIORITY_BONUS[pattern.priority] + length_score + spread_score)


def detect_patterns(
    output: str,
    patterns: Iterable[DetectionPattern] = DEFAULT_PATTERNS,
    sensitivity: dict[str, float] | None = None,
) -> list[PatternMatch]:
    """Return the patterns found in ``output``, most severe and confident first."""

    thresholds = sensitivity or DEFAULT_SENSITIVITY
    found: list[PatternMatch] = []
    for pattern in patterns:
        if not pattern.enabled:
            continue
        matches = list(pattern.regex.finditer(output))
        if len(matches) < pattern.min_matches or not matches:
            continue
        confidence = score_matches(pattern, matches)
        if confidence >= thresholds[pattern.priority]:
            found.append(PatternMatch(pattern, len(matches), confidence))
    found.sort(key=lambda match: (PRIORITY_ORDER[match.pattern.priority], -match.confidence))
    return found


__all__ = [
    "DEFAULT_PATTERNS",
    "DEFAULT_SENSITIVITY",
    "DetectionPattern",
    "PatternMatch",
    "PatternPriority",
    "detect_patterns",
    "score_matches",
]
