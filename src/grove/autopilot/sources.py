"""Guidance sources consulted by the autopilot monitor."""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Callable, Iterable, Protocol, Sequence, runtime_checkable

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import GuidanceError
from ..models import GuidanceResult
from ..presets import AutopilotConfig
from .patterns import DEFAULT_PATTERNS, DetectionPattern, detect_patterns

logger = logging.getLogger(__name__)

OPENAI_URL = "https://api.openai.com/v1/chat/completions"
ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"

ANALYSIS_PROMPT = """You are an AI assistant monitoring coding agent sessions. Your job is to detect when the agent needs guidance and provide brief, actionable suggestions.

Analyze this terminal output from the worktree {worktree_path} and determine if the agent needs guidance:

TERMINAL OUTPUT:
{output}

Look for patterns indicating the agent needs help:
- Repetitive behavior or loops
- Error messages being ignored
- Confusion or uncertainty in responses
- Getting stuck on the same task
- Making the same mistakes repeatedly
- Overthinking simple problems

Respond with JSON in this exact format:
{{
  "shouldIntervene": boolean,
  "guidance": "Brief actionable suggestion (max 60 chars)" or null,
  "confidence": number (0-1),
  "reasoning": "Why you made this decision"
}}

Guidelines:
- Only intervene for clear issues (confidence > 0.7)
- Keep guidance brief and actionable
- Don't intervene for normal progress or minor issues
- Focus on patterns, not single mistakes"""

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


@runtime_checkable
class GuidanceSource(Protocol):
    """Something that can judge recent output and suggest a nudge."""

    id: str
    priority: int

    def is_available(self) -> bool:
        ...

    async def analyze(self, output: str, worktree_path: str) -> GuidanceResult:
        ...


def no_guidance(source: str, priority: int, reasoning: str) -> GuidanceResult:
    return GuidanceResult(
        should_intervene=False,
        confidence=0.0,
        reasoning=reasoning,
        source=source,
        priority=priority,
    )


class PatternGuidanceSource:
    """Fast regex pass over the output; each pattern has its own cooldown."""

    id = "pattern-detection"
    priority = 10

    def __init__(
        self,
        patterns: Iterable[DetectionPattern] = DEFAULT_PATTERNS,
        *,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._patterns = tuple(patterns)
        self._enabled = enabled
        self._clock = clock
        self._last_fired: dict[str, float] = {}

    def is_available(self) -> bool:
        return self._enabled

    def _cooling_down(self, pattern: DetectionPattern) -> bool:
        if pattern.cooldown_seconds is None:
            return False
        last = self._last_fired.get(pattern.id)
        return last is not None and self._clock() - last < pattern.cooldown_seconds

    async def analyze(self, output: str, worktree_path: str) -> GuidanceResult:
        if not self._enabled:
            return no_guidance(self.id, self.priority, "Pattern detection disabled")
        matches = [
            match
            for match in detect_patterns(output, self._patterns)
            if not self._cooling_down(match.pattern)
        ]
        if not matches:
            return no_guidance(self.id, self.priority, "No patterns detected")

        best = matches[0]
        self._last_fired[best.pattern.id] = self._clock()
        return GuidanceResult(
            should_intervene=True,
            confidence=best.confidence,
            guidance=best.pattern.guidance,
            reasoning=f"Pattern detected: {best.pattern.name} - {best.pattern.description}",
            source=self.id,
            priority=self.priority,
            metadata={
                "pattern_id": best.pattern.id,
                "pattern_category": best.pattern.category,
                "match_count": best.count,
                "all_matches": [match.pattern.id for match in matches],
            },
        )


class GuidanceDecision(BaseModel):
    """JSON decision returned by the language model."""

    model_config = ConfigDict(populate_by_name=True)

    should_intervene: bool = Field(..., alias="shouldIntervene")
    guidance: str | None = None
    confidence: float = Field(..., ge=0, le=1)
    reasoning: str


class LLMGuidanceSource:
    """Ask OpenAI or Anthropic whether the session needs a nudge."""

    id = "llm"
    priority = 100

    def __init__(
        self,
        config: AutopilotConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        self._config = config
        self._transport = transport
        self._timeout = timeout

    def update_config(self, config: AutopilotConfig) -> None:
        self._config = config

    def _api_key(self) -> str | None:
        return self._config.api_keys.get(self._config.provider) or None

    def is_available(self) -> bool:
        return self._api_key() is not None

    def _build_request(self, prompt: str, api_key: str) -> tuple[str, dict[str, str], dict]:
        if self._config.provider == "anthropic":
            headers = {
                "x-api-key": api_key,
                "anthropic-version": ANTHROPIC_VERSION,
                "content-type": "application/json",
            }
            body = {
                "model": self._config.model,
                "max_tokens": 512,
                "temperature": 0.3,
                "messages": [{"role": "user", "content": prompt}],
            }
            return ANTHROPIC_URL, headers, body
        headers = {"Authorization": f"Bearer {api_key}", "content-type": "application/json"}
        body = {
            "model": self._config.model,
            "temperature": 0.3,
            "messages": [{"role": "user", "content": prompt}],
        }
        return OPENAI_URL, headers, body

    def _extract_text(self, payload: dict) -> str:
        try:
            if self._config.provider == "anthropic":
                return "".join(
                    block.get("text", "")
                    for block in payload["content"]
                    if block.get("type") == "text"
                )
            return payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise GuidanceError(f"Unexpected {self._config.provider} response shape") from exc

    async def analyze(self, output: str, worktree_path: str) -> GuidanceResult:
        api_key = self._api_key()
        if api_key is None:
            return no_guidance(
                self.id, self.priority, f"{self._config.provider} API key not configured"
            )

        prompt = ANALYSIS_PROMPT.format(output=output, worktree_path=worktree_path)
        url, headers, body = self._build_request(prompt, api_key)
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                response = await client.post(url, headers=headers, json=body)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as exc:
            raise GuidanceError(f"Guidance request failed: {exc}") from exc
        except ValueError as exc:
            raise GuidanceError("Guidance response was not JSON") from exc

        text = _CODE_FENCE.sub("", self._extract_text(payload).strip())
        try:
            decision = GuidanceDecision.model_validate(json.loads(text))
        except (ValueError, ValidationError) as exc:
            raise GuidanceError(f"Invalid guidance decision: {exc}") from exc

        return GuidanceResult(
            should_intervene=decision.should_intervene,
            guidance=decision.guidance,
            confidence=decision.confidence,
            reasoning=decision.reasoning,
            source=self.id,
            priority=self.priority,
            metadata={"provider": self._config.provider, "model": self._config.model},
        )


class CompositeGuidanceSource:
    """Run sources in priority order (lowest first); the first intervention wins."""

    id = "composite"
    priority = 0

    def __init__(self, sources: Sequence[GuidanceSource]) -> None:
        self._sources = sorted(sources, key=lambda source: source.priority)

    @property
    def sources(self) -> list[GuidanceSource]:
        return list(self._sources)

    def is_available(self) -> bool:
        return any(source.is_available() for source in self._sources)

    async def analyze(self, output: str, worktree_path: str) -> GuidanceResult:
        failure: GuidanceError | None = None
        fallback: GuidanceResult | None = None
        for source in self._sources:
            if not source.is_available():
                continue
            try:
                result = await source.analyze(output, worktree_path)
            except GuidanceError as exc:
                logger.warning("Guidance source %s failed: %s", source.id, exc)
                failure = exc
                continue
            if result.should_intervene and result.guidance:
                return result
            if fallback is None:
                fallback = result
        if failure is not None:
            raise failure
        return fallback or no_guidance(self.id, self.priority, "No guidance sources available")


def build_guidance_source(
    config: AutopilotConfig, *, transport: httpx.AsyncBaseTransport | None = None
) -> CompositeGuidanceSource:
    sources: list[GuidanceSource] = [LLMGuidanceSource(config, transport=transport)]
    if config.patterns_enabled:
        sources.append(PatternGuidanceSource())
    return CompositeGuidanceSource(sources)


__all__ = [
    "CompositeGuidanceSource",
    "GuidanceDecision",
    "GuidanceSource",
    "LLMGuidanceSource",
    "PatternGuidanceSource",
    "build_guidance_source",
    "no_guidance",
]
