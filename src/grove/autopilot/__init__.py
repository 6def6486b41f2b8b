"""Automated guidance for sessions that stall."""

from .monitor import AutopilotMonitor, recent_output
from .sources import (
    CompositeGuidanceSource,
    GuidanceSource,
    LLMGuidanceSource,
    PatternGuidanceSource,
    build_guidance_source,
)

__all__ = [
    "AutopilotMonitor",
    "CompositeGuidanceSource",
    "GuidanceSource",
    "LLMGuidanceSource",
    "PatternGuidanceSource",
    "build_guidance_source",
    "recent_output",
]
