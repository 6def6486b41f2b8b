"""Session registry and the multi-project orchestrator."""

from .orchestrator import GlobalSessionOrchestrator
from .registry import SessionRegistry

__all__ = ["GlobalSessionOrchestrator", "SessionRegistry"]
