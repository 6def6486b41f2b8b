"""PTY process spawning and supervision."""

from .pty import PtyProcess
from .supervisor import CommandSpec, ProcessSupervisor, SupervisedProcess
from .utils import sanitize_environment

__all__ = [
    "CommandSpec",
    "ProcessSupervisor",
    "PtyProcess",
    "SupervisedProcess",
    "sanitize_environment",
]
