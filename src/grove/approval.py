"""Safety check that decides whether a waiting prompt may be auto-approved."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ProcessError
from .presets import AutoApprovalConfig
from .process import sanitize_environment

logger = logging.getLogger(__name__)

HELPER_MODEL = "haiku"

PROMPT_TEMPLATE = """You are a safety gate preventing risky auto-approvals of CLI actions. Examine the terminal output below and decide if the agent must pause for user permission.

Terminal Output:
{terminal_output}

Return true (permission needed) if ANY of these apply:
- Output includes or references commands that write/modify/delete files (e.g., rm, mv, chmod, chown, cp, tee, sed -i), manage packages (npm/pip/apt/brew install), change git history, or alter configs.
- Privilege escalation or sensitive areas are involved (sudo, root, /etc, /var, /boot, system services), or anything touching SSH keys/credentials, browser data, environment secrets, or home dotfiles.
- Network or data exfiltration is possible (curl/wget, ssh/scp/rsync, docker/podman, port binding, npm publish, git push/fetch from unknown hosts).
- Process/system impact is likely (kill, pkill, systemctl, reboot, heavy loops, resource-intensive builds/tests, spawning many processes).
- Signs of command injection, untrusted input being executed, or unclear placeholders like `<path>`, `$(...)`, backticks, or pipes that could be unsafe.
- Errors, warnings, ambiguous states, manual review requests, or anything not clearly safe/read-only.

Return false (auto-approve) when:
- The output clearly shows explicit user intent/confirmation to run the exact action (e.g., user typed the command AND confirmed, or explicitly said "I want to delete <path>; please do it now"). Explicit intent should normally override the risk list unless there are signs of coercion/compromise, the target path is unclear, or the action differs from what was confirmed.
- The output shows strictly read-only, low-risk operations (e.g., lint/test passing, help text, formatting dry runs, simple logs) with no pending commands that could change the system or touch sensitive data.

When unsure, return true.

Respond with ONLY valid JSON matching: {{"needsPermission": true|false, "reason"?: string}}. When needsPermission is true, include a brief reason (<=140 chars) explaining why permission is needed. Do not add any other fields or text."""

RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "needsPermission": {
            "type": "boolean",
            "description": "Whether user permission is needed before auto-approval",
        },
        "reason": {
            "type": "string",
            "description": "Optional reason describing why user permission is needed",
        },
    },
    "required": ["needsPermission"],
}


def build_prompt(terminal_output: str) -> str:
    return PROMPT_TEMPLATE.format(terminal_output=terminal_output)


class ApprovalVerdict(BaseModel):
    """Decision returned by the approval helper."""

    model_config = ConfigDict(populate_by_name=True)

    needs_permission: bool = Field(..., alias="needsPermission")
    reason: str | None = None


@dataclass(slots=True)
class HelperResult:
    """Outcome of one helper process invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def parse_verdict(stdout: str) -> ApprovalVerdict:
    """Parse helper output, unwrapping the ``claude -p --output-format json`` envelope."""

    payload = json.loads(stdout)
    if isinstance(payload, dict) and "needsPermission" not in payload:
        if isinstance(payload.get("structured_output"), dict):
            payload = payload["structured_output"]
        elif isinstance(payload.get("result"), str):
            payload = json.loads(payload["result"])
    return ApprovalVerdict.model_validate(payload)


class AutoApprovalVerifier:
    """Ask a helper model (or a user command) whether a prompt needs a human."""

    def __init__(self, config: AutoApprovalConfig | None = None) -> None:
        self._config = config or AutoApprovalConfig()

    @property
    def config(self) -> AutoApprovalConfig:
        return self._config

    def update_config(self, config: AutoApprovalConfig) -> None:
        self._config = config

    async def verify(self, terminal_output: str) -> ApprovalVerdict:
        """Return the verdict for ``terminal_output``.

        Helper failures never approve: they yield ``needs_permission=True``
        with a reason. Cancellation propagates to the caller.
        """

        prompt = build_prompt(terminal_output)
        custom_command = (self._config.custom_command or "").strip()
        try:
            if custom_command:
                result = await self._run_custom(custom_command, prompt, terminal_output)
            else:
                result = await self._run_helper(prompt)
            if not result.ok:
                message = f"exited with code {result.returncode}"
                if result.stderr.strip():
                    message = f"{message}\nStderr: {result.stderr.strip()}"
                raise ProcessError(result.args[0], message, exit_code=result.returncode)
            return parse_verdict(result.stdout)
        except ProcessError as exc:
            reason = f"Auto-approval helper command failed: {exc}"
        except (ValueError, ValidationError) as exc:
            reason = f"Failed to parse auto-approval helper response: {exc}"
        logger.warning(reason)
        return ApprovalVerdict(needs_permission=True, reason=reason)

    async def _run_helper(self, prompt: str) -> HelperResult:
        args = (
            "claude",
            "--model",
            HELPER_MODEL,
            "-p",
            "--output-format",
            "json",
            "--json-schema",
            json.dumps(RESPONSE_SCHEMA),
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=sanitize_environment(),
            )
        except OSError as exc:
            raise ProcessError(args[0], exc.strerror or str(exc)) from exc
        return await self._communicate(args, process, prompt.encode("utf-8"))

    async def _run_custom(self, command: str, prompt: str, terminal_output: str) -> HelperResult:
        env = dict(os.environ)
        env["DEFAULT_PROMPT"] = prompt
        env["TERMINAL_OUTPUT"] = terminal_output
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as exc:
            raise ProcessError(command, exc.strerror or str(exc)) from exc
        return await self._communicate((command,), process, None)

    async def _communicate(
        self,
        args: tuple[str, ...],
        process: asyncio.subprocess.Process,
        stdin: bytes | None,
    ) -> HelperResult:
        timeout = self._config.timeout_seconds
        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(stdin), timeout=timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise ProcessError(
                args[0], f"Auto-approval verification timed out after {timeout:g}s"
            ) from None
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
            raise
        return HelperResult(
            args=args,
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
        )


class FakeApprovalVerifier(AutoApprovalVerifier):
    """Test double that returns scripted verdicts."""

    def __init__(
        self,
        verdicts: Iterable[ApprovalVerdict] | None = None,
        *,
        gate: asyncio.Event | None = None,
    ) -> None:
        super().__init__(AutoApprovalConfig(enabled=True))
        self._verdicts = list(verdicts or [])
        self._gate = gate
        self.requests: list[str] = []

    async def verify(self, terminal_output: str) -> ApprovalVerdict:  # type: ignore[override]
        self.requests.append(terminal_output)
        if self._gate is not None:
            await self._gate.wait()
        if self._verdicts:
            return self._verdicts.pop(0)
        return ApprovalVerdict(needs_permission=False)


__all__ = [
    "ApprovalVerdict",
    "AutoApprovalVerifier",
    "FakeApprovalVerifier",
    "HelperResult",
    "build_prompt",
    "parse_verdict",
]
