from __future__ import annotations

import asyncio
import json

import pytest

from grove.approval import AutoApprovalVerifier, build_prompt, parse_verdict
from grove.presets import AutoApprovalConfig


def verify(command: str, output: str = "$ ls\nAllow command? [y/n]", timeout: float = 10.0):
    verifier = AutoApprovalVerifier(
        AutoApprovalConfig(enabled=True, custom_command=command, timeout_seconds=timeout)
    )
    return asyncio.run(verifier.verify(output))


def test_custom_command_sees_prompt_and_output() -> None:
    command = (
        'case "$TERMINAL_OUTPUT" in '
        "*rm*) printf '{\"needsPermission\": true, \"reason\": \"deletes files\"}';; "
        "*) test -n \"$DEFAULT_PROMPT\" && printf '{\"needsPermission\": false}';; "
        "esac"
    )

    safe = verify(command, "$ ls\nAllow command? [y/n]")
    risky = verify(command, "$ rm -rf build\nAllow command? [y/n]")

    assert safe.needs_permission is False
    assert risky.needs_permission is True
    assert risky.reason == "deletes files"


def test_default_prompt_embeds_output() -> None:
    command = 'case "$DEFAULT_PROMPT" in *"pending: git push"*) printf \'{"needsPermission": true}\';; esac'

    verdict = verify(command, "pending: git push")

    assert verdict.needs_permission is True
    assert "pending: git push" in build_prompt("pending: git push")


@pytest.mark.parametrize(
    "command, fragment",
    [
        ("echo broken >&2; exit 2", "exited with code 2"),
        ("printf 'not json'", "Failed to parse"),
        ("printf '{\"reason\": \"missing flag\"}'", "Failed to parse"),
    ],
)
def test_helper_failures_require_permission(command: str, fragment: str) -> None:
    verdict = verify(command)

    assert verdict.needs_permission is True
    assert fragment in verdict.reason


def test_helper_timeout_requires_permission() -> None:
    verdict = verify("sleep 5", timeout=0.2)

    assert verdict.needs_permission is True
    assert "timed out after 0.2s" in verdict.reason


def test_parse_verdict_unwraps_envelopes() -> None:
    structured = json.dumps({"type": "result", "structured_output": {"needsPermission": False}})
    text = json.dumps(
        {"type": "result", "result": json.dumps({"needsPermission": True, "reason": "sudo"})}
    )

    assert parse_verdict(structured).needs_permission is False
    verdict = parse_verdict(text)
    assert verdict.needs_permission is True
    assert verdict.reason == "sudo"
    assert parse_verdict('{"needsPermission": false}').reason is None
