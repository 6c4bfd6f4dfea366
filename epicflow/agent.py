"""Agent invocation boundary.

The orchestration core treats an agent as an opaque async callable that takes
a prompt and a workspace and returns text plus cost and token usage.
ClaudeCodeInvoker is the concrete implementation that shells out to the
Claude Code CLI with JSON output.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Protocol

from epicflow.errors import (
    AgentInvocationError,
    AgentTimeoutError,
    AgentValidationError,
)
from epicflow.models import AgentResult, TokenUsage

logger = logging.getLogger(__name__)


class AgentInvoker(Protocol):
    """Callable shape the core requires from an agent backend."""

    async def __call__(
        self,
        agent_type: str,
        prompt: str,
        workspace_path: Path,
        task_id: str,
        display_name: str,
        resume_options: dict[str, Any] | None = None,
        attachments: list[str] | None = None,
    ) -> AgentResult: ...


def parse_agent_json(raw: str) -> AgentResult:
    """Parse Claude Code ``--output-format json`` output.

    Raises:
        AgentValidationError: If the output is not the expected JSON object
        AgentInvocationError: If the CLI reported an error result
    """
    try:
        output = json.loads(raw)
    except json.JSONDecodeError as e:
        raise AgentValidationError(f"Failed to parse agent JSON output: {e}") from e
    if not isinstance(output, dict):
        raise AgentValidationError("Agent JSON output is not an object")

    text = output.get("result", "") or ""
    if output.get("is_error"):
        raise AgentInvocationError(f"Agent reported error: {text[:500]}")

    usage = output.get("usage") or {}
    return AgentResult(
        output=text,
        cost_usd=float(output.get("total_cost_usd", 0.0) or 0.0),
        usage=TokenUsage(
            input_tokens=int(usage.get("input_tokens", 0) or 0),
            output_tokens=int(usage.get("output_tokens", 0) or 0),
        ),
        session_id=output.get("session_id", "") or "",
    )


class ClaudeCodeInvoker:
    """Runs agents through the ``claude`` CLI in the given workspace.

    Attributes:
        max_turns: Maximum conversation turns per invocation
        timeout: Seconds before the CLI process is killed
        allowed_tools: Tools the agent may use
    """

    def __init__(
        self,
        max_turns: int = 50,
        timeout: float = 1800,
        allowed_tools: list[str] | None = None,
        binary: str = "claude",
    ) -> None:
        self.max_turns = max_turns
        self.timeout = timeout
        self.allowed_tools = allowed_tools or [
            "Bash",
            "Read",
            "Write",
            "Edit",
            "Glob",
            "Grep",
        ]
        self.binary = binary

    def build_command(
        self,
        prompt: str,
        resume_options: dict[str, Any] | None = None,
    ) -> list[str]:
        cmd = [
            self.binary,
            "-p",
            prompt,
            "--output-format",
            "json",
            "--permission-mode",
            "acceptEdits",
            "--max-turns",
            str(self.max_turns),
            "--allowedTools",
            ",".join(self.allowed_tools),
        ]
        if resume_options and resume_options.get("session_id"):
            cmd.extend(["--resume", resume_options["session_id"]])
        return cmd

    async def __call__(
        self,
        agent_type: str,
        prompt: str,
        workspace_path: Path,
        task_id: str,
        display_name: str,
        resume_options: dict[str, Any] | None = None,
        attachments: list[str] | None = None,
    ) -> AgentResult:
        if attachments:
            prompt = prompt + "\n\nAttached files:\n" + "\n".join(attachments)

        logger.info(f"[{task_id}] Invoking {agent_type} agent ({display_name})")
        proc = await asyncio.create_subprocess_exec(
            *self.build_command(prompt, resume_options),
            cwd=str(workspace_path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise AgentTimeoutError(agent_type, self.timeout) from None

        if proc.returncode != 0 and not stdout.strip():
            raise AgentInvocationError(
                f"{agent_type} agent exited {proc.returncode}: "
                f"{stderr.decode(errors='replace')[:500]}"
            )

        result = parse_agent_json(stdout.decode(errors="replace"))
        logger.info(
            f"[{task_id}] {display_name} finished: ${result.cost_usd:.4f}, "
            f"{result.usage.total} tokens"
        )
        return result
