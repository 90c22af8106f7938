"""Agent runner: executes agent CLIs and captures their output and usage."""

from __future__ import annotations

import asyncio
import json
import os
import shlex
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Protocol

from .config import settings
from .costs import TokenUsage
from .errors import ChangeloopError, InvokeError
from .role_config import Provider, Role, RoleConfig, provider_command, resolve_role


@dataclass(frozen=True)
class ResumeMode:
    """How an agent call relates to earlier conversations."""

    kind: Literal["none", "latest", "index"] = "none"
    index: int | None = None

    @classmethod
    def none(cls) -> ResumeMode:
        return cls("none")

    @classmethod
    def latest(cls) -> ResumeMode:
        return cls("latest")

    @classmethod
    def by_index(cls, index: int) -> ResumeMode:
        if index < 1:
            raise ValueError(f"Session index must be positive, got {index}")
        return cls("index", index)


@dataclass
class AgentResult:
    """Result from running an agent."""

    output: str
    usage: TokenUsage
    session_id: str | None = None
    raw_output: str = ""


class AgentInvoker(Protocol):
    async def invoke(
        self,
        prompt: str,
        env: dict[str, str] | None = None,
        resume: ResumeMode = ResumeMode(),
    ) -> AgentResult: ...


@dataclass
class ParsedOutput:
    text: str = ""
    session_id: str | None = None
    model: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    events: list[dict[str, Any]] = field(default_factory=list)


def _as_int(value: Any) -> int | None:
    return int(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else None


def _extract_token_usage(payload: dict[str, Any] | None) -> dict[str, int | None]:
    if not isinstance(payload, dict):
        return {}
    input_tokens = _as_int(payload.get("input_tokens"))
    if input_tokens is None:
        input_tokens = _as_int(payload.get("prompt_tokens"))
    output_tokens = _as_int(payload.get("output_tokens"))
    if output_tokens is None:
        output_tokens = _as_int(payload.get("completion_tokens"))
    return {"input_tokens": input_tokens, "output_tokens": output_tokens}


def _content_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            part.get("text", "") for part in content if isinstance(part, dict) and isinstance(part.get("text"), str)
        )
    return ""


def _json_lines(stdout: str) -> list[dict[str, Any]]:
    events = []
    for line in stdout.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(event, dict):
            events.append(event)
    return events


def _parse_gemini(events: list[dict[str, Any]], parsed: ParsedOutput) -> None:
    chunks: list[str] = []
    for event in events:
        kind = event.get("type")
        if kind == "init":
            parsed.session_id = event.get("session_id") or parsed.session_id
            parsed.model = event.get("model") or parsed.model
        elif kind == "message" and event.get("role", "assistant") == "assistant":
            chunks.append(_content_text(event.get("content")))
        elif kind == "result":
            usage = _extract_token_usage(event.get("stats"))
            parsed.input_tokens = usage.get("input_tokens") or 0
            parsed.output_tokens = usage.get("output_tokens") or 0
    parsed.text = "".join(chunks)


def _parse_codex(events: list[dict[str, Any]], parsed: ParsedOutput) -> None:
    messages: list[str] = []
    for event in events:
        kind = event.get("type")
        if kind == "thread.started":
            parsed.session_id = event.get("thread_id") or parsed.session_id
        elif kind == "item.completed":
            item = event.get("item") if isinstance(event.get("item"), dict) else {}
            if item.get("type") == "agent_message" and isinstance(item.get("text"), str):
                messages.append(item["text"])
        elif kind == "turn.completed":
            usage = _extract_token_usage(event.get("usage"))
            parsed.input_tokens += usage.get("input_tokens") or 0
            parsed.output_tokens += usage.get("output_tokens") or 0
    parsed.text = "\n\n".join(messages)


def _parse_claude(events: list[dict[str, Any]], parsed: ParsedOutput) -> None:
    for event in events:
        if event.get("type") != "result":
            continue
        parsed.text = event.get("result") if isinstance(event.get("result"), str) else ""
        parsed.session_id = event.get("session_id") or parsed.session_id
        usage = _extract_token_usage(event.get("usage"))
        parsed.input_tokens = usage.get("input_tokens") or 0
        parsed.output_tokens = usage.get("output_tokens") or 0


_PARSERS = {
    Provider.GEMINI: _parse_gemini,
    Provider.CODEX: _parse_codex,
    Provider.CLAUDE: _parse_claude,
}


def parse_agent_output(provider: Provider, stdout: str) -> ParsedOutput:
    """Extract text, session id and token usage from an agent's JSON output.

    Output that is not JSON at all is passed through as plain text with
    zero usage.
    """
    parsed = ParsedOutput()
    events = _json_lines(stdout)
    if not events:
        parsed.text = stdout
        return parsed
    parsed.events = events
    _PARSERS[provider](events, parsed)
    return parsed


def build_args(provider: Provider, model: str, resume: ResumeMode) -> list[str]:
    """CLI arguments for one non-interactive call; the prompt goes to stdin."""
    if provider == Provider.GEMINI:
        args = ["-m", model, "--output-format", "stream-json"]
        if resume.kind == "latest":
            args += ["--resume", "latest"]
        elif resume.kind == "index":
            args += ["--resume", str(resume.index)]
        return args

    if resume.kind == "index":
        raise ChangeloopError(f"{provider.value} cannot resume a session by index")

    if provider == Provider.CODEX:
        if resume.kind == "latest":
            return ["exec", "--full-auto", "--json", "--model", model, "resume", "--last", "-"]
        return ["exec", "--full-auto", "--json", "--model", model, "-"]

    args = ["-p", "--output-format", "json", "--model", model]
    if resume.kind == "latest":
        args.append("--continue")
    return args


class CliAgentInvoker:
    """Runs one of the agent CLIs as a subprocess rooted at ``project_root``."""

    def __init__(
        self,
        role: Role,
        project_root: Path,
        *,
        config: RoleConfig | None = None,
        timeout: int | None = None,
    ):
        self.role = role
        self.project_root = project_root
        self.config = config or resolve_role(role)
        self.provider = Provider(self.config["provider"])
        self.model = self.config["model"]
        self.timeout = timeout or self.config.get("timeout_override") or settings.agent_timeout

    def command(self, resume: ResumeMode) -> list[str]:
        base = shlex.split(provider_command(self.provider))
        return [*base, *build_args(self.provider, self.model, resume)]

    async def invoke(
        self,
        prompt: str,
        env: dict[str, str] | None = None,
        resume: ResumeMode = ResumeMode(),
    ) -> AgentResult:
        cmd = self.command(resume)
        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.project_root,
                env={**os.environ, **(env or {})},
            )
        except OSError as exc:
            raise InvokeError(None, f"Failed to start {cmd[0]}: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(prompt.encode("utf-8")), timeout=self.timeout
            )
        except TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise InvokeError(None, f"{cmd[0]} timed out after {self.timeout} seconds") from exc

        if proc.returncode != 0:
            raise InvokeError(proc.returncode, stderr.decode(errors="replace"))

        raw = stdout.decode(errors="replace")
        parsed = parse_agent_output(self.provider, raw)
        usage = TokenUsage(
            input_tokens=parsed.input_tokens,
            output_tokens=parsed.output_tokens,
            model=parsed.model or self.model,
            duration_ms=int((time.monotonic() - start) * 1000),
        )
        return AgentResult(output=parsed.text, usage=usage, session_id=parsed.session_id, raw_output=raw)
