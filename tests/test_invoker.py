import json
import shlex
import sys
import textwrap

import pytest

from changeloop.config import settings
from changeloop.errors import ChangeloopError, InvokeError
from changeloop.invoker import CliAgentInvoker, ResumeMode, build_args, parse_agent_output
from changeloop.role_config import Provider, Role, resolve_role


def _jsonl(*events: dict) -> str:
    return "\n".join(json.dumps(e) for e in events) + "\n"


def test_build_args_gemini_resume_modes() -> None:
    base = ["-m", "gemini-2.5-pro", "--output-format", "stream-json"]
    assert build_args(Provider.GEMINI, "gemini-2.5-pro", ResumeMode.none()) == base
    assert build_args(Provider.GEMINI, "gemini-2.5-pro", ResumeMode.latest()) == [*base, "--resume", "latest"]
    assert build_args(Provider.GEMINI, "gemini-2.5-pro", ResumeMode.by_index(3)) == [*base, "--resume", "3"]


def test_build_args_codex_and_claude() -> None:
    assert build_args(Provider.CODEX, "gpt-5.2-codex", ResumeMode()) == [
        "exec", "--full-auto", "--json", "--model", "gpt-5.2-codex", "-",
    ]
    assert build_args(Provider.CLAUDE, "claude-sonnet-4-5", ResumeMode.latest())[-1] == "--continue"


def test_resume_by_index_only_for_gemini() -> None:
    with pytest.raises(ChangeloopError):
        build_args(Provider.CODEX, "gpt-5.2-codex", ResumeMode.by_index(1))
    with pytest.raises(ValueError):
        ResumeMode.by_index(0)


def test_parse_gemini_stream() -> None:
    stdout = _jsonl(
        {"type": "init", "session_id": "abc-123", "model": "gemini-2.5-pro"},
        {"type": "message", "role": "user", "content": "prompt echo"},
        {"type": "message", "role": "assistant", "content": "# Proposal", "delta": True},
        {"type": "message", "role": "assistant", "content": "\nBody"},
        {"type": "result", "status": "success", "stats": {"input_tokens": 1200, "output_tokens": 340}},
    )

    parsed = parse_agent_output(Provider.GEMINI, stdout)

    assert parsed.text == "# Proposal\nBody"
    assert parsed.session_id == "abc-123"
    assert parsed.model == "gemini-2.5-pro"
    assert (parsed.input_tokens, parsed.output_tokens) == (1200, 340)


def test_parse_codex_events() -> None:
    stdout = _jsonl(
        {"type": "thread.started", "thread_id": "thread-1"},
        {"type": "item.completed", "item": {"type": "reasoning", "text": "thinking"}},
        {"type": "item.completed", "item": {"type": "agent_message", "text": '<review status="approved"></review>'}},
        {"type": "turn.completed", "usage": {"input_tokens": 5000, "cached_input_tokens": 10, "output_tokens": 700}},
    )

    parsed = parse_agent_output(Provider.CODEX, stdout)

    assert parsed.text == '<review status="approved"></review>'
    assert parsed.session_id == "thread-1"
    assert (parsed.input_tokens, parsed.output_tokens) == (5000, 700)


def test_parse_claude_result() -> None:
    stdout = json.dumps(
        {
            "type": "result",
            "result": "Done.",
            "session_id": "sess-9",
            "usage": {"input_tokens": 42, "output_tokens": 7},
        }
    )

    parsed = parse_agent_output(Provider.CLAUDE, stdout)

    assert parsed.text == "Done."
    assert parsed.session_id == "sess-9"
    assert parsed.input_tokens == 42


def test_plain_text_output_passes_through() -> None:
    parsed = parse_agent_output(Provider.GEMINI, "just text\n<review>PASS</review>\n")
    assert parsed.text == "just text\n<review>PASS</review>\n"
    assert parsed.input_tokens == 0


def test_role_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ROLE_CRITIC_MODEL", "gpt-5.2-codex-mini")
    monkeypatch.setenv("ROLE_CRITIC_TIMEOUT", "90")

    config = resolve_role(Role.CRITIC)
    assert config["provider"] == "codex"
    assert config["model"] == "gpt-5.2-codex-mini"
    assert config["timeout_override"] == 90


def test_role_unknown_provider(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ROLE_GENERATOR_PROVIDER", "mystery")
    with pytest.raises(ChangeloopError, match="Unknown provider"):
        resolve_role(Role.GENERATOR)


FAKE_GEMINI = textwrap.dedent(
    """
    import json, sys
    prompt = sys.stdin.read()
    print(json.dumps({"type": "init", "session_id": "s-1", "model": sys.argv[2]}))
    print(json.dumps({"type": "message", "role": "assistant", "content": "echo: " + prompt}))
    print(json.dumps({"type": "result", "stats": {"input_tokens": 10, "output_tokens": 4}}))
    """
)


@pytest.mark.asyncio
async def test_cli_invoker_sends_prompt_on_stdin(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    script = tmp_path / "fake_gemini.py"
    script.write_text(FAKE_GEMINI)
    monkeypatch.setattr(settings, "gemini_cmd", f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}")

    invoker = CliAgentInvoker(Role.GENERATOR, tmp_path, timeout=30)
    result = await invoker.invoke("write the proposal")

    assert result.output == "echo: write the proposal"
    assert result.session_id == "s-1"
    assert result.usage.model == "gemini-2.5-pro"
    assert result.usage.total_tokens == 14


@pytest.mark.asyncio
async def test_cli_invoker_non_zero_exit(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    script = tmp_path / "failing.py"
    script.write_text("import sys\nsys.stderr.write('quota exceeded\\n')\nsys.exit(2)\n")
    monkeypatch.setattr(settings, "gemini_cmd", f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}")

    invoker = CliAgentInvoker(Role.GENERATOR, tmp_path, timeout=30)
    with pytest.raises(InvokeError) as exc_info:
        await invoker.invoke("anything")

    assert exc_info.value.exit_status == 2
    assert "quota exceeded" in exc_info.value.message
