"""Tests for the agent turn loop: budgets, retries, confirmation and verification."""

import copy
import json

import pytest

from shellmate import agent
from shellmate.agent import (
    ABORTED,
    ANSWER,
    CHAT,
    FINAL_SKIP_MESSAGE,
    INVALID_FORMAT,
    INVALID_FORMAT_RETRY_MESSAGE,
    RECOVERY_HINT,
    SKIPPED,
    STEP_LIMIT,
    TRANSPORT_ERROR,
    UNSAFE_RETRY_MESSAGE,
    VERIFICATION_DISABLED,
    TurnBudget,
    TurnContext,
    build_system_prompt,
    parse_turn_mode,
    run_agent_turn,
    run_user_turn,
    should_use_agent_for_input,
)
from shellmate.report import ReportCollector, TransportError
from shellmate.safety import ExecPolicy, TrustStore
from shellmate.tools import PosixShellBackend


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeLLM:
    """Returns scripted replies in order; exceptions in the script are raised."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    def __call__(self, system_prompt, messages, **kwargs):
        self.calls.append((system_prompt, copy.deepcopy(messages)))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeShell:
    def __init__(self, outputs=None, default="ok"):
        self.outputs = outputs or {}
        self.default = default
        self.commands = []

    def __call__(self, cmd, base_dir, timeout, **kwargs):
        self.commands.append(cmd)
        return self.outputs.get(cmd, self.default)


@pytest.fixture
def llm(monkeypatch):
    def install(*replies):
        fake = FakeLLM(replies)
        monkeypatch.setattr(agent, "call_llm", fake)
        return fake

    return install


@pytest.fixture
def shell(monkeypatch):
    fake = FakeShell()
    monkeypatch.setattr(agent, "run_shell_command", fake)
    return fake


def _ctx(tmp_path, **overrides):
    defaults = dict(
        policy=ExecPolicy(mode="all"),
        base_dir=str(tmp_path),
        verify=False,
        workspace_context=False,
        backend=PosixShellBackend(),
        llm_kwargs={"provider": "openai", "model": "test-model"},
    )
    defaults.update(overrides)
    return TurnContext(**defaults)


def _calls(*commands, tool="shell"):
    body = json.dumps({"tool_calls": [{"tool": tool, "command": c} for c in commands]})
    return f"```json\n{body}\n```"


def _user(content):
    return {"role": "user", "content": content}


# ---------------------------------------------------------------------------
# Plain answers
# ---------------------------------------------------------------------------


def test_plain_answer_ends_turn(tmp_path, llm, shell):
    fake = llm("All good.")
    messages = [_user("is it fine?")]
    outcome = run_agent_turn(messages, _ctx(tmp_path))
    assert outcome.reason == ANSWER
    assert outcome.answer == "All good."
    assert outcome.steps == 0
    assert len(fake.calls) == 1
    assert shell.commands == []
    assert messages[-1] == {"role": "assistant", "content": "All good."}


def test_answer_with_json_snippet_is_not_a_retry(tmp_path, llm, shell):
    reply = 'Add this to package.json:\n```json\n{"scripts": {"test": "jest"}}\n```'
    fake = llm(reply)
    outcome = run_agent_turn([_user("how do I add a test script?")], _ctx(tmp_path))
    assert outcome.reason == ANSWER
    assert outcome.answer == reply
    assert len(fake.calls) == 1


def test_system_prompt_carries_tool_protocol(tmp_path, llm, shell):
    fake = llm("ok")
    run_agent_turn([_user("x")], _ctx(tmp_path))
    system_prompt = fake.calls[0][0]
    assert system_prompt.startswith(agent.DEFAULT_SYSTEM_PROMPT)
    assert '"tool_calls"' in system_prompt
    assert "POSIX sh" in system_prompt


# ---------------------------------------------------------------------------
# Execution and budgets
# ---------------------------------------------------------------------------


def test_executes_then_answers(tmp_path, llm, shell):
    fake = llm(_calls("ls", "git status"), "Two files.")
    messages = [_user("list")]
    outcome = run_agent_turn(messages, _ctx(tmp_path))
    assert outcome.reason == ANSWER
    assert outcome.answer == "Two files."
    assert outcome.steps == 1
    assert shell.commands == ["ls", "git status"]

    feedback = messages[2]["content"]
    assert feedback.startswith("tool[shell.auto_exec] output:\n")
    assert "Executed: ls\nOutput:\nok\n" in feedback
    assert VERIFICATION_DISABLED in feedback
    assert feedback.endswith(agent.CONTINUE_INSTRUCTION)
    # The second request sees the feedback message last
    assert fake.calls[1][1][-1]["content"] == feedback


def test_command_cap_per_reply(tmp_path, llm, shell):
    llm(_calls(*[f"echo {i}" for i in range(9)]), "done")
    messages = [_user("go")]
    outcome = run_agent_turn(messages, _ctx(tmp_path))
    assert outcome.reason == ANSWER
    assert shell.commands == [f"echo {i}" for i in range(8)]
    feedback = messages[2]["content"]
    assert feedback.count("Stopped auto exec after 8 commands") == 1


def test_failure_budget_stops_reply(tmp_path, llm, shell):
    shell.default = "sh: 1: nope: command not found"
    llm(_calls("nope a", "nope b", "nope c"), "giving up")
    messages = [_user("go")]
    outcome = run_agent_turn(messages, _ctx(tmp_path))
    assert outcome.reason == ANSWER
    assert shell.commands == ["nope a", "nope b"]
    feedback = messages[2]["content"]
    assert "Stopped auto exec after 2 failed commands." in feedback
    assert RECOVERY_HINT in feedback


def test_step_limit(tmp_path, llm, shell):
    fake = llm(_calls("ls"), _calls("ls"), _calls("ls"), "never reached")
    messages = [_user("loop")]
    outcome = run_agent_turn(messages, _ctx(tmp_path))
    assert outcome.reason == STEP_LIMIT
    assert outcome.answer is None
    assert outcome.steps == 3
    assert "Reached auto tool step limit (3)" in outcome.message
    assert len(fake.calls) == 3
    assert len(shell.commands) == 3


def test_custom_budget(tmp_path, llm, shell):
    llm(_calls("ls"), "unused")
    outcome = run_agent_turn([_user("x")], _ctx(tmp_path), TurnBudget(max_steps=1))
    assert outcome.reason == STEP_LIMIT
    assert outcome.steps == 1


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------


def test_invalid_format_retries_then_gives_up(tmp_path, llm, shell):
    legacy = "Run this:\n```bash\nls -la\n```"
    fake = llm(legacy, legacy, legacy, "unused")
    messages = [_user("list")]
    outcome = run_agent_turn(messages, _ctx(tmp_path))
    assert outcome.reason == INVALID_FORMAT
    assert outcome.message == FINAL_SKIP_MESSAGE
    assert len(fake.calls) == 3
    assert shell.commands == []
    retries = [m for m in messages if INVALID_FORMAT_RETRY_MESSAGE in m["content"]]
    assert len(retries) == 2
    assert len(messages) == 6


def test_invalid_format_recovers(tmp_path, llm, shell):
    llm("```sh\nls\n```", _calls("ls"), "listed")
    outcome = run_agent_turn([_user("list")], _ctx(tmp_path))
    assert outcome.reason == ANSWER
    assert shell.commands == ["ls"]


def test_unsafe_skip_retries_once(tmp_path, llm, shell):
    fake = llm(_calls("rm -rf build"), _calls("rm -rf build"), "unused")
    messages = [_user("clean")]
    outcome = run_agent_turn(messages, _ctx(tmp_path, policy=ExecPolicy(mode="safe")))
    assert outcome.reason == SKIPPED
    assert outcome.message == FINAL_SKIP_MESSAGE
    assert len(fake.calls) == 2
    assert shell.commands == []
    retry = messages[2]["content"]
    assert "Skipped unsafe command: rm -rf build" in retry
    assert retry.endswith(UNSAFE_RETRY_MESSAGE)


@pytest.mark.parametrize("cmd", ["ls\nrm -rf victim", "ls & rm -rf victim"])
def test_safe_mode_never_runs_chained_command(tmp_path, llm, cmd):
    victim = tmp_path / "victim"
    victim.mkdir()
    (victim / "keep.txt").write_text("x")
    llm(_calls(cmd), _calls(cmd), "unused")
    outcome = run_agent_turn(
        [_user("tidy up")], _ctx(tmp_path, policy=ExecPolicy(mode="safe"))
    )
    assert outcome.reason == SKIPPED
    assert (victim / "keep.txt").exists()


def test_unsupported_tool_is_visible_skip(tmp_path, llm, shell):
    llm(_calls("open x", tool="browser"), "fine, no browser")
    messages = [_user("browse")]
    outcome = run_agent_turn(messages, _ctx(tmp_path))
    assert outcome.reason == ANSWER
    assert "Skipped unsupported tool: browser (open x)" in messages[2]["content"]


def test_precheck_skip_names_reason(tmp_path, llm, shell):
    llm(_calls("python3 missing.py"), "ok")
    messages = [_user("run it")]
    run_agent_turn(messages, _ctx(tmp_path))
    assert "Skipped command: python3 missing.py (script not found: missing.py)" in (
        messages[2]["content"]
    )
    assert shell.commands == []


def test_mixed_skip_and_run_counts_as_execution(tmp_path, llm, shell):
    llm(_calls("rm x", "ls"), "listed")
    messages = [_user("x")]
    outcome = run_agent_turn(messages, _ctx(tmp_path, policy=ExecPolicy(mode="safe")))
    assert outcome.reason == ANSWER
    assert outcome.steps == 1
    assert shell.commands == ["ls"]
    assert "Skipped unsafe command: rm x" in messages[2]["content"]


# ---------------------------------------------------------------------------
# Confirmation
# ---------------------------------------------------------------------------


class TestConfirmation:
    def _confirm_ctx(self, tmp_path, answers, **overrides):
        asked = []

        def confirm(command, prefix):
            asked.append((command, prefix))
            return answers.pop(0)

        ctx = _ctx(
            tmp_path,
            policy=ExecPolicy(mode="all", confirm=True),
            trusted=TrustStore(),
            confirm=confirm,
            **overrides,
        )
        return ctx, asked

    def test_quit_aborts_turn(self, tmp_path, llm, shell):
        fake = llm(_calls("make", "make test"), "unused")
        ctx, asked = self._confirm_ctx(tmp_path, ["q"])
        outcome = run_agent_turn([_user("build")], ctx)
        assert outcome.reason == ABORTED
        assert len(asked) == 1
        assert shell.commands == []
        assert len(fake.calls) == 1

    def test_yes_runs_once(self, tmp_path, llm, shell):
        llm(_calls("make", "make test"), "built")
        ctx, asked = self._confirm_ctx(tmp_path, ["y", "y"])
        outcome = run_agent_turn([_user("build")], ctx)
        assert outcome.reason == ANSWER
        assert shell.commands == ["make", "make test"]
        assert len(asked) == 2
        assert ctx.trusted.prefixes == []

    def test_always_trusts_prefix(self, tmp_path, llm, shell):
        llm(_calls("cargo check", "cargo check --tests", "cargo test"), "checked")
        ctx, asked = self._confirm_ctx(tmp_path, ["a", "n"])
        run_agent_turn([_user("check")], ctx)
        assert asked == [("cargo check", "cargo check"), ("cargo test", "cargo test")]
        assert shell.commands == ["cargo check", "cargo check --tests"]
        assert ctx.trusted.prefixes == ["cargo check"]

    def test_no_skips_and_retries(self, tmp_path, llm, shell):
        fake = llm(_calls("make"), "I won't run it then.")
        ctx, asked = self._confirm_ctx(tmp_path, ["n"])
        messages = [_user("build")]
        outcome = run_agent_turn(messages, ctx)
        assert outcome.reason == ANSWER
        assert len(fake.calls) == 2
        assert "Skipped by user: make" in messages[2]["content"]


# ---------------------------------------------------------------------------
# Verification, transport and reporting
# ---------------------------------------------------------------------------


def test_verification_appended(tmp_path, llm, shell):
    (tmp_path / "pyproject.toml").write_text("[project]\nname = 'x'\n")
    shell.outputs["pytest -q"] = "1 passed"
    llm(_calls("ls"), "done")
    messages = [_user("x")]
    run_agent_turn(messages, _ctx(tmp_path, verify=True))
    assert shell.commands == ["ls", "pytest -q"]
    assert "verification[python] ok\n$ pytest -q\n1 passed" in messages[2]["content"]


def test_transport_error(tmp_path, llm, shell):
    llm(TransportError("LLM call failed: connection refused"))
    messages = [_user("x")]
    outcome = run_agent_turn(messages, _ctx(tmp_path))
    assert outcome.reason == TRANSPORT_ERROR
    assert outcome.answer is None
    assert outcome.message == "Request interrupted: LLM call failed: connection refused"
    assert messages == [_user("x")]


def test_transport_error_message_clipped(tmp_path, llm, shell):
    llm(TransportError("E" * 500))
    outcome = run_agent_turn([_user("x")], _ctx(tmp_path))
    assert outcome.message == "Request interrupted: " + "E" * 220 + " ..."


def test_transport_error_mid_turn_keeps_progress(tmp_path, llm, shell):
    llm(_calls("ls"), TransportError("timeout"))
    messages = [_user("x")]
    outcome = run_agent_turn(messages, _ctx(tmp_path))
    assert outcome.reason == TRANSPORT_ERROR
    assert outcome.steps == 1
    assert len(messages) == 3


def test_history_compacted_before_request(tmp_path, llm, shell):
    fake = llm("ok")
    messages = []
    for i in range(50):
        role = "user" if i % 2 == 0 else "assistant"
        messages.append({"role": role, "content": f"m{i}"})
    messages.append(_user("latest"))
    run_agent_turn(messages, _ctx(tmp_path, history_max_messages=10))
    sent = fake.calls[0][1]
    assert sent[0]["content"].startswith("[session-summary]")
    assert sent[-1] == _user("latest")
    # summary + a tail of at least six messages
    assert len(sent) == 7


def test_report_records_turn(tmp_path, llm, shell):
    report = ReportCollector()
    llm("```bash\nls\n```", _calls("ls"), "done")
    run_agent_turn([_user("x")], _ctx(tmp_path, report=report))
    assert report.llm_calls == 3
    assert report.commands_succeeded == 1
    assert report.retries == {"invalid_format": 1}
    assert report.max_step_seen == 2


# ---------------------------------------------------------------------------
# Mode selection and user turns
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "raw, mode",
    [
        ("chat", "chat-only"),
        ("Agent", "force"),
        ("agent-auto", "auto"),
        (" force ", "force"),
        ("sometimes", None),
    ],
)
def test_parse_turn_mode(raw, mode):
    assert parse_turn_mode(raw) == mode


@pytest.mark.parametrize(
    "text, mode, expected",
    [
        ("what is a monad?", "force", True),
        ("please fix the build", "chat-only", False),
        ("please fix the build", "auto", True),
        ("帮我修复这个问题", "auto", True),
        ("what is a monad?", "auto", False),
    ],
)
def test_should_use_agent_for_input(text, mode, expected):
    assert should_use_agent_for_input(text, mode) is expected


def test_chat_prompt_has_no_tool_protocol():
    prompt = build_system_prompt("Be brief.", agent=False)
    assert prompt.startswith("Be brief.\n")
    assert "tool_calls" not in prompt


def test_powershell_prompt_names_shell():
    assert "PowerShell" in build_system_prompt(None, agent=True, shell="powershell")


def test_chat_turn_never_executes(tmp_path, llm, shell):
    fake = llm(_calls("ls"))
    messages = []
    outcome = run_user_turn(messages, "what is ls?", _ctx(tmp_path), mode="chat-only")
    assert outcome.reason == CHAT
    assert outcome.answer == _calls("ls")
    assert shell.commands == []
    assert "tool_calls" not in fake.calls[0][0]


def test_user_turn_adds_workspace_context(tmp_path, llm, shell):
    llm("ok")
    messages = []
    run_user_turn(
        messages, "fix the tests", _ctx(tmp_path, workspace_context=True), mode="auto"
    )
    assert messages[0]["content"] == (
        f"Workspace CWD: {tmp_path.resolve()}\nUser request: fix the tests"
    )


def test_user_turn_raw_input(tmp_path, llm, shell):
    llm("ok")
    messages = []
    outcome = run_user_turn(messages, "fix it", _ctx(tmp_path), mode="force")
    assert outcome.reason == ANSWER
    assert messages[0] == _user("fix it")
