import argparse
import functools
import logging
import os
import sys
import time
from dataclasses import dataclass, field
from importlib import metadata
from pathlib import Path
from typing import Callable

import tiktoken

from . import fmt
from .compact import (
    MIN_MAX_CHARS,
    MIN_MAX_MESSAGES,
    clip_text,
    maybe_compact_history,
    total_chars,
)
from .config import (
    EXEC_MODES,
    PROVIDERS,
    PROVIDER_MODEL_OPTIONS,
    _UNSET,
    apply_config_to_args,
    generate_config,
    global_config_dir,
    load_config,
    resolve_api_key,
    resolve_model,
)
from .extract import ToolCall, analyze_reply
from .files import (
    apply_edit,
    edit_prompt,
    file_question_prompt,
    grep_files,
    list_files,
    read_text_file,
    review_prompt,
    strip_code_fence,
)
from .prompts import DEFAULT_PROMPTS, PromptStore, truncate_preview
from .report import AgentError, ConfigError, ReportCollector, TransportError
from .safety import (
    DENIED_BY_POLICY,
    DENIED_BY_PRECHECK,
    NEEDS_CONFIRMATION,
    ExecPolicy,
    TrustStore,
    classify,
    command_prefix,
)
from .sessions import (
    fresh_session_name,
    list_sessions,
    load_session,
    remove_session,
    resolve_session_name,
    save_session,
)
from .tools import (
    DEFAULT_TIMEOUT,
    FailureClassifier,
    ShellBackend,
    clip_output,
    run_shell_command,
    select_backend,
)
from .workspace import (
    augment_user_input,
    changed_files,
    print_changed_files_delta,
    run_auto_verification,
)

logger = logging.getLogger(__name__)

MAX_AUTO_TOOL_STEPS = 3
MAX_COMMANDS_PER_RESPONSE = 8
MAX_FAILED_COMMANDS_PER_RESPONSE = 2
MAX_INVALID_FORMAT_RETRIES = 2
MAX_UNSAFE_RETRIES = 1

HISTORY_OUTPUT_CHARS = 10_000
TRANSPORT_ERROR_CHARS = 220
TRUSTED_FILE = "trusted.json"
SHELL_TOOL = "shell"

# Turn outcome reasons
ANSWER = "answer"
CHAT = "chat"
STEP_LIMIT = "step_limit"
INVALID_FORMAT = "invalid_format"
SKIPPED = "skipped"
ABORTED = "aborted"
TRANSPORT_ERROR = "transport_error"

EXEC_HISTORY_HEADER = "tool[shell.auto_exec] output:\n"
RECOVERY_HINT = (
    "\nSome commands failed. Prefer narrower retries: check file/path existence "
    "first, then rerun minimal commands."
)
CONTINUE_INSTRUCTION = (
    "Continue based on tool outputs above. If more execution is needed, emit JSON "
    "tool_calls. If complete, give final answer directly with short summary, "
    "changed files, and verification result."
)
INVALID_FORMAT_RETRY_MESSAGE = (
    "Your last response had invalid tool_calls format. Use only a strict JSON code "
    'fence like ```json {"tool_calls":[{"tool":"shell","command":"rg --files"}]} ``` '
    "or provide a final answer with no tool_calls."
)
UNSAFE_RETRY_MESSAGE = (
    "Your last response used unsupported execution format or unsafe commands. "
    "Use JSON tool_calls only, and only when needed. Otherwise provide direct "
    "final analysis/result."
)
FINAL_SKIP_MESSAGE = (
    "Detected tool calls, but skipped because commands are unsafe or unsupported."
)
ABORTED_MESSAGE = "Command execution stopped by user; nothing was run."
VERIFICATION_DISABLED = "verification: skipped (disabled)"

DEFAULT_SYSTEM_PROMPT = DEFAULT_PROMPTS["default"]
CHAT_MODE_NOTE = "You are in terminal coding assistant chat mode."
REVIEW_NOTE = "You are a senior code reviewer."
EDIT_NOTE = "You are a careful code editor."

FILE_READ_CHARS = 8000
READ_HISTORY_HEADER = "tool[fs.read] output:\n"
PROMPTS_DIR = "prompts"

TOOL_PROTOCOL = """\
You can run commands in the user's workspace through a {shell} shell.
To request execution, reply with one JSON code fence and nothing else in it:
```json
{{"tool_calls": [{{"tool": "shell", "command": "rg --files"}}]}}
```
Rules:
- "shell" is the only tool. One command per entry; entries run in order.
- At most {max_commands} commands per reply.
- Keep inline scripts short. Write longer scripts to a file, then run the file.
- Check that files and paths exist before depending on them.
- When nothing more needs to run, give the final answer with no tool_calls."""

TURN_MODE_ALIASES = {
    "chat-only": "chat-only",
    "chat": "chat-only",
    "auto": "auto",
    "agent-auto": "auto",
    "force": "force",
    "agent": "force",
    "agent-force": "force",
}

AGENT_TASK_KEYWORDS = (
    "fix ",
    "implement",
    "refactor",
    "edit ",
    "change ",
    "update ",
    "patch ",
    "apply ",
    "add feature",
    "write code",
    "run tests",
    "build ",
    "compile ",
)
AGENT_TASK_KEYWORDS_ZH = (
    "修复",
    "实现",
    "重构",
    "修改",
    "编辑",
    "补丁",
    "写代码",
    "跑测试",
    "编译",
    "构建",
)


# ---------------------------------------------------------------------------
# Turn state
# ---------------------------------------------------------------------------


@dataclass
class TurnBudget:
    """Per-turn counters. Create one per turn; never share across turns."""

    max_steps: int = MAX_AUTO_TOOL_STEPS
    max_invalid_format_retries: int = MAX_INVALID_FORMAT_RETRIES
    max_unsafe_retries: int = MAX_UNSAFE_RETRIES
    steps: int = 0
    invalid_format_retries: int = 0
    unsafe_retries: int = 0

    def steps_exhausted(self) -> bool:
        return self.steps >= self.max_steps

    def take_invalid_format_retry(self) -> bool:
        if self.invalid_format_retries >= self.max_invalid_format_retries:
            return False
        self.invalid_format_retries += 1
        return True

    def take_unsafe_retry(self) -> bool:
        if self.unsafe_retries >= self.max_unsafe_retries:
            return False
        self.unsafe_retries += 1
        return True


@dataclass
class ExecOutcome:
    command: str
    output: str
    succeeded: bool
    failure: str | None = None


@dataclass
class ExecResult:
    """Aggregate of one execution pass over the tool calls of one reply."""

    executed_any: bool = False
    had_blocks: bool = False
    skipped_any: bool = False
    invalid_format: bool = False
    had_failures: bool = False
    aborted: bool = False
    display_text: str = ""
    history_text: str = ""
    outcomes: list[ExecOutcome] = field(default_factory=list)


@dataclass
class TurnOutcome:
    answer: str | None
    reason: str
    steps: int
    message: str | None = None


@dataclass
class TurnContext:
    """Everything a turn needs besides the message list."""

    policy: ExecPolicy
    base_dir: str = "."
    trusted: TrustStore | None = None
    command_timeout: int = DEFAULT_TIMEOUT
    history_max_messages: int = 40
    history_max_chars: int = 40000
    verify: bool = True
    workspace_context: bool = True
    verbose: bool = False
    system_prompt: str | None = None
    prompt_name: str | None = None
    prompts: PromptStore | None = None
    model_catalog: list[str] = field(default_factory=list)
    llm_kwargs: dict = field(default_factory=dict)
    classifier: FailureClassifier = field(default_factory=FailureClassifier)
    backend: ShellBackend | None = None
    confirm: Callable[[str, str], str] | None = None
    report: ReportCollector | None = None

    def __post_init__(self):
        if self.backend is None:
            self.backend = select_backend()

    @property
    def streaming(self) -> bool:
        return bool(self.llm_kwargs.get("stream"))


# ---------------------------------------------------------------------------
# Prompts and mode selection
# ---------------------------------------------------------------------------


@functools.lru_cache(maxsize=1)
def _encoder():
    return tiktoken.get_encoding("cl100k_base")


def estimate_tokens(messages: list[dict]) -> int:
    enc = _encoder()
    return sum(len(enc.encode(m.get("content") or "")) for m in messages)


def build_system_prompt(
    system_prompt: str | None,
    *,
    agent: bool,
    shell: str = "posix",
    note: str = CHAT_MODE_NOTE,
) -> str:
    parts = [system_prompt or DEFAULT_SYSTEM_PROMPT, note]
    if agent:
        shell_name = "PowerShell" if shell == "powershell" else "POSIX sh"
        parts.append(
            TOOL_PROTOCOL.format(shell=shell_name, max_commands=MAX_COMMANDS_PER_RESPONSE)
        )
    return "\n".join(parts)


def parse_turn_mode(raw: str) -> str | None:
    return TURN_MODE_ALIASES.get(raw.strip().lower())


def looks_like_agent_task(text: str) -> bool:
    lowered = text.lower()
    if any(k in lowered for k in AGENT_TASK_KEYWORDS):
        return True
    return any(k in text for k in AGENT_TASK_KEYWORDS_ZH)


def should_use_agent_for_input(text: str, mode: str) -> bool:
    if mode == "force":
        return True
    if mode == "chat-only":
        return False
    return looks_like_agent_task(text)


# ---------------------------------------------------------------------------
# Model transport
# ---------------------------------------------------------------------------


def call_llm(
    system_prompt: str,
    messages: list[dict],
    *,
    provider: str,
    model: str,
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float | None = None,
    stream: bool = False,
    verbose: bool = False,
) -> str:
    """Complete one chat turn through LiteLLM and return the reply text.

    With *stream*, deltas are written to stdout as they arrive; the full
    text is still only returned once the stream ends. Any provider or
    network failure is raised as TransportError.
    """
    import litellm

    litellm.suppress_debug_info = True

    if provider == "lmstudio":
        model_str = f"openai/{model}"
        kwargs = {
            "api_base": f"{base_url or 'http://127.0.0.1:1234'}/v1",
            "api_key": "lm-studio",
        }
    elif provider == "openrouter":
        # Only strip a doubled "openrouter/" prefix; org names stay intact.
        bare_id = (
            model[len("openrouter/") :]
            if model.startswith("openrouter/openrouter/")
            else model
        )
        model_str = f"openrouter/{bare_id}"
        kwargs = {"api_key": api_key}
        if base_url:
            kwargs["api_base"] = base_url
    elif provider in ("openai", "deepseek"):
        model_str = f"{provider}/{model.removeprefix(provider + '/')}"
        kwargs = {"api_key": api_key}
        if base_url:
            kwargs["api_base"] = base_url
    elif provider == "generic":
        model_str = model
        kwargs = {"api_key": api_key}
        if base_url:
            kwargs["api_base"] = base_url
    else:
        raise AgentError(f"unknown provider {provider!r}")

    completion_kwargs = dict(
        model=model_str,
        messages=[{"role": "system", "content": system_prompt}]
        + [{"role": m["role"], "content": m["content"]} for m in messages],
        **kwargs,
    )
    if temperature is not None:
        completion_kwargs["temperature"] = temperature

    logger.debug("calling %s with %d messages", model_str, len(messages))

    try:
        if stream:
            if verbose:
                fmt.assistant_prefix(model)
            parts: list[str] = []
            for chunk in litellm.completion(**completion_kwargs, stream=True):
                delta = chunk.choices[0].delta.content if chunk.choices else None
                if delta:
                    parts.append(delta)
                    sys.stdout.write(delta)
                    sys.stdout.flush()
            sys.stdout.write("\n")
            sys.stdout.flush()
            text = "".join(parts)
        elif verbose:
            with fmt.llm_spinner():
                response = litellm.completion(**completion_kwargs)
            text = response.choices[0].message.content or ""
        else:
            response = litellm.completion(**completion_kwargs)
            text = response.choices[0].message.content or ""
    except Exception as e:
        raise TransportError(f"LLM call failed: {e}") from e

    return text.strip()


# ---------------------------------------------------------------------------
# Execution pass
# ---------------------------------------------------------------------------


def execute_tool_calls(
    calls: list[ToolCall], ctx: TurnContext, *, step: int = 1
) -> ExecResult:
    """Gate and run the calls of one reply, strictly in order.

    Every skip, stop and failure is written to both the display and the
    history transcript so the model sees what happened.
    """
    result = ExecResult(had_blocks=True)
    display: list[str] = []
    history: list[str] = []
    seen = 0
    failed = 0
    confirm = ctx.confirm or fmt.confirm_command

    def note(line: str, notice: bool = False) -> None:
        display.append(line + "\n")
        history.append(line + "\n")
        if ctx.verbose:
            if notice:
                fmt.exec_notice(line)
            else:
                fmt.command_skipped(line)

    def skip(line: str, command: str, reason: str) -> None:
        note(line)
        result.skipped_any = True
        if ctx.report:
            ctx.report.record_skip(step, command, reason)

    for call in calls:
        cmd = call.command.strip()
        if not cmd:
            continue
        if call.tool.lower() != SHELL_TOOL:
            skip(f"Skipped unsupported tool: {call.tool} ({cmd})", cmd, "unsupported tool")
            continue
        if seen >= MAX_COMMANDS_PER_RESPONSE:
            note(
                f"Stopped auto exec after {MAX_COMMANDS_PER_RESPONSE} commands "
                f"to avoid noisy output.",
                notice=True,
            )
            break
        seen += 1

        verdict = classify(ctx.policy, cmd, ctx.base_dir, ctx.trusted)
        if verdict.kind == DENIED_BY_PRECHECK:
            skip(f"Skipped command: {cmd} ({verdict.reason})", cmd, verdict.reason)
            continue
        if verdict.kind == DENIED_BY_POLICY:
            skip(f"Skipped unsafe command: {cmd}", cmd, verdict.reason)
            continue
        if verdict.kind == NEEDS_CONFIRMATION:
            prefix = command_prefix(cmd)
            choice = confirm(cmd, prefix)
            if choice == "q":
                note("User stopped command execution.", notice=True)
                result.aborted = True
                break
            if choice == "a":
                if ctx.trusted is not None and ctx.trusted.add(prefix):
                    fmt.info(f"trusted prefix added: {prefix}")
            elif choice != "y":
                skip(f"Skipped by user: {cmd}", cmd, "declined by user")
                continue

        if ctx.verbose:
            fmt.command_run(cmd)
        t0 = time.monotonic()
        out = run_shell_command(
            cmd, ctx.base_dir, ctx.command_timeout, backend=ctx.backend
        )
        elapsed = time.monotonic() - t0
        failure = ctx.classifier.classify(out)
        if ctx.verbose:
            fmt.command_output(out, elapsed, failure)
        if ctx.report:
            ctx.report.record_command(step, cmd, failure is None, elapsed, failure)

        display.append(f"$ {cmd}\n{out}\n")
        history.append(
            f"Executed: {cmd}\nOutput:\n{clip_output(out, HISTORY_OUTPUT_CHARS)}\n"
        )
        result.outcomes.append(ExecOutcome(cmd, out, failure is None, failure))

        if failure is not None:
            failed += 1
            if failed >= MAX_FAILED_COMMANDS_PER_RESPONSE:
                note(
                    f"Stopped auto exec after {MAX_FAILED_COMMANDS_PER_RESPONSE} "
                    f"failed commands.",
                    notice=True,
                )
                break

    result.executed_any = bool(result.outcomes)
    result.had_failures = failed > 0
    result.display_text = "".join(display)
    result.history_text = EXEC_HISTORY_HEADER + "".join(history)
    return result


def process_reply(text: str, ctx: TurnContext, *, step: int = 1) -> ExecResult:
    """Extract tool calls from *text* and run them, or flag the failed attempt."""
    extraction = analyze_reply(text)
    if not extraction.had_blocks:
        return ExecResult()
    if extraction.invalid_format:
        if ctx.verbose:
            fmt.command_skipped(extraction.message)
        line = extraction.message + "\n"
        return ExecResult(
            had_blocks=True,
            skipped_any=True,
            invalid_format=True,
            display_text=line,
            history_text=EXEC_HISTORY_HEADER + line,
        )
    return execute_tool_calls(extraction.calls, ctx, step=step)


# ---------------------------------------------------------------------------
# Turns
# ---------------------------------------------------------------------------


def _compact(messages: list[dict], ctx: TurnContext, step: int) -> None:
    before_count, before_chars = len(messages), total_chars(messages)
    if not maybe_compact_history(
        messages, ctx.history_max_messages, ctx.history_max_chars
    ):
        return
    if ctx.verbose:
        fmt.info(
            f"history compacted: {before_count} -> {len(messages)} messages"
        )
    if ctx.report:
        ctx.report.record_compaction(
            step, before_count, len(messages), before_chars, total_chars(messages)
        )


def _request(
    system_prompt: str,
    messages: list[dict],
    ctx: TurnContext,
    step: int,
    *,
    stream: bool | None = None,
) -> str:
    llm_kwargs = dict(ctx.llm_kwargs)
    if stream is not None:
        llm_kwargs["stream"] = stream
    t0 = time.monotonic()
    try:
        answer = call_llm(system_prompt, messages, verbose=ctx.verbose, **llm_kwargs)
    except TransportError:
        if ctx.report:
            ctx.report.record_llm_call(step, time.monotonic() - t0, "error")
        raise
    elapsed = time.monotonic() - t0
    if ctx.verbose:
        fmt.llm_timing(elapsed)
    if ctx.report:
        ctx.report.record_llm_call(step, elapsed, "ok")
    return answer


def _transport_failure(e: TransportError, steps: int) -> TurnOutcome:
    message = f"Request interrupted: {clip_text(str(e), TRANSPORT_ERROR_CHARS, ' ...')}"
    fmt.warning(message)
    fmt.info("You can continue chatting and send the next message.")
    return TurnOutcome(None, TRANSPORT_ERROR, steps, message)


def _verify(ctx: TurnContext, step: int) -> str:
    if not ctx.verify:
        return VERIFICATION_DISABLED
    if ctx.verbose:
        fmt.phase("verification")
    verification = run_auto_verification(
        ctx.base_dir, ctx.command_timeout, ctx.classifier, runner=run_shell_command
    )
    if ctx.verbose:
        fmt.verification(verification.text)
    if ctx.report:
        ctx.report.record_verification(step, verification.label, verification.status)
    return verification.text


def run_agent_turn(
    messages: list[dict],
    ctx: TurnContext,
    budget: TurnBudget | None = None,
    *,
    note: str = CHAT_MODE_NOTE,
) -> TurnOutcome:
    """Drive one turn: request, execute, verify, until an answer or a budget ends it.

    Mutates *messages* in place. The last message must be the user input.
    """
    budget = budget or TurnBudget()
    system_prompt = build_system_prompt(
        ctx.system_prompt, agent=True, shell=ctx.backend.name, note=note
    )

    while True:
        step = budget.steps + 1
        _compact(messages, ctx, step)
        if ctx.verbose:
            fmt.turn_header(step, budget.max_steps, len(messages), estimate_tokens(messages))
            fmt.phase(f"reasoning step {step}")

        try:
            answer = _request(system_prompt, messages, ctx, step)
        except TransportError as e:
            return _transport_failure(e, budget.steps)

        result = process_reply(answer, ctx, step=step)
        messages.append({"role": "assistant", "content": answer})

        if not result.had_blocks:
            if ctx.verbose:
                fmt.turn_finished(ANSWER, step)
            return TurnOutcome(answer, ANSWER, budget.steps)

        if ctx.verbose and not ctx.streaming:
            fmt.assistant_text(answer)

        if result.executed_any:
            verification = _verify(ctx, step)
            hint = RECOVERY_HINT if result.had_failures else ""
            messages.append(
                {
                    "role": "user",
                    "content": f"{result.history_text}\n{verification}{hint}\n"
                    f"{CONTINUE_INSTRUCTION}",
                }
            )
            budget.steps += 1
            if budget.steps_exhausted():
                message = (
                    f"Reached auto tool step limit ({budget.max_steps}). "
                    f"Continue by describing next action."
                )
                fmt.warning(message)
                return TurnOutcome(None, STEP_LIMIT, budget.steps, message)
            continue

        if result.invalid_format:
            if budget.take_invalid_format_retry():
                if ctx.report:
                    ctx.report.record_retry(step, "invalid_format")
                messages.append(
                    {
                        "role": "user",
                        "content": f"{result.history_text}\n{INVALID_FORMAT_RETRY_MESSAGE}",
                    }
                )
                continue
            fmt.warning(FINAL_SKIP_MESSAGE)
            return TurnOutcome(None, INVALID_FORMAT, budget.steps, FINAL_SKIP_MESSAGE)

        if result.aborted:
            fmt.warning(ABORTED_MESSAGE)
            return TurnOutcome(None, ABORTED, budget.steps, ABORTED_MESSAGE)

        if result.skipped_any and budget.take_unsafe_retry():
            if ctx.report:
                ctx.report.record_retry(step, "unsafe")
            messages.append(
                {
                    "role": "user",
                    "content": f"{result.history_text}\n{UNSAFE_RETRY_MESSAGE}",
                }
            )
            continue

        fmt.warning(FINAL_SKIP_MESSAGE)
        return TurnOutcome(None, SKIPPED, budget.steps, FINAL_SKIP_MESSAGE)


def run_chat_turn(messages: list[dict], ctx: TurnContext) -> TurnOutcome:
    """Plain reply with no tool execution."""
    system_prompt = build_system_prompt(ctx.system_prompt, agent=False)
    _compact(messages, ctx, 1)
    if ctx.verbose:
        fmt.phase("response")
    try:
        answer = _request(system_prompt, messages, ctx, 1)
    except TransportError as e:
        return _transport_failure(e, 0)
    messages.append({"role": "assistant", "content": answer})
    return TurnOutcome(answer, CHAT, 0)


def run_user_turn(
    messages: list[dict], text: str, ctx: TurnContext, *, mode: str
) -> TurnOutcome:
    """Append the user's input and run an agent or chat turn according to *mode*."""
    use_agent = should_use_agent_for_input(text, mode)
    content = augment_user_input(text, ctx.base_dir) if ctx.workspace_context else text
    messages.append({"role": "user", "content": content})
    if use_agent:
        return run_agent_turn(messages, ctx)
    return run_chat_turn(messages, ctx)


def run_file_question(
    messages: list[dict], file_path: str, question: str, ctx: TurnContext
) -> TurnOutcome:
    """Send *file_path*'s content with *question* and run an agent turn on it."""
    content = read_text_file(file_path, ctx.base_dir)
    messages.append(
        {"role": "user", "content": file_question_prompt(question, file_path, content)}
    )
    return run_agent_turn(messages, ctx, note=REVIEW_NOTE)


# ---------------------------------------------------------------------------
# Single-file tasks
# ---------------------------------------------------------------------------


def run_review(file_path: str, ctx: TurnContext, extra: str | None = None) -> str:
    """One review request for a single file. TransportError propagates."""
    content = read_text_file(file_path, ctx.base_dir)
    system_prompt = build_system_prompt(ctx.system_prompt, agent=False, note=REVIEW_NOTE)
    messages = [{"role": "user", "content": review_prompt(file_path, content, extra)}]
    return _request(system_prompt, messages, ctx, 1)


def run_edit(
    file_path: str, instruction: str, ctx: TurnContext, *, apply: bool = False
) -> tuple[str, Path | None]:
    """Ask for the full edited file. With *apply*, write it and keep a backup.

    Returns the edited text and the backup path (None for a dry run).
    """
    original = read_text_file(file_path, ctx.base_dir)
    system_prompt = build_system_prompt(ctx.system_prompt, agent=False, note=EDIT_NOTE)
    messages = [{"role": "user", "content": edit_prompt(file_path, instruction, original)}]
    edited = strip_code_fence(_request(system_prompt, messages, ctx, 1, stream=False))
    if not apply:
        return edited, None
    backup = apply_edit(file_path, ctx.base_dir, original, edited)
    logger.debug("edited %s, backup at %s", file_path, backup)
    return edited, backup


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="shellmate",
        usage="%(prog)s [options] <task>\n       %(prog)s --repl [options]",
        description="A terminal coding assistant that runs model-requested shell "
        "commands under an execution policy.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "task", nargs="?", default=None, help="The task for a single agent turn."
    )
    task_group = parser.add_mutually_exclusive_group()
    task_group.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive chat (the default when no task is given).",
    )
    task_group.add_argument(
        "--review",
        metavar="FILE",
        default=None,
        help="Review FILE; the task, if given, is an extra requirement.",
    )
    task_group.add_argument(
        "--edit",
        metavar="FILE",
        default=None,
        help="Edit FILE following the task as the instruction (dry run unless --apply).",
    )
    parser.add_argument(
        "--apply",
        action="store_true",
        help="With --edit, write the result back and keep a .bak copy.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project-level template.",
    )
    parser.add_argument(
        "--provider",
        choices=list(PROVIDERS),
        default=_UNSET,
        help="LLM provider (default: openai).",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=_UNSET,
        help="Model identifier (default: provider preset).",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Server base URL (default: http://127.0.0.1:1234 for lmstudio).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    parser.add_argument(
        "--system-prompt",
        type=str,
        default=_UNSET,
        help="Replace the default system prompt.",
    )
    parser.add_argument(
        "--prompt",
        type=str,
        default=_UNSET,
        metavar="NAME",
        help="Use the stored prompt NAME instead of the active one.",
    )
    parser.add_argument(
        "--session",
        type=str,
        default=_UNSET,
        help='Session name (default: "auto", one session per workspace).',
    )
    parser.add_argument(
        "--mode",
        choices=list(TURN_MODE_ALIASES),
        default=_UNSET,
        help="When to run commands: chat-only, auto (default) or force.",
    )
    parser.add_argument(
        "--exec-mode",
        choices=list(EXEC_MODES),
        default=_UNSET,
        help="Execution policy: safe (read-only whitelist, default), all, custom.",
    )
    parser.add_argument(
        "--allow",
        action="append",
        default=None,
        metavar="PREFIX",
        help="Allow commands starting with PREFIX in custom mode (repeatable).",
    )
    parser.add_argument(
        "--deny",
        action="append",
        default=None,
        metavar="PREFIX",
        help="Always refuse commands starting with PREFIX (repeatable).",
    )

    confirm_group = parser.add_mutually_exclusive_group()
    confirm_group.add_argument(
        "--confirm",
        dest="confirm",
        action="store_true",
        default=_UNSET,
        help="Ask before running each untrusted command.",
    )
    confirm_group.add_argument(
        "--no-confirm",
        dest="confirm",
        action="store_false",
        default=_UNSET,
        help="Run permitted commands without asking.",
    )

    parser.add_argument(
        "--command-timeout",
        type=int,
        default=_UNSET,
        metavar="SECONDS",
        help="Kill a command after SECONDS (default: 120, max 3600).",
    )
    parser.add_argument(
        "--history-max-messages",
        type=int,
        default=_UNSET,
        help="Compact history beyond this many messages (default: 40).",
    )
    parser.add_argument(
        "--history-max-chars",
        type=int,
        default=_UNSET,
        help="Compact history beyond this many characters (default: 40000).",
    )
    parser.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help="Workspace directory commands run in (default: current directory).",
    )
    parser.add_argument(
        "--no-verify",
        action="store_true",
        default=_UNSET,
        help="Don't run the project checker after commands execute.",
    )
    parser.add_argument(
        "--no-workspace-context",
        action="store_true",
        default=_UNSET,
        help="Send user input as-is, without the workspace preamble.",
    )
    parser.add_argument(
        "--no-stream",
        action="store_true",
        help="Wait for complete replies instead of streaming them.",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE. Incompatible with --repl.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress diagnostics; only print model output.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log internal decisions to stderr.",
    )

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("shellmate")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.project and not args.init_config:
        parser.error("--project requires --init-config")
    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)

    if args.debug:
        logging.basicConfig(
            level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s"
        )

    try:
        config = load_config(Path(args.base_dir))
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)

    args.verbose = not args.quiet
    args.mode = TURN_MODE_ALIASES[args.mode]
    if args.apply and not args.edit:
        parser.error("--apply requires --edit")
    if args.edit and not args.task:
        parser.error("--edit requires the edit instruction as the task")
    file_task = args.review or args.edit
    args.repl = args.repl or (args.task is None and not file_task)
    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")
    if args.report and file_task:
        parser.error("--report is incompatible with --review and --edit")

    fmt.init(color=args.color, no_color=args.no_color)

    report = ReportCollector() if args.report else None

    def _write_report(outcome, answer=None, exit_code=0, error_message=None):
        if not report:
            return
        report.finalize(
            task=args.task or "",
            model=getattr(args, "_resolved_model", args.model or "unknown"),
            provider=args.provider,
            settings={
                "exec_mode": args.exec_mode,
                "allow": sorted(args.allow),
                "deny": sorted(args.deny),
                "confirm": args.confirm,
                "command_timeout": args.command_timeout,
                "history_max_messages": args.history_max_messages,
                "history_max_chars": args.history_max_chars,
                "verify": not args.no_verify,
                "temperature": args.temperature,
            },
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            error_message=error_message,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        _run_main(args, config, report, _write_report)
    except AgentError as e:
        fmt.error(str(e))
        _write_report("error", exit_code=1, error_message=str(e))
        sys.exit(1)


def model_catalog(provider: str, current: str, extra=()) -> list[str]:
    """Models /model can switch between: the current one, provider presets, then config extras."""
    names = [current, *PROVIDER_MODEL_OPTIONS.get(provider, []), *extra]
    return list(dict.fromkeys(names))


def _select_prompt(ctx: TurnContext, store: PromptStore, name: str | None) -> None:
    """Attach *store* and, unless an explicit system prompt is set, use a stored prompt."""
    ctx.prompts = store
    if ctx.system_prompt is not None:
        return
    name = name or store.active
    if store.get(name) is None:
        raise ConfigError(f"prompt not found: {name}")
    ctx.prompt_name = name
    ctx.system_prompt = store.render(name)


def _run_main(args, config, report, _write_report):
    base_dir = Path(args.base_dir).resolve()
    if not base_dir.is_dir():
        raise ConfigError(f"base directory not found: {args.base_dir}")
    base_dir = str(base_dir)

    model = resolve_model(args.provider, args.model)
    args._resolved_model = model
    api_key = resolve_api_key(args.provider, args.api_key)

    config_dir = config.get("config_dir") or global_config_dir()
    ctx = TurnContext(
        policy=ExecPolicy(
            mode=args.exec_mode,
            allow=list(args.allow),
            deny=list(args.deny),
            confirm=args.confirm,
        ),
        base_dir=base_dir,
        trusted=TrustStore(config_dir / TRUSTED_FILE, initial=args.exec_trusted),
        command_timeout=args.command_timeout,
        history_max_messages=args.history_max_messages,
        history_max_chars=args.history_max_chars,
        verify=not args.no_verify,
        workspace_context=not args.no_workspace_context,
        verbose=args.verbose,
        system_prompt=args.system_prompt,
        llm_kwargs=dict(
            provider=args.provider,
            model=model,
            api_key=api_key,
            base_url=args.base_url,
            temperature=args.temperature,
            stream=not args.no_stream,
        ),
        report=report,
        model_catalog=model_catalog(args.provider, model, args.models),
    )
    _select_prompt(ctx, PromptStore(config_dir / PROMPTS_DIR), args.prompt)

    if args.review:
        answer = run_review(args.review, ctx, args.task)
        if not ctx.streaming:
            print(answer)
        return
    if args.edit:
        edited, backup = run_edit(args.edit, args.task, ctx, apply=args.apply)
        if backup is None:
            print(edited)
            if args.verbose:
                fmt.info("Dry run only. Use --apply to write changes.")
        elif args.verbose:
            fmt.info(f"Updated {args.edit}")
            fmt.info(f"Backup  {backup}")
        return

    session_name = resolve_session_name(args.session, base_dir)
    messages = load_session(session_name)
    if args.verbose:
        fmt.info(f"model: {args.provider}/{model}, session: {session_name}")

    if args.repl:
        repl_loop(messages, ctx, session_name=session_name, mode=args.mode)
        return

    before = changed_files(base_dir)
    outcome = run_user_turn(messages, args.task, ctx, mode="force")
    save_session(session_name, messages)

    if outcome.answer is not None and not ctx.streaming:
        print(outcome.answer)
    if args.verbose:
        print_changed_files_delta(before, base_dir)

    if outcome.reason in (ANSWER, CHAT):
        exit_code = 0
    elif outcome.reason == TRANSPORT_ERROR:
        exit_code = 1
    else:
        exit_code = 2
    _write_report(
        outcome.reason,
        answer=outcome.answer,
        exit_code=exit_code,
        error_message=outcome.message if exit_code == 1 else None,
    )
    if exit_code:
        sys.exit(exit_code)


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help                     Show this help message\n"
        "  /new [name]               Start a new session\n"
        "  /clear                    Clear the current session's history\n"
        "  /session list             List saved sessions\n"
        "  /session use <name>       Switch to another session\n"
        "  /session rm <name>        Delete a saved session\n"
        "  /mode [chat-only|auto|force]  Show or set when commands run\n"
        "  /compact                  Summarize older history now\n"
        "  /trust [list|rm <prefix>] Show or remove trusted command prefixes\n"
        "  /read <file> [question]   Load a file into context, or ask about it\n"
        "  /askfile <file> <question>  Ask a question about a file\n"
        "  /list [path]              List workspace files\n"
        "  /grep <pattern> [path]    Search workspace files\n"
        "  /prompt [show|list|use|save|rm|var]  Manage stored system prompts\n"
        "  /model [list|use <name>]  Show or switch the model for this session\n"
        "  /exit, /quit              Exit the REPL"
    )


def _repl_new(arg: str, messages: list, ctx: TurnContext, state: dict) -> None:
    name = arg.strip()
    state["session"] = (
        resolve_session_name(name, ctx.base_dir)
        if name
        else fresh_session_name(ctx.base_dir)
    )
    messages.clear()
    fmt.info(f"new session: {state['session']}")


def _repl_clear(messages: list) -> None:
    dropped = len(messages)
    messages.clear()
    fmt.info(f"context cleared ({dropped} messages removed)")


def _repl_session(arg: str, messages: list, ctx: TurnContext, state: dict) -> bool:
    parts = arg.split(None, 1)
    sub = parts[0].lower() if parts else "list"
    name = parts[1].strip() if len(parts) > 1 else ""

    if sub == "list":
        names = list_sessions()
        if not names:
            fmt.info("no saved sessions")
        for n in names:
            marker = "*" if n == state["session"] else " "
            fmt.info(f"{marker} {n}")
        return False
    if sub == "use":
        if not name:
            fmt.warning("/session use requires a name")
            return False
        target = resolve_session_name(name, ctx.base_dir)
        try:
            loaded = load_session(target)
        except ConfigError as e:
            fmt.warning(str(e))
            return False
        save_session(state["session"], messages)
        messages[:] = loaded
        state["session"] = target
        fmt.info(f"switched to session {target} ({len(loaded)} messages)")
        return False
    if sub == "rm":
        if not name:
            fmt.warning("/session rm requires a name")
            return False
        try:
            removed = remove_session(name, active=state["session"])
        except ConfigError as e:
            fmt.warning(str(e))
            return False
        fmt.info(f"removed session {name}" if removed else f"no such session: {name}")
        return False
    fmt.warning(f"unknown /session subcommand: {sub}")
    return False


def _repl_mode(arg: str, state: dict) -> None:
    arg = arg.strip()
    if not arg or arg == "show":
        fmt.info(f"execution mode: {state['mode']}")
        return
    mode = parse_turn_mode(arg)
    if mode is None:
        fmt.warning(f"unknown mode {arg!r}; use chat-only, auto or force")
        return
    state["mode"] = mode
    fmt.info(f"execution mode: {mode}")


def _repl_compact(messages: list) -> bool:
    """Compact down to the minimum ceilings regardless of configured limits."""
    before_count, before_chars = len(messages), total_chars(messages)
    if not maybe_compact_history(messages, MIN_MAX_MESSAGES, MIN_MAX_CHARS):
        fmt.info("nothing to compact")
        return False
    fmt.info(
        f"compacted: {before_count} -> {len(messages)} messages "
        f"({before_chars} -> {total_chars(messages)} chars)"
    )
    return True


def _repl_trust(arg: str, ctx: TurnContext) -> None:
    if ctx.trusted is None:
        fmt.warning("no trusted prefix store configured")
        return
    parts = arg.split(None, 1)
    sub = parts[0].lower() if parts else "list"
    if sub == "list":
        if not ctx.trusted.prefixes:
            fmt.info("no trusted prefixes")
        for prefix in ctx.trusted.prefixes:
            fmt.info(f"- {prefix}")
    elif sub == "rm" and len(parts) > 1:
        prefix = parts[1].strip()
        if ctx.trusted.remove(prefix):
            fmt.info(f"removed trusted prefix: {prefix}")
        else:
            fmt.warning(f"not trusted: {prefix}")
    else:
        fmt.warning("usage: /trust [list|rm <prefix>]")


def _print_turn_answer(outcome: TurnOutcome, ctx: TurnContext) -> None:
    if outcome.answer is not None and not ctx.streaming:
        print(outcome.answer)


def _repl_read(arg: str, line: str, messages: list, ctx: TurnContext) -> bool:
    """/read FILE loads it into context; /read FILE QUESTION asks about it."""
    parts = arg.split(None, 1)
    if not parts:
        fmt.warning("usage: /read <file> [question]")
        return False
    file_path = parts[0]
    question = parts[1].strip() if len(parts) > 1 else ""
    if question:
        _print_turn_answer(run_file_question(messages, file_path, question, ctx), ctx)
        return True
    content = read_text_file(file_path, ctx.base_dir)
    messages.append({"role": "user", "content": line})
    messages.append(
        {
            "role": "assistant",
            "content": READ_HISTORY_HEADER + clip_output(content, FILE_READ_CHARS),
        }
    )
    fmt.info(f"Read {file_path} (content hidden). Ask a follow-up question to analyze it.")
    return True


def _repl_askfile(arg: str, messages: list, ctx: TurnContext) -> bool:
    parts = arg.split(None, 1)
    if len(parts) < 2 or not parts[1].strip():
        fmt.warning("usage: /askfile <file> <question>")
        return False
    outcome = run_file_question(messages, parts[0], parts[1].strip(), ctx)
    _print_turn_answer(outcome, ctx)
    return True


def _repl_list(arg: str, ctx: TurnContext) -> None:
    output = list_files(arg.strip() or ".", ctx.base_dir)
    print(output or "(no files)")


def _repl_grep(arg: str, ctx: TurnContext) -> None:
    parts = arg.split()
    if not parts:
        fmt.warning("usage: /grep <pattern> [path]")
        return
    path = parts[1] if len(parts) > 1 else "."
    print(grep_files(parts[0], path, ctx.base_dir))


def _refresh_prompt(ctx: TurnContext) -> None:
    if ctx.prompt_name is not None:
        ctx.system_prompt = ctx.prompts.render(ctx.prompt_name)


def _repl_prompt_var(arg: str, ctx: TurnContext) -> None:
    store = ctx.prompts
    parts = arg.split(None, 2)
    sub = parts[0].lower() if parts else "list"
    if sub == "list":
        variables = store.variables
        if not variables:
            fmt.info("no prompt variables")
        for key, value in variables.items():
            fmt.info(f"{key}={value}")
    elif sub == "set" and len(parts) == 3:
        store.set_var(parts[1], parts[2])
        _refresh_prompt(ctx)
        fmt.info(f"prompt variable saved: {parts[1]}")
    elif sub == "rm" and len(parts) == 2:
        if store.remove_var(parts[1]):
            _refresh_prompt(ctx)
            fmt.info(f"prompt variable removed: {parts[1]}")
        else:
            fmt.warning(f"no such prompt variable: {parts[1]}")
    else:
        fmt.warning("usage: /prompt var [list|set <key> <value>|rm <key>]")


def _repl_prompt(arg: str, ctx: TurnContext) -> None:
    store = ctx.prompts
    if store is None:
        fmt.warning("no prompt store configured")
        return
    parts = arg.split(None, 1)
    sub = parts[0].lower() if parts else "show"
    rest = parts[1].strip() if len(parts) > 1 else ""
    active = ctx.prompt_name or "(custom system prompt)"

    if sub == "show":
        fmt.info(f"active prompt: {active}")
        fmt.info(ctx.system_prompt or DEFAULT_SYSTEM_PROMPT)
    elif sub == "list":
        fmt.info(f"active: {active}")
        for name in store.names():
            marker = "*" if name == ctx.prompt_name else " "
            fmt.info(f"{marker} {name}: {truncate_preview(store.render(name))}")
    elif sub == "use":
        if not rest:
            fmt.warning("usage: /prompt use <name>")
            return
        store.use(rest)
        ctx.prompt_name = rest
        _refresh_prompt(ctx)
        fmt.info(f"active prompt switched to {rest}")
    elif sub == "save":
        name_text = rest.split(None, 1)
        if len(name_text) < 2:
            fmt.warning("usage: /prompt save <name> <text>")
            return
        store.save(name_text[0], name_text[1])
        if name_text[0] == ctx.prompt_name:
            _refresh_prompt(ctx)
        fmt.info(f"prompt saved: {name_text[0]}")
    elif sub == "rm":
        if not rest:
            fmt.warning("usage: /prompt rm <name>")
            return
        store.remove(rest)
        if rest == ctx.prompt_name:
            ctx.prompt_name = store.active
            _refresh_prompt(ctx)
        fmt.info(f"prompt removed: {rest}")
    elif sub == "var":
        _repl_prompt_var(rest, ctx)
    else:
        fmt.warning("usage: /prompt [show|list|use|save|rm|var]")


def _repl_model(arg: str, ctx: TurnContext) -> None:
    parts = arg.split()
    sub = parts[0].lower() if parts else "list"
    current = ctx.llm_kwargs.get("model")
    catalog = ctx.model_catalog or [current]
    if sub == "list":
        fmt.info(f"current model: {current}")
        for name in catalog:
            marker = "*" if name == current else " "
            fmt.info(f"{marker} {name}")
    elif sub == "use" and len(parts) > 1:
        name = parts[1]
        if name not in catalog:
            fmt.warning(f"model not in catalog: {name}")
            return
        ctx.llm_kwargs["model"] = name
        fmt.info(f"model switched to {name}")
    else:
        fmt.warning("usage: /model [list|use <name>]")


def handle_slash_command(
    line: str, messages: list, ctx: TurnContext, state: dict
) -> bool:
    """Run one slash command. Returns True when the session should be saved."""
    cmd_parts = line.split(None, 1)
    cmd = cmd_parts[0].lower()
    cmd_arg = cmd_parts[1] if len(cmd_parts) > 1 else ""

    if cmd == "/help":
        _repl_help()
        return False
    if cmd == "/new":
        _repl_new(cmd_arg, messages, ctx, state)
        return True
    if cmd == "/clear":
        _repl_clear(messages)
        return True
    if cmd == "/session":
        return _repl_session(cmd_arg, messages, ctx, state)
    if cmd == "/mode":
        _repl_mode(cmd_arg, state)
        return False
    if cmd == "/compact":
        return _repl_compact(messages)
    if cmd == "/trust":
        _repl_trust(cmd_arg, ctx)
        return False
    try:
        if cmd == "/read":
            return _repl_read(cmd_arg, line, messages, ctx)
        if cmd == "/askfile":
            return _repl_askfile(cmd_arg, messages, ctx)
        if cmd == "/list":
            _repl_list(cmd_arg, ctx)
            return False
        if cmd == "/grep":
            _repl_grep(cmd_arg, ctx)
            return False
        if cmd == "/prompt":
            _repl_prompt(cmd_arg, ctx)
            return False
        if cmd == "/model":
            _repl_model(cmd_arg, ctx)
            return False
    except AgentError as e:
        fmt.warning(str(e))
        return False
    fmt.info(f"Unknown command: {cmd}. Use /help.")
    return False


def repl_loop(
    messages: list, ctx: TurnContext, *, session_name: str, mode: str
) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(ctx.base_dir, ".shellmate", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "you> ")])

    state = {"session": session_name, "mode": mode}
    if ctx.verbose:
        fmt.repl_banner(session_name, mode)

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = prompt_session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue
        if line in ("/exit", "/quit"):
            break

        before = changed_files(ctx.base_dir)
        if line.startswith("/"):
            if handle_slash_command(line, messages, ctx, state):
                save_session(state["session"], messages)
        else:
            try:
                outcome = run_user_turn(messages, line, ctx, mode=state["mode"])
            except KeyboardInterrupt:
                fmt.warning("interrupted, request aborted.")
                outcome = None
            save_session(state["session"], messages)
            if outcome and outcome.answer is not None and not ctx.streaming:
                print(outcome.answer)
        if ctx.verbose:
            print_changed_files_delta(before, ctx.base_dir)


if __name__ == "__main__":
    main()
