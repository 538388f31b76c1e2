"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.markup import escape
from rich.prompt import Prompt
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)

CONFIRM_CHOICES = ["y", "n", "a", "q"]


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Turn structure ----------------------------------------------------------


def turn_header(step: int, max_steps: int, messages: int, tokens: int) -> None:
    title = f"Step {step}/{max_steps} ({messages} messages, ~{tokens} tokens)"
    _console.print(Rule(title, style="cyan"))


def phase(label: str) -> None:
    _console.print(Text(f"  (phase: {label})", style="dim cyan"))


def llm_timing(elapsed: float) -> None:
    _console.print(Text(f"  LLM responded in {elapsed:.1f}s", style="green"))


def llm_spinner(label: str = "Waiting for model"):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


def turn_finished(reason: str, steps: int) -> None:
    if reason in ("answer", "chat"):
        _console.print(
            Text(f"  \u2713 Turn finished: {steps} step(s)", style="bold green")
        )
    else:
        _console.print(
            Text(f"  Turn finished: {steps} step(s), reason={reason}", style="bold red")
        )


# -- Commands ----------------------------------------------------------------


def command_run(command: str) -> None:
    header = Text()
    header.append("  $ ", style="bold magenta")
    header.append(command, style="bold magenta")
    _console.print(header)


def command_output(output: str, elapsed: float, failure: str | None) -> None:
    if failure:
        header = Text(f"  \u2717 {elapsed:.1f}s  looks failed: {failure}", style="red")
    else:
        header = Text(f"  \u2713 {elapsed:.1f}s", style="green")
    _console.print(header)
    for line in output.splitlines():
        _console.print(Text(f"    {line}", style="dim"))


def command_skipped(line: str) -> None:
    text = Text()
    text.append("  \u26a0 ", style="yellow")
    text.append(line.rstrip("\n"), style="yellow")
    _console.print(text)


def exec_notice(line: str) -> None:
    _console.print(Text(f"  {line.rstrip()}", style="bold yellow"))


def verification(text: str) -> None:
    lines = text.splitlines() or [""]
    style = "red" if " failed" in lines[0] else "green"
    _console.print(Text(f"  {lines[0]}", style=style))
    for line in lines[1:]:
        _console.print(Text(f"    {line}", style="dim"))


def confirm_command(command: str, prefix: str) -> str:
    """Ask whether to run a command. Returns one of CONFIRM_CHOICES."""
    question = (
        f"Run command [bold]{escape(command)}[/bold] ? "
        f"y=yes / n=no / a=always [bold]{escape(prefix)}[/bold] / q=stop"
    )
    return Prompt.ask(
        question, choices=CONFIRM_CHOICES, default="n", console=_console
    )


# -- Assistant text ----------------------------------------------------------


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


def assistant_prefix(label: str) -> None:
    _console.print(Text(f"assistant[{label}]> ", style="bold blue"), end="")


# -- Workspace ---------------------------------------------------------------


def changed_files(added: list[str], kept: list[str], removed: list[str]) -> None:
    _console.print(Text("  changed files:", style="bold"))
    for path in added:
        _console.print(Text(f"  + {path}", style="green"))
    for path in kept:
        _console.print(Text(f"  ~ {path}", style="yellow"))
    for path in removed:
        _console.print(Text(f"  - {path}", style="red"))


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  \u26a0 Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner(session: str, mode: str) -> None:
    _console.print(Text(f"== shellmate chat ({session}) ==", style="bold"))
    _console.print(
        Text("Type /help for slash commands. Type /exit or Ctrl-D to quit.", style="dim")
    )
    _console.print(Text(f"Execution mode: {mode}", style="dim"))
