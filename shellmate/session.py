"""Public library API for shellmate: Session class and Result dataclass."""

import copy
from dataclasses import dataclass

from .report import ReportCollector


@dataclass
class Result:
    """Result of a run or ask call."""

    answer: str | None
    outcome: str
    messages: list[dict]
    report: dict | None = None


class Session:
    """Programmatic interface to the shellmate turn engine.

    Stores configuration as plain attributes. Call .run() for a single
    independent task or .ask() for a multi-turn conversation.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        provider: str = "openai",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        temperature: float | None = None,
        system_prompt: str | None = None,
        prompt: str | None = None,
        exec_mode: str = "safe",
        allow: list[str] | None = None,
        deny: list[str] | None = None,
        trusted: list[str] | None = None,
        confirm: bool = False,
        mode: str = "force",
        history_max_messages: int = 40,
        history_max_chars: int = 40000,
        command_timeout: int = 120,
        verify: bool = True,
        workspace_context: bool = True,
        verbose: bool = False,
        session_name: str | None = None,
    ):
        self.base_dir = base_dir
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.temperature = temperature
        self.system_prompt = system_prompt
        self.prompt = prompt
        self.exec_mode = exec_mode
        self.allow = allow or []
        self.deny = deny or []
        self.trusted = trusted or []
        self.confirm = confirm
        self.mode = mode
        self.history_max_messages = history_max_messages
        self.history_max_chars = history_max_chars
        self.command_timeout = command_timeout
        self.verify = verify
        self.workspace_context = workspace_context
        self.verbose = verbose
        self.session_name = session_name

        self._ctx = None
        self._resolved_session: str | None = None
        # Per-conversation state (for ask() mode)
        self._messages: list[dict] | None = None

    def _setup(self) -> None:
        """Resolve provider, policy and session once."""
        if self._ctx is not None:
            return

        from .agent import PROMPTS_DIR, TurnContext, _select_prompt, parse_turn_mode
        from .config import global_config_dir, resolve_api_key, resolve_model
        from .prompts import PromptStore
        from .report import ConfigError
        from .safety import ExecPolicy, TrustStore
        from .sessions import resolve_session_name

        mode = parse_turn_mode(self.mode)
        if mode is None:
            raise ConfigError(f"invalid mode {self.mode!r}")
        self.mode = mode

        model = resolve_model(self.provider, self.model)
        self._ctx = TurnContext(
            policy=ExecPolicy(
                mode=self.exec_mode,
                allow=list(self.allow),
                deny=list(self.deny),
                confirm=self.confirm,
            ),
            base_dir=self.base_dir,
            trusted=TrustStore(initial=self.trusted),
            command_timeout=self.command_timeout,
            history_max_messages=self.history_max_messages,
            history_max_chars=self.history_max_chars,
            verify=self.verify,
            workspace_context=self.workspace_context,
            verbose=self.verbose,
            system_prompt=self.system_prompt,
            llm_kwargs=dict(
                provider=self.provider,
                model=model,
                api_key=resolve_api_key(self.provider, self.api_key),
                base_url=self.base_url,
                temperature=self.temperature,
                stream=False,
            ),
        )
        if self.system_prompt is None and self.prompt is not None:
            store = PromptStore(global_config_dir() / PROMPTS_DIR)
            _select_prompt(self._ctx, store, self.prompt)
        if self.session_name is not None:
            self._resolved_session = resolve_session_name(
                self.session_name, self.base_dir
            )

        if self.verbose:
            from . import fmt

            fmt.init()

    def run(self, task: str, *, report: bool = False) -> Result:
        """Single-shot: run one agent turn on fresh history. Each call is independent."""
        self._setup()

        from .agent import ANSWER, CHAT, TRANSPORT_ERROR, run_user_turn

        collector = ReportCollector() if report else None
        self._ctx.report = collector
        messages: list[dict] = []
        try:
            outcome = run_user_turn(messages, task, self._ctx, mode="force")
        finally:
            self._ctx.report = None

        report_dict = None
        if collector:
            if outcome.reason in (ANSWER, CHAT):
                exit_code = 0
            elif outcome.reason == TRANSPORT_ERROR:
                exit_code = 1
            else:
                exit_code = 2
            report_dict = collector.build_report(
                task=task,
                model=self._ctx.llm_kwargs["model"],
                provider=self.provider,
                settings={
                    "exec_mode": self.exec_mode,
                    "command_timeout": self.command_timeout,
                    "verify": self.verify,
                },
                outcome=outcome.reason,
                answer=outcome.answer,
                exit_code=exit_code,
            )

        return Result(
            answer=outcome.answer,
            outcome=outcome.reason,
            messages=copy.deepcopy(messages),
            report=report_dict,
        )

    def ask(self, question: str) -> Result:
        """Conversational: share context across questions (like the REPL)."""
        self._setup()

        from .agent import run_user_turn
        from .sessions import load_session, save_session

        if self._messages is None:
            self._messages = (
                load_session(self._resolved_session) if self._resolved_session else []
            )

        outcome = run_user_turn(self._messages, question, self._ctx, mode=self.mode)

        if self._resolved_session:
            save_session(self._resolved_session, self._messages)

        return Result(
            answer=outcome.answer,
            outcome=outcome.reason,
            messages=copy.deepcopy(self._messages),
        )

    def reset(self) -> None:
        """Clear conversation state without invalidating setup. Next ask() starts fresh."""
        self._messages = None
        if self._resolved_session:
            from .sessions import save_session

            save_session(self._resolved_session, [])

    def review(self, file_path: str, extra: str | None = None) -> str:
        """Review one file under base_dir and return the model's findings."""
        self._setup()

        from .agent import run_review

        return run_review(file_path, self._ctx, extra)

    def edit(self, file_path: str, instruction: str, *, apply: bool = False) -> str:
        """Return the edited file text; with apply=True also write it (keeping a .bak copy)."""
        self._setup()

        from .agent import run_edit

        edited, _backup = run_edit(file_path, instruction, self._ctx, apply=apply)
        return edited
