"""Error types and JSON run reports."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the turn engine or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (bad TOML, bad session file, etc.)."""


class TransportError(AgentError):
    """Raised when the model endpoint is unreachable or answers with an error."""


class ReportCollector:
    """Accumulates events during a single-shot run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_command_time = 0.0
        self.commands_succeeded = 0
        self.commands_failed = 0
        self.skips = 0
        self.retries: dict[str, int] = {}
        self.compactions = 0
        self.max_step_seen = 0

    def record_llm_call(self, step: int, duration: float, outcome: str):
        self.llm_calls += 1
        self.total_llm_time += duration
        if step > self.max_step_seen:
            self.max_step_seen = step
        self.events.append(
            {
                "step": step,
                "type": "llm_call",
                "duration_s": round(duration, 3),
                "outcome": outcome,
            }
        )

    def record_command(
        self,
        step: int,
        command: str,
        succeeded: bool,
        duration: float,
        failure: str | None = None,
    ):
        self.total_command_time += duration
        if succeeded:
            self.commands_succeeded += 1
        else:
            self.commands_failed += 1
        event: dict = {
            "step": step,
            "type": "command",
            "command": command,
            "succeeded": succeeded,
            "duration_s": round(duration, 3),
        }
        if failure is not None:
            event["failure"] = failure
        self.events.append(event)

    def record_skip(self, step: int, command: str, reason: str):
        self.skips += 1
        self.events.append(
            {"step": step, "type": "skip", "command": command, "reason": reason}
        )

    def record_retry(self, step: int, kind: str):
        self.retries[kind] = self.retries.get(kind, 0) + 1
        self.events.append({"step": step, "type": "retry", "kind": kind})

    def record_compaction(
        self,
        step: int,
        messages_before: int,
        messages_after: int,
        chars_before: int,
        chars_after: int,
    ):
        self.compactions += 1
        self.events.append(
            {
                "step": step,
                "type": "compaction",
                "messages_before": messages_before,
                "messages_after": messages_after,
                "chars_before": chars_before,
                "chars_after": chars_after,
            }
        )

    def record_verification(self, step: int, label: str | None, status: str):
        self.events.append(
            {"step": step, "type": "verification", "label": label, "status": status}
        )

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        error_message: str | None = None,
    ) -> dict:
        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "steps": self.max_step_seen,
                "llm_calls": self.llm_calls,
                "commands_total": self.commands_succeeded + self.commands_failed,
                "commands_succeeded": self.commands_succeeded,
                "commands_failed": self.commands_failed,
                "skips": self.skips,
                "retries": dict(self.retries),
                "compactions": self.compactions,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_command_time_s": round(self.total_command_time, 3),
            },
            "timeline": self.events,
        }

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")
