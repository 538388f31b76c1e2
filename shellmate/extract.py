"""Tool-call extraction from free-form assistant text.

Models are asked to request commands with a fenced JSON block such as::

    ```json
    {"tool_calls": [{"tool": "shell", "command": "rg --files"}]}
    ```

In practice replies arrive with degraded fences, bare inline objects, or
plain shell blocks. extract_tool_calls() tolerates the first two;
analyze_reply() also flags the attempts it cannot use so the turn engine
can ask for a corrected reply.
"""

import json
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

# Field aliases accepted on a tool-call object, in lookup order.
TOOL_NAME_KEYS = ("tool", "type")
COMMAND_KEYS = ("command", "cmd")
NESTED_CALLS_KEY = "tool_calls"

STRICT_FENCE = ("```json", "```")
DEGRADED_FENCE = ("``json", "``")

LEGACY_SHELL_FENCES = (
    "```bash",
    "```sh",
    "```zsh",
    "```powershell",
    "```pwsh",
    "```cmd",
)
TOOL_CALL_HINTS = ("tool_calls", '"tool"')
# Only a hint when the fence itself failed to parse.
FENCE_HINTS = ("```json", "``json")

LEGACY_SHELL_MESSAGE = (
    "Detected legacy shell block. Skipped: use JSON tool_calls instead."
)
MALFORMED_CALLS_MESSAGE = (
    "Detected malformed or incomplete tool_calls JSON. "
    "Skipped; ask model to retry with valid JSON tool_calls."
)


@dataclass
class ToolCall:
    tool: str
    command: str


@dataclass
class Extraction:
    """Outcome of scanning one assistant reply."""

    calls: list[ToolCall] = field(default_factory=list)
    had_blocks: bool = False
    invalid_format: bool = False
    message: str = ""


def _first_string(obj: dict, keys: tuple[str, ...]) -> str:
    for key in keys:
        if key in obj:
            value = obj[key]
            return value.strip() if isinstance(value, str) else ""
    return ""


def collect_tool_calls(value, out: list[ToolCall]) -> None:
    """Walk a decoded JSON value and append every tool call found to *out*.

    Arrays are flattened, an object carrying ``tool_calls`` is replaced by
    that key's value, and any other object becomes a call when both its
    tool name and command are non-empty strings.
    """
    if isinstance(value, list):
        for item in value:
            collect_tool_calls(item, out)
    elif isinstance(value, dict):
        if NESTED_CALLS_KEY in value:
            collect_tool_calls(value[NESTED_CALLS_KEY], out)
            return
        tool = _first_string(value, TOOL_NAME_KEYS)
        command = _first_string(value, COMMAND_KEYS)
        if tool and command:
            out.append(ToolCall(tool=tool, command=command))


def _parse_json(block: str):
    try:
        return json.loads(block), True
    except (json.JSONDecodeError, ValueError):
        return None, False


def _collect_from_fence(
    text: str,
    fence: tuple[str, str],
    skip_if_prev_backtick: bool,
    out: list[ToolCall],
    spans: list[tuple[int, int]],
) -> int:
    """Collect calls from every *fence* block. Returns the number of blocks
    that were unterminated or not valid JSON."""
    open_tag, close_tag = fence
    failed = 0
    i = 0
    while i < len(text):
        open_idx = text.find(open_tag, i)
        if open_idx < 0:
            break
        if skip_if_prev_backtick and open_idx > 0 and text[open_idx - 1] == "`":
            i = open_idx + len(open_tag)
            continue

        json_start = open_idx + len(open_tag)
        while json_start < len(text) and text[json_start] in " \t\r\n":
            json_start += 1
        if json_start >= len(text):
            failed += 1
            break

        end = text.find(close_tag, json_start)
        if end < 0:
            failed += 1
            break

        value, ok = _parse_json(text[json_start:end].strip())
        if ok:
            collect_tool_calls(value, out)
            spans.append((json_start, end))
        else:
            failed += 1
        i = end + len(close_tag)
    return failed


def find_matching_brace(text: str, start: int) -> int | None:
    """Return the index of the ``}`` closing the object opened at *start*.

    String literals are skipped, honoring backslash escapes, so braces and
    quotes inside JSON strings do not end the object early.
    """
    if start >= len(text) or text[start] != "{":
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return None


def _collect_from_inline(
    text: str, out: list[ToolCall], spans: list[tuple[int, int]]
) -> None:
    i = 0
    while i < len(text):
        if text[i] != "{":
            i += 1
            continue
        # Already consumed by a fence strategy.
        covering = next((s for s in spans if s[0] <= i < s[1]), None)
        if covering is not None:
            i = covering[1]
            continue
        end = find_matching_brace(text, i)
        if end is None:
            i += 1
            continue
        candidate = text[i : end + 1]
        if f'"{NESTED_CALLS_KEY}"' in candidate:
            value, ok = _parse_json(candidate)
            if ok:
                collect_tool_calls(value, out)
                i = end + 1
                continue
        i += 1


def _extract(text: str) -> tuple[list[ToolCall], int]:
    calls: list[ToolCall] = []
    spans: list[tuple[int, int]] = []
    failed = _collect_from_fence(text, STRICT_FENCE, False, calls, spans)
    failed += _collect_from_fence(text, DEGRADED_FENCE, True, calls, spans)
    _collect_from_inline(text, calls, spans)
    logger.debug("extracted %d tool call(s), %d bad fence(s)", len(calls), failed)
    return calls, failed


def extract_tool_calls(text: str) -> list[ToolCall]:
    """Return the tool calls in *text*, in the order the strategies find them.

    Strategies: strict ```json fences, then degraded ``json fences, then
    bare inline objects containing a ``tool_calls`` key. A region already
    parsed by a fence is not scanned again by the inline strategy.
    """
    return _extract(text)[0]


def contains_legacy_shell_block(text: str) -> bool:
    lower = text.lower()
    return any(tag in lower for tag in LEGACY_SHELL_FENCES)


def contains_tool_call_hint(text: str, failed_fences: int = 0) -> bool:
    lower = text.lower()
    if any(hint in lower for hint in TOOL_CALL_HINTS):
        return True
    return failed_fences > 0 and any(hint in lower for hint in FENCE_HINTS)


def analyze_reply(text: str) -> Extraction:
    """Extract tool calls and classify what the reply was attempting."""
    calls, failed_fences = _extract(text)
    if calls:
        return Extraction(calls=calls, had_blocks=True)
    if contains_legacy_shell_block(text):
        return Extraction(
            had_blocks=True, invalid_format=True, message=LEGACY_SHELL_MESSAGE
        )
    if contains_tool_call_hint(text, failed_fences):
        return Extraction(
            had_blocks=True, invalid_format=True, message=MALFORMED_CALLS_MESSAGE
        )
    return Extraction()
