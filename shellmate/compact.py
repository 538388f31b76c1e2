"""History compaction: fold an old prefix of the conversation into one summary message."""

import logging

logger = logging.getLogger(__name__)

SUMMARY_TAG = "[session-summary]"
MIN_MAX_MESSAGES = 4
MIN_MAX_CHARS = 2000
MIN_COMPACTABLE_MESSAGES = 8
MIN_TAIL_KEEP = 6
SUMMARY_SOURCE_MESSAGES = 20
SUMMARY_LINE_CHARS = 220
SUMMARY_MAX_CHARS = 4000


def clip_text(text: str, max_len: int, suffix: str) -> str:
    """Clip *text* to *max_len* characters, appending *suffix* when cut."""
    if len(text) <= max_len:
        return text
    return text[:max_len] + suffix


def total_chars(messages: list[dict]) -> int:
    return sum(len(m.get("content") or "") for m in messages)


def is_summary(message: dict) -> bool:
    return message.get("role") == "assistant" and (
        message.get("content") or ""
    ).startswith(SUMMARY_TAG)


def needs_compaction(messages: list[dict], max_messages: int, max_chars: int) -> bool:
    max_messages = max(max_messages, MIN_MAX_MESSAGES)
    max_chars = max(max_chars, MIN_MAX_CHARS)
    if len(messages) <= max_messages and total_chars(messages) <= max_chars:
        return False
    return len(messages) >= MIN_COMPACTABLE_MESSAGES


def summarize_history(messages: list[dict]) -> str:
    """Render the last few messages as one-line ``role: content`` bullets."""
    lines = []
    for m in messages[-SUMMARY_SOURCE_MESSAGES:]:
        role = "user" if m.get("role") == "user" else "assistant"
        short = clip_text((m.get("content") or "").strip(), SUMMARY_LINE_CHARS, "...")
        lines.append(f"- {role}: {short.replace(chr(10), ' ')}")
    out = "Compressed earlier context:\n" + "\n".join(lines)
    return clip_text(out, SUMMARY_MAX_CHARS, "...\n[summary truncated]")


def maybe_compact_history(
    messages: list[dict], max_messages: int, max_chars: int
) -> bool:
    """Compact *messages* in place when over either ceiling.

    Keeps a tail of at least half the message ceiling and replaces
    everything before it with a single assistant message tagged
    ``[session-summary]``. Returns True if the list changed.
    """
    if not needs_compaction(messages, max_messages, max_chars):
        return False

    max_messages = max(max_messages, MIN_MAX_MESSAGES)
    tail_keep = min(max(max_messages // 2, MIN_TAIL_KEEP), len(messages) - 1)
    split_at = len(messages) - tail_keep
    if split_at <= 0:
        return False
    # The prefix is just the previous summary.
    if split_at == 1 and is_summary(messages[0]):
        return False

    summary = {
        "role": "assistant",
        "content": f"{SUMMARY_TAG}\n{summarize_history(messages[:split_at])}",
    }
    before = len(messages)
    messages[:] = [summary] + messages[split_at:]
    logger.debug("compacted history: %d -> %d messages", before, len(messages))
    return True
