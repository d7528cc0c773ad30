from __future__ import annotations

from typing import Any, Optional


def section(text: str, *, markdown: bool = True) -> dict[str, Any]:
    return {
        "type": "section",
        "text": {"type": "mrkdwn" if markdown else "plain_text", "text": text},
    }


def answer_blocks(label: str, text: str) -> list[dict[str, Any]]:
    return [section(label), section(text)]


def section_text(block: Any) -> Optional[str]:
    if not isinstance(block, dict) or block.get("type") != "section":
        return None
    text = block.get("text")
    if not isinstance(text, dict):
        return None
    value = text.get("text")
    return value if isinstance(value, str) else None


def extract_answer(blocks: Any, label: str) -> Optional[str]:
    """Return the answer text of a `[label, answer]` block pair, if present."""
    if not isinstance(blocks, list) or len(blocks) < 2:
        return None
    if section_text(blocks[0]) != label:
        return None
    return section_text(blocks[1])
