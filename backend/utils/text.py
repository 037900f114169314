import re
from typing import List

_SELF_PREFIX = re.compile(r"^[\"']?Player\s*\d+[\"']?\s*[:：]\s*", re.IGNORECASE)
_WRAPPING_QUOTES = re.compile(r"^[\"']|[\"']$")


def sanitize_agent_text(text: str, max_length: int) -> str:
    """Strip a leading "Player N:" self-prefix and wrapping quotes, then cap length."""
    cleaned = _SELF_PREFIX.sub("", text.strip())
    cleaned = _WRAPPING_QUOTES.sub("", cleaned).strip()
    return cleaned[:max_length]


def clean_human_text(text: object, max_length: int) -> str:
    """Normalize inbound human text; returns "" for anything unusable."""
    if not isinstance(text, str):
        return ""
    return text.strip()[:max_length]


def player_label(number: int) -> str:
    return f"Player {number}"


def player_list(numbers: List[int]) -> str:
    """Comma-separated "Player N" labels."""
    return ", ".join(player_label(n) for n in numbers)
