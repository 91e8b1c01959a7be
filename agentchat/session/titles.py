from __future__ import annotations

import re
from datetime import datetime

MAX_TITLE_LENGTH = 40
_TRUNCATE_AT = MAX_TITLE_LENGTH - 3
_WHITESPACE = re.compile(r"\s+")


def derive_title(
    title: str | None = None,
    first_message: str | None = None,
    now: datetime | None = None,
) -> str:
    """Pick a directory title: explicit title, else first message, else a timestamp."""
    if title:
        return title
    if first_message and first_message.strip():
        clean = _WHITESPACE.sub(" ", first_message.strip())
        if len(clean) > MAX_TITLE_LENGTH:
            return clean[:_TRUNCATE_AT] + "..."
        return clean
    now = now or datetime.now().astimezone()
    return f"New Chat - {now:%b} {now.day}, {now:%I:%M %p}"
