"""Plain-text layout helpers for message lists and bodies."""

from __future__ import annotations

from collections.abc import Sequence

from whkmail.models import Message

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

_FROM_WIDTH = 24
_DATE_WIDTH = 6


def thread_indent(depths: Sequence[int], i: int) -> str:
    """Row prefix for a threaded reply: two spaces per ancestor level plus an arrow."""
    if i >= len(depths) or depths[i] == 0:
        return ""
    return "  " * (depths[i] - 1) + "↳ "


def format_message_row(message: Message, width: int) -> str:
    """One list row: flag, sender, subject and short date in fixed columns."""
    date = f"{_MONTHS[message.date.month - 1]} {message.date.day:02d}"
    # Unread wins over answered: what hasn't been read matters most.
    if message.unread:
        flag = "●"
    elif message.answered:
        flag = "↩"
    else:
        flag = " "
    subject_width = width - 1 - 1 - _FROM_WIDTH - 2 - 2 - _DATE_WIDTH
    if subject_width < 10:
        subject_width = 40
    sender = truncate(message.sender, _FROM_WIDTH)
    subject = truncate(message.subject, subject_width)
    return f"{flag} {sender:<{_FROM_WIDTH}}  {subject:<{subject_width}}  {date}"


def pad_right(s: str, width: int) -> str:
    """Pad with spaces up to width characters; longer strings are unchanged."""
    return s if len(s) >= width else s + " " * (width - len(s))


def truncate(s: str, limit: int) -> str:
    """Shorten to at most limit characters, ending in an ellipsis when cut."""
    if len(s) <= limit:
        return s
    if limit <= 1:
        return "…"
    return s[: limit - 1] + "…"


def wrap_body(text: str, width: int) -> str:
    """Word-wrap each line of a plain-text body, keeping existing line breaks."""
    if width <= 10:
        return text
    return "\n".join(wrap_line(line, width) for line in text.split("\n"))


def wrap_line(line: str, width: int) -> str:
    """Wrap one line at spaces; words longer than width are split hard."""
    if len(line) <= width:
        return line
    parts: list[str] = []
    rest = line
    while len(rest) > width:
        cut = rest.rfind(" ", 0, width) + 1
        if cut == 0:
            cut = width
        parts.append(rest[:cut])
        rest = rest[cut:].lstrip(" ")
    if rest:
        parts.append(rest)
    return "\n".join(parts)