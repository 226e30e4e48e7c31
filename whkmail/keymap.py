"""Keymap profiles and the display strings for each user action."""

from __future__ import annotations

from enum import IntEnum, StrEnum, auto


class Action(IntEnum):
    """Logical operations shown in the help footer."""

    MOVE = 0
    OPEN = auto()
    MARK_READ = auto()
    MARK_UNREAD = auto()
    TRASH = auto()
    BACK = auto()
    QUIT = auto()
    SCROLL_BODY = auto()
    JUMP_MESSAGE = auto()
    CONFIG = auto()
    TOP_BOTTOM = auto()
    HALF_PAGE = auto()
    HELP = auto()
    TAB_NAV = auto()
    FOLDER_MANAGER = auto()
    MARK_SPAM = auto()


_VIM_KEYS: dict[Action, str] = {
    Action.MOVE: "j/k",
    Action.OPEN: "enter",
    Action.MARK_READ: "s",
    Action.MARK_UNREAD: "N",
    Action.TRASH: "d",
    Action.BACK: "esc",
    Action.QUIT: "C-d",
    Action.SCROLL_BODY: "j/k",
    Action.JUMP_MESSAGE: "n/p",
    Action.CONFIG: ",",
    Action.TOP_BOTTOM: "g/G",
    Action.HALF_PAGE: "PgDn/PgUp",
    Action.HELP: "?",
    Action.TAB_NAV: "[/]",
    Action.FOLDER_MANAGER: "m",
    Action.MARK_SPAM: "S",
}

# Only actions with a distinct emacs convention; the rest use the vim key.
_EMACS_KEYS: dict[Action, str] = {
    Action.MOVE: "↓/↑",
    Action.MARK_READ: "!",
    Action.MARK_SPAM: "$",
    Action.SCROLL_BODY: "↓/↑",
    Action.HALF_PAGE: "PgDn/PgUp",
    Action.TAB_NAV: "Tab",
}


class InputStyle(StrEnum):
    """User-selectable keymap profile; only affects what the help shows."""

    VIM = "vim"
    EMACS = "emacs"

    def key(self, action: Action) -> str:
        """Display string for an action, falling back to the vim binding."""
        if self is InputStyle.EMACS and action in _EMACS_KEYS:
            return _EMACS_KEYS[action]
        return _VIM_KEYS[action]


def normalize_style(value: str | None) -> InputStyle:
    """Coerce any value to a style: exactly "emacs" is emacs, anything else vim."""
    if value == InputStyle.EMACS.value:
        return InputStyle.EMACS
    return InputStyle.VIM