"""Settings file owned by the terminal interface: input style and folder states."""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from os import PathLike
from pathlib import Path
from typing import Any

from whkmail.keymap import InputStyle, normalize_style


class FolderState(StrEnum):
    """How a folder is shown."""

    # In the Combined tab and in its own tab.
    COMBINED = "combined"
    # Its own tab only.
    NORMAL = "normal"
    # Not shown anywhere, and left out of unread counts.
    HIDDEN = "hidden"


_KNOWN_STATES = {state.value for state in FolderState}


def folder_state_for(name: str, states: Mapping[str, FolderState]) -> FolderState:
    """The configured state of a folder, NORMAL when none is set."""
    return states.get(name, FolderState.NORMAL)


def cycle_state(state: FolderState) -> FolderState:
    """Next state in the combined, normal, hidden cycle."""
    if state == FolderState.COMBINED:
        return FolderState.NORMAL
    if state == FolderState.NORMAL:
        return FolderState.HIDDEN
    return FolderState.COMBINED


@dataclass
class _TuiConfig:
    input_style: str = ""
    folder_states: dict[str, FolderState] = field(default_factory=dict)


def _read_config(config_file: str | PathLike[str]) -> _TuiConfig:
    """Parse the settings file; anything missing or malformed yields the defaults."""
    try:
        raw = json.loads(Path(config_file).read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return _TuiConfig()
    if not isinstance(raw, dict):
        return _TuiConfig()
    style = raw.get("input_style")
    if style is None:
        style = ""
    if not isinstance(style, str):
        return _TuiConfig()
    states_raw = raw.get("folder_states")
    if states_raw is None:
        states_raw = {}
    if not isinstance(states_raw, dict) or not all(
        isinstance(value, str) for value in states_raw.values()
    ):
        return _TuiConfig()
    states = {
        name: FolderState(value)
        for name, value in states_raw.items()
        if value in _KNOWN_STATES
    }
    return _TuiConfig(input_style=style, folder_states=states)


def load_input_style(config_file: str | PathLike[str]) -> InputStyle:
    """The configured input style, vim when missing, malformed or unrecognised."""
    return normalize_style(_read_config(config_file).input_style)


def load_folder_states(config_file: str | PathLike[str]) -> dict[str, FolderState]:
    """Per-folder display states; empty when the file is missing or malformed."""
    return _read_config(config_file).folder_states


def _update_config(
    config_file: str | PathLike[str], mutate: Callable[[dict[str, Any]], None]
) -> None:
    """Apply mutate to the raw settings, keeping fields this version does not know."""
    path = Path(config_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    raw: dict[str, Any] = {}
    try:
        loaded = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        loaded = None
    if isinstance(loaded, dict):
        raw = loaded
    mutate(raw)
    path.write_text(
        json.dumps(raw, indent=2, sort_keys=True, ensure_ascii=False), encoding="utf-8"
    )


def save_folder_state(
    config_file: str | PathLike[str], folder: str, state: FolderState
) -> None:
    """Persist one folder's state, keeping every other setting."""

    def mutate(raw: dict[str, Any]) -> None:
        states = raw.get("folder_states")
        if not isinstance(states, dict):
            states = {}
        states[folder] = str(state)
        raw["folder_states"] = states

    _update_config(config_file, mutate)


def save_input_style(config_file: str | PathLike[str], style: InputStyle) -> None:
    """Persist the chosen input style, creating the config directory if needed."""

    def mutate(raw: dict[str, Any]) -> None:
        raw["input_style"] = str(style)

    _update_config(config_file, mutate)