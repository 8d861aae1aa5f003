"""Interactive confirmation gates for destructive commands."""

from __future__ import annotations

from typing import Callable

from rich.console import Console

Reader = Callable[[str], str]

_console = Console()


def confirm_yes_no(prompt: str, skip: bool, *, reader: Reader | None = None) -> bool:
    """Ask a (y/N) question; only an explicit ``y`` counts as yes.

    ``skip`` (the global ``--yes`` flag) answers yes without prompting.
    """
    if skip:
        return True
    answer = _read_answer(f"{prompt} (y/N) ", reader)
    return answer.lower() == "y"


def confirm_exact_phrase(prompt: str, expected: str, skip: bool, *, reader: Reader | None = None) -> bool:
    """Require the operator to type ``expected`` verbatim."""
    if skip:
        return True
    answer = _read_answer(f"{prompt} Type '{expected}' to confirm: ", reader)
    return answer == expected


def _read_answer(question: str, reader: Reader | None) -> str:
    read = reader or _console.input
    try:
        return read(question).strip()
    except EOFError:
        return ""
