"""Terminal output helpers shared by the CLI and the API launcher."""

from enum import Enum
from typing import Any

from errand.core.schema import TranscriptEntry


class AnsiColors(Enum):
    """
    ANSI color codes for terminal output.
    """

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[33m"
    BLUE = "\033[94m"
    GREY = "\033[90m"


ROLE_COLORS = {
    "user": AnsiColors.BLUE,
    "assistant": AnsiColors.YELLOW,
    "function": AnsiColors.GREY,
}


def colored_print(text: str, color: AnsiColors, *args: Any, **kwargs: Any) -> None:
    """
    Print text in color.

    Args:
        text: The text to print
        color: The color to use (AnsiColors enum)
        args: Additional positional arguments for print
        kwargs: Additional keyword arguments for print
    """
    print(f"{color.value}{text}\033[0m", *args, **kwargs)  # ANSI reset at the end


def print_transcript(entries: list[TranscriptEntry]) -> None:
    """Print transcript entries, one colour per role."""
    for entry in entries:
        colored_print(f"[{entry.role}] {entry.content}", ROLE_COLORS[entry.role])
