"""
Interaction port - every question the engine asks the user goes through here.

The resolver, orchestrator and rollback wizard never read stdin directly;
they are handed an InteractionPort. TerminalInteraction is the real
implementation; tests drive the engine with a scripted one.
"""

import logging
import sys
from abc import ABC, abstractmethod
from typing import Callable, Optional, Sequence, TextIO, Tuple

logger = logging.getLogger(__name__)

Option = Tuple[str, str]  # (answer key, label)


class InteractionPort(ABC):
    """User interaction seam."""

    @abstractmethod
    def confirm(self, question: str, default: bool = False) -> bool:
        """Yes/no question."""

    @abstractmethod
    def choose(self, prompt: str, options: Sequence[Option], default: Optional[str] = None) -> Optional[str]:
        """
        Multiple-choice question.

        Returns:
            The key of the chosen option, ``default`` for an invalid or empty
            answer, or None when the user quit
        """

    @abstractmethod
    def show_diff(self, label: str, diff_text: str) -> None:
        """Present the difference between installed and incoming content."""

    @abstractmethod
    def notify(self, message: str, level: str = "info") -> None:
        """Show a message (level: info, success, warning, error)."""


class TerminalInteraction(InteractionPort):
    """Prompts on a terminal."""

    COLORS = {
        'info': '\033[34m',
        'success': '\033[32m',
        'warning': '\033[33m',
        'error': '\033[31m',
    }
    RESET = '\033[0m'
    QUIT_ANSWERS = ('q', 'quit')

    def __init__(
        self,
        input_func: Callable[[str], str] = input,
        output: Optional[TextIO] = None,
        use_colors: bool = True,
    ):
        self.input_func = input_func
        self.output = output or sys.stdout
        self.use_colors = use_colors and hasattr(self.output, 'isatty') and self.output.isatty()

    def _ask(self, prompt: str) -> Optional[str]:
        try:
            return self.input_func(prompt).strip()
        except EOFError:
            return None

    def _write(self, text: str) -> None:
        self.output.write(text + '\n')
        self.output.flush()

    def confirm(self, question: str, default: bool = False) -> bool:
        suffix = "[Y/n]" if default else "[y/N]"
        answer = self._ask(f"{question} {suffix}: ")
        if not answer:
            return default if answer == '' else False
        return answer.lower() in ('y', 'yes')

    def choose(self, prompt, options, default=None):
        self._write(prompt)
        for index, (_, label) in enumerate(options, 1):
            self._write(f"  {index}. {label}")

        keys = [key for key, _ in options]
        answer = self._ask(f"Choose option [1-{len(options)}]: ")
        if answer is None or answer.lower() in self.QUIT_ANSWERS:
            return None
        if answer.isdigit() and 1 <= int(answer) <= len(options):
            return keys[int(answer) - 1]
        if answer in keys:
            return answer

        if default is not None:
            self.notify(f"Invalid choice '{answer}', using default", level="warning")
        return default

    def show_diff(self, label, diff_text):
        self._write("")
        self._write(f"Changes in {label}:")
        self._write(diff_text.rstrip() or "(no textual differences)")
        self._write("")

    def notify(self, message, level="info"):
        if self.use_colors and level in self.COLORS:
            self._write(f"{self.COLORS[level]}{message}{self.RESET}")
        else:
            self._write(message)


__all__ = [
    'Option',
    'InteractionPort',
    'TerminalInteraction',
]
