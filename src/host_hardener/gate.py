"""Operator interaction behind a swappable interface.

Nothing else in the package reads from stdin: the orchestrator and the steps
ask through an ``InteractionGate``, so a run can be driven from a terminal or
from pre-programmed answers.
"""

import re
import sys
from abc import ABC, abstractmethod
from collections import deque
from typing import IO, Callable, Iterable, List, Optional, Tuple

from host_hardener.exceptions import InteractionError

YES_PATTERN = re.compile(r"^y(es)?$", re.IGNORECASE)


class InteractionGate(ABC):
    """Yes/no confirmations, free-text prompts and operator-facing output."""

    @abstractmethod
    def confirm(self, prompt: str) -> bool:
        """Ask a yes/no question."""

    @abstractmethod
    def read_line(self, prompt: str, default: str = "") -> str:
        """Ask for a line of text; blank input yields ``default``."""

    @abstractmethod
    def show(self, message: str) -> None:
        """Display text to the operator without logging it."""


class TerminalGate(InteractionGate):
    """Gate backed by a real terminal."""

    def __init__(
        self,
        input_func: Callable[[str], str] = input,
        output: Optional[IO[str]] = None,
    ) -> None:
        self._input = input_func
        self._output = output or sys.stdout

    def confirm(self, prompt: str) -> bool:
        try:
            answer = self._input(f"{prompt} (y/n): ")
        except EOFError:
            # No terminal attached: never assume consent.
            return False
        return bool(YES_PATTERN.match(answer.strip()))

    def read_line(self, prompt: str, default: str = "") -> str:
        try:
            answer = self._input(f"{prompt}: ")
        except EOFError:
            return default
        return answer.strip() or default

    def show(self, message: str) -> None:
        print(message, file=self._output, flush=True)


class ScriptedGate(InteractionGate):
    """Gate that replays pre-programmed answers, for automated runs and tests.

    Every prompt is recorded in ``prompts`` as ``(kind, text)``. When the
    scripted answers run out, ``default_confirm``/``default_line`` are used
    if set, otherwise ``InteractionError`` is raised.
    """

    def __init__(
        self,
        confirmations: Iterable[bool] = (),
        lines: Iterable[str] = (),
        default_confirm: Optional[bool] = None,
        default_line: Optional[str] = None,
    ) -> None:
        self._confirmations = deque(confirmations)
        self._lines = deque(lines)
        self.default_confirm = default_confirm
        self.default_line = default_line
        self.prompts: List[Tuple[str, str]] = []
        self.shown: List[str] = []

    @classmethod
    def assume_yes(cls) -> "ScriptedGate":
        """Gate answering yes to every question and the default to every prompt."""
        return cls(default_confirm=True, default_line="")

    def confirm(self, prompt: str) -> bool:
        self.prompts.append(("confirm", prompt))
        if self._confirmations:
            return self._confirmations.popleft()
        if self.default_confirm is None:
            raise InteractionError(f"No scripted answer for: {prompt}")
        return self.default_confirm

    def read_line(self, prompt: str, default: str = "") -> str:
        self.prompts.append(("line", prompt))
        if self._lines:
            return self._lines.popleft().strip() or default
        if self.default_line is not None:
            return self.default_line or default
        raise InteractionError(f"No scripted answer for: {prompt}")

    def show(self, message: str) -> None:
        self.shown.append(message)


class AssumeYesGate(TerminalGate):
    """Terminal gate for unattended runs: every question is answered yes.

    Prompts and messages are still printed so the run leaves a readable
    transcript.
    """

    def confirm(self, prompt: str) -> bool:
        self.show(f"{prompt} (y/n): y [assumed]")
        return True

    def read_line(self, prompt: str, default: str = "") -> str:
        self.show(f"{prompt}: {default} [assumed]")
        return default
