"""Decision-point prompters.

Decision logic never reads from the terminal itself. It hands a question
and a list of options to a Prompter: attended runs get a ConsolePrompter,
unattended runs and tests get a FixedAnswerPrompter.
"""

from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt

from .models import WorkflowMode

console = Console()


class ConsolePrompter:
    """Asks a human on the terminal."""

    mode = WorkflowMode.ATTENDED

    def choose(self, question: str, options: list[str], default: Optional[str] = None) -> str:
        menu = "\n".join(f"  {i}) {option}" for i, option in enumerate(options, 1))
        console.print(Panel(f"{question}\n\n{menu}", title="Decision needed", border_style="yellow"))
        choices = [str(i) for i in range(1, len(options) + 1)]
        default_choice = str(options.index(default) + 1) if default in options else None
        answer = Prompt.ask("Choose", choices=choices, default=default_choice)
        return options[int(answer) - 1]


class FixedAnswerPrompter:
    """Answers every question with a preset option.

    Falls back to the last option (by convention the abort choice) when
    the preset answer is not offered. Every question asked is recorded.
    """

    def __init__(
        self,
        answer: Optional[str] = None,
        mode: WorkflowMode = WorkflowMode.UNATTENDED,
        answers: Optional[list[str]] = None,
    ):
        self.answer = answer
        self.mode = mode
        self._queue = list(answers or [])
        self.questions: list[tuple[str, list[str]]] = []

    def choose(self, question: str, options: list[str], default: Optional[str] = None) -> str:
        self.questions.append((question, options))
        if self._queue:
            wanted = self._queue.pop(0)
        else:
            wanted = self.answer
        if wanted in options:
            return wanted
        return options[-1]
