"""Sources of operator input: the terminal or a pre-supplied answers file."""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from rich.prompt import Confirm, Prompt

from esc_deploy.errors import AnswersExhaustedError, ConfigurationError
from esc_deploy.ui import console


class InputSource:
    """Answers prompts. Every prompt carries a stable key."""

    interactive: bool = True

    def ask(
        self,
        key: str,
        prompt: str,
        default: Optional[str] = None,
        password: bool = False,
    ) -> str:
        raise NotImplementedError

    def confirm(self, key: str, prompt: str, default: bool = False) -> bool:
        raise NotImplementedError

    def choose(
        self, key: str, prompt: str, choices: List[str], default: str
    ) -> str:
        raise NotImplementedError


class ConsoleInput(InputSource):
    """Interactive prompts on the rich console."""

    def ask(
        self,
        key: str,
        prompt: str,
        default: Optional[str] = None,
        password: bool = False,
    ) -> str:
        if default is None:
            value = Prompt.ask(f"[bold]{prompt}[/]", password=password, console=console)
        else:
            value = Prompt.ask(
                f"[bold]{prompt}[/]",
                default=default,
                password=password,
                console=console,
            )
        return (value or "").strip()

    def confirm(self, key: str, prompt: str, default: bool = False) -> bool:
        return Confirm.ask(f"[bold]{prompt}[/]", default=default, console=console)

    def choose(
        self, key: str, prompt: str, choices: List[str], default: str
    ) -> str:
        return Prompt.ask(
            f"[bold]{prompt}[/]", choices=choices, default=default, console=console
        )


class ScriptedInput(InputSource):
    """Answers taken from a mapping of prompt key to value.

    A list value supplies successive answers to a prompt that is asked more
    than once (e.g. after a rejected empty answer). Once a key runs dry the
    prompt's default is used; a prompt with no default raises
    AnswersExhaustedError rather than waiting forever. Pass
    ``interactive=True`` to allow steps that open an editor.
    """

    def __init__(
        self, answers: Optional[Dict[str, Any]] = None, interactive: bool = False
    ):
        self.interactive = interactive
        self._answers: Dict[str, List[Any]] = {}
        for key, value in (answers or {}).items():
            self._answers[key] = list(value) if isinstance(value, list) else [value]
        self.asked: List[str] = []

    def _next(self, key: str) -> Optional[Any]:
        self.asked.append(key)
        queue = self._answers.get(key)
        if queue:
            return queue.pop(0)
        return None

    def ask(
        self,
        key: str,
        prompt: str,
        default: Optional[str] = None,
        password: bool = False,
    ) -> str:
        value = self._next(key)
        if value is None:
            if default is None:
                raise AnswersExhaustedError(
                    f"No answer supplied for '{key}' ({prompt})",
                    hint=f"Add a \"{key}\" entry to the answers file.",
                )
            return default
        value = str(value).strip()
        if value == "" and default is not None:
            return default
        return value

    def confirm(self, key: str, prompt: str, default: bool = False) -> bool:
        value = self._next(key)
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if not text:
            return default
        return text in ("y", "yes", "true", "1")

    def choose(
        self, key: str, prompt: str, choices: List[str], default: str
    ) -> str:
        value = self._next(key)
        if value is None or str(value).strip() == "":
            return default
        value = str(value).strip()
        if value not in choices:
            raise ConfigurationError(
                f"Answer '{value}' for '{key}' is not one of {', '.join(choices)}"
            )
        return value


def read_answers(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a JSON answers file mapping prompt keys to answers."""
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigurationError(f"Answers file not found: {path}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Answers file {path} is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise ConfigurationError(f"Answers file {path} must contain a JSON object")
    return data


def load_answers(path: Union[str, Path]) -> ScriptedInput:
    return ScriptedInput(read_answers(path))
