"""Terminal output and confirmation prompts."""

import logging
import os
import sys
from typing import Iterable, Optional, Protocol

import click

_LABELS = {
    logging.DEBUG: ("DEBUG", "cyan"),
    logging.INFO: ("INFO", "green"),
    logging.WARNING: ("WARN", "yellow"),
    logging.ERROR: ("ERROR", "red"),
    logging.CRITICAL: ("ERROR", "red"),
}
_STEP_COLOR = "blue"
_SECURITY_COLOR = "cyan"


class LabelFormatter(logging.Formatter):
    """Render records as ``[LABEL] message`` with a coloured label.

    A record may carry ``extra={"label": "STEP"}`` to override the label
    derived from its level.
    """

    def __init__(self, color: bool = True):
        super().__init__("%(message)s")
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        label, fg = _LABELS.get(record.levelno, (record.levelname, None))
        custom = getattr(record, "label", None)
        if custom:
            label = custom
            fg = _SECURITY_COLOR if custom == "SECURITY" else _STEP_COLOR
        tag = f"[{label}]"
        if self.color and fg:
            tag = click.style(tag, fg=fg)
        return f"{tag} {message}"


def setup_logging(verbose: bool = False) -> None:
    """Install the labeled console handler on the package logger."""
    level_name = os.getenv("DEVBOX_LOG_LEVEL", "").upper()
    level = logging.DEBUG if verbose else getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(LabelFormatter(color=sys.stderr.isatty()))

    pkg_logger = logging.getLogger("gpu_devbox")
    for existing in list(pkg_logger.handlers):
        pkg_logger.removeHandler(existing)
    pkg_logger.addHandler(handler)
    pkg_logger.setLevel(level)
    pkg_logger.propagate = False


STEP = {"label": "STEP"}
SECURITY = {"label": "SECURITY"}


class Confirmer(Protocol):
    def confirm(self, question: str, default: bool = False) -> bool:
        ...


class ClickConfirmer:
    """Ask on the terminal; an empty answer picks the default."""

    def confirm(self, question: str, default: bool = False) -> bool:
        return click.confirm(question, default=default)


class ScriptedConfirmer:
    """Replay canned answers; falls back to the default once exhausted."""

    def __init__(self, answers: Optional[Iterable[Optional[bool]]] = None):
        self._answers = list(answers or [])
        self.questions: list[str] = []

    def confirm(self, question: str, default: bool = False) -> bool:
        self.questions.append(question)
        if not self._answers:
            return default
        answer = self._answers.pop(0)
        return default if answer is None else answer
