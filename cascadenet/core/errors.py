# cascadenet/core/errors.py
from __future__ import annotations


class CascadeError(Exception):
    """Base class for every error raised by cascadenet."""


class ConfigurationError(CascadeError, ValueError):
    """Invalid construction parameters (depth, escalation policy, hyper-parameters)."""


class ShapeMismatchError(CascadeError, ValueError):
    """Declared dimensions disagree with the data or with the enclosing cascade."""


class ModelIOError(CascadeError, OSError):
    """A model directory could not be created, copied, renamed or removed."""

    def __init__(self, path: object, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path
        self.message = message
