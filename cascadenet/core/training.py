# cascadenet/core/training.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Literal, Optional, Sequence

import numpy as np

from cascadenet.core.errors import ConfigurationError, ShapeMismatchError

StageRole = Literal["leaf", "probe", "primary", "backup"]


@dataclass(frozen=True)
class TrainingParams:
    """
    Hyper-parameters shared by every stage of a training call.

    validation_split is the fraction of examples held out (taken from the
    tail of the data) for the per-epoch validation pass.
    """

    learning_rate: float = 0.01
    epochs: int = 100
    tolerance: float = 0.1
    use_adam: bool = True
    validation_split: float = 0.3
    batch_size: int = 32

    def __post_init__(self) -> None:
        if not self.learning_rate > 0.0:
            raise ConfigurationError("learning_rate must be > 0")
        if int(self.epochs) < 0:
            raise ConfigurationError("epochs must be >= 0")
        if not self.tolerance > 0.0:
            raise ConfigurationError("tolerance must be > 0")
        if not 0.0 <= self.validation_split < 1.0:
            raise ConfigurationError("validation_split must be in [0, 1)")
        if int(self.batch_size) < 1:
            raise ConfigurationError("batch_size must be >= 1")


@dataclass(frozen=True)
class TrainingProgress:
    """One per-epoch event delivered to a progress observer."""

    role: StageRole
    depth: int
    epoch: int
    epochs: int
    train_accuracy: float
    train_loss: float
    val_accuracy: Optional[float] = None
    val_loss: Optional[float] = None


ProgressCallback = Callable[[TrainingProgress], None]


def as_matrix(rows: Sequence[Sequence[float]], width: int, *, name: str) -> np.ndarray:
    """Stack `rows` into an (n, width) float matrix, rejecting ragged or mis-sized data."""
    if len(rows) == 0:
        return np.zeros((0, width), dtype=float)
    try:
        arr = np.asarray(rows, dtype=float)
    except ValueError as exc:
        raise ShapeMismatchError(f"{name} rows have inconsistent widths") from exc
    if arr.ndim != 2 or arr.shape[1] != width:
        raise ShapeMismatchError(f"{name} must have width {width}, got shape {arr.shape}")
    return arr


def within_tolerance(prediction: np.ndarray, target: np.ndarray, tolerance: float) -> np.ndarray:
    """Per-channel boolean mask of |prediction - target| < tolerance."""
    return np.abs(np.asarray(prediction, dtype=float) - np.asarray(target, dtype=float)) < tolerance


def outputs_match(prediction: np.ndarray, target: np.ndarray, tolerance: float) -> bool:
    """True iff every output channel is within tolerance of its target."""
    return bool(np.all(within_tolerance(prediction, target, tolerance)))


def channel_accuracy(prediction: np.ndarray, target: np.ndarray, tolerance: float) -> float:
    """Fraction of output channels within tolerance for one example."""
    mask = within_tolerance(prediction, target, tolerance)
    return float(mask.mean()) if mask.size else 0.0


def split_index(n: int, validation_split: float) -> int:
    """Number of leading examples used for training; the rest is validation."""
    return int(round(n * (1.0 - float(validation_split))))
