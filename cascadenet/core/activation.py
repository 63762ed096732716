# cascadenet/core/activation.py
from __future__ import annotations

from typing import Optional

import numpy as np

from cascadenet.core.shape import LayerShape


class Activation:
    """Element-wise activation with a cached forward pass for backprop."""

    name = "identity"

    def __init__(self) -> None:
        self._last_input: Optional[np.ndarray] = None
        self._last_output: Optional[np.ndarray] = None

    def forward(self, x: np.ndarray) -> np.ndarray:
        self._last_input = x
        self._last_output = self._apply(x)
        return self._last_output

    def backward(self, grad_output: np.ndarray) -> np.ndarray:
        if self._last_output is None:
            raise RuntimeError(f"{self.name}.backward() called before forward()")
        return self._grad(grad_output)

    def _apply(self, x: np.ndarray) -> np.ndarray:
        return x

    def _grad(self, grad_output: np.ndarray) -> np.ndarray:
        return grad_output


class ReLU(Activation):
    name = "relu"

    def _apply(self, x: np.ndarray) -> np.ndarray:
        return np.maximum(x, 0.0)

    def _grad(self, grad_output: np.ndarray) -> np.ndarray:
        return np.where(self._last_input > 0.0, grad_output, 0.0)


class Sigmoid(Activation):
    name = "sigmoid"

    def _apply(self, x: np.ndarray) -> np.ndarray:
        return 1.0 / (1.0 + np.exp(-x))

    def _grad(self, grad_output: np.ndarray) -> np.ndarray:
        s = self._last_output
        return grad_output * s * (1.0 - s)


class Tanh(Activation):
    name = "tanh"

    def _apply(self, x: np.ndarray) -> np.ndarray:
        return np.tanh(x)

    def _grad(self, grad_output: np.ndarray) -> np.ndarray:
        return grad_output * (1.0 - self._last_output**2)


class Softmax(Activation):
    name = "softmax"

    def __init__(self, temperature: float = 1.0) -> None:
        super().__init__()
        if temperature <= 0.0:
            raise ValueError("softmax temperature must be > 0")
        self.temperature = float(temperature)

    def _apply(self, x: np.ndarray) -> np.ndarray:
        z = x / self.temperature
        e = np.exp(z - np.max(z))
        return e / np.sum(e)

    def _grad(self, grad_output: np.ndarray) -> np.ndarray:
        s = self._last_output
        return s * (grad_output - np.dot(grad_output, s)) / self.temperature


def activation_for(layer: LayerShape) -> Activation:
    if layer.activation == "relu":
        return ReLU()
    if layer.activation == "sigmoid":
        return Sigmoid()
    if layer.activation == "tanh":
        return Tanh()
    if layer.activation == "softmax":
        return Softmax(layer.temperature if layer.temperature is not None else 1.0)
    raise ValueError(f"unknown activation {layer.activation!r}")
