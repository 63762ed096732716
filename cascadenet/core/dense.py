# cascadenet/core/dense.py
from __future__ import annotations

from typing import Optional

import numpy as np

from cascadenet.core.errors import ShapeMismatchError

ADAM_BETA1 = 0.9
ADAM_BETA2 = 0.999
ADAM_EPSILON = 1e-8


class DenseLayer:
    """Fully connected layer `y = W x + b` with SGD and Adam updates."""

    def __init__(
        self,
        input_size: int,
        output_size: int,
        *,
        rng: Optional[np.random.Generator] = None,
        weights: Optional[np.ndarray] = None,
        biases: Optional[np.ndarray] = None,
    ) -> None:
        self.input_size = int(input_size)
        self.output_size = int(output_size)
        if weights is None:
            gen = rng if rng is not None else np.random.default_rng()
            weights = gen.uniform(-0.5, 0.5, size=(self.output_size, self.input_size))
        if biases is None:
            biases = np.zeros(self.output_size, dtype=float)
        self.weights = np.asarray(weights, dtype=float)
        self.biases = np.asarray(biases, dtype=float)
        if self.weights.shape != (self.output_size, self.input_size) or self.biases.shape != (self.output_size,):
            raise ShapeMismatchError(
                f"dense layer expects weights {(self.output_size, self.input_size)} and "
                f"biases {(self.output_size,)}, got {self.weights.shape} and {self.biases.shape}"
            )

        self._input_cache: Optional[np.ndarray] = None
        self.weight_grads = np.zeros_like(self.weights)
        self.bias_grads = np.zeros_like(self.biases)
        self._m_w = np.zeros_like(self.weights)
        self._v_w = np.zeros_like(self.weights)
        self._m_b = np.zeros_like(self.biases)
        self._v_b = np.zeros_like(self.biases)

    @property
    def nbytes(self) -> int:
        return int(self.weights.nbytes + self.biases.nbytes)

    def forward(self, x: np.ndarray) -> np.ndarray:
        self._input_cache = x
        return self.weights @ x + self.biases

    def backward(self, grad_output: np.ndarray, *, accumulate: bool = False) -> np.ndarray:
        """
        Gradient of the loss w.r.t. this layer's input.

        With accumulate=True the weight/bias gradients are summed onto the
        existing ones (batch training); otherwise they replace them.
        """
        if self._input_cache is None:
            raise RuntimeError("DenseLayer.backward() called before forward()")
        w_grad = np.outer(grad_output, self._input_cache)
        if accumulate:
            self.weight_grads += w_grad
            self.bias_grads += grad_output
        else:
            self.weight_grads = w_grad
            self.bias_grads = np.array(grad_output, dtype=float)
        return self.weights.T @ grad_output

    def zero_grad(self) -> None:
        self.weight_grads = np.zeros_like(self.weights)
        self.bias_grads = np.zeros_like(self.biases)

    def sgd_step(self, learning_rate: float) -> None:
        self.weights -= learning_rate * self.weight_grads
        self.biases -= learning_rate * self.bias_grads

    def adam_step(
        self,
        t: int,
        learning_rate: float,
        beta1: float = ADAM_BETA1,
        beta2: float = ADAM_BETA2,
        epsilon: float = ADAM_EPSILON,
    ) -> None:
        self._m_w = beta1 * self._m_w + (1.0 - beta1) * self.weight_grads
        self._v_w = beta2 * self._v_w + (1.0 - beta2) * self.weight_grads**2
        self._m_b = beta1 * self._m_b + (1.0 - beta1) * self.bias_grads
        self._v_b = beta2 * self._v_b + (1.0 - beta2) * self.bias_grads**2

        c1 = 1.0 - beta1**t
        c2 = 1.0 - beta2**t
        self.weights -= learning_rate * (self._m_w / c1) / (np.sqrt(self._v_w / c2) + epsilon)
        self.biases -= learning_rate * (self._m_b / c1) / (np.sqrt(self._v_b / c2) + epsilon)

    def to_text(self) -> str:
        """`rows cols`, one line per weight row, then one bias line."""
        lines = [f"{self.output_size} {self.input_size}"]
        for row in self.weights:
            lines.append(" ".join(repr(float(v)) for v in row))
        lines.append(" ".join(repr(float(v)) for v in self.biases))
        return "\n".join(lines) + "\n"

    @classmethod
    def from_text(cls, text: str, *, input_size: int, output_size: int) -> "DenseLayer":
        lines = [ln for ln in text.splitlines() if ln.strip()]
        if not lines:
            raise ShapeMismatchError("empty layer file")
        try:
            rows, cols = (int(p) for p in lines[0].split())
        except ValueError as exc:
            raise ShapeMismatchError(f"bad layer header {lines[0]!r}") from exc
        if (rows, cols) != (output_size, input_size):
            raise ShapeMismatchError(
                f"layer file declares {cols}->{rows} but the shape expects {input_size}->{output_size}"
            )
        if len(lines) != rows + 2:
            raise ShapeMismatchError(f"layer file has {len(lines)} lines, expected {rows + 2}")
        try:
            weights = np.array([[float(v) for v in ln.split()] for ln in lines[1 : rows + 1]], dtype=float)
            biases = np.array([float(v) for v in lines[rows + 1].split()], dtype=float)
        except ValueError as exc:
            raise ShapeMismatchError(f"non-numeric value in layer file: {exc}") from exc
        return cls(input_size, output_size, weights=weights, biases=biases)
