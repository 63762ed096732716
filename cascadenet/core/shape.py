# cascadenet/core/shape.py
from __future__ import annotations

from pathlib import Path
from typing import Annotated, Literal, Optional, Sequence, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError, model_validator

from cascadenet.core.errors import ShapeMismatchError
from cascadenet.core.jsonutil import atomic_write_pydantic_json, canonical_dumps, read_json_obj

__all__ = [
    "ActivationName",
    "LayerShape",
    "NetworkShape",
    "SHAPE_FILE",
    "augment_shape",
    "split_escalation",
    "strip_escalation",
    "save_shape",
    "load_shape",
]

SHAPE_FILE = "shape.json"

ActivationName = Literal["relu", "sigmoid", "tanh", "softmax"]
PosInt = Annotated[StrictInt, Field(ge=1)]


class ShapeModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # Compare by value only; which fields were set explicitly does not matter.
    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ShapeModel):
            return NotImplemented
        return type(self) is type(other) and self.model_dump() == other.model_dump()

    def __hash__(self) -> int:
        return hash(canonical_dumps(self.model_dump(mode="json")))


class LayerShape(ShapeModel):
    """One dense layer: `input_size -> output_size`, followed by `activation`."""

    input_size: PosInt
    output_size: PosInt
    activation: ActivationName = "relu"
    # Only meaningful for softmax.
    temperature: Optional[float] = None

    @property
    def parameter_count(self) -> int:
        return self.input_size * self.output_size + self.output_size


class NetworkShape(ShapeModel):
    """
    Ordered layer specs of a feed-forward network.

    Construction validates chaining: the output width of layer i must equal the
    input width of layer i+1. Violations surface as pydantic.ValidationError at
    construction and as ShapeMismatchError when read back from disk.
    """

    layers: Tuple[LayerShape, ...]

    @model_validator(mode="after")
    def _check_chaining(self) -> "NetworkShape":
        if not self.layers:
            raise ValueError("a network shape needs at least one layer")
        for i in range(len(self.layers) - 1):
            out_w = self.layers[i].output_size
            in_w = self.layers[i + 1].input_size
            if out_w != in_w:
                raise ValueError(f"layer {i} outputs {out_w} values but layer {i + 1} expects {in_w}")
        return self

    @classmethod
    def dense(cls, sizes: Sequence[int], activation: ActivationName = "relu") -> "NetworkShape":
        """Chain of dense layers through `sizes`, e.g. dense([3, 3, 3]) is 3->3->3."""
        if len(sizes) < 2:
            raise ValueError("dense() needs at least an input and an output size")
        return cls(
            layers=tuple(
                LayerShape(input_size=int(a), output_size=int(b), activation=activation)
                for a, b in zip(sizes[:-1], sizes[1:])
            )
        )

    @property
    def input_size(self) -> int:
        return self.layers[0].input_size

    @property
    def output_size(self) -> int:
        return self.layers[-1].output_size

    @property
    def num_layers(self) -> int:
        return len(self.layers)

    @property
    def parameter_count(self) -> int:
        return sum(layer.parameter_count for layer in self.layers)


def augment_shape(shape: NetworkShape) -> NetworkShape:
    """
    Widen every layer by one channel so a primary stage can emit its escalation signal.

    Layer 0 gains one output; every later layer gains one input and one output.
    Layer count and activations are preserved.
    """
    layers = []
    for i, layer in enumerate(shape.layers):
        layers.append(
            layer.model_copy(
                update={
                    "input_size": layer.input_size if i == 0 else layer.input_size + 1,
                    "output_size": layer.output_size + 1,
                }
            )
        )
    return NetworkShape(layers=tuple(layers))


def split_escalation(output: np.ndarray) -> Tuple[np.ndarray, float]:
    """Split an augmented output into (task values, escalation signal)."""
    return output[:-1], float(output[-1])


def strip_escalation(values: np.ndarray, width: int) -> np.ndarray:
    """Drop the escalation channel, keeping the first `width` values (along the last axis)."""
    return np.asarray(values, dtype=float)[..., :width]


def save_shape(shape: NetworkShape, directory: Path) -> Path:
    path = Path(directory) / SHAPE_FILE
    atomic_write_pydantic_json(path, shape)
    return path


def load_shape(directory: Path) -> Optional[NetworkShape]:
    """Read `<directory>/shape.json`; None when the directory holds no shape."""
    path = Path(directory) / SHAPE_FILE
    if not path.is_file():
        return None
    try:
        return NetworkShape.model_validate(read_json_obj(path))
    except (ValidationError, TypeError, ValueError) as exc:
        raise ShapeMismatchError(f"invalid shape descriptor at {path}: {exc}") from exc
