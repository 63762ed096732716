# tests/test_shape.py
from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import pytest
from pydantic import ValidationError

from cascadenet.core.errors import ShapeMismatchError
from cascadenet.core.shape import (
    SHAPE_FILE,
    LayerShape,
    NetworkShape,
    augment_shape,
    load_shape,
    save_shape,
    split_escalation,
    strip_escalation,
)

pytestmark = pytest.mark.unit


def test_augment_widens_every_layer_but_first_input() -> None:
    shape = NetworkShape.dense([4, 6, 5, 2], activation="tanh")
    aug = augment_shape(shape)

    assert aug.num_layers == shape.num_layers
    assert aug.layers[0].input_size == 4
    assert aug.layers[0].output_size == 7
    for orig, wide in zip(shape.layers[1:], aug.layers[1:]):
        assert wide.input_size == orig.input_size + 1
        assert wide.output_size == orig.output_size + 1
    assert [layer.activation for layer in aug.layers] == ["tanh"] * 3
    assert aug.output_size - 1 == shape.output_size


def test_augment_does_not_mutate_argument() -> None:
    shape = NetworkShape.dense([3, 3])
    before = shape.model_dump()
    augment_shape(shape)
    assert shape.model_dump() == before


def test_single_layer_augment() -> None:
    aug = augment_shape(NetworkShape.dense([2, 2]))
    assert (aug.input_size, aug.output_size) == (2, 3)


def test_broken_chaining_rejected_at_construction() -> None:
    with pytest.raises(ValidationError):
        NetworkShape(
            layers=(
                LayerShape(input_size=3, output_size=4),
                LayerShape(input_size=5, output_size=1),
            )
        )
    with pytest.raises(ValidationError):
        NetworkShape(layers=())
    with pytest.raises(ValidationError):
        LayerShape(input_size=0, output_size=1)


def test_split_and_strip_escalation() -> None:
    task, signal = split_escalation(np.array([0.1, 0.2, 0.9]))
    assert task.tolist() == [0.1, 0.2]
    assert signal == 0.9

    rows = np.array([[1.0, 2.0, 0.0], [3.0, 4.0, 1.0]])
    assert strip_escalation(rows, 2).tolist() == [[1.0, 2.0], [3.0, 4.0]]


def test_shape_file_roundtrip_and_missing(tmp_path: Path) -> None:
    shape = NetworkShape(
        layers=(
            LayerShape(input_size=2, output_size=3, activation="sigmoid"),
            LayerShape(input_size=3, output_size=3, activation="softmax", temperature=0.5),
        )
    )
    assert load_shape(tmp_path) is None
    save_shape(shape, tmp_path)
    assert load_shape(tmp_path) == shape


def test_corrupted_shape_file_raises_shape_mismatch(tmp_path: Path) -> None:
    bad = {"layers": [{"input_size": 3, "output_size": 4}, {"input_size": 2, "output_size": 1}]}
    (tmp_path / SHAPE_FILE).write_text(json.dumps(bad), encoding="utf-8")
    with pytest.raises(ShapeMismatchError):
        load_shape(tmp_path)
