# tests/conftest.py
from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Sequence

import numpy as np
import pytest

# Fallback for non-editable installs: append only (no shadowing).
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.append(str(repo_root))


@pytest.fixture
def rng():
    return np.random.default_rng(0)


@pytest.fixture
def shape_3x3():
    from cascadenet.core.shape import NetworkShape

    return NetworkShape.dense([3, 3, 3])


@pytest.fixture
def make_cascade(tmp_path: Path, rng) -> Callable[..., object]:
    """Fresh scratch cascade under tmp_path; closed again at teardown."""
    from cascadenet.core.cascade import new_network

    made = []

    def _make(shape, levels: int = 1, *, name: str = "net", **kwargs):
        net = new_network(shape, levels, tmp_path / name, rng=rng, **kwargs)
        made.append(net)
        return net

    yield _make
    for net in made:
        net.close()


@pytest.fixture
def constant_stage() -> Callable[..., object]:
    """
    Single-layer relu StageNetwork whose output is exactly `values` for any input.

    Weights are zero and the biases carry the values, so relu passes them
    through unchanged (values must be >= 0).
    """
    from cascadenet.core.dense import DenseLayer
    from cascadenet.core.directory import ModelDirectory
    from cascadenet.core.shape import NetworkShape
    from cascadenet.core.stage import StageNetwork

    def _make(input_size: int, values: Sequence[float], directory: Path, *, tracker=None):
        values = np.asarray(values, dtype=float)
        assert np.all(values >= 0.0), "constant_stage: relu needs non-negative values"
        shape = NetworkShape.dense([input_size, len(values)])
        layer = DenseLayer(input_size, len(values), weights=np.zeros((len(values), input_size)), biases=values)
        return StageNetwork(shape, ModelDirectory.scratch(directory), layers=[layer], tracker=tracker)

    return _make
