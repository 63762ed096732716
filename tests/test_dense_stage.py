# tests/test_dense_stage.py
from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from cascadenet.core.dense import DenseLayer
from cascadenet.core.directory import ModelDirectory
from cascadenet.core.errors import ModelIOError, ShapeMismatchError
from cascadenet.core.jsonutil import tree_sha256
from cascadenet.core.shape import NetworkShape
from cascadenet.core.stage import StageNetwork, layer_file
from cascadenet.core.training import TrainingParams, TrainingProgress

pytestmark = pytest.mark.unit


def test_dense_init_range_and_zero_bias(rng) -> None:
    layer = DenseLayer(4, 3, rng=rng)
    assert layer.weights.shape == (3, 4)
    assert np.all(layer.weights >= -0.5) and np.all(layer.weights < 0.5)
    assert np.all(layer.biases == 0.0)


def test_dense_text_roundtrip_is_exact(rng) -> None:
    layer = DenseLayer(3, 2, rng=rng, biases=np.array([0.1, -1.0 / 3.0]))
    back = DenseLayer.from_text(layer.to_text(), input_size=3, output_size=2)
    assert np.array_equal(back.weights, layer.weights)
    assert np.array_equal(back.biases, layer.biases)


@pytest.mark.parametrize(
    "text",
    [
        "",
        "two three\n",
        "2 3\n0 0 0\n0 0 0\n0 0 0\n",
        "3 3\n0 0 0\n0 0 0\n0 0 0\n0 0 0\n",
        "2 3\n0 0 x\n0 0 0\n0 0\n",
    ],
)
def test_dense_from_text_rejects_malformed(text: str) -> None:
    with pytest.raises(ShapeMismatchError):
        DenseLayer.from_text(text, input_size=3, output_size=2)


def test_stage_learns_constant_mapping(tmp_path: Path, rng) -> None:
    stage = StageNetwork.new(NetworkShape.dense([2, 4, 1], activation="sigmoid"), ModelDirectory.scratch(tmp_path / "s"), rng=rng)
    inputs = [[0.0, 1.0]] * 40
    targets = [[0.8]] * 40
    events = []
    params = TrainingParams(learning_rate=0.01, epochs=50, tolerance=0.05, validation_split=0.25)

    acc = stage.train(inputs, targets, params, events.append)

    assert 0.0 <= acc <= 1.0
    assert acc == 1.0
    assert len(events) == 50
    assert all(isinstance(e, TrainingProgress) and e.role == "leaf" for e in events)
    assert events[-1].val_accuracy == acc
    assert abs(float(stage.predict([0.0, 1.0])[0]) - 0.8) < 0.05
    stage.close()


def test_stage_train_rejects_wrong_widths(tmp_path: Path, rng) -> None:
    stage = StageNetwork.new(NetworkShape.dense([2, 2]), ModelDirectory.scratch(tmp_path / "s"), rng=rng)
    params = TrainingParams(epochs=1)
    with pytest.raises(ShapeMismatchError):
        stage.train([[1.0, 2.0, 3.0]], [[0.0, 0.0]], params)
    with pytest.raises(ShapeMismatchError):
        stage.train([[1.0, 2.0]], [[0.0, 0.0], [1.0, 1.0]], params)
    with pytest.raises(ShapeMismatchError):
        stage.predict([1.0])
    assert stage.train([], [], params) == 0.0


def test_train_batch_only_touches_requested_channels(tmp_path: Path, rng) -> None:
    stage = StageNetwork.new(NetworkShape.dense([2, 3]), ModelDirectory.scratch(tmp_path / "s"), rng=rng)
    last_row = stage.layers[0].weights[2].copy()
    last_bias = float(stage.layers[0].biases[2])

    stage.train_batch([[1.0, 0.5]] * 8, [[0.2, 0.3]] * 8, TrainingParams(epochs=3, batch_size=4), trained_outputs=2)

    assert np.array_equal(stage.layers[0].weights[2], last_row)
    assert float(stage.layers[0].biases[2]) == last_bias
    stage.close()


def test_stage_save_load_roundtrip(tmp_path: Path, rng) -> None:
    shape = NetworkShape.dense([3, 5, 2], activation="tanh")
    stage = StageNetwork.new(shape, ModelDirectory.scratch(tmp_path / "scratch"), rng=rng)
    x = [0.3, -0.2, 0.9]
    expected = stage.predict(x)

    stage.save(tmp_path / "saved")
    stage.close()

    loaded = StageNetwork.load(tmp_path / "saved")
    assert loaded is not None
    assert loaded.kind == "leaf"
    assert loaded.shape == shape
    assert not loaded.directory.is_scratch
    assert np.array_equal(loaded.predict(x), expected)
    loaded.close()
    assert (tmp_path / "saved").is_dir()
    assert not (tmp_path / "scratch").exists()


def test_stage_load_missing_and_corrupted(tmp_path: Path, rng) -> None:
    assert StageNetwork.load(tmp_path / "nothing") is None

    stage = StageNetwork.new(NetworkShape.dense([2, 2]), ModelDirectory.scratch(tmp_path / "a"), rng=rng)
    stage.save(tmp_path / "b")
    stage.close()

    layer_file(tmp_path / "b", 0).write_text("2 2\n1 1\n", encoding="utf-8")
    with pytest.raises(ShapeMismatchError):
        StageNetwork.load(tmp_path / "b")

    layer_file(tmp_path / "b", 0).unlink()
    with pytest.raises(ModelIOError):
        StageNetwork.load(tmp_path / "b")


def test_failed_save_keeps_previous_copy(tmp_path: Path, rng, monkeypatch) -> None:
    stage = StageNetwork.new(NetworkShape.dense([2, 2]), ModelDirectory.scratch(tmp_path / "a"), rng=rng)
    stage.save(tmp_path / "b")
    before = tree_sha256(tmp_path / "b")

    stage.train([[1.0, 1.0]] * 4, [[0.5, 0.5]] * 4, TrainingParams(epochs=2, validation_split=0.0))

    def _boom(directory: Path) -> None:
        (directory / "partial.txt").write_text("x", encoding="utf-8")
        raise OSError("disk full")

    monkeypatch.setattr(stage, "_write_into", _boom)
    with pytest.raises(ModelIOError):
        stage.save(tmp_path / "b")

    assert tree_sha256(tmp_path / "b") == before
    assert [p.name for p in tmp_path.iterdir() if ".cn-tmp." in p.name] == []
    monkeypatch.undo()
    stage.close()


def test_stage_duplicate_is_independent(tmp_path: Path, rng) -> None:
    stage = StageNetwork.new(NetworkShape.dense([2, 2]), ModelDirectory.scratch(tmp_path / "m"), rng=rng)
    stage.save(tmp_path / "m")
    before = tree_sha256(tmp_path / "m")

    copy = stage.duplicate()
    assert copy.directory.path == tmp_path / "m_1"
    assert copy.directory.is_scratch

    copy.train([[1.0, 0.0]] * 10, [[0.0, 1.0]] * 10, TrainingParams(epochs=3, validation_split=0.0))
    copy.flush()
    assert tree_sha256(tmp_path / "m") == before

    copy.close()
    assert not (tmp_path / "m_1").exists()
    stage.close()


def test_stage_close_is_idempotent_and_final(tmp_path: Path, rng) -> None:
    stage = StageNetwork.new(NetworkShape.dense([2, 2]), ModelDirectory.scratch(tmp_path / "s"), rng=rng)
    stage.flush()
    assert (tmp_path / "s").is_dir()

    first = stage.close()
    assert first.ok
    assert stage.close() is first
    assert not (tmp_path / "s").exists()
    with pytest.raises(RuntimeError):
        stage.predict([0.0, 0.0])


def test_reloaded_stage_trains_like_a_freshly_loaded_one(tmp_path: Path, rng) -> None:
    shape = NetworkShape.dense([2, 3, 2], activation="sigmoid")
    stage = StageNetwork.new(shape, ModelDirectory.scratch(tmp_path / "s"), rng=rng)
    inputs, targets = [[0.1, 0.9]] * 6, [[0.7, 0.2]] * 6
    params = TrainingParams(epochs=2, use_adam=True, validation_split=0.0)

    stage.train(inputs, targets, params)
    stage.save(tmp_path / "snapshot")
    fresh = StageNetwork.load(tmp_path / "snapshot")
    assert fresh is not None

    stage.deallocate()
    assert not stage.is_allocated
    stage.train(inputs, targets, params)
    fresh.train(inputs, targets, params)

    assert np.array_equal(stage.predict([0.1, 0.9]), fresh.predict([0.1, 0.9]))
    stage.close()
    fresh.close()
