# cascadenet/core/stage.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator, List, Optional, Sequence

import numpy as np

from cascadenet.core.activation import Activation, activation_for
from cascadenet.core.dense import DenseLayer
from cascadenet.core.directory import (
    ModelDirectory,
    TeardownReport,
    claim_free_sibling,
    copy_tree,
    ensure_dir,
    reclaim_paths,
    remove_tree_best_effort,
    write_tree_staged,
)
from cascadenet.core.errors import ModelIOError, ShapeMismatchError
from cascadenet.core.resources import ResidencyTracker
from cascadenet.core.shape import SHAPE_FILE, NetworkShape, load_shape, save_shape
from cascadenet.core.training import (
    ProgressCallback,
    StageRole,
    TrainingParams,
    TrainingProgress,
    as_matrix,
    channel_accuracy,
    split_index,
)

logger = logging.getLogger(__name__)

LAYERS_DIR = "layers"


def layer_file(directory: Path, index: int) -> Path:
    return Path(directory) / LAYERS_DIR / f"layer_{index}.txt"


def _read_layers(directory: Path, shape: NetworkShape) -> List[DenseLayer]:
    layers = []
    for i, layer_shape in enumerate(shape.layers):
        path = layer_file(directory, i)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ModelIOError(path, f"cannot read layer parameters ({exc})") from exc
        try:
            layers.append(DenseLayer.from_text(text, input_size=layer_shape.input_size, output_size=layer_shape.output_size))
        except ShapeMismatchError as exc:
            raise ShapeMismatchError(f"{path}: {exc}") from exc
    return layers


class StageNetwork:
    """
    Leaf feed-forward network with its own model directory.

    Weights live in memory while the stage is allocated; deallocate() flushes
    them to the directory and frees them, and the next use reloads them. The
    shared ResidencyTracker decides when that happens. A reload starts Adam
    afresh, exactly like loading the stage from disk.
    """

    kind = "leaf"

    def __init__(
        self,
        shape: NetworkShape,
        directory: ModelDirectory,
        *,
        layers: Optional[List[DenseLayer]] = None,
        tracker: Optional[ResidencyTracker] = None,
        dirty: bool = True,
    ) -> None:
        self._shape = shape
        self.directory = directory
        self.tracker = tracker if tracker is not None else ResidencyTracker()
        self._layers = layers
        self._activations: List[Activation] = [activation_for(ls) for ls in shape.layers]
        self._dirty = bool(dirty) and layers is not None
        self._scratch_history: List[Path] = []
        self._adam_t = 0
        self._closed: Optional[TeardownReport] = None
        if layers is not None:
            self.tracker.touch(self)

    # ---- construction -------------------------------------------------

    @classmethod
    def new(
        cls,
        shape: NetworkShape,
        directory: ModelDirectory,
        *,
        tracker: Optional[ResidencyTracker] = None,
        rng: Optional[np.random.Generator] = None,
    ) -> "StageNetwork":
        gen = rng if rng is not None else np.random.default_rng()
        layers = [DenseLayer(ls.input_size, ls.output_size, rng=gen) for ls in shape.layers]
        return cls(shape, directory, layers=layers, tracker=tracker)

    @classmethod
    def load(
        cls,
        path: Path | str,
        *,
        tracker: Optional[ResidencyTracker] = None,
        expected_shape: Optional[NetworkShape] = None,
    ) -> Optional["StageNetwork"]:
        """Restore a stage from `path`; None when `path` holds no shape descriptor."""
        path = Path(path)
        shape = load_shape(path)
        if shape is None:
            return None
        if expected_shape is not None and shape != expected_shape:
            raise ShapeMismatchError(f"{path}: stored shape does not match the shape expected by its parent")
        layers = _read_layers(path, shape)
        logger.debug("Loaded stage from %s (%d layers)", path, len(layers))
        return cls(shape, ModelDirectory.persisted(path), layers=layers, tracker=tracker, dirty=False)

    # ---- introspection ------------------------------------------------

    @property
    def shape(self) -> NetworkShape:
        return self._shape

    @property
    def input_size(self) -> int:
        return self._shape.input_size

    @property
    def output_size(self) -> int:
        return self._shape.output_size

    @property
    def closed(self) -> bool:
        return self._closed is not None

    @property
    def is_allocated(self) -> bool:
        return self._layers is not None

    @property
    def dirty(self) -> bool:
        return self._dirty

    @property
    def resident_bytes(self) -> int:
        if self._layers is None:
            return 0
        return sum(layer.nbytes for layer in self._layers)

    @property
    def layers(self) -> List[DenseLayer]:
        return self._use()

    def stages(self) -> Iterator["StageNetwork"]:
        yield self

    # ---- residency ----------------------------------------------------

    def allocate(self) -> None:
        if self._layers is None:
            self._layers = _read_layers(self.directory.path, self._shape)
            self._dirty = False
            # Adam moments are not persisted; restart the step count with them.
            self._adam_t = 0
            logger.debug("Reloaded stage weights from %s", self.directory.path)
        self.tracker.touch(self)

    def deallocate(self) -> None:
        """Flush pending weights to the directory and release them from memory."""
        if self._layers is None:
            return
        self.flush()
        self._layers = None
        self.tracker.forget(self)

    def flush(self) -> bool:
        """Write in-memory weights to the current directory if they changed. Returns True if written."""
        if self._layers is None or not self._dirty:
            return False
        write_tree_staged(self.directory.path, self._write_into)
        self._dirty = False
        logger.debug("Flushed stage to %s", self.directory.path)
        return True

    def _use(self) -> List[DenseLayer]:
        if self._closed is not None:
            raise RuntimeError(f"stage at {self.directory.path} is closed")
        self.allocate()
        assert self._layers is not None
        return self._layers

    def _write_into(self, directory: Path) -> None:
        layers = self._layers
        assert layers is not None
        save_shape(self._shape, directory)
        (directory / LAYERS_DIR).mkdir(parents=True, exist_ok=True)
        for i, layer in enumerate(layers):
            layer_file(directory, i).write_text(layer.to_text(), encoding="utf-8")

    # ---- forward / backward -------------------------------------------

    def forward(self, x: np.ndarray) -> np.ndarray:
        out = np.asarray(x, dtype=float)
        if out.shape != (self.input_size,):
            raise ShapeMismatchError(f"stage expects input width {self.input_size}, got {out.shape}")
        for layer, act in zip(self._use(), self._activations):
            out = act.forward(layer.forward(out))
        return out

    def backward(self, grad_output: np.ndarray, *, accumulate: bool = False) -> np.ndarray:
        grad = np.asarray(grad_output, dtype=float)
        for layer, act in zip(reversed(self._use()), reversed(self._activations)):
            grad = layer.backward(act.backward(grad), accumulate=accumulate)
        return grad

    def predict(self, x: Sequence[float]) -> np.ndarray:
        return self.forward(np.asarray(x, dtype=float))

    def _step(self, params: TrainingParams) -> None:
        self._adam_t += 1
        for layer in self._use():
            if params.use_adam:
                layer.adam_step(self._adam_t, params.learning_rate)
            else:
                layer.sgd_step(params.learning_rate)

    # ---- training -----------------------------------------------------

    def train(
        self,
        inputs: Sequence[Sequence[float]],
        targets: Sequence[Sequence[float]],
        params: TrainingParams,
        progress: Optional[ProgressCallback] = None,
        *,
        role: StageRole = "leaf",
        depth: int = 0,
    ) -> float:
        """
        Per-example gradient descent for `params.epochs` epochs.

        The tail `validation_split` fraction is held out. Returns the last
        epoch's mean per-channel validation accuracy in [0, 1] (training
        accuracy when nothing is held out).
        """
        X = as_matrix(inputs, self.input_size, name="inputs")
        Y = as_matrix(targets, self.output_size, name="targets")
        if len(X) != len(Y):
            raise ShapeMismatchError(f"{len(X)} inputs but {len(Y)} targets")
        if len(X) == 0:
            return 0.0

        n_train = split_index(len(X), params.validation_split)
        X_tr, Y_tr, X_val, Y_val = X[:n_train], Y[:n_train], X[n_train:], Y[n_train:]
        accuracy = 0.0
        for epoch in range(int(params.epochs)):
            loss = 0.0
            correct = 0.0
            for x, y in zip(X_tr, Y_tr):
                out = self.forward(x)
                err = out - y
                loss += float(np.sum(err**2))
                correct += channel_accuracy(out, y, params.tolerance)
                self.backward(2.0 * err)
                self._step(params)
            self._dirty = True
            train_acc = correct / len(X_tr) if len(X_tr) else 0.0
            train_loss = loss / len(X_tr) if len(X_tr) else 0.0

            val_acc: Optional[float] = None
            val_loss: Optional[float] = None
            if len(X_val):
                outs = [self.forward(x) for x in X_val]
                val_acc = float(np.mean([channel_accuracy(o, y, params.tolerance) for o, y in zip(outs, Y_val)]))
                val_loss = float(np.mean([np.sum((o - y) ** 2) for o, y in zip(outs, Y_val)]))
            accuracy = val_acc if val_acc is not None else train_acc

            if progress is not None:
                progress(
                    TrainingProgress(
                        role=role,
                        depth=depth,
                        epoch=epoch,
                        epochs=int(params.epochs),
                        train_accuracy=train_acc,
                        train_loss=train_loss,
                        val_accuracy=val_acc,
                        val_loss=val_loss,
                    )
                )

        logger.info(
            "Trained %s stage (depth=%d) on %d examples for %d epochs: accuracy=%.4f",
            role,
            depth,
            len(X),
            params.epochs,
            accuracy,
        )
        return accuracy

    def train_batch(
        self,
        inputs: Sequence[Sequence[float]],
        targets: Sequence[Sequence[float]],
        params: TrainingParams,
        progress: Optional[ProgressCallback] = None,
        *,
        role: StageRole = "leaf",
        depth: int = 0,
        trained_outputs: Optional[int] = None,
    ) -> float:
        """
        Mini-batch SGD: gradients accumulate over `params.batch_size` examples.

        Only the first `trained_outputs` channels (default: all) receive
        gradient, so callers may pass targets narrower than the output.
        Stops early once accuracy stays below 1% past epoch 10.
        """
        width = self.output_size if trained_outputs is None else int(trained_outputs)
        if not 1 <= width <= self.output_size:
            raise ShapeMismatchError(f"trained_outputs must be in [1, {self.output_size}]")
        X = as_matrix(inputs, self.input_size, name="inputs")
        Y = as_matrix(targets, width, name="targets")
        if len(X) != len(Y):
            raise ShapeMismatchError(f"{len(X)} inputs but {len(Y)} targets")
        if len(X) == 0:
            return 0.0

        accuracy = 0.0
        batch = int(params.batch_size)
        for epoch in range(int(params.epochs)):
            loss = 0.0
            correct = 0.0
            for start in range(0, len(X), batch):
                layers = self._use()
                for layer in layers:
                    layer.zero_grad()
                for x, y in zip(X[start : start + batch], Y[start : start + batch]):
                    out = self.forward(x)
                    err = out[:width] - y
                    loss += float(np.sum(err**2))
                    correct += channel_accuracy(out[:width], y, params.tolerance)
                    grad = np.zeros_like(out)
                    grad[:width] = 2.0 * err
                    self.backward(grad, accumulate=True)
                for layer in layers:
                    layer.sgd_step(params.learning_rate)
            self._dirty = True
            accuracy = correct / len(X)
            if progress is not None:
                progress(
                    TrainingProgress(
                        role=role,
                        depth=depth,
                        epoch=epoch,
                        epochs=int(params.epochs),
                        train_accuracy=accuracy,
                        train_loss=loss / len(X),
                    )
                )
            if accuracy < 0.01 and epoch > 10:
                logger.info("Stopping batch training at epoch %d: accuracy %.4f", epoch, accuracy)
                break
        return accuracy

    # ---- lifecycle ----------------------------------------------------

    def save(self, path: Path | str) -> None:
        """Persist to `path` (caller-owned from now on)."""
        path = Path(path)
        self._use()
        if self.directory.is_scratch:
            self._scratch_history.append(self.directory.path)
        write_tree_staged(path, self._write_into)
        self.directory = ModelDirectory.persisted(path)
        self._dirty = False
        logger.info("Saved stage to %s", path)
        self._reclaim_history(TeardownReport())

    def set_scratch(self) -> None:
        self.directory = ModelDirectory.scratch(self.directory.path)

    def duplicate(self) -> "StageNetwork":
        """Independent scratch-owned copy living in the first free sibling directory."""
        self._use()
        self.flush()
        if not (self.directory.path / SHAPE_FILE).is_file():
            write_tree_staged(self.directory.path, self._write_into)
        with claim_free_sibling(self.directory.path) as target:
            copy_tree(self.directory.path, target)
        copy = StageNetwork.load(target, tracker=ResidencyTracker(self.tracker.limits))
        if copy is None:
            raise ModelIOError(target, "duplicated stage has no shape descriptor")
        copy.set_scratch()
        logger.info("Duplicated stage %s -> %s", self.directory.path, target)
        return copy

    def _reclaim_history(self, report: TeardownReport) -> TeardownReport:
        self._scratch_history = reclaim_paths(self._scratch_history, self.directory.path, report)
        return report

    def close(self) -> TeardownReport:
        """Flush (persisted) or delete (scratch) this stage. Never raises; idempotent."""
        if self._closed is not None:
            return self._closed
        report = TeardownReport()
        path = self.directory.path
        if self.directory.is_scratch:
            remove_tree_best_effort(path, report)
        else:
            try:
                ensure_dir(path)
                if self._layers is not None and (self._dirty or not (path / SHAPE_FILE).is_file()):
                    self._dirty = True
                    self.flush()
                    report.flushed.append(path)
            except OSError as exc:
                report.record_error(f"flush {path}", exc)
        self._reclaim_history(report)
        self._layers = None
        self.tracker.forget(self)
        self._closed = report
        return report

    def __enter__(self) -> "StageNetwork":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        widths = [self.input_size] + [ls.output_size for ls in self._shape.layers]
        return f"StageNetwork(widths={widths}, directory={self.directory})"
