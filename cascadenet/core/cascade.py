# cascadenet/core/cascade.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np

from cascadenet.core.directory import (
    ModelDirectory,
    TeardownReport,
    claim_free_sibling,
    copy_tree,
    ensure_dir,
    reclaim_paths,
    remove_tree_best_effort,
)
from cascadenet.core.errors import ConfigurationError, ModelIOError, ShapeMismatchError
from cascadenet.core.escalation import DEFAULT_POLICY, EscalationPolicy
from cascadenet.core.resources import ResidencyTracker, ResourceLimits
from cascadenet.core.shape import NetworkShape, augment_shape, split_escalation, strip_escalation
from cascadenet.core.stage import StageNetwork
from cascadenet.core.training import (
    ProgressCallback,
    TrainingParams,
    as_matrix,
    outputs_match,
)

logger = logging.getLogger(__name__)

PRIMARY_DIR = "primary"
BACKUP_DIR = "backup"
PROBE_DIR = "probe"

MIN_TRAINING_EXAMPLES = 100

Node = Union[StageNetwork, "RetryNetwork"]


def _node_path(root: Path, depth: int) -> Path:
    """Directory of the cascade node `depth` backups below `root`."""
    return Path(root).joinpath(*([BACKUP_DIR] * depth)) if depth else Path(root)


class RetryNetwork:
    """
    Cascade node: a primary stage that also predicts its own unreliability,
    and a backup (leaf stage or nested cascade) that answers when it escalates.

    The primary runs on augment_shape(shape); callers only ever see `shape`.
    `levels` counts the cascade nodes below this one, so a node built with
    levels=n reaches n + 1 nodes by following backups, the last one a leaf.
    """

    kind = "cascade"

    def __init__(
        self,
        primary: StageNetwork,
        backup: Node,
        shape: NetworkShape,
        directory: ModelDirectory,
        *,
        levels: int,
        policy: Optional[EscalationPolicy] = None,
        tracker: Optional[ResidencyTracker] = None,
        min_training_examples: int = MIN_TRAINING_EXAMPLES,
    ) -> None:
        if primary.shape != augment_shape(shape):
            raise ShapeMismatchError(f"{directory.path}: primary shape is not the augmented cascade shape")
        if backup.shape != shape:
            raise ShapeMismatchError(f"{directory.path}: backup shape differs from the cascade shape")
        if min_training_examples < 0:
            raise ConfigurationError(f"min_training_examples must be >= 0, got {min_training_examples}")
        self.primary = primary
        self.backup = backup
        self._shape = shape
        self.directory = directory
        self.levels = int(levels)
        self.policy = policy if policy is not None else DEFAULT_POLICY
        self.tracker = tracker if tracker is not None else primary.tracker
        self.min_training_examples = int(min_training_examples)
        self._scratch_history: List[Path] = []
        self._closed: Optional[TeardownReport] = None

    # ---- construction -------------------------------------------------

    @classmethod
    def new(
        cls,
        shape: NetworkShape,
        levels: int,
        root: Path | str,
        *,
        policy: Optional[EscalationPolicy] = None,
        tracker: Optional[ResidencyTracker] = None,
        rng: Optional[np.random.Generator] = None,
        min_training_examples: int = MIN_TRAINING_EXAMPLES,
    ) -> "RetryNetwork":
        """Fresh scratch-owned cascade under `root`, built from the leaf upwards."""
        if isinstance(levels, bool) or int(levels) != levels or levels < 0:
            raise ConfigurationError(f"levels must be a non-negative integer, got {levels!r}")
        levels = int(levels)
        root = Path(root)
        tracker = tracker if tracker is not None else ResidencyTracker()
        gen = rng if rng is not None else np.random.default_rng()
        primary_shape = augment_shape(shape)

        node: Node = StageNetwork.new(
            shape, ModelDirectory.scratch(_node_path(root, levels + 1)), tracker=tracker, rng=gen
        )
        for depth in range(levels, -1, -1):
            path = _node_path(root, depth)
            primary = StageNetwork.new(
                primary_shape, ModelDirectory.scratch(path / PRIMARY_DIR), tracker=tracker, rng=gen
            )
            node = cls(
                primary,
                node,
                shape,
                ModelDirectory.scratch(path),
                levels=levels - depth,
                policy=policy,
                tracker=tracker,
                min_training_examples=min_training_examples,
            )
        assert isinstance(node, RetryNetwork)
        logger.debug("Built cascade at %s with levels=%d", root, levels)
        return node

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
    def resident_bytes(self) -> int:
        return sum(stage.resident_bytes for stage in self.stages())

    def backup_chain(self) -> Iterator[Node]:
        """Nodes reached by following backups from here; the last one is the leaf."""
        node: Node = self
        while isinstance(node, RetryNetwork):
            node = node.backup
            yield node

    def stages(self) -> Iterator[StageNetwork]:
        """Every stage along the chain: each node's primary, then the leaf."""
        node: Node = self
        while isinstance(node, RetryNetwork):
            yield node.primary
            node = node.backup
        yield node

    def _check_open(self) -> None:
        if self._closed is not None:
            raise RuntimeError(f"cascade at {self.directory.path} is closed")

    # ---- inference ----------------------------------------------------

    def _answer(self, x: np.ndarray) -> Tuple[np.ndarray, int]:
        node: Node = self
        depth = 0
        while isinstance(node, RetryNetwork):
            task, signal = split_escalation(node.primary.forward(x))
            if not node.policy.should_escalate(signal):
                return task, depth
            logger.debug("Escalating at depth %d (signal=%.4f)", depth, signal)
            node = node.backup
            depth += 1
        return node.forward(x), depth

    def predict(self, x: Sequence[float]) -> np.ndarray:
        out, _ = self._answer(np.asarray(x, dtype=float))
        return out

    def route(self, x: Sequence[float]) -> int:
        """Depth of the node that answered `x` (0 is this node's primary)."""
        _, depth = self._answer(np.asarray(x, dtype=float))
        return depth

    def predict_many(self, inputs: Sequence[Sequence[float]]) -> np.ndarray:
        X = as_matrix(inputs, self.input_size, name="inputs")
        out = np.zeros((len(X), self.output_size), dtype=float)
        for i, x in enumerate(X):
            out[i] = self.predict(x)
        return out

    # ---- residency ----------------------------------------------------

    def allocate(self) -> None:
        for stage in self.stages():
            stage.allocate()

    def deallocate(self) -> None:
        for stage in self.stages():
            stage.deallocate()

    def flush(self) -> bool:
        """Write every dirty stage to its directory. Returns True if anything was written."""
        written = [stage.flush() for stage in self.stages()]
        return any(written)

    # ---- lifecycle ----------------------------------------------------

    def save(self, path: Path | str) -> None:
        """Persist the whole chain under `path` (caller-owned from now on)."""
        self._check_open()
        path = Path(path)
        if self.directory.is_scratch:
            self._scratch_history.append(self.directory.path)
        ensure_dir(path)
        self.primary.save(path / PRIMARY_DIR)
        self.backup.save(path / BACKUP_DIR)
        self.directory = ModelDirectory.persisted(path)
        logger.info("Saved cascade to %s", path)
        self._reclaim_history(TeardownReport())

    def set_scratch(self) -> None:
        self.directory = ModelDirectory.scratch(self.directory.path)
        self.primary.set_scratch()
        self.backup.set_scratch()

    def duplicate(self) -> "RetryNetwork":
        """Independent scratch-owned copy living in the first free sibling directory."""
        self._check_open()
        self.flush()
        with claim_free_sibling(self.directory.path) as target:
            copy_tree(self.directory.path, target)
        copy = load_network(
            target,
            trainable=isinstance(self, TrainableRetryNetwork),
            policy=self.policy,
            tracker=ResidencyTracker(self.tracker.limits),
            min_training_examples=self.min_training_examples,
        )
        assert isinstance(copy, RetryNetwork)
        copy.set_scratch()
        logger.info("Duplicated cascade %s -> %s", self.directory.path, target)
        return copy

    def _reclaim_history(self, report: TeardownReport) -> TeardownReport:
        self._scratch_history = reclaim_paths(self._scratch_history, self.directory.path, report)
        return report

    def close(self) -> TeardownReport:
        """
        Tear the node down exactly once; later calls return the first report.

        Children close first. A persisted node then only makes sure its
        directory exists; a scratch node removes its tree. Obsolete scratch
        paths are reclaimed either way. Failures are collected, never raised.
        """
        if self._closed is not None:
            return self._closed
        report = TeardownReport()
        report.merge(self.primary.close())
        report.merge(self.backup.close())
        path = self.directory.path
        if self.directory.is_scratch:
            remove_tree_best_effort(path, report)
        else:
            try:
                ensure_dir(path)
            except OSError as exc:
                report.record_error(f"ensure {path}", exc)
        self._reclaim_history(report)
        self._closed = report
        return report

    def __enter__(self) -> "RetryNetwork":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(levels={self.levels}, "
            f"widths={self.input_size}->{self.output_size}, directory={self.directory})"
        )


class TrainableRetryNetwork(RetryNetwork):
    """Cascade node that can also be trained end to end."""

    def train(
        self,
        inputs: Sequence[Sequence[float]],
        targets: Sequence[Sequence[float]],
        params: TrainingParams,
        progress: Optional[ProgressCallback] = None,
        *,
        depth: int = 0,
    ) -> float:
        """
        Train the primary to answer and to flag its own mistakes, then the backup.

        A throwaway probe stage is trained first; each example is labelled
        "escalate" when the probe got it wrong. The primary learns targets plus
        label, and the backup is trained on the examples the primary got fully
        right. Returns primary accuracy + backup accuracy, in [0, 2].

        With fewer than `min_training_examples` examples nothing is trained and
        0.0 is returned.
        """
        self._check_open()
        X = as_matrix(inputs, self.input_size, name="inputs")
        Y = as_matrix(targets, self.output_size, name="targets")
        if len(X) != len(Y):
            raise ShapeMismatchError(f"{len(X)} inputs but {len(Y)} targets")
        if len(X) < self.min_training_examples:
            logger.info(
                "Skipping cascade training at depth %d: %d examples < %d",
                depth,
                len(X),
                self.min_training_examples,
            )
            return 0.0

        probe = StageNetwork.new(
            self._shape, ModelDirectory.scratch(self.directory.path / PROBE_DIR), tracker=self.tracker
        )
        try:
            probe.train(X, Y, params, progress, role="probe", depth=depth)
            labels = np.array(
                [self.policy.label(probe_correct=outputs_match(probe.predict(x), y, params.tolerance)) for x, y in zip(X, Y)]
            )
        finally:
            probe.close()
        Y_aug = np.column_stack([Y, labels])
        logger.debug("Probe at depth %d flagged %d/%d examples", depth, int(np.sum(labels == self.policy.escalate_value)), len(X))

        primary_accuracy = self.primary.train(X, Y_aug, params, progress, role="primary", depth=depth)

        keep = np.array([outputs_match(self.primary.predict(x), y, params.tolerance) for x, y in zip(X, Y_aug)], dtype=bool)
        X_backup = X[keep]
        Y_backup = strip_escalation(Y_aug[keep], self.output_size)
        logger.debug("Passing %d/%d examples to the backup at depth %d", len(X_backup), len(X), depth + 1)

        if isinstance(self.backup, TrainableRetryNetwork):
            backup_accuracy = self.backup.train(X_backup, Y_backup, params, progress, depth=depth + 1)
        elif isinstance(self.backup, StageNetwork):
            backup_accuracy = self.backup.train(X_backup, Y_backup, params, progress, role="backup", depth=depth + 1)
        else:
            raise TypeError(f"backup {self.backup!r} is not trainable")

        logger.info(
            "Trained cascade at depth %d: primary=%.4f backup=%.4f",
            depth,
            primary_accuracy,
            backup_accuracy,
        )
        return primary_accuracy + backup_accuracy

    def train_batch(
        self,
        inputs: Sequence[Sequence[float]],
        targets: Sequence[Sequence[float]],
        params: TrainingParams,
        progress: Optional[ProgressCallback] = None,
        *,
        depth: int = 0,
    ) -> float:
        """
        Mini-batch training of the primary's task channels only.

        The escalation channel and the backup are left untouched.
        """
        self._check_open()
        return self.primary.train_batch(
            inputs,
            targets,
            params,
            progress,
            role="primary",
            depth=depth,
            trained_outputs=self.output_size,
        )


def new_network(
    shape: NetworkShape,
    levels: int,
    root_path: Path | str,
    limits: Optional[ResourceLimits] = None,
    *,
    trainable: bool = True,
    policy: Optional[EscalationPolicy] = None,
    rng: Optional[np.random.Generator] = None,
    min_training_examples: int = MIN_TRAINING_EXAMPLES,
) -> RetryNetwork:
    """Build a fresh, scratch-owned cascade of depth `levels` under `root_path`."""
    cls = TrainableRetryNetwork if trainable else RetryNetwork
    return cls.new(
        shape,
        levels,
        root_path,
        policy=policy,
        tracker=ResidencyTracker(limits),
        rng=rng,
        min_training_examples=min_training_examples,
    )


def load_network(
    path: Path | str,
    limits: Optional[ResourceLimits] = None,
    *,
    trainable: bool = True,
    policy: Optional[EscalationPolicy] = None,
    tracker: Optional[ResidencyTracker] = None,
    min_training_examples: int = MIN_TRAINING_EXAMPLES,
) -> Node:
    """
    Restore a node from `path`; a `primary` sub-directory marks a cascade.

    The chain is walked down to its leaf first and rebuilt upwards, so every
    primary is checked against the augmented shape of the backup below it.
    Loaded nodes are persisted-owned.
    """
    path = Path(path)
    tracker = tracker if tracker is not None else ResidencyTracker(limits)
    chain: List[Path] = []
    node_path = path
    while (node_path / PRIMARY_DIR).exists():
        chain.append(node_path)
        node_path = node_path / BACKUP_DIR

    node: Optional[Node] = StageNetwork.load(node_path, tracker=tracker)
    if node is None:
        raise ModelIOError(node_path, "no model found (missing shape descriptor)")

    cls = TrainableRetryNetwork if trainable else RetryNetwork
    for levels, cascade_path in enumerate(reversed(chain)):
        primary = StageNetwork.load(
            cascade_path / PRIMARY_DIR, tracker=tracker, expected_shape=augment_shape(node.shape)
        )
        if primary is None:
            raise ModelIOError(cascade_path / PRIMARY_DIR, "primary stage has no shape descriptor")
        node = cls(
            primary,
            node,
            node.shape,
            ModelDirectory.persisted(cascade_path),
            levels=levels,
            policy=policy,
            tracker=tracker,
            min_training_examples=min_training_examples,
        )
    logger.debug("Loaded %s from %s", node.kind, path)
    return node
