# cascadenet/data.py
from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Tuple

import pandas as pd

from cascadenet.core.errors import ShapeMismatchError

logger = logging.getLogger(__name__)

Dataset = Tuple[List[List[float]], List[List[float]]]


def load_csv_dataset(path: str | Path, input_size: int) -> Dataset:
    """
    Read a numeric CSV: the first `input_size` columns are inputs, the rest targets.

    A leading header row is detected (any non-numeric cell) and skipped.
    Rows with missing or non-numeric cells are rejected.
    """
    path = Path(path)
    df = pd.read_csv(path, header=None, dtype=str, skipinitialspace=True)
    num = df.apply(pd.to_numeric, errors="coerce")
    if len(num) and num.iloc[0].isna().any():
        num = num.iloc[1:]
    if num.isna().any().any():
        bad = int(num.isna().any(axis=1).to_numpy().argmax())
        raise ValueError(f"{path}: non-numeric or missing value in data row {bad}")
    if num.shape[1] <= input_size:
        raise ShapeMismatchError(f"{path}: {num.shape[1]} columns leave no targets for input width {input_size}")
    values = num.to_numpy(dtype=float)
    inputs = values[:, :input_size].tolist()
    targets = values[:, input_size:].tolist()
    logger.debug("Loaded %d examples from %s (%d inputs, %d targets)", len(inputs), path, input_size, values.shape[1] - input_size)
    return inputs, targets
