# cascadenet/__init__.py
from importlib.metadata import PackageNotFoundError as _PNF
from importlib.metadata import version as _v

try:
    __version__ = _v("cascadenet")
except _PNF:
    __version__ = "0.1.0+dev"

from .core import (
    CascadeError,
    ConfigurationError,
    EscalationPolicy,
    LayerShape,
    ModelIOError,
    NetworkShape,
    ResourceLimits,
    RetryNetwork,
    ShapeMismatchError,
    StageNetwork,
    TeardownReport,
    TrainableRetryNetwork,
    TrainingParams,
    TrainingProgress,
    augment_shape,
    load_network,
    new_network,
)

__all__ = [
    "new_network", "load_network",
    "RetryNetwork", "TrainableRetryNetwork", "StageNetwork",
    "NetworkShape", "LayerShape", "augment_shape",
    "EscalationPolicy", "TrainingParams", "TrainingProgress", "ResourceLimits",
    "TeardownReport",
    "CascadeError", "ConfigurationError", "ShapeMismatchError", "ModelIOError",
    "__version__",
]
