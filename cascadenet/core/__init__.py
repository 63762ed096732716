# cascadenet/core/__init__.py
from __future__ import annotations

"""
Public re-exports for the cascade core.
Downstream code should import from `cascadenet.core` rather than the submodules.
"""

from .cascade import Node, RetryNetwork, TrainableRetryNetwork, load_network, new_network
from .directory import ModelDirectory, TeardownReport
from .errors import CascadeError, ConfigurationError, ModelIOError, ShapeMismatchError
from .escalation import DEFAULT_POLICY, EscalationPolicy
from .resources import ResidencyTracker, ResourceLimits
from .shape import LayerShape, NetworkShape, augment_shape, strip_escalation
from .stage import StageNetwork
from .training import TrainingParams, TrainingProgress

__all__ = [
    "Node",
    "RetryNetwork",
    "TrainableRetryNetwork",
    "StageNetwork",
    "new_network",
    "load_network",
    "LayerShape",
    "NetworkShape",
    "augment_shape",
    "strip_escalation",
    "EscalationPolicy",
    "DEFAULT_POLICY",
    "TrainingParams",
    "TrainingProgress",
    "ResourceLimits",
    "ResidencyTracker",
    "ModelDirectory",
    "TeardownReport",
    "CascadeError",
    "ConfigurationError",
    "ShapeMismatchError",
    "ModelIOError",
]
