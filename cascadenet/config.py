# cascadenet/config.py
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from cascadenet.core.escalation import EscalationPolicy
from cascadenet.core.resources import ResourceLimits
from cascadenet.core.training import TrainingParams

logger = logging.getLogger(__name__)

ENV_PREFIX = "CASCADENET_"

# Project defaults live here; every key can be overridden by CASCADENET_<KEY>.
DEFAULTS: Dict[str, Any] = {
    "learning_rate": 0.01,
    "epochs": 100,
    "tolerance": 0.1,
    "use_adam": True,
    # Fraction held out from the tail of the data for validation.
    "validation_split": 0.3,
    "batch_size": 32,
    "levels": 1,
    # Escalation channel: 1.0 means "ask the backup", 0.0 means "confident".
    "escalate_value": 1.0,
    "confident_value": 0.0,
    "escalation_tolerance": 0.2,
    "min_training_examples": 100,
    "max_resident_bytes": None,  # unlimited
    "model_root": "./models",
}


def _coerce_env(v: str) -> Any:
    s = v.strip()
    low = s.lower()
    if low in ("true", "false"):
        return low == "true"
    if low in ("none", "null", ""):
        return None
    if s.isdigit() or (s.startswith("-") and s[1:].isdigit()):
        return int(s)
    try:
        return float(s)
    except ValueError:
        return s


def load_cfg(path: str | Path | None = None) -> Dict[str, Any]:
    """Defaults, then the JSON file at `path` (or $CASCADENET_CFG), then env overrides."""
    cfg = dict(DEFAULTS)
    raw = str(path) if path else os.getenv(f"{ENV_PREFIX}CFG", "")
    if raw:
        p = Path(raw)
        if p.is_file():
            try:
                data = json.loads(p.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.warning("Ignoring unreadable config file %s: %s", p, exc)
            else:
                if isinstance(data, dict):
                    cfg.update(data)
                else:
                    logger.warning("Ignoring config file %s: top level is not an object", p)
        else:
            logger.warning("Config file %s does not exist; using defaults", p)
    for k in list(cfg):
        env = os.getenv(f"{ENV_PREFIX}{k.upper()}", None)
        if env is not None:
            cfg[k] = _coerce_env(env)
    return cfg


def training_params_from_cfg(cfg: Optional[Dict[str, Any]] = None, **overrides: Any) -> TrainingParams:
    c = dict(cfg if cfg is not None else load_cfg())
    c.update({k: v for k, v in overrides.items() if v is not None})
    return TrainingParams(
        learning_rate=float(c["learning_rate"]),
        epochs=int(c["epochs"]),
        tolerance=float(c["tolerance"]),
        use_adam=bool(c["use_adam"]),
        validation_split=float(c["validation_split"]),
        batch_size=int(c["batch_size"]),
    )


def policy_from_cfg(cfg: Optional[Dict[str, Any]] = None) -> EscalationPolicy:
    c = cfg if cfg is not None else load_cfg()
    return EscalationPolicy(
        escalate_value=float(c["escalate_value"]),
        confident_value=float(c["confident_value"]),
        tolerance=float(c["escalation_tolerance"]),
    )


def limits_from_cfg(cfg: Optional[Dict[str, Any]] = None) -> ResourceLimits:
    c = cfg if cfg is not None else load_cfg()
    budget = c.get("max_resident_bytes")
    return ResourceLimits(max_resident_bytes=None if budget is None else int(budget))
