# cascadenet/core/resources.py
from __future__ import annotations

import logging
import weakref
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional, Protocol

from cascadenet.core.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceLimits:
    """Bounds shared by every stage of one network tree. None means unlimited."""

    max_resident_bytes: Optional[int] = None

    def __post_init__(self) -> None:
        if self.max_resident_bytes is not None and int(self.max_resident_bytes) < 0:
            raise ConfigurationError("max_resident_bytes must be >= 0")


class Evictable(Protocol):
    @property
    def resident_bytes(self) -> int: ...

    def deallocate(self) -> None: ...


class ResidencyTracker:
    """
    Least-recently-used accounting of weights held in memory.

    Stages report themselves via touch() whenever they are used; when the
    total exceeds the budget, the oldest other stages are deallocated
    (flushed to their directory and freed) until it fits again.
    """

    def __init__(self, limits: Optional[ResourceLimits] = None) -> None:
        self.limits = limits or ResourceLimits()
        self._resident: "OrderedDict[int, weakref.ref]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._live())

    @property
    def resident_bytes(self) -> int:
        return sum(stage.resident_bytes for stage in self._live())

    def touch(self, stage: Evictable) -> None:
        key = id(stage)
        if key in self._resident:
            self._resident.move_to_end(key)
        else:
            self._resident[key] = weakref.ref(stage)
        self._enforce(keep=stage)

    def forget(self, stage: Evictable) -> None:
        self._resident.pop(id(stage), None)

    def _live(self) -> list:
        out = []
        for key, ref in list(self._resident.items()):
            stage = ref()
            if stage is None:
                del self._resident[key]
            else:
                out.append(stage)
        return out

    def _enforce(self, keep: Evictable) -> None:
        budget = self.limits.max_resident_bytes
        if budget is None:
            return
        while self.resident_bytes > budget:
            victim = next((s for s in self._live() if s is not keep), None)
            if victim is None:
                return
            logger.debug("Evicting stage (%d bytes) to honour residency budget %d", victim.resident_bytes, budget)
            victim.deallocate()
            self.forget(victim)
