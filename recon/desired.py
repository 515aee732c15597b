"""Desired-state store: the declared workload set and its generations."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Tuple

from recon.source import DeclarativeSource, manifests_by_name
from recon.state import AppliedState, WorkloadSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DesiredState:
    revision: str
    specs: Dict[str, WorkloadSpec] = field(default_factory=dict)
    loaded_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, object]:
        return {
            "revision": self.revision,
            "loaded_at": self.loaded_at,
            "workloads": {name: spec.to_dict() for name, spec in sorted(self.specs.items())},
        }


class DesiredStateStore:
    """
    Pulls WorkloadSpecs from a declarative source and stamps generations.

    A workload keeps its generation while its content is unchanged; any change
    yields a new spec with a strictly larger generation. Generations survive
    removal from the source, so a workload that disappears and comes back
    never reuses an old number.
    """

    def __init__(self, source: DeclarativeSource, path: str = "", history: int = 50) -> None:
        self.source = source
        self.path = path
        self._lock = threading.Lock()
        self._known: Dict[str, Tuple[str, int]] = {}  # name -> (fingerprint, generation)
        self._seeded: Dict[str, Tuple[Optional[str], int]] = {}  # name -> (template_hash, generation)
        self._current: Optional[DesiredState] = None
        self._revisions: Deque[Tuple[str, float]] = deque(maxlen=history)

    def seed(self, applied: AppliedState) -> None:
        """Learn generations already running so a restarted store never goes backwards."""
        with self._lock:
            for name, status in applied.workloads.items():
                self._seeded[name] = (status.template_hash, status.generation)

    def load(self) -> DesiredState:
        """
        Fetch the latest revision and return it with generations assigned.

        Raises:
            TransientInfraError: Source unreachable
            SpecValidationError: Source content cannot be parsed or names collide
        """
        revision, specs = self.source.get_latest(self.path)
        indexed = manifests_by_name(specs)
        with self._lock:
            stamped = {name: self._stamp_locked(spec) for name, spec in indexed.items()}
            previous = self._current.revision if self._current else None
            self._current = DesiredState(revision=revision, specs=stamped)
            if revision != previous:
                self._revisions.append((revision, self._current.loaded_at))
                logger.info(f"Desired state at revision {revision}: {len(stamped)} workloads")
            return self._current

    def _stamp_locked(self, spec: WorkloadSpec) -> WorkloadSpec:
        fingerprint = spec.fingerprint()
        known = self._known.get(spec.name)
        if known and known[0] == fingerprint:
            return spec.with_generation(known[1])

        floor = known[1] if known else 0
        seeded = self._seeded.pop(spec.name, None)
        if seeded is not None:
            template_hash, seeded_generation = seeded
            if known is None and template_hash == spec.template_hash():
                generation = seeded_generation
                self._known[spec.name] = (fingerprint, generation)
                return spec.with_generation(generation)
            floor = max(floor, seeded_generation)

        generation = floor + 1
        self._known[spec.name] = (fingerprint, generation)
        if known:
            logger.info(f"Workload {spec.name} changed: generation {known[1]} -> {generation}")
        return spec.with_generation(generation)

    @property
    def current(self) -> Optional[DesiredState]:
        with self._lock:
            return self._current

    def revisions(self) -> List[Tuple[str, float]]:
        with self._lock:
            return list(self._revisions)
