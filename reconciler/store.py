"""Workload spec store."""

from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

from reconciler.errors import InvalidSpecError
from reconciler.events import Event, EventBus, EventType
from reconciler.state import PUBLIC_IP_LABEL, AccessMode, ExposureType, WorkloadSpec

logger = logging.getLogger(__name__)


def validate_spec(spec: WorkloadSpec) -> None:
    """Raise InvalidSpecError if a workload spec breaks a static invariant."""
    if not spec.name:
        raise InvalidSpecError("Workload name must not be empty")
    if spec.exposure == ExposureType.DIRECT_TCP and PUBLIC_IP_LABEL not in spec.required_labels:
        raise InvalidSpecError(
            f"Workload '{spec.name}' is exposed over direct TCP but does not require the "
            f"'{PUBLIC_IP_LABEL}' label"
        )
    if spec.replicas < 1:
        raise InvalidSpecError(f"Workload '{spec.name}' must request at least one replica, got {spec.replicas}")
    if spec.storage is not None and spec.storage.size_gb <= 0:
        raise InvalidSpecError(f"Workload '{spec.name}' storage size must be positive")
    if (
        spec.storage is not None
        and spec.storage.access_mode == AccessMode.SINGLE_WRITER
        and spec.anti_affinity
        and spec.replicas > 1
    ):
        raise InvalidSpecError(
            f"Workload '{spec.name}' spreads {spec.replicas} replicas across nodes but its "
            f"single-writer volume can only be attached to one"
        )


class WorkloadSpecStore:
    def __init__(self, events: Optional[EventBus] = None) -> None:
        self.events = events or EventBus()
        self._lock = threading.RLock()
        self._specs: Dict[str, WorkloadSpec] = {}

    def put(self, spec: WorkloadSpec) -> bool:
        """
        Accept a workload spec.

        Returns True when the stored spec changed. Re-submitting an identical
        spec is a no-op and emits nothing.

        Raises:
            InvalidSpecError: If the workload spec violates a static invariant
        """
        validate_spec(spec)
        with self._lock:
            current = self._specs.get(spec.name)
            if current == spec:
                return False
            self._specs[spec.name] = spec
            logger.info(f"{'Updated' if current else 'Accepted'} workload spec '{spec.name}'")
            self.events.emit(Event(
                event_type=EventType.SPEC_CHANGED,
                subject=spec.name,
                data={"created": current is None},
            ))
            return True

    def get(self, name: str) -> Optional[WorkloadSpec]:
        with self._lock:
            return self._specs.get(name)

    def list(self) -> List[WorkloadSpec]:
        with self._lock:
            return [self._specs[k] for k in sorted(self._specs)]

    def delete(self, name: str) -> WorkloadSpec:
        with self._lock:
            spec = self._specs.pop(name, None)
            if spec is None:
                raise KeyError(f"Unknown workload '{name}'")
            logger.info(f"Deleted workload spec '{name}'")
            self.events.emit(Event(event_type=EventType.SPEC_DELETED, subject=name))
            return spec
