import os
import sys
from pathlib import Path

os.environ.setdefault("RECONCILER_AUTOSTART", "0")
sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from reconciler.controller import FailoverController
from reconciler.events import EventBus
from reconciler.orchestrator import InMemoryOrchestrator
from reconciler.reconcile import ReconciliationLoop
from reconciler.registry import NodeRegistry
from reconciler.state import (
    AccessMode,
    ExposureType,
    Node,
    NodeStatus,
    StorageRequirement,
    WorkloadSpec,
)
from reconciler.store import WorkloadSpecStore


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def ready_node(name, *labels, zone="default"):
    return Node(
        name=name,
        labels=frozenset(labels),
        zone=zone,
        status=NodeStatus.READY,
        public="public-IP" in labels,
    )


def stateful_spec(name="db", access_mode=AccessMode.SINGLE_WRITER, **kwargs):
    kwargs.setdefault("exposure", ExposureType.DIRECT_TCP)
    kwargs.setdefault("required_labels", frozenset({"public-IP"}))
    return WorkloadSpec(
        name=name,
        storage=StorageRequirement(size_gb=10, access_mode=access_mode),
        **kwargs,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def registry(events, clock):
    return NodeRegistry(events, grace_period_s=300, clock=clock)


@pytest.fixture
def store(events):
    return WorkloadSpecStore(events)


@pytest.fixture
def orchestrator():
    return InMemoryOrchestrator()


@pytest.fixture
def controller(registry, store, orchestrator, clock):
    return FailoverController(
        registry,
        store,
        orchestrator,
        attach_timeout_s=120,
        backoff_base_s=10,
        backoff_cap_s=300,
        clock=clock,
    )


@pytest.fixture
def loop(registry, store, controller, events, clock):
    return ReconciliationLoop(
        registry,
        store,
        controller,
        events,
        sweep_interval_s=60,
        max_workers=1,
        clock=clock,
    )
