from __future__ import annotations

import os
import time
import logging
from typing import Callable, Optional

from reconciler.api import create_app
from reconciler.config import ReconcilerConfig, Settings, load_config
from reconciler.controller import FailoverController
from reconciler.errors import DuplicateNodeError, InvalidSpecError
from reconciler.events import EventBus
from reconciler.orchestrator import ClusterOrchestrator, InMemoryOrchestrator, KubernetesOrchestrator
from reconciler.reconcile import ReconciliationLoop
from reconciler.registry import NodeRegistry
from reconciler.store import WorkloadSpecStore
from reconciler.watcher import NodeWatcher

logger = logging.getLogger(__name__)


def build_orchestrator(settings: Settings) -> ClusterOrchestrator:
	if settings.orchestrator == "kubernetes":
		return KubernetesOrchestrator(namespace=settings.namespace)
	if settings.orchestrator != "memory":
		logger.warning(f"Unknown orchestrator '{settings.orchestrator}', falling back to in-memory")
	return InMemoryOrchestrator()


def build_loop(
	cfg: ReconcilerConfig,
	orchestrator: Optional[ClusterOrchestrator] = None,
	clock: Callable[[], float] = time.time,
) -> ReconciliationLoop:
	"""Wire registry, store, controller and loop around one event bus."""
	settings = cfg.settings
	events = EventBus(maxlen=settings.event_buffer)
	registry = NodeRegistry(events, grace_period_s=settings.grace_period_s, clock=clock)
	store = WorkloadSpecStore(events)
	controller = FailoverController(
		registry,
		store,
		orchestrator or build_orchestrator(settings),
		attach_timeout_s=settings.attach_timeout_s,
		backoff_base_s=settings.backoff_base_s,
		backoff_cap_s=settings.backoff_cap_s,
		clock=clock,
	)
	return ReconciliationLoop(
		registry,
		store,
		controller,
		events,
		sweep_interval_s=settings.sweep_interval_s,
		tick_interval_s=settings.tick_interval_s,
		max_workers=settings.max_workers,
		clock=clock,
	)


def seed_state(loop: ReconciliationLoop, cfg: ReconcilerConfig) -> None:
	"""Load static nodes and workload specs. Safe to call multiple times."""
	for node in cfg.nodes:
		try:
			loop.registry.register(node)
		except DuplicateNodeError as e:
			logger.error(f"Skipping node from {cfg.path}: {e}")

	for spec in cfg.workloads:
		try:
			loop.store.put(spec)
		except InvalidSpecError as e:
			logger.error(f"Skipping workload from {cfg.path}: {e}")


def build_app():
	"""Build the Flask app around a seeded, running reconciliation loop."""
	logging.basicConfig(
		level=os.getenv("LOG_LEVEL", "INFO").upper(),
		format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
	)
	cfg = load_config(os.getenv("RECONCILER_CONFIG"))
	loop = build_loop(cfg)
	seed_state(loop, cfg)

	if os.getenv("RECONCILER_AUTOSTART", "1") == "1":
		if cfg.settings.watch_nodes:
			watcher = NodeWatcher(loop.registry, label_prefix=cfg.settings.label_prefix)
			watcher.start()
		loop.start()
	else:
		logger.info("Autostart disabled; reconciliation loop not started")

	return create_app(loop)


# Build app at module level (for gunicorn)
app = build_app()


if __name__ == "__main__":
	app.run(host="0.0.0.0", port=int(os.getenv("PORT", "8080")))
