"""Reconciliation loop: event-driven dispatch with a periodic full sweep."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, List, Optional, Tuple

from reconciler.controller import FailoverController, Trigger
from reconciler.events import Event, EventBus, EventType
from reconciler.registry import NodeRegistry
from reconciler.state import NodeStatus
from reconciler.store import WorkloadSpecStore

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL_S = 60.0

# a spec change outranks a node event, which outranks a plain sweep
_PRIORITY = {Trigger.SWEEP: 0, Trigger.RETRY: 0, Trigger.NODE_EVENT: 1, Trigger.SPEC_CHANGED: 2}


class ReconciliationLoop:
	"""
	Single coordinating loop for one cluster.

	Each iteration expires node grace periods, drains pending events and
	dispatches them to the affected workloads, runs due rebind retries and,
	every `sweep_interval_s`, re-reconciles every workload to catch missed
	events.
	"""

	def __init__(
		self,
		registry: NodeRegistry,
		store: WorkloadSpecStore,
		controller: FailoverController,
		events: EventBus,
		sweep_interval_s: float = DEFAULT_SWEEP_INTERVAL_S,
		tick_interval_s: float = 1.0,
		max_workers: int = 4,
		clock: Callable[[], float] = time.time,
	) -> None:
		"""
		Initialize the loop.

		Args:
			registry: Node registry (source of liveness events)
			store: Workload spec store (source of spec events)
			controller: Failover controller driven by the loop
			events: Event bus shared with registry and store
			sweep_interval_s: Interval between full sweeps (default 60s)
			tick_interval_s: Maximum idle wait between iterations
			max_workers: Workloads advanced concurrently per batch (1 = inline)
			clock: Time source (overridable in tests)
		"""
		self.registry = registry
		self.store = store
		self.controller = controller
		self.events = events
		self.sweep_interval_s = sweep_interval_s
		self.tick_interval_s = max(0.05, tick_interval_s)
		self.max_workers = max(1, int(max_workers))
		self._clock = clock

		self._last_sweep: Optional[float] = None
		self._executor: Optional[ThreadPoolExecutor] = None
		self._pool_lock = threading.Lock()
		self._thread: Optional[threading.Thread] = None
		self._stop_event = threading.Event()
		self._running = False
		self.iterations = 0
		self.failures = 0

	# -------- lifecycle --------

	def start(self) -> None:
		"""Start the loop in a background thread."""
		if self._running:
			logger.warning("ReconciliationLoop already running")
			return

		self._running = True
		self._stop_event.clear()
		self._thread = threading.Thread(target=self._run, name="reconciliation-loop", daemon=True)
		self._thread.start()
		logger.info(
			f"ReconciliationLoop started: sweep every {self.sweep_interval_s:.0f}s, "
			f"max_workers={self.max_workers}"
		)

	def stop(self) -> None:
		"""Stop the loop, wait for the current iteration and release the worker pool."""
		if self._running:
			self._running = False
			self._stop_event.set()
			if self._thread:
				self._thread.join(timeout=5.0)
			logger.info("ReconciliationLoop stopped")
		with self._pool_lock:
			if self._executor:
				self._executor.shutdown(wait=True)
				self._executor = None

	@property
	def running(self) -> bool:
		return self._running

	def _run(self) -> None:
		while not self._stop_event.is_set():
			try:
				self.run_once()
			except Exception as e:
				self.failures += 1
				logger.error(f"Error in reconciliation loop iteration: {e}")

			self.events.wait(self.tick_interval_s)

	# -------- one iteration --------

	def run_once(self, now: Optional[float] = None) -> Dict[str, Any]:
		"""Run one iteration synchronously and return a summary of what it did."""
		now = self._clock() if now is None else now
		self.iterations += 1

		lost = self.registry.expire_grace_periods(now)
		events = self.events.drain()
		to_reconcile, to_cancel = self._plan(events)

		for name in to_cancel:
			try:
				self.controller.cancel(name)
			except Exception as e:
				self.failures += 1
				logger.error(f"Failed to cancel workload '{name}': {e}")

		# due retries run in the same batch as event work
		retried = [name for name in self.controller.due_retries(now) if name not in to_reconcile]
		batch = sorted(to_reconcile.items()) + [(name, Trigger.RETRY) for name in retried]
		self._dispatch(batch, now)

		swept = False
		if self._last_sweep is None or now - self._last_sweep >= self.sweep_interval_s:
			self.sweep(now, skip=set(to_reconcile) | set(retried))
			swept = True

		return {
			"lost": lost,
			"events": len(events),
			"dispatched": sorted(to_reconcile),
			"cancelled": to_cancel,
			"retried": retried,
			"swept": swept,
		}

	def sweep(self, now: Optional[float] = None, skip: Optional[set] = None) -> List[str]:
		"""Re-reconcile every known workload in name order."""
		now = self._clock() if now is None else now
		skip = skip or set()
		names = [spec.name for spec in self.store.list()]
		orphans = sorted(set(self.controller.statuses()) - set(names))
		for name in orphans:
			logger.info(f"Sweep found state for deleted workload '{name}'")
			self.controller.cancel(name)

		batch = [(name, Trigger.SWEEP) for name in names if name not in skip]
		self._dispatch(batch, now)
		self._last_sweep = now
		return [name for name, _ in batch]

	def _plan(self, events: List[Event]) -> Tuple[Dict[str, Trigger], List[str]]:
		to_reconcile: Dict[str, Trigger] = {}
		to_cancel: List[str] = []

		def add(names: List[str], trigger: Trigger) -> None:
			for name in names:
				current = to_reconcile.get(name)
				if current is None or _PRIORITY[trigger] > _PRIORITY[current]:
					to_reconcile[name] = trigger

		for event in events:
			etype = event.event_type
			if etype in (EventType.NODE_LOST, EventType.NODE_REMOVED):
				add(self.controller.workloads_on(event.subject), Trigger.NODE_EVENT)
				add(self.controller.unsettled(), Trigger.NODE_EVENT)
			elif etype == EventType.LIVENESS_CHANGED:
				if event.data.get("status") == NodeStatus.READY.value:
					add(self.controller.unsettled(), Trigger.NODE_EVENT)
				else:
					logger.debug(f"Node '{event.subject}' left Ready; waiting for grace period")
			elif etype == EventType.NODE_REGISTERED:
				add(self.controller.unsettled(), Trigger.NODE_EVENT)
			elif etype == EventType.SPEC_CHANGED:
				add([event.subject], Trigger.SPEC_CHANGED)
			elif etype == EventType.SPEC_DELETED:
				to_reconcile.pop(event.subject, None)
				if event.subject not in to_cancel:
					to_cancel.append(event.subject)

		# a spec re-created after its deletion in the same batch is reconciled after the cancel
		for name in to_cancel:
			if name not in to_reconcile and self.store.get(name) is not None:
				to_reconcile[name] = Trigger.SPEC_CHANGED
		return to_reconcile, to_cancel

	def _dispatch(self, batch: List[Tuple[str, Trigger]], now: float) -> None:
		if not batch:
			return
		executor = self._pool()
		if executor is None or len(batch) == 1:
			for name, trigger in batch:
				self._safe_reconcile(name, trigger, now)
			return
		futures = [executor.submit(self._safe_reconcile, name, trigger, now) for name, trigger in batch]
		wait(futures)

	def _pool(self) -> Optional[ThreadPoolExecutor]:
		"""Worker pool for batches, created on first use; None when running inline."""
		if self.max_workers <= 1:
			return None
		with self._pool_lock:
			if self._executor is None:
				self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="reconcile")
			return self._executor

	def _safe_reconcile(self, name: str, trigger: Trigger, now: float) -> None:
		try:
			self.controller.reconcile(name, trigger, now)
		except Exception as e:
			self.failures += 1
			logger.error(f"Failed to reconcile workload '{name}' ({trigger.value}): {e}")
