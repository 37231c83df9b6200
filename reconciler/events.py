"""Event bus shared by the registry, the workload store and the reconciliation loop."""

from __future__ import annotations

import itertools
import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventType(Enum):
	"""Kinds of events consumed by the reconciliation loop."""
	NODE_REGISTERED = "node_registered"
	NODE_REMOVED = "node_removed"
	LIVENESS_CHANGED = "liveness_changed"
	NODE_LOST = "node_lost"
	SPEC_CHANGED = "spec_changed"
	SPEC_DELETED = "spec_deleted"


@dataclass
class Event:
	"""A single state-change notification."""
	event_type: EventType
	subject: str
	data: Dict[str, Any] = field(default_factory=dict)
	id: int = 0
	timestamp: float = 0.0

	def __post_init__(self) -> None:
		if self.timestamp == 0.0:
			self.timestamp = time.time()

	def to_dict(self) -> Dict[str, Any]:
		return {
			"id": self.id,
			"type": self.event_type.value,
			"subject": self.subject,
			"data": dict(self.data),
			"timestamp": self.timestamp,
		}


class EventBus:
	"""
	Ordered event delivery with a bounded history.

	Every emitted event is queued for the consumer (the reconciliation loop)
	and kept in a ring buffer for inspection through the API.
	"""

	def __init__(self, maxlen: int = 512) -> None:
		self._queue: "queue.Queue[Event]" = queue.Queue()
		self._recent: Deque[Event] = deque(maxlen=max(1, maxlen))
		self._seq = itertools.count(1)
		self._lock = threading.Lock()
		self._signal = threading.Event()

	def emit(self, event: Event) -> Event:
		with self._lock:
			event.id = next(self._seq)
			self._recent.append(event)
			self._queue.put(event)
		self._signal.set()
		logger.debug(f"event #{event.id} {event.event_type.value} subject={event.subject}")
		return event

	def drain(self, limit: Optional[int] = None) -> List[Event]:
		"""Pop all pending events (or up to `limit`) in emission order."""
		events: List[Event] = []
		while limit is None or len(events) < limit:
			try:
				events.append(self._queue.get_nowait())
			except queue.Empty:
				break
		return events

	def wait(self, timeout: float) -> bool:
		"""Block until an event is pending or `timeout` elapses; the event stays queued."""
		signalled = self._signal.wait(timeout)
		self._signal.clear()
		return signalled or not self._queue.empty()

	def pending(self) -> int:
		return self._queue.qsize()

	def recent(self, limit: int = 100, since_id: Optional[int] = None) -> List[Event]:
		with self._lock:
			events = list(self._recent)
		if since_id is not None:
			events = [e for e in events if e.id > since_id]
		return events[-limit:]
