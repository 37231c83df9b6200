from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Mapping, Optional

from reconciler.state import PlacementDecision, RegistrySnapshot, VolumeBinding, WorkloadSpec


class Policy(ABC):
	@abstractmethod
	def evaluate(
		self,
		spec: WorkloadSpec,
		snapshot: RegistrySnapshot,
		binding: Optional[VolumeBinding] = None,
		load: Optional[Mapping[str, int]] = None,
		now: Optional[int] = None,
	) -> PlacementDecision:
		raise NotImplementedError
