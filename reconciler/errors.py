"""Error taxonomy for the reconciler."""

from __future__ import annotations


class ReconcilerError(Exception):
    """Base class for reconciler errors."""


class InvalidSpecError(ReconcilerError):
    """A workload spec violates a static invariant."""


class DuplicateNodeError(ReconcilerError):
    """A node registration conflicts with an existing node's immutable attributes."""

    def __init__(self, name: str, existing_zone: str, new_zone: str) -> None:
        super().__init__(
            f"Node '{name}' already registered in zone '{existing_zone}', refusing zone '{new_zone}'"
        )
        self.name = name
        self.existing_zone = existing_zone
        self.new_zone = new_zone


class OrchestratorError(ReconcilerError):
    """The cluster orchestrator rejected or failed an intent."""


class AttachTimeoutError(OrchestratorError):
    """A volume release or attach did not complete within its bound."""

    def __init__(self, operation: str, volume_id: str, node: str, timeout_s: float) -> None:
        super().__init__(
            f"{operation} of volume '{volume_id}' on node '{node}' timed out after {timeout_s:.0f}s"
        )
        self.operation = operation
        self.volume_id = volume_id
        self.node = node
        self.timeout_s = timeout_s


class ConfigError(ReconcilerError):
    """A configuration file could not be parsed."""
