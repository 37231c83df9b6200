"""Placement policies."""

from reconciler.policy.base import Policy
from reconciler.policy.spread import SpreadPlacementPolicy

__all__ = ['Policy', 'SpreadPlacementPolicy']
