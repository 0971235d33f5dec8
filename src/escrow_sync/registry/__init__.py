"""Escrow registry: local fallback list and multi-source aggregation."""

from .aggregator import MAX_LIMIT, MIN_LIMIT, RegistryAggregator, clamp_limit
from .fallback import FallbackRegistry

__all__ = ["MAX_LIMIT", "MIN_LIMIT", "RegistryAggregator", "clamp_limit", "FallbackRegistry"]
