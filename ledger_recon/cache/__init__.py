"""
Cache Package

The entity cache, its standard views and the optimistic mutation
coordinator that owns writes to it.
"""

from ledger_recon.cache import views
from ledger_recon.cache.coordinator import (
    MutationSettledError,
    MutationToken,
    OptimisticMutationCoordinator,
    TokenState,
)
from ledger_recon.cache.entity_cache import (
    CacheSnapshot,
    EntityCache,
    UnknownViewError,
    ViewChange,
    ViewSpec,
)

__all__ = [
    "CacheSnapshot",
    "EntityCache",
    "MutationSettledError",
    "MutationToken",
    "OptimisticMutationCoordinator",
    "TokenState",
    "UnknownViewError",
    "ViewChange",
    "ViewSpec",
    "views",
]
