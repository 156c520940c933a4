"""
Entity Cache

The single client-side store of transactions, budgets and savings goals.

DESIGN DECISION: Entities are indexed by id, one index per collection.
Views are derived projections over an index (a predicate, an optional id
set, an ordering and a limit) and never independent copies. Writing an
entity therefore updates every view that logically contains it.

Subscribers are notified per view, and only when the written entity
entered, left or changed inside that view's projection. Record views
(a single entity, e.g. a goal detail) receive `closed=True` when their
entity is removed.

All writes except `load` are expected to go through the mutation
coordinator.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

import structlog

from ledger_recon.models.ledger import (
    Budget,
    CollectionType,
    EntityKey,
    LedgerEntity,
    SavingsGoal,
    Transaction,
    collection_of,
)


logger = structlog.get_logger(__name__)

Predicate = Callable[[Any], bool]
SortKey = Callable[[Any], Any]


@dataclass(frozen=True)
class ViewSpec:
    """Definition of a derived view over one collection."""

    key: str
    collection: CollectionType
    predicate: Optional[Predicate] = None
    ids: Optional[frozenset[int]] = None
    sort_key: Optional[SortKey] = None
    descending: bool = False
    limit: Optional[int] = None
    record: bool = False

    def contains(self, entity: LedgerEntity) -> bool:
        """Does the entity satisfy this view's filter (ignoring the limit)?"""
        if self.ids is not None and entity.id not in self.ids:
            return False
        if self.predicate is not None and not self.predicate(entity):
            return False
        return True

    def project(self, entities: Any) -> tuple:
        selected = [e for e in entities if self.contains(e)]
        selected.sort(key=self.sort_key or (lambda e: e.id), reverse=self.descending)
        if self.record:
            return tuple(selected[:1])
        if self.limit is not None:
            selected = selected[:self.limit]
        return tuple(selected)


@dataclass(frozen=True)
class ViewChange:
    """Notification delivered to view subscribers."""

    view_key: str
    entities: tuple
    closed: bool = False


ViewCallback = Callable[[ViewChange], None]


@dataclass(frozen=True)
class CacheSnapshot:
    """Immutable point-in-time copy of every collection."""

    transactions: tuple[Transaction, ...] = ()
    budgets: tuple[Budget, ...] = ()
    savings_goals: tuple[SavingsGoal, ...] = ()

    def goal(self, goal_id: int) -> Optional[SavingsGoal]:
        return next((g for g in self.savings_goals if g.id == goal_id), None)

    def budget(self, budget_id: int) -> Optional[Budget]:
        return next((b for b in self.budgets if b.id == budget_id), None)

    def transactions_for_goal(self, goal_id: int) -> tuple[Transaction, ...]:
        return tuple(t for t in self.transactions if t.saving_goal_id == goal_id)

    def transactions_for_budget(self, budget_id: int) -> tuple[Transaction, ...]:
        return tuple(t for t in self.transactions if t.budget_id == budget_id)


class UnknownViewError(KeyError):
    """Raised when reading a view that was never registered."""
    pass


class EntityCache:
    """
    Id-indexed entity store with derived, subscribable views.

    Usage:
        cache = EntityCache()
        cache.load(CollectionType.SAVINGS_GOALS, goals)
        cache.register_view(views.goal_detail(7))
        unsubscribe = cache.subscribe("savings_goals:detail:7", on_change)
    """

    def __init__(self):
        self._collections: dict[CollectionType, dict[int, LedgerEntity]] = {
            collection: {} for collection in CollectionType
        }
        self._views: dict[str, ViewSpec] = {}
        self._materialized: dict[str, tuple] = {}
        self._subscribers: dict[str, list[ViewCallback]] = {}
        self._dirty: set[str] = set()
        self._batch_depth = 0
        self._next_provisional_id = -1

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, collection: CollectionType, entity_id: int) -> Optional[LedgerEntity]:
        return self._collections[collection].get(entity_id)

    def get_by_key(self, key: EntityKey) -> Optional[LedgerEntity]:
        return self.get(key.collection, key.id)

    def all(self, collection: CollectionType) -> tuple:
        return tuple(self._collections[collection].values())

    def where(self, collection: CollectionType, predicate: Predicate) -> list:
        return [e for e in self._collections[collection].values() if predicate(e)]

    def get_view(self, view_key: str) -> tuple:
        """Current materialized list for a registered view."""
        spec = self._views.get(view_key)
        if spec is None:
            raise UnknownViewError(view_key)
        if view_key in self._dirty:
            # Inside a batch: read fresh without consuming the pending change
            return spec.project(self._collections[spec.collection].values())
        return self._materialized[view_key]

    def get_record(self, view_key: str) -> Optional[LedgerEntity]:
        entities = self.get_view(view_key)
        return entities[0] if entities else None

    def has_view(self, view_key: str) -> bool:
        return view_key in self._views

    def snapshot(self) -> CacheSnapshot:
        return CacheSnapshot(
            transactions=self.all(CollectionType.TRANSACTIONS),
            budgets=self.all(CollectionType.BUDGETS),
            savings_goals=self.all(CollectionType.SAVINGS_GOALS),
        )

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def load(self, collection: CollectionType, entities: Any) -> None:
        """Replace a whole collection (initial population from the service)."""
        index = self._collections[collection]
        with self.batch():
            index.clear()
            for entity in entities:
                self._check_collection(collection, entity)
                index[entity.id] = entity
            self._dirty.update(
                key for key, spec in self._views.items() if spec.collection == collection
            )

    def upsert(self, collection: CollectionType, entity: LedgerEntity) -> None:
        """Insert or replace by id."""
        self._check_collection(collection, entity)
        index = self._collections[collection]
        before = index.get(entity.id)
        index[entity.id] = entity
        self._touch(collection, before, entity)

    def remove_by_id(self, collection: CollectionType, entity_id: int) -> Optional[LedgerEntity]:
        """Remove from the index, and so from every view. Returns what was removed."""
        before = self._collections[collection].pop(entity_id, None)
        if before is not None:
            self._touch(collection, before, None)
        return before

    def patch_where(
        self,
        collection: CollectionType,
        predicate: Predicate,
        patch_fn: Callable[[Any], Any],
    ) -> list:
        """
        Apply a functional patch to every matching entity.

        `patch_fn` returns the replacement entity; ids must not change.
        Returns the patched entities.
        """
        patched = []
        with self.batch():
            for entity in self.where(collection, predicate):
                replacement = patch_fn(entity)
                if replacement.id != entity.id:
                    raise ValueError("patch_where cannot change an entity id")
                self.upsert(collection, replacement)
                patched.append(replacement)
        return patched

    def allocate_provisional_id(self) -> int:
        """Negative ids never collide with server ids."""
        provisional_id = self._next_provisional_id
        self._next_provisional_id -= 1
        return provisional_id

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Defer view notifications until the outermost batch exits."""
        self._batch_depth += 1
        try:
            yield
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0:
                self._flush()

    # -------------------------------------------------------------------------
    # Views and subscriptions
    # -------------------------------------------------------------------------

    def register_view(self, spec: ViewSpec) -> ViewSpec:
        self._views[spec.key] = spec
        self._materialized[spec.key] = spec.project(
            self._collections[spec.collection].values()
        )
        self._dirty.discard(spec.key)
        return spec

    def drop_view(self, view_key: str) -> None:
        self._views.pop(view_key, None)
        self._materialized.pop(view_key, None)
        self._subscribers.pop(view_key, None)
        self._dirty.discard(view_key)

    def subscribe(self, view_key: str, callback: ViewCallback) -> Callable[[], None]:
        """
        Register a callback for changes to one view.

        Returns a function that removes the subscription.
        """
        if view_key not in self._views:
            raise UnknownViewError(view_key)
        callbacks = self._subscribers.setdefault(view_key, [])
        callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers.get(view_key, []):
                self._subscribers[view_key].remove(callback)

        return unsubscribe

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    @staticmethod
    def _check_collection(collection: CollectionType, entity: LedgerEntity) -> None:
        actual = collection_of(entity)
        if actual != collection:
            raise TypeError(
                f"{type(entity).__name__} belongs to {actual.value}, not {collection.value}"
            )

    def _touch(
        self,
        collection: CollectionType,
        before: Optional[LedgerEntity],
        after: Optional[LedgerEntity],
    ) -> None:
        for key, spec in self._views.items():
            if spec.collection != collection:
                continue
            if (before is not None and spec.contains(before)) or (
                after is not None and spec.contains(after)
            ):
                self._dirty.add(key)
        if self._batch_depth == 0:
            self._flush()

    def _flush(self) -> None:
        dirty, self._dirty = self._dirty, set()
        for key in sorted(dirty):
            spec = self._views.get(key)
            if spec is None:
                continue
            previous = self._materialized.get(key, ())
            current = spec.project(self._collections[spec.collection].values())
            self._materialized[key] = current
            if current == previous:
                continue
            change = ViewChange(
                view_key=key,
                entities=current,
                closed=spec.record and bool(previous) and not current,
            )
            self._notify(change)

    def _notify(self, change: ViewChange) -> None:
        for callback in list(self._subscribers.get(change.view_key, [])):
            try:
                callback(change)
            except Exception as e:
                # A broken subscriber must not abort the write
                logger.error(
                    "view_subscriber_failed",
                    view_key=change.view_key,
                    error=str(e),
                )
