"""
Optimistic Mutation Coordinator

Applies speculative patches to the entity cache ahead of server
confirmation, then either commits (server values win) or rolls back to
the exact pre-mutation state.

Lifecycle of a token:
    begin()    -> snapshot affected entities, apply the patch, PENDING
    commit()   -> overwrite with authoritative entities, COMMITTED
    rollback() -> restore the snapshot, ROLLED_BACK (idempotent)

DESIGN DECISION: Mutations touching the same entity are queued. `begin`
waits while any of its keys is held by an unsettled token, so a second
contribution to a goal applies its patch on top of the first one's
settled value instead of racing it. Locks are taken in sorted key order,
which rules out deadlock between multi-key mutations. Turning
serialization off restores last-write-wins.

Every key a patch writes (including provisional inserts) must be listed
in `affected`, otherwise rollback cannot undo it.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Optional
from uuid import UUID, uuid4

import structlog

from ledger_recon.cache.entity_cache import EntityCache
from ledger_recon.models.ledger import EntityKey, LedgerEntity, collection_of


logger = structlog.get_logger(__name__)

Patch = Callable[[EntityCache], None]


class TokenState(str, Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class MutationSettledError(Exception):
    """Raised when committing a token that already settled."""

    def __init__(self, token: "MutationToken"):
        self.token = token
        super().__init__(
            f"Mutation {token.label} ({token.token_id}) is already {token.state.value}"
        )


@dataclass(eq=False)
class MutationToken:
    """Handle for one in-flight optimistic mutation."""

    label: str
    keys: tuple[EntityKey, ...]
    snapshot: dict[EntityKey, Optional[LedgerEntity]]
    correlation_id: Optional[UUID] = None
    token_id: UUID = field(default_factory=uuid4)
    state: TokenState = TokenState.PENDING
    _held: list[EntityKey] = field(default_factory=list, repr=False)

    @property
    def settled(self) -> bool:
        return self.state != TokenState.PENDING

    def key_labels(self) -> list[str]:
        return [f"{key.collection.value}:{key.id}" for key in self.keys]


class OptimisticMutationCoordinator:
    """
    Owns every write to the entity cache after initial population.

    Usage:
        token = await coordinator.begin([goal_key], patch, label="contribute")
        try:
            receipt = await service.create_transaction(payload)
        except BaseException:
            coordinator.rollback(token)
            raise
        coordinator.commit(token, server_result=[receipt.transaction])
    """

    def __init__(
        self,
        cache: EntityCache,
        serialize: bool = True,
    ):
        self._cache = cache
        self._serialize = serialize
        self._locks: dict[EntityKey, asyncio.Lock] = {}
        # Holders plus waiters per key; a lock is dropped when this hits zero
        self._lock_users: dict[EntityKey, int] = {}
        self._in_flight: dict[UUID, MutationToken] = {}

    @property
    def cache(self) -> EntityCache:
        return self._cache

    @property
    def serialize(self) -> bool:
        return self._serialize

    def in_flight(self) -> list[MutationToken]:
        return list(self._in_flight.values())

    def is_locked(self, key: EntityKey) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    async def begin(
        self,
        affected: Iterable[EntityKey],
        patch: Patch,
        label: str = "mutation",
        correlation_id: Optional[UUID] = None,
    ) -> MutationToken:
        """
        Snapshot `affected`, apply `patch` and return the pending token.

        Waits first for any unsettled token holding one of the keys. If the
        patch raises, the cache is restored and the error propagates.
        """
        keys = tuple(sorted(set(affected)))
        held = await self._acquire(keys)

        snapshot = {key: self._cache.get_by_key(key) for key in keys}
        token = MutationToken(
            label=label,
            keys=keys,
            snapshot=snapshot,
            correlation_id=correlation_id,
            _held=held,
        )

        try:
            with self._cache.batch():
                patch(self._cache)
        except BaseException:
            self._restore(token)
            token.state = TokenState.ROLLED_BACK
            self._release(token)
            logger.warning(
                "mutation_patch_failed",
                label=label,
                token_id=str(token.token_id),
            )
            raise

        self._in_flight[token.token_id] = token
        logger.info(
            "mutation_begun",
            label=label,
            token_id=str(token.token_id),
            keys=token.key_labels(),
            correlation_id=str(correlation_id) if correlation_id else None,
        )
        return token

    def commit(
        self,
        token: MutationToken,
        server_result: Iterable[LedgerEntity] = (),
        discard: Iterable[EntityKey] = (),
    ) -> None:
        """
        Settle a token successfully.

        Args:
            token: The pending token
            server_result: Authoritative entities; they overwrite whatever
                the speculative patch wrote
            discard: Keys to remove, e.g. provisional entities the server
                replaced with real ones
        """
        if token.settled:
            raise MutationSettledError(token)

        with self._cache.batch():
            for key in discard:
                self._cache.remove_by_id(key.collection, key.id)
            for entity in server_result:
                self._cache.upsert(collection_of(entity), entity)

        token.state = TokenState.COMMITTED
        self._settle(token)
        logger.info(
            "mutation_committed",
            label=token.label,
            token_id=str(token.token_id),
        )

    def rollback(self, token: MutationToken, reason: Optional[str] = None) -> bool:
        """
        Restore every snapshotted entity.

        Returns True if this call rolled back, False if the token had
        already settled (a second rollback is a no-op).
        """
        if token.settled:
            return False

        self._restore(token)
        token.state = TokenState.ROLLED_BACK
        self._settle(token)
        logger.warning(
            "mutation_rolled_back",
            label=token.label,
            token_id=str(token.token_id),
            keys=token.key_labels(),
            reason=reason,
        )
        return True

    async def _acquire(self, keys: tuple[EntityKey, ...]) -> list[EntityKey]:
        if not self._serialize:
            return []
        acquired: list[EntityKey] = []
        try:
            for key in keys:
                lock = self._locks.get(key)
                if lock is None:
                    lock = self._locks[key] = asyncio.Lock()
                elif lock.locked():
                    logger.debug("mutation_queued", key=f"{key.collection.value}:{key.id}")
                self._lock_users[key] = self._lock_users.get(key, 0) + 1
                try:
                    await lock.acquire()
                except BaseException:
                    self._drop_user(key)
                    raise
                acquired.append(key)
        except BaseException:
            for key in reversed(acquired):
                self._unlock(key)
            raise
        return acquired

    def _restore(self, token: MutationToken) -> None:
        with self._cache.batch():
            for key, entity in token.snapshot.items():
                if entity is None:
                    self._cache.remove_by_id(key.collection, key.id)
                else:
                    self._cache.upsert(key.collection, entity)

    def _settle(self, token: MutationToken) -> None:
        self._in_flight.pop(token.token_id, None)
        self._release(token)

    def _release(self, token: MutationToken) -> None:
        for key in reversed(token._held):
            self._unlock(key)
        token._held.clear()

    def _unlock(self, key: EntityKey) -> None:
        self._locks[key].release()
        self._drop_user(key)

    def _drop_user(self, key: EntityKey) -> None:
        remaining = self._lock_users[key] - 1
        if remaining:
            self._lock_users[key] = remaining
        else:
            del self._lock_users[key]
            del self._locks[key]
