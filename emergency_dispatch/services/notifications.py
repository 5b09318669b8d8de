"""
Responder notification queue and requester update feed

Both are per-owner FIFO lists held by an injected storage backend. Entries are
kept as JSON strings so the in-memory and Redis backends behave the same way.
"""
import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, List, Optional, Union
from uuid import UUID

import redis.asyncio as redis
import structlog

from emergency_dispatch.core.config import settings
from emergency_dispatch.core.exceptions import ExternalDependencyError
from emergency_dispatch.core.redis import get_redis
from emergency_dispatch.models.dispatch import NotificationEntry, RequesterUpdate, utcnow

logger = structlog.get_logger()

OwnerId = Union[str, UUID]
Predicate = Callable[[str], bool]


class NotificationStorage(ABC):
    """Per-owner lists of serialized entries"""

    @abstractmethod
    async def append(
        self,
        owner_id: str,
        item: str,
        is_duplicate: Optional[Predicate] = None,
        max_length: Optional[int] = None
    ) -> bool:
        """
        Append an item to the owner's list

        The item is skipped when any stored item matches ``is_duplicate``.
        With ``max_length`` only the newest items are kept.

        Returns:
            True if the item was stored
        """

    @abstractmethod
    async def drain(self, owner_id: str) -> List[str]:
        """Return and delete the owner's list in one step"""

    @abstractmethod
    async def read(self, owner_id: str) -> List[str]:
        ...

    @abstractmethod
    async def clear(self, owner_id: str) -> int:
        """Delete the owner's list, returning how many items it held"""

    @abstractmethod
    async def remove_where(self, owner_id: str, predicate: Predicate) -> List[str]:
        """Remove and return the owner's items matching ``predicate``"""

    @abstractmethod
    async def owners(self) -> List[str]:
        ...


class InMemoryNotificationStorage(NotificationStorage):
    """Process-local storage guarded by an asyncio lock"""

    def __init__(self):
        self._lists: Dict[str, List[str]] = {}
        self._lock = asyncio.Lock()

    async def append(self, owner_id, item, is_duplicate=None, max_length=None) -> bool:
        async with self._lock:
            items = self._lists.setdefault(owner_id, [])
            if is_duplicate is not None and any(is_duplicate(existing) for existing in items):
                return False
            items.append(item)
            if max_length is not None and len(items) > max_length:
                del items[:len(items) - max_length]
            return True

    async def drain(self, owner_id) -> List[str]:
        async with self._lock:
            return self._lists.pop(owner_id, [])

    async def read(self, owner_id) -> List[str]:
        async with self._lock:
            return list(self._lists.get(owner_id, []))

    async def clear(self, owner_id) -> int:
        async with self._lock:
            return len(self._lists.pop(owner_id, []))

    async def remove_where(self, owner_id, predicate) -> List[str]:
        async with self._lock:
            items = self._lists.get(owner_id, [])
            removed = [item for item in items if predicate(item)]
            kept = [item for item in items if not predicate(item)]
            if kept:
                self._lists[owner_id] = kept
            else:
                self._lists.pop(owner_id, None)
            return removed

    async def owners(self) -> List[str]:
        async with self._lock:
            return [owner_id for owner_id, items in self._lists.items() if items]


class RedisNotificationStorage(NotificationStorage):
    """
    Redis list per owner, shared by every worker process

    Keys look like ``<prefix>:<namespace>:<owner_id>``. Read-check-write
    operations use WATCH/MULTI and retry when another client touched the key.
    """

    def __init__(self, client: redis.Redis, namespace: str, key_prefix: Optional[str] = None):
        self.redis = client
        self.namespace = namespace
        self.key_prefix = key_prefix or settings.REDIS_KEY_PREFIX

    def _key(self, owner_id: str) -> str:
        return f"{self.key_prefix}:{self.namespace}:{owner_id}"

    def _owner(self, key: str) -> str:
        return key.rsplit(":", 1)[-1]

    async def append(self, owner_id, item, is_duplicate=None, max_length=None) -> bool:
        key = self._key(owner_id)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        if is_duplicate is not None:
                            existing = await pipe.lrange(key, 0, -1)
                            if any(is_duplicate(stored) for stored in existing):
                                await pipe.unwatch()
                                return False
                        pipe.multi()
                        pipe.rpush(key, item)
                        if max_length is not None:
                            pipe.ltrim(key, -max_length, -1)
                        await pipe.execute()
                        return True
                    except redis.WatchError:
                        continue
        except redis.RedisError as e:
            self._raise(e, "append", owner_id)

    async def drain(self, owner_id) -> List[str]:
        key = self._key(owner_id)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.lrange(key, 0, -1)
                pipe.delete(key)
                items, _ = await pipe.execute()
            return list(items)
        except redis.RedisError as e:
            self._raise(e, "drain", owner_id)

    async def read(self, owner_id) -> List[str]:
        try:
            return list(await self.redis.lrange(self._key(owner_id), 0, -1))
        except redis.RedisError as e:
            self._raise(e, "read", owner_id)

    async def clear(self, owner_id) -> int:
        key = self._key(owner_id)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.llen(key)
                pipe.delete(key)
                count, _ = await pipe.execute()
            return int(count)
        except redis.RedisError as e:
            self._raise(e, "clear", owner_id)

    async def remove_where(self, owner_id, predicate) -> List[str]:
        key = self._key(owner_id)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        items = await pipe.lrange(key, 0, -1)
                        removed = [item for item in items if predicate(item)]
                        if not removed:
                            await pipe.unwatch()
                            return []
                        kept = [item for item in items if not predicate(item)]
                        pipe.multi()
                        pipe.delete(key)
                        if kept:
                            pipe.rpush(key, *kept)
                        await pipe.execute()
                        return removed
                    except redis.WatchError:
                        continue
        except redis.RedisError as e:
            self._raise(e, "remove_where", owner_id)

    async def owners(self) -> List[str]:
        try:
            return [self._owner(key) async for key in self.redis.scan_iter(match=self._key("*"))]
        except redis.RedisError as e:
            self._raise(e, "owners", None)

    def _raise(self, error: Exception, operation: str, owner_id: Optional[str]):
        logger.error(
            "notification_storage_failed",
            namespace=self.namespace,
            operation=operation,
            owner_id=owner_id,
            error=str(error)
        )
        raise ExternalDependencyError("Notification storage unavailable", dependency="redis") from error


def _same_request(request_id: UUID) -> Predicate:
    def matches(stored: str) -> bool:
        return NotificationEntry.model_validate_json(stored).request_id == request_id
    return matches


class NotificationQueue:
    """Assignment offers waiting for each responder to poll them"""

    def __init__(self, storage: NotificationStorage):
        self.storage = storage

    async def push(self, responder_id: OwnerId, entry: NotificationEntry) -> bool:
        """Queue an entry; a second offer of the same request is ignored"""
        stored = await self.storage.append(
            str(responder_id),
            entry.model_dump_json(),
            is_duplicate=_same_request(entry.request_id)
        )
        if stored:
            logger.info(
                "notification_queued",
                responder_id=str(responder_id),
                request_id=str(entry.request_id)
            )
        else:
            logger.debug(
                "notification_duplicate_ignored",
                responder_id=str(responder_id),
                request_id=str(entry.request_id)
            )
        return stored

    async def drain(self, responder_id: OwnerId) -> List[NotificationEntry]:
        """Return every queued entry and empty the queue"""
        items = await self.storage.drain(str(responder_id))
        return [NotificationEntry.model_validate_json(item) for item in items]

    async def peek(self, responder_id: OwnerId) -> List[NotificationEntry]:
        items = await self.storage.read(str(responder_id))
        return [NotificationEntry.model_validate_json(item) for item in items]

    async def clear(self, responder_id: OwnerId) -> int:
        return await self.storage.clear(str(responder_id))

    async def withdraw(self, responder_id: OwnerId, request_id: UUID) -> List[NotificationEntry]:
        """Remove undelivered offers of ``request_id`` from the responder's queue"""
        items = await self.storage.remove_where(str(responder_id), _same_request(request_id))
        if items:
            logger.info(
                "notification_withdrawn",
                responder_id=str(responder_id),
                request_id=str(request_id)
            )
        return [NotificationEntry.model_validate_json(item) for item in items]

    async def expire(self, now: Optional[datetime] = None) -> List[NotificationEntry]:
        """Remove and return entries whose response window has passed"""
        now = now or utcnow()

        def expired(stored: str) -> bool:
            return NotificationEntry.model_validate_json(stored).is_expired(now)

        removed = []
        for owner_id in await self.storage.owners():
            items = await self.storage.remove_where(owner_id, expired)
            removed.extend(NotificationEntry.model_validate_json(item) for item in items)
        return removed


class RequesterUpdateFeed:
    """Most recent dispatch events for each requester"""

    def __init__(self, storage: NotificationStorage, limit: Optional[int] = None):
        self.storage = storage
        self.limit = limit or settings.REQUESTER_UPDATE_LIMIT

    async def publish(self, requester_id: OwnerId, update: RequesterUpdate) -> None:
        await self.storage.append(str(requester_id), update.model_dump_json(), max_length=self.limit)

    async def drain(self, requester_id: OwnerId) -> List[RequesterUpdate]:
        items = await self.storage.drain(str(requester_id))
        return [RequesterUpdate.model_validate_json(item) for item in items]


def create_notification_storage(namespace: str, backend: Optional[str] = None) -> NotificationStorage:
    """Storage for ``namespace`` on the configured notification backend"""
    backend = backend or settings.NOTIFICATION_BACKEND
    if backend == "redis":
        return RedisNotificationStorage(get_redis(), namespace)
    if backend == "memory":
        return InMemoryNotificationStorage()
    raise ValueError(f"Unknown notification backend: {backend}")
