import os
import typing as t
from contextlib import contextmanager

from loguru import logger

from entitystore.utils import ImportExtraError


try:
    import redis
except ImportError:
    raise ImportExtraError("redis", __name__)

from entitystore import fields
from entitystore.cursor import ScanCursor
from entitystore.errors import EmptyKeyError, NotFoundError, TransportError
from entitystore.identity import KeyAllocator, new_key
from entitystore.keys import match_pattern, strip_prefix
from entitystore.store.base import BaseEntityStore, Entity, EntityT


MAX_ITEMS = 1024
"""Default number of keys to ask Redis for on each ``SCAN`` call."""

DEFAULT_REDIS_URL = "redis://127.0.0.1:6379/0"

REDIS_URL_ENV = "REDIS_URL"
"""Environment variable holding the connection URL, in the form ``redis://:password@hostname:port/db_number``."""


class RedisEntityStore(BaseEntityStore):
    """
    A Redis DAO for :class:`~entitystore.store.base.Entity` models. Each entity is saved as a Redis hash, with one hash
    field per model field. Every call borrows a single connection from the pool and hands it back when it returns,
    whether it succeeded or not. Failures of the Redis client are raised as
    :class:`~entitystore.errors.TransportError`, and are never retried.

    Parameters
    ----------
    connection_pool : redis.ConnectionPool, optional
        The pool to borrow connections from. Owned by the caller, and can be shared with other stores.
    url : str, optional
        Builds a new pool for this URL when ``connection_pool`` isn't given. If neither is given, the URL is read from
        the ``REDIS_URL`` environment variable, falling back to a local Redis on the default port.
    namespace : str, optional
        Prefixed to every key this store reads or writes.
    page_size : int, optional
        The ``COUNT`` hint sent with each ``SCAN`` call made by :meth:`list`.
    """

    def __init__(
        self,
        connection_pool: t.Optional["redis.ConnectionPool"] = None,
        *,
        url: t.Optional[str] = None,
        namespace: str = "",
        page_size: int = MAX_ITEMS,
        read_only=False,
        allocate_key: KeyAllocator = new_key,
    ):
        super().__init__(namespace, read_only=read_only, allocate_key=allocate_key)
        if connection_pool is not None and url is not None:
            raise ValueError("pass either a connection pool or a url, not both")
        if page_size < 1:
            raise ValueError(f"page_size must be positive, got {page_size}")
        if connection_pool is None:
            connection_pool = redis.ConnectionPool.from_url(url or os.getenv(REDIS_URL_ENV) or DEFAULT_REDIS_URL)
        self._pool = connection_pool
        # Holds no connection of its own, so pipelines made from it only borrow one when they execute.
        self._client = redis.Redis(connection_pool=connection_pool)
        self._page_size = page_size

    def write(self, record: Entity):
        self.assert_can_edit()
        key = self.ensure_key(record)
        values = fields.encode(record)
        with self._connection() as conn:
            for field, value in values.items():
                conn.hset(key, field, value)
        logger.debug("wrote {} fields to {}", len(values), key)

    def write_multiple(self, records: t.Sequence[Entity]):
        self.assert_can_edit()
        self.check_sequence(records, same_type=False)
        for record in records:
            self.ensure_key(record)
        # Encode everything up front, so a bad record can't leave the batch half written.
        batch = [(self.key_of(record), fields.encode(record)) for record in records]
        if not batch:
            return
        with self._pipeline(transaction=False) as pipe:
            for key, values in batch:
                for field, value in values.items():
                    pipe.hset(key, field, value)
            pipe.execute()
        logger.debug("wrote {} entities", len(batch))

    def read(self, record: EntityT) -> EntityT:
        if not record.get_key():
            raise EmptyKeyError()
        key = self.key_of(record)
        with self._connection() as conn:
            values = conn.hgetall(key)
        if not values:
            raise NotFoundError(keys=[key])
        return fields.decode(values, record)

    def read_multiple(self, records: t.Sequence[EntityT]) -> t.Sequence[EntityT]:
        self.check_sequence(records)
        if any(not record.get_key() for record in records):
            raise EmptyKeyError()
        if not records:
            return records
        keys = [self.key_of(record) for record in records]
        # A transaction pipeline queues every HGETALL between MULTI and EXEC, and sends them all in one round trip.
        with self._pipeline(transaction=True) as pipe:
            for key in keys:
                pipe.hgetall(key)
            replies = pipe.execute()
        missing = []
        for key, record, values in zip(keys, records, replies):
            if values:
                fields.decode(values, record)
            else:
                missing.append(key)
        if missing:
            logger.warning("{} of {} entities were not found", len(missing), len(records))
            raise NotFoundError(f"store: {len(missing)} keys not found", keys=missing)
        logger.debug("read {} entities", len(records))
        return records

    def delete(self, record: Entity):
        self.assert_can_edit()
        if not record.get_key():
            raise EmptyKeyError()
        key = self.key_of(record)
        with self._connection() as conn:
            num_deleted = conn.delete(key)
        if num_deleted == 0:
            raise NotFoundError(keys=[key])
        logger.debug("deleted {}", key)

    def delete_multiple(self, records: t.Sequence[Entity]) -> int:
        """
        Deletes every record in ``records`` that has a key with a single ``DEL``. Redis only replies with how many keys
        it removed, so on a partial delete the raised :class:`~entitystore.errors.NotFoundError` has ``deleted`` and
        ``requested`` set, but its ``keys`` are left empty.
        """
        self.assert_can_edit()
        # Entities without a key are skipped; they can't have been saved.
        keys = list(dict.fromkeys(self.key_of(record) for record in records if record.get_key()))
        if not keys:
            return 0
        with self._connection() as conn:
            num_deleted = conn.delete(*keys)
        if num_deleted < len(keys):
            logger.warning("deleted {} of {} entities", num_deleted, len(keys))
            raise NotFoundError(
                f"store: deleted {num_deleted} of {len(keys)} keys", deleted=num_deleted, requested=len(keys)
            )
        logger.debug("deleted {} entities", num_deleted)
        return num_deleted

    def list(self, entity_cls: t.Type[EntityT]) -> t.List[EntityT]:
        self.check_entity_class(entity_cls)
        prefix = self.prefix_of(entity_cls)
        keys = self._scan(match_pattern(self.namespace, entity_cls.type_name()))
        items = []
        for key in keys:
            item = entity_cls.zero()
            item.set_key(strip_prefix(key, prefix))
            items.append(item)
        logger.debug("listed {} {} entities", len(items), entity_cls.type_name())
        return items

    def _scan(self, pattern: str) -> t.List[str]:
        """
        Runs a full ``SCAN`` over the keyspace, returning every key matching ``pattern``. Redis may return a key on more
        than one page, so the keys are de-duplicated, keeping the order they were first seen in.
        """
        keys: t.Dict[str, None] = {}
        cursor = ScanCursor.start()
        with self._connection() as conn:
            while not cursor.done:
                token, page = conn.scan(cursor=cursor.request_token, match=pattern, count=self._page_size)
                cursor = cursor.advance(token)
                keys.update((fields.decode_text(key), None) for key in page)
        return list(keys)

    @contextmanager
    def _connection(self) -> t.Iterator["redis.Redis"]:
        """
        Borrows one connection from the pool for the duration of the block, and gives it back on exit. Any
        ``redis.RedisError`` raised inside the block is re-raised as a :class:`~entitystore.errors.TransportError`.
        """
        try:
            with redis.Redis(connection_pool=self._pool, single_connection_client=True) as conn:
                yield conn
        except redis.RedisError as exc:
            raise TransportError(f"store: {exc}") from exc

    @contextmanager
    def _pipeline(self, transaction: bool) -> t.Iterator["redis.client.Pipeline"]:
        """
        Opens a pipeline which borrows one connection from the pool when it executes, and gives it back on exit. Errors
        are translated the same way as in :meth:`_connection`.
        """
        try:
            with self._client.pipeline(transaction=transaction) as pipe:
                yield pipe
        except redis.RedisError as exc:
            raise TransportError(f"store: {exc}") from exc
