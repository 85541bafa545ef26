import fnmatch
import typing as t

from loguru import logger

from entitystore import fields
from entitystore.errors import EmptyKeyError, NotFoundError
from entitystore.keys import match_pattern, strip_prefix
from entitystore.store.base import BaseEntityStore, Entity, EntityT


class InMemoryEntityStore(BaseEntityStore):
    """
    A simple in-memory DAO for :class:`~entitystore.store.base.Entity` models. Useful for testing or other lightweight
    needs. Entities are kept as flat ``field -> str`` maps, exactly as a Redis hash would hold them, so the encoding
    behaves the same as with :class:`~entitystore.store.redis.RedisEntityStore`.
    """

    def __init__(self, namespace: str = "", *, read_only=False, **kwargs):
        super().__init__(namespace, read_only=read_only, **kwargs)
        # Hashes in the db can be resolved via `self._db[storage_key]`.
        self._db: t.Dict[str, t.Dict[str, str]] = {}

    def write(self, record: Entity):
        self.assert_can_edit()
        key = self.ensure_key(record)
        self._hset(key, fields.encode(record))
        logger.debug("wrote entity {}", key)

    def write_multiple(self, records: t.Sequence[Entity]):
        self.assert_can_edit()
        self.check_sequence(records, same_type=False)
        for record in records:
            self.ensure_key(record)
        batch = [(self.key_of(record), fields.encode(record)) for record in records]
        for key, values in batch:
            self._hset(key, values)
        logger.debug("wrote {} entities", len(batch))

    def read(self, record: EntityT) -> EntityT:
        if not record.get_key():
            raise EmptyKeyError()
        key = self.key_of(record)
        values = self._db.get(key)
        if not values:
            raise NotFoundError(keys=[key])
        return fields.decode(values, record)

    def read_multiple(self, records: t.Sequence[EntityT]) -> t.Sequence[EntityT]:
        self.check_sequence(records)
        if any(not record.get_key() for record in records):
            raise EmptyKeyError()
        missing = []
        for record in records:
            key = self.key_of(record)
            values = self._db.get(key)
            if values:
                fields.decode(values, record)
            else:
                missing.append(key)
        if missing:
            logger.warning("{} of {} entities were not found", len(missing), len(records))
            raise NotFoundError(f"store: {len(missing)} keys not found", keys=missing)
        return records

    def delete(self, record: Entity):
        self.assert_can_edit()
        if not record.get_key():
            raise EmptyKeyError()
        key = self.key_of(record)
        if self._db.pop(key, None) is None:
            raise NotFoundError(keys=[key])

    def delete_multiple(self, records: t.Sequence[Entity]) -> int:
        self.assert_can_edit()
        keys = list(dict.fromkeys(self.key_of(record) for record in records if record.get_key()))
        missing = [key for key in keys if self._db.pop(key, None) is None]
        num_deleted = len(keys) - len(missing)
        if missing:
            logger.warning("deleted {} of {} entities", num_deleted, len(keys))
            raise NotFoundError(
                f"store: deleted {num_deleted} of {len(keys)} keys",
                keys=missing,
                deleted=num_deleted,
                requested=len(keys),
            )
        return num_deleted

    def list(self, entity_cls: t.Type[EntityT]) -> t.List[EntityT]:
        self.check_entity_class(entity_cls)
        prefix = self.prefix_of(entity_cls)
        # Same glob semantics as Redis' `SCAN ... MATCH`.
        pattern = _to_fnmatch(match_pattern(self.namespace, entity_cls.type_name()))
        items = []
        for key in self._db:
            if fnmatch.fnmatchcase(key, pattern):
                item = entity_cls.zero()
                item.set_key(strip_prefix(key, prefix))
                items.append(item)
        return items

    def _hset(self, key: str, values: t.Mapping[str, fields.EncodedValue]):
        hash_ = self._db.setdefault(key, {})
        for field, value in values.items():
            # Redis writes floats with `repr`, and everything else with `str`.
            hash_[field] = repr(value) if isinstance(value, float) else str(value)


def _to_fnmatch(pattern: str) -> str:
    """Translates a Redis glob, which escapes with backslashes, into an :mod:`fnmatch` pattern, which uses brackets."""
    out, escaped = [], False
    for char in pattern:
        if escaped:
            out.append(f"[{char}]")
            escaped = False
        elif char == "\\":
            escaped = True
        else:
            out.append(char)
    return "".join(out)
