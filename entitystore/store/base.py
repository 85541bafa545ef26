import typing as t
from abc import ABC, abstractmethod
from collections.abc import Sequence

from pydantic import BaseModel, ConfigDict

from entitystore import fields
from entitystore.identity import KeyAllocator, new_key
from entitystore.keys import build_key, key_prefix


class Entity(BaseModel, ABC):
    """
    A pydantic model that can be persisted by an entity store. Subclasses implement :meth:`get_key` and
    :meth:`set_key`, usually by reading and writing one of their own string fields:

    >>> class Hacker(Entity):
    ...     id: str = ""
    ...     name: str = ""
    ...     birthyear: int = 0
    ...
    ...     def get_key(self) -> str:
    ...         return self.id
    ...
    ...     def set_key(self, key: str):
    ...         self.id = key

    Only fields of the kinds listed in :mod:`entitystore.fields` can be persisted.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    entity_name: t.ClassVar[t.Optional[str]] = None
    """Overrides the type name used in storage keys. Defaults to the class's name."""

    @abstractmethod
    def get_key(self) -> str:
        """Returns the key this entity is saved under, or ``""`` if it doesn't have one yet."""
        pass

    @abstractmethod
    def set_key(self, key: str):
        """Sets the key this entity is saved under. Called by the store when it assigns a new key."""
        pass

    @classmethod
    def type_name(cls) -> str:
        return cls.entity_name or cls.__name__

    @classmethod
    def zero(cls):
        """Makes an instance with every field at its default, or at its kind's zero value if it has no default."""
        return cls.model_construct(**fields.zero_values(cls))


EntityT = t.TypeVar("EntityT", bound=Entity)  # used to help static type checking tools


class BaseEntityStore(ABC):
    """
    Abstract base class for a Data Access Object (DAO) which saves :class:`Entity` models of any type to a hash-based
    key-value store. Each entity is saved under the key ``[namespace:]TypeName:key``.

    Parameters
    ----------
    namespace : str, optional
        Prefixed to every key this store reads or writes, isolating its entities from those of other namespaces.
    read_only : bool
        Whether the store is read only. Inheriting classes must call :meth:`assert_can_edit` in each editing method in
        order for read only checks to be enforced.
    allocate_key : callable, optional
        Makes a new unique key for entities written without one. Defaults to a random UUID4.
    """

    def __init__(self, namespace: str = "", *, read_only: bool = False, allocate_key: KeyAllocator = new_key):
        self.namespace = namespace
        self._read_only = read_only
        self._allocate_key = allocate_key

    @abstractmethod
    def write(self, record: Entity):
        """
        Saves ``record``, creating it or overwriting the fields it has. If ``record`` has no key, a new one is
        allocated and set on it first.
        """
        pass

    @abstractmethod
    def write_multiple(self, records: t.Sequence[Entity]):
        """
        Saves all of ``records`` in one batch. The records may be of different entity types. Every record is encoded
        before anything is sent, so a record that can't be encoded fails the whole batch without touching the others.
        """
        pass

    @abstractmethod
    def read(self, record: EntityT) -> EntityT:
        """
        Populates ``record``'s fields from the store, using its key. Raises :class:`~entitystore.errors.EmptyKeyError`
        if ``record`` has no key, and :class:`~entitystore.errors.NotFoundError` if nothing is saved under it.
        """
        pass

    @abstractmethod
    def read_multiple(self, records: t.Sequence[EntityT]) -> t.Sequence[EntityT]:
        """
        Populates every record in ``records`` in a single round trip. Result ``i`` always goes to ``records[i]``.
        """
        pass

    @abstractmethod
    def delete(self, record: Entity):
        """Deletes ``record``, raising :class:`~entitystore.errors.NotFoundError` if it didn't exist."""
        pass

    @abstractmethod
    def delete_multiple(self, records: t.Sequence[Entity]) -> int:
        """
        Deletes every record in ``records`` that has a key, returning the number deleted. If some of them didn't exist,
        the rest are still deleted, and a :class:`~entitystore.errors.NotFoundError` is raised whose ``deleted``
        attribute holds the count.
        """
        pass

    @abstractmethod
    def list(self, entity_cls: t.Type[EntityT]) -> t.List[EntityT]:
        """
        Returns one instance of ``entity_cls`` per saved entity of that type, with only its key set. Use :meth:`read`
        or :meth:`read_multiple` to populate the other fields.
        """
        pass

    def assert_can_edit(self):
        """Raises an assertion error if this entity store is read only."""
        if self._read_only:
            raise AssertionError("entity store is read only")

    def key_of(self, record: Entity) -> str:
        """The storage key of ``record``. Raises :class:`~entitystore.errors.EmptyKeyError` if it has no key."""
        return build_key(self.namespace, record.type_name(), record.get_key())

    def prefix_of(self, entity_cls: t.Type[Entity]) -> str:
        return key_prefix(self.namespace, entity_cls.type_name())

    def ensure_key(self, record: Entity) -> str:
        """Allocates a key for ``record`` if it doesn't have one, and returns its storage key."""
        if not record.get_key():
            record.set_key(self._allocate_key())
        return self.key_of(record)

    @staticmethod
    def check_sequence(records: t.Any, same_type: bool = True) -> t.Sequence[Entity]:
        """
        Makes sure ``records`` is an ordered sequence of entities. Unless ``same_type`` is ``False``, they must also all
        have the same type.
        """
        if not isinstance(records, Sequence) or isinstance(records, (str, bytes)):
            raise TypeError(f"store: value must be a sequence of entities, got {type(records).__name__}")
        types = {type(record) for record in records}
        for type_ in types:
            if not issubclass(type_, Entity):
                raise TypeError(f"store: sequence must hold entities, got {type_.__name__}")
        if same_type and len(types) > 1:
            names = sorted(type_.__name__ for type_ in types)
            raise TypeError(f"store: sequence must hold a single entity type, got {names}")
        return records

    @staticmethod
    def check_entity_class(entity_cls: t.Any):
        if not (isinstance(entity_cls, type) and issubclass(entity_cls, Entity)):
            raise TypeError(f"store: value must be an entity class, got {entity_cls!r}")
