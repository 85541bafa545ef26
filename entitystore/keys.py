"""
Builds and parses the storage keys entities are saved under. A key has the form ``[namespace:]TypeName:id``, where the
namespace segment is only present when the store was configured with a namespace.
"""
import re

from entitystore.errors import EmptyKeyError, MalformedKeyError


SEPARATOR = ":"

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def key_prefix(namespace: str, type_name: str) -> str:
    """The ``[namespace:]TypeName:`` prefix shared by every key of ``type_name``."""
    if namespace:
        return namespace + SEPARATOR + type_name + SEPARATOR
    return type_name + SEPARATOR


def build_key(namespace: str, type_name: str, id_: str) -> str:
    if not id_:
        raise EmptyKeyError()
    return key_prefix(namespace, type_name) + id_


def strip_prefix(key: str, prefix: str) -> str:
    """
    Recovers an entity's id from its storage ``key``. Raises :class:`~entitystore.errors.MalformedKeyError` if ``key``
    does not start with ``prefix``, which means the scan filter let through a key it should not have.
    """
    if not key.startswith(prefix):
        raise MalformedKeyError(f"store: key {key!r} does not start with {prefix!r}")
    return key[len(prefix) :]


def escape_glob(text: str) -> str:
    """Escapes the characters Redis treats specially in ``MATCH`` glob patterns."""
    return _GLOB_SPECIAL.sub(r"\\\1", text)


def match_pattern(namespace: str, type_name: str) -> str:
    """The glob pattern matching every key of ``type_name``, and nothing else."""
    return escape_glob(key_prefix(namespace, type_name)) + "*"
