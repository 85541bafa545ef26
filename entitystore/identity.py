import typing as t
from uuid import uuid4


KeyAllocator = t.Callable[[], str]
"""Any zero-argument callable returning a new, globally unique entity key."""


def new_key() -> str:
    """Returns a new random UUID4 in its canonical 36 character text form."""
    return str(uuid4())
