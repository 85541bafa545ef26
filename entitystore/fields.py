"""
Converts entities to and from the flat ``field -> value`` mapping they are stored as. Which fields get mapped, and how,
is derived once per entity class from its declared pydantic fields: each field gets a :class:`FieldSpec` with one of a
closed set of :class:`FieldKind` values. The encoding rules per kind are:

- ``STRING``: the string itself.
- ``INT`` (signed integers): decimal text, e.g. ``"-12"``.
- ``UINT`` (unsigned integers): the native ``int``, passed as-is to the store client.
- ``FLOAT``: the native ``float``, which the store client writes losslessly.
- ``BOOL``: ``"1"`` or ``"0"``.

The signed/unsigned asymmetry is part of the stored format and is kept on purpose. Fields of any other kind (nested
models, lists, dicts, optionals, ...) can't be mapped, and encoding an entity that has one raises a
:class:`~entitystore.errors.ConversionError`.

Unsigned and fixed-width fields are declared with the aliases in this module, e.g.

>>> class Hacker(Entity):
...     id: str = ""
...     name: str = ""
...     birthyear: Int16 = 0
...     followers: UInt = 0

Numpy scalar annotations (``np.int32``, ``np.uint64``, ``np.float32``, ``np.bool_``, ...) are also supported; their
values are decoded back into the annotated numpy type.
"""
import typing as t
from enum import Enum
from functools import lru_cache

import numpy as np
from pydantic import AfterValidator, BaseModel, Field

from entitystore.errors import ConversionError


class FieldKind(Enum):
    STRING = "string"
    INT = "int"
    UINT = "uint"
    FLOAT = "float"
    BOOL = "bool"


def _int_alias(dtype: t.Type[np.integer], kind: FieldKind):
    info = np.iinfo(dtype)
    return t.Annotated[int, Field(ge=int(info.min), le=int(info.max)), kind]


Int8 = _int_alias(np.int8, FieldKind.INT)
Int16 = _int_alias(np.int16, FieldKind.INT)
Int32 = _int_alias(np.int32, FieldKind.INT)
Int64 = _int_alias(np.int64, FieldKind.INT)
UInt = t.Annotated[int, Field(ge=0), FieldKind.UINT]
UInt8 = _int_alias(np.uint8, FieldKind.UINT)
UInt16 = _int_alias(np.uint16, FieldKind.UINT)
UInt32 = _int_alias(np.uint32, FieldKind.UINT)
UInt64 = _int_alias(np.uint64, FieldKind.UINT)
# Rounded to single precision on construction, so the stored value decodes back to exactly the same number.
Float32 = t.Annotated[float, AfterValidator(lambda v: float(np.float32(v))), FieldKind.FLOAT]
Float64 = t.Annotated[float, FieldKind.FLOAT]

_ZERO_VALUES = {
    FieldKind.STRING: "",
    FieldKind.INT: 0,
    FieldKind.UINT: 0,
    FieldKind.FLOAT: 0.0,
    FieldKind.BOOL: False,
}

# Same spellings Go's `strconv.ParseBool` accepts, which is what older writers of the format used.
_BOOL_TEXT = {
    "1": True,
    "t": True,
    "T": True,
    "true": True,
    "TRUE": True,
    "True": True,
    "0": False,
    "f": False,
    "F": False,
    "false": False,
    "FALSE": False,
    "False": False,
}

EncodedValue = t.Union[str, int, float]


class FieldSpec(t.NamedTuple):
    """How one declared field of an entity class is mapped. ``kind`` is ``None`` when the field can't be mapped."""

    name: str
    kind: t.Optional[FieldKind]
    annotation: t.Any

    @property
    def kind_name(self) -> str:
        if self.kind is not None:
            return self.kind.value
        return getattr(self.annotation, "__name__", repr(self.annotation))


def kind_of(annotation: t.Any, metadata: t.Sequence[t.Any] = ()) -> t.Optional[FieldKind]:
    """
    Derives the :class:`FieldKind` of a field from its type ``annotation``. An explicit :class:`FieldKind` in the
    field's ``Annotated`` ``metadata`` takes precedence.
    """
    for item in metadata:
        if isinstance(item, FieldKind):
            return item
    if t.get_origin(annotation) is not None or not isinstance(annotation, type):
        return None
    # `bool` is a subclass of `int`, so it has to be checked first.
    if issubclass(annotation, (bool, np.bool_)):
        return FieldKind.BOOL
    if issubclass(annotation, str):
        return FieldKind.STRING
    if issubclass(annotation, np.unsignedinteger):
        return FieldKind.UINT
    if issubclass(annotation, (int, np.signedinteger)):
        return FieldKind.INT
    if issubclass(annotation, (float, np.floating)):
        return FieldKind.FLOAT
    return None


@lru_cache(maxsize=None)
def field_specs(model_cls: t.Type[BaseModel]) -> t.Tuple[FieldSpec, ...]:
    """
    The mapping specs of every declared field of ``model_cls``, in declaration order. Private attributes and class
    variables aren't pydantic fields, so they are never mapped.
    """
    return tuple(
        FieldSpec(name, kind_of(info.annotation, info.metadata), info.annotation)
        for name, info in model_cls.model_fields.items()
    )


def encode(record: BaseModel) -> t.Dict[str, EncodedValue]:
    """
    Encodes every declared field of ``record`` into a flat ``field -> value`` dict. Raises a
    :class:`~entitystore.errors.ConversionError` on the first field that can't be encoded, in which case nothing is
    returned.
    """
    return {spec.name: encode_value(spec, getattr(record, spec.name)) for spec in field_specs(type(record))}


def encode_value(spec: FieldSpec, value: t.Any) -> EncodedValue:
    if spec.kind is FieldKind.STRING and isinstance(value, str):
        return value
    if spec.kind is FieldKind.INT and _is_integer(value):
        return str(int(value))
    if spec.kind is FieldKind.UINT and _is_integer(value) and int(value) >= 0:
        return int(value)
    if spec.kind is FieldKind.FLOAT and isinstance(value, (int, float, np.integer, np.floating)):
        return float(value)
    if spec.kind is FieldKind.BOOL and isinstance(value, (bool, np.bool_)):
        return "1" if value else "0"
    if spec.kind is None:
        raise ConversionError(f"store: cannot convert field {spec.name} of kind {spec.kind_name}")
    raise ConversionError(
        f"store: cannot convert field {spec.name} of kind {spec.kind_name} (value: {value!r}, type: "
        f"{type(value).__name__})"
    )


def decode(values: t.Mapping[t.Union[str, bytes], t.Any], record: BaseModel) -> BaseModel:
    """
    Decodes a flat ``field -> value`` mapping, as returned by the store, into ``record`` in place. Keys and values
    may be ``bytes`` or ``str``. Fields missing from ``values`` are left as they are, and entries which aren't declared
    fields of ``record`` are ignored. If any value fails to decode, ``record`` is left untouched.
    """
    specs = {spec.name: spec for spec in field_specs(type(record))}
    decoded = {}
    for raw_name, raw_value in values.items():
        try:
            name = decode_text(raw_name)
        except UnicodeDecodeError as exc:
            raise ConversionError(f"store: cannot parse field name {raw_name!r}") from exc
        spec = specs.get(name)
        if spec is not None:
            decoded[spec.name] = decode_value(spec, raw_value)
    for name, value in decoded.items():
        setattr(record, name, value)
    return record


def decode_value(spec: FieldSpec, raw: t.Any) -> t.Any:
    if spec.kind is None:
        raise ConversionError(f"store: cannot convert field {spec.name} of kind {spec.kind_name}")
    try:
        text = decode_text(raw)
        if spec.kind is FieldKind.STRING:
            return text
        if spec.kind is FieldKind.BOOL:
            return _cast(spec, _BOOL_TEXT[text])
        if spec.kind is FieldKind.FLOAT:
            return _cast(spec, float(text))
        number = int(text)
        if spec.kind is FieldKind.UINT and number < 0:
            raise ValueError("negative value for an unsigned field")
        return _cast(spec, number)
    except (KeyError, ValueError, OverflowError) as exc:
        raise ConversionError(f"store: cannot parse {raw!r} as {spec.kind.value} for field {spec.name}") from exc


def zero_values(model_cls: t.Type[BaseModel]) -> t.Dict[str, t.Any]:
    """
    A value for every declared field of ``model_cls``: the field's default when it has one, otherwise the zero value
    of its kind. Required fields of unmappable kinds get ``None``.
    """
    specs = {spec.name: spec for spec in field_specs(model_cls)}
    values = {}
    for name, info in model_cls.model_fields.items():
        if not info.is_required():
            values[name] = info.get_default(call_default_factory=True)
        elif specs[name].kind is not None:
            values[name] = _cast(specs[name], _ZERO_VALUES[specs[name].kind])
        else:
            values[name] = None
    return values


def _is_integer(value: t.Any) -> bool:
    return isinstance(value, (int, np.integer)) and not isinstance(value, (bool, np.bool_))


def _cast(spec: FieldSpec, value: t.Any) -> t.Any:
    """Converts a decoded python value to the field's numpy type, for numpy annotated fields."""
    if isinstance(spec.annotation, type) and issubclass(spec.annotation, np.generic):
        return spec.annotation(value)
    return value


def decode_text(raw: t.Any) -> str:
    if isinstance(raw, bytes):
        return raw.decode("utf-8")
    return str(raw)
