"""
Core interfaces for aliasgraph module trees.

This module defines the pieces every transform agrees on:

- ``ModuleBase``: the marker base class of every module node
- ``FieldKind``: the closed set of field kinds a transform can meet
- ``classify_field``: maps a runtime value onto a ``FieldKind``
- ``resolve_dtype``: maps a type tag (dtype, short name, legacy tensor
  type name) onto a ``torch.dtype``

Transforms dispatch on ``FieldKind`` rather than sprinkling ``isinstance``
checks, so adding a new kind of field means touching exactly one place.

Example:
    >>> classify_field(torch.zeros(3))
    <FieldKind.TENSOR: 'tensor'>
    >>> classify_field([torch.zeros(3), 4])
    <FieldKind.RECORD: 'record'>
    >>> resolve_dtype('torch.DoubleTensor')
    torch.float64
"""

from enum import Enum
from typing import Any, Dict, Union

import torch
from torch import Tensor

from .errors import UnsupportedConversion
from .identity import IdentityMap, RecursionGuard


DTypeLike = Union[torch.dtype, str]


# ============================================================================
# MODULE MARKER
# ============================================================================


class ModuleBase:
    """
    Marker base class for module nodes.

    Concrete behaviour lives in ``aliasgraph.core.module.Module``; this class
    only exists so the transforms can recognise modules without importing
    the module implementation (which itself imports the transforms).
    """

    parameter_names = ('weight', 'bias')
    grad_parameter_names = ('grad_weight', 'grad_bias')


# ============================================================================
# FIELD KINDS
# ============================================================================


class FieldKind(Enum):
    """
    Kinds of values found in module fields.

    Attributes:
        TENSOR: A ``torch.Tensor`` (possibly aliasing other tensors)
        MODULE: A nested module node
        RECORD: A plain container (``list``, ``tuple`` or ``dict``)
        SCALAR: Anything else, copied or passed through as-is
    """
    TENSOR = "tensor"
    MODULE = "module"
    RECORD = "record"
    SCALAR = "scalar"


RECORD_TYPES = (list, tuple, dict)


def classify_field(value: Any) -> FieldKind:
    """Return the ``FieldKind`` of ``value``."""
    if isinstance(value, Tensor):
        return FieldKind.TENSOR
    if isinstance(value, ModuleBase):
        return FieldKind.MODULE
    # namedtuples and other tuple subclasses are treated as opaque scalars
    if type(value) in RECORD_TYPES:
        return FieldKind.RECORD
    return FieldKind.SCALAR


CHILDREN_FIELD = 'modules'


def module_fields(node: ModuleBase) -> Dict[str, Any]:
    """The open field set of ``node`` (its instance attributes)."""
    return vars(node)


def iter_children(node: ModuleBase):
    """
    Yield the direct child modules of ``node``.

    Children are the entries of the ``modules`` list (container nodes) first,
    in order, followed by module-valued fields in attribute order.
    """
    children = module_fields(node).get(CHILDREN_FIELD)
    if isinstance(children, list):
        yield from children
    for key, value in module_fields(node).items():
        if key != CHILDREN_FIELD and isinstance(value, ModuleBase):
            yield value


def walk_modules(root: ModuleBase):
    """
    Yield every module reachable from ``root`` exactly once, depth-first.

    Raises:
        CycleDetected: If a module is reachable from itself
    """
    visited = IdentityMap()
    guard = RecursionGuard()

    def visit(node):
        with guard.enter(node):
            if node in visited:
                return
            visited[node] = True
            yield node
            for child in iter_children(node):
                yield from visit(child)

    yield from visit(root)


def record_items(record):
    """Iterate ``(key, value)`` pairs of a list, tuple or dict."""
    if isinstance(record, dict):
        return record.items()
    return enumerate(record)


def rebuild_record(record, values: Dict[Any, Any]):
    """Build a record of the same type as ``record`` from ``key -> value``."""
    if isinstance(record, dict):
        return {key: values[key] for key in record}
    items = [values[i] for i in range(len(record))]
    return tuple(items) if isinstance(record, tuple) else items


# ============================================================================
# TYPE TAGS
# ============================================================================


_DTYPE_ALIASES: Dict[str, torch.dtype] = {
    'float': torch.float32,
    'double': torch.float64,
    'half': torch.float16,
    'bfloat16': torch.bfloat16,
    'byte': torch.uint8,
    'char': torch.int8,
    'short': torch.int16,
    'int': torch.int32,
    'long': torch.int64,
    'bool': torch.bool,
    # legacy tensor type names
    'torch.FloatTensor': torch.float32,
    'torch.DoubleTensor': torch.float64,
    'torch.HalfTensor': torch.float16,
    'torch.BFloat16Tensor': torch.bfloat16,
    'torch.ByteTensor': torch.uint8,
    'torch.CharTensor': torch.int8,
    'torch.ShortTensor': torch.int16,
    'torch.IntTensor': torch.int32,
    'torch.LongTensor': torch.int64,
    'torch.BoolTensor': torch.bool,
}


def resolve_dtype(type_tag: DTypeLike) -> torch.dtype:
    """
    Resolve a type tag to a ``torch.dtype``.

    Args:
        type_tag: A ``torch.dtype``, a short name (``'float'``), a dtype
            name (``'float32'`` or ``'torch.float32'``) or a legacy tensor
            type name (``'torch.FloatTensor'``)

    Returns:
        The matching ``torch.dtype``

    Raises:
        UnsupportedConversion: If the tag names no known dtype
    """
    if isinstance(type_tag, torch.dtype):
        return type_tag

    if isinstance(type_tag, str):
        if type_tag in _DTYPE_ALIASES:
            return _DTYPE_ALIASES[type_tag]
        name = type_tag[len('torch.'):] if type_tag.startswith('torch.') else type_tag
        candidate = getattr(torch, name, None)
        if isinstance(candidate, torch.dtype):
            return candidate

    raise UnsupportedConversion(
        f"Cannot convert to type {type_tag!r}. "
        f"Expected a torch.dtype or one of: {sorted(_DTYPE_ALIASES)}"
    )


def dtype_name(dtype: torch.dtype) -> str:
    """Short printable name of a dtype (``torch.float32`` -> ``'float32'``)."""
    return str(dtype).replace('torch.', '')
