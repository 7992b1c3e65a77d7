"""
Aliasing-preserving element-type conversion.

Converting every tensor of a tree independently would give each tensor its
own new storage and silently untie shared weights. ``shared_type`` converts
through a ``CastMap`` keyed by original storage identity instead: the first
tensor met on a storage converts the *whole* storage, every later tensor on
the same storage becomes a new view (with its own offset/size/stride) over
the already-converted one.

The whole storage is converted, not just the first view, because other
views elsewhere in the tree may cover the rest of the buffer.
"""

from typing import Any, Optional
import logging

import torch
from torch import Tensor

from ..core.errors import UnsupportedConversion
from ..core.identity import CastMap, IdentityMap, RecursionGuard, storage_key, view_over, whole_storage
from ..core.interface import (
    CHILDREN_FIELD,
    DTypeLike,
    FieldKind,
    ModuleBase,
    classify_field,
    dtype_name,
    module_fields,
    resolve_dtype,
)

logger = logging.getLogger(__name__)


def _convert(tensor: Tensor, dtype: torch.dtype, copy: bool) -> Tensor:
    try:
        with torch.no_grad():
            return tensor.detach().to(dtype=dtype, copy=copy)
    except (RuntimeError, TypeError) as e:
        raise UnsupportedConversion(
            f"Cannot convert {dtype_name(tensor.dtype)} tensor of shape "
            f"{tuple(tensor.shape)} to {dtype_name(dtype)}: {e}"
        ) from e


def cast_tensor(tensor: Tensor, dtype: torch.dtype, cast_map: CastMap) -> Tensor:
    """
    Convert one tensor, reusing storages already converted through ``cast_map``.

    Args:
        tensor: Tensor to convert
        dtype: Target element type
        cast_map: Call-scoped storage map shared by every tensor of the call

    Returns:
        A new tensor of ``dtype`` with ``tensor``'s offset, size and stride

    Raises:
        UnsupportedConversion: If torch cannot convert to ``dtype``
    """
    key = storage_key(tensor)
    if key is None:
        # nothing to alias with
        return _convert(tensor, dtype, cast_map.copy)

    storage = cast_map.lookup(key, dtype)
    if storage is None:
        source = tensor.untyped_storage()
        storage = _convert(whole_storage(tensor), dtype, cast_map.copy).untyped_storage()
        cast_map.record(key, source, storage, dtype)
    return view_over(storage, tensor, dtype)


class SharedTypeCaster:
    """
    One ``shared_type`` call over a module tree.

    Modules are converted in place, once each, however many times they are
    reachable. Lists and dicts are converted in place so that every holder
    of the same container sees the converted tensors; tuples are rebuilt.
    """

    def __init__(self, dtype: torch.dtype, cast_map: CastMap):
        self.dtype = dtype
        self.cast_map = cast_map
        self.visited = IdentityMap()
        self.records = IdentityMap()
        self.guard = RecursionGuard()
        self.num_tensors = 0

    def cast_module(self, node: ModuleBase) -> ModuleBase:
        with self.guard.enter(node):
            if node in self.visited:
                return node
            self.visited[node] = True

            fields = module_fields(node)
            deferred = []
            for name in list(fields):
                value = fields[name]
                if name == CHILDREN_FIELD and isinstance(value, list):
                    continue
                if classify_field(value) is FieldKind.MODULE:
                    deferred.append(value)
                    continue
                fields[name] = self.cast_value(value)

            # children share the cast map so cross-module aliasing survives
            children = fields.get(CHILDREN_FIELD)
            if isinstance(children, list):
                for i, child in enumerate(children):
                    children[i] = self.cast_value(child)
            for child in deferred:
                self.cast_module(child)
            return node

    def cast_value(self, value: Any) -> Any:
        kind = classify_field(value)
        if kind is FieldKind.TENSOR:
            self.num_tensors += 1
            return cast_tensor(value, self.dtype, self.cast_map)
        if kind is FieldKind.MODULE:
            return self.cast_module(value)
        if kind is FieldKind.RECORD:
            return self.cast_record(value)
        return value

    def cast_record(self, record):
        if record in self.records:
            return self.records[record]
        if isinstance(record, tuple):
            # register before descending so a self-reference cannot loop
            self.records[record] = record
            converted = tuple(self.cast_value(item) for item in record)
            self.records[record] = converted
            return converted

        self.records[record] = record
        keys = list(record) if isinstance(record, dict) else range(len(record))
        for key in keys:
            record[key] = self.cast_value(record[key])
        return record


def shared_type(
    node: ModuleBase,
    dtype: DTypeLike,
    cast_map: Optional[CastMap] = None,
) -> ModuleBase:
    """
    Convert every tensor of a module tree to ``dtype``, in place.

    Tensors that aliased one storage before the call alias one (newly
    allocated) storage after it, across the whole tree.

    Args:
        node: Root of the tree to convert
        dtype: Target element type (``torch.dtype`` or type name)
        cast_map: Storage map to thread through the call. A fresh one is
            created when omitted; pass the same map to several calls to make
            them share converted storages.

    Returns:
        ``node`` itself

    Raises:
        UnsupportedConversion: If ``dtype`` is unknown or a tensor cannot be
            converted. The tree may be left partially converted.
        CycleDetected: If the tree contains a reference cycle

    Example:
        >>> base = torch.zeros(8)
        >>> a.weight, b.weight = base[:4], base[4:]
        >>> shared_type(net, torch.float64)
        >>> a.weight.untyped_storage().data_ptr() == b.weight.untyped_storage().data_ptr()
        True
    """
    target = resolve_dtype(dtype)
    if cast_map is None:
        cast_map = CastMap()

    caster = SharedTypeCaster(target, cast_map)
    caster.cast_module(node)
    logger.debug(
        f"Converted {caster.num_tensors} tensors in {len(caster.visited)} modules "
        f"to {dtype_name(target)} ({len(cast_map)} cast-map entries)"
    )
    return node
