"""
Storage identity index and identity-keyed bookkeeping.

Two tensors alias iff they sit on the same storage allocation. Everything
in aliasgraph that needs to preserve aliasing goes through ``storage_key``
and through one of the two call-scoped maps defined here:

- ``IdentityMap``: object-identity keyed mapping (node -> clone, node ->
  serial state, ...). Keys are pinned for the lifetime of the map so that
  ``id()`` values cannot be recycled while a call is running.
- ``CastMap``: original storage -> converted storage, used to keep aliasing
  groups intact when tensors are converted or copied.

Neither map is ever process-wide: every top-level transform creates its own
(or receives one explicitly from the caller).
"""

from contextlib import contextmanager
from typing import Any, Dict, Hashable, Iterator, MutableMapping, Optional, Tuple

import torch
from torch import Tensor

from .errors import CycleDetected


StorageKey = Tuple[torch.device, int]


# ============================================================================
# STORAGE IDENTITY
# ============================================================================


def storage_identity(storage: torch.UntypedStorage) -> Optional[StorageKey]:
    """Identity of an untyped storage, ``None`` if it holds no bytes."""
    if storage.nbytes() == 0:
        return None
    return (storage.device, storage.data_ptr())


def storage_key(tensor: Tensor) -> Optional[StorageKey]:
    """
    Hashable identity of the storage behind ``tensor``.

    Two tensors get equal keys iff they view the same allocation. Tensors
    without backing bytes (empty, meta, sparse) have no identity and are
    never grouped with anything.

    Example:
        >>> base = torch.zeros(8)
        >>> storage_key(base[:4]) == storage_key(base[4:])
        True
        >>> storage_key(torch.empty(0)) is None
        True
    """
    if tensor.layout != torch.strided or tensor.is_meta:
        return None
    return storage_identity(tensor.untyped_storage())


def shares_storage(a: Tensor, b: Tensor) -> bool:
    """True if ``a`` and ``b`` alias the same storage."""
    key = storage_key(a)
    return key is not None and key == storage_key(b)


def view_over(
    storage: torch.UntypedStorage,
    like: Tensor,
    dtype: Optional[torch.dtype] = None,
) -> Tensor:
    """
    Build a new tensor over ``storage`` with ``like``'s offset, size and stride.

    The result is a distinct tensor object, so it can be resized or re-viewed
    without disturbing ``like``, while the bytes stay shared.
    """
    dtype = like.dtype if dtype is None else dtype
    view = torch.empty(0, dtype=dtype, device=storage.device)
    view.set_(storage, like.storage_offset(), like.size(), like.stride())
    if like.requires_grad and (dtype.is_floating_point or dtype.is_complex):
        view.requires_grad_(True)
    return view


def whole_storage(tensor: Tensor) -> Tensor:
    """Flat 1-D tensor of ``tensor``'s dtype spanning its entire storage."""
    storage = tensor.untyped_storage()
    numel = storage.nbytes() // tensor.element_size()
    flat = torch.empty(0, dtype=tensor.dtype, device=storage.device)
    return flat.set_(storage, 0, (numel,), (1,))


# ============================================================================
# IDENTITY MAP
# ============================================================================


class IdentityMap(MutableMapping):
    """
    A mapping that hashes keys by their identity.

    Used for memoisation by object identity (a node reachable from two
    places maps to one result). Each entry keeps a reference to its key,
    so the key cannot be garbage collected and its ``id`` reused while the
    map is alive.

    Example:
        >>> memo = IdentityMap()
        >>> a, b = [1], [1]
        >>> memo[a] = 'first'
        >>> a in memo, b in memo
        (True, False)
    """

    def __init__(self):
        self._mapping: Dict[int, Tuple[Any, Any]] = {}

    def get(self, key: Any, default: Any = None) -> Any:
        return self._mapping.get(id(key), (None, default))[1]

    def __getitem__(self, key: Any) -> Any:
        return self._mapping[id(key)][1]

    def __setitem__(self, key: Any, value: Any):
        self._mapping[id(key)] = (key, value)

    def __delitem__(self, key: Any):
        del self._mapping[id(key)]

    def __contains__(self, key: Any) -> bool:
        return id(key) in self._mapping

    def __len__(self) -> int:
        return len(self._mapping)

    def __iter__(self) -> Iterator[Any]:
        for key, _ in self._mapping.values():
            yield key

    def __repr__(self) -> str:
        return f"IdentityMap({len(self)} entries)"


class RecursionGuard:
    """
    Tracks the nodes currently being walked to reject reference cycles.

    Memoisation alone is not enough: a node is memoised only once its result
    is complete, so a cycle would re-enter it forever.

    Example:
        >>> guard = RecursionGuard()
        >>> with guard.enter(node):
        ...     for child in children:
        ...         with guard.enter(child):
        ...             ...
    """

    def __init__(self):
        self._active = IdentityMap()

    @contextmanager
    def enter(self, node: Any):
        if node in self._active:
            raise CycleDetected(
                f"{type(node).__name__} at 0x{id(node):x} is reachable from itself; "
                f"module trees must be acyclic"
            )
        self._active[node] = True
        try:
            yield node
        finally:
            del self._active[node]


# ============================================================================
# CAST MAP
# ============================================================================


class CastMap:
    """
    Call-scoped map from original storage identity to converted storage.

    Entries pin both the source and the converted storage. Every converted
    storage is also registered under its own identity, so a tensor that was
    already converted through this map resolves to its own storage instead
    of being converted a second time.

    Args:
        copy: If True, conversion always allocates new storage even when the
            dtype does not change (used for detached snapshots)

    Example:
        >>> cast_map = CastMap()
        >>> model.shared_type(torch.float64, cast_map)
        >>> model.shared_type(torch.float64, cast_map)  # no reallocation
    """

    def __init__(self, copy: bool = False):
        self.copy = copy
        self._entries: Dict[Hashable, Tuple[torch.UntypedStorage, torch.UntypedStorage, torch.dtype]] = {}

    def lookup(self, key: Hashable, dtype: torch.dtype) -> Optional[torch.UntypedStorage]:
        """Converted storage for ``key`` if it was converted to ``dtype``."""
        entry = self._entries.get(key)
        if entry is None or entry[2] != dtype:
            return None
        return entry[1]

    def record(
        self,
        key: Hashable,
        source: torch.UntypedStorage,
        converted: torch.UntypedStorage,
        dtype: torch.dtype,
    ) -> None:
        """Remember that ``source`` (identified by ``key``) became ``converted``."""
        self._entries[key] = (source, converted, dtype)
        converted_key = storage_identity(converted)
        if converted_key is not None and converted_key != key:
            self._entries[converted_key] = (converted, converted, dtype)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return f"CastMap({len(self)} storages, copy={self.copy})"
