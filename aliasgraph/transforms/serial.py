"""
Serial-state extraction and reconstruction.

``get_serial_state`` turns a live module tree into plain nested data
(dicts, lists, tuples, tensors, scalars) suitable for ``torch.save``:

- a module reachable from several places yields ONE state object,
  referenced from every place (dedup by identity, also for plain records)
- fields named in the emptying policy are kept as empty placeholders of
  the same kind, so heavy buffers (outputs, gradients) are not persisted
- tensors are copied through a call-scoped ``CastMap``: the state owns its
  storages, aliasing between tensors is reproduced inside the state, and
  an optional element type is applied on the way
- every module state records its kind under ``'_typename'``

``from_serial_state`` goes the other way.
"""

from typing import Any, Dict, Iterable, Optional
import importlib
import logging

import torch
from torch import Tensor

from ..core.identity import CastMap, IdentityMap, RecursionGuard
from ..core.interface import (
    DTypeLike,
    FieldKind,
    ModuleBase,
    classify_field,
    module_fields,
    record_items,
    rebuild_record,
    resolve_dtype,
)
from ..core.registry import ModuleRegistry
from .cast import cast_tensor

logger = logging.getLogger(__name__)

TYPENAME_FIELD = '_typename'


def typename_of(node: ModuleBase) -> str:
    """Registered kind name of ``node``, or its import path if unregistered."""
    cls = type(node)
    name = ModuleRegistry.name_of(cls)
    if name is not None:
        return name
    return f"{cls.__module__}.{cls.__qualname__}"


def empty_like_field(value: Any, dtype: Optional[torch.dtype] = None) -> Any:
    """
    Empty placeholder of the same kind as ``value``.

    Containers become empty containers of the same type, tensors become
    zero-length tensors of the same dtype (or ``dtype``) and device, and
    anything else is returned unchanged.
    """
    kind = classify_field(value)
    if kind is FieldKind.TENSOR:
        return torch.empty(0, dtype=dtype or value.dtype, device=value.device)
    if kind is FieldKind.RECORD:
        return type(value)()
    return value


class SerialStateExtractor:
    """
    One ``get_serial_state`` call.

    Args:
        empty_fields: Field names to empty on every module, or None to use
            each module's own ``serial_empty`` policy
        dtype: Element type for every tensor in the state, or None to keep
            each tensor's type
        states: Identity memo shared with the caller (node/record -> state)
    """

    def __init__(
        self,
        empty_fields: Optional[Iterable[str]] = None,
        dtype: Optional[torch.dtype] = None,
        states: Optional[IdentityMap] = None,
    ):
        self.empty_fields = None if empty_fields is None else frozenset(empty_fields)
        self.dtype = dtype
        self.states = IdentityMap() if states is None else states
        self.cast_map = CastMap(copy=True)
        self.guard = RecursionGuard()

    def module_state(self, node: ModuleBase) -> Dict[str, Any]:
        with self.guard.enter(node):
            if node in self.states:
                return self.states[node]

            empty = self.empty_fields
            if empty is None:
                empty = frozenset(getattr(node, 'serial_empty', ()) or ())

            state: Dict[str, Any] = {}
            for name, value in module_fields(node).items():
                if name in empty:
                    state[name] = empty_like_field(value, self._target(value))
                else:
                    state[name] = self.value_state(value)
            state[TYPENAME_FIELD] = typename_of(node)
            self.states[node] = state
            return state

    def value_state(self, value: Any) -> Any:
        kind = classify_field(value)
        if kind is FieldKind.MODULE:
            return self.module_state(value)
        if kind is FieldKind.TENSOR:
            return cast_tensor(value, self._target(value), self.cast_map)
        if kind is FieldKind.RECORD:
            return self.record_state(value)
        return value

    def record_state(self, record):
        if record in self.states:
            return self.states[record]
        with self.guard.enter(record):
            values = {key: self.value_state(item) for key, item in record_items(record)}
        state = rebuild_record(record, values)
        self.states[record] = state
        return state

    def _target(self, value: Any) -> Optional[torch.dtype]:
        if self.dtype is not None or not isinstance(value, Tensor):
            return self.dtype
        return value.dtype


def get_serial_state(
    node: ModuleBase,
    empty_fields: Optional[Iterable[str]] = None,
    cast_type: Optional[DTypeLike] = None,
    states: Optional[IdentityMap] = None,
) -> Dict[str, Any]:
    """
    Snapshot a module tree as plain nested data.

    Args:
        node: Root of the tree
        empty_fields: Field names to replace by empty placeholders on every
            module. None uses each module's ``serial_empty`` policy (see
            ``Module.serial_mode``).
        cast_type: Element type for every tensor in the state. None uses the
            root's ``serial_type`` policy, which may itself be None (keep
            types).
        states: Identity memo to share across several calls so that modules
            common to several roots are snapshotted once

    Returns:
        The root's state dict. Mutating it never affects the live tree.

    Raises:
        UnsupportedConversion: If ``cast_type`` cannot be applied
        CycleDetected: If the tree contains a reference cycle

    Example:
        >>> shared = Linear(4, 4)
        >>> net = Sequential(shared, shared)
        >>> state = get_serial_state(net)
        >>> state['modules'][0] is state['modules'][1]
        True
    """
    if cast_type is None:
        cast_type = getattr(node, 'serial_type', None)
    dtype = resolve_dtype(cast_type) if cast_type is not None else None

    extractor = SerialStateExtractor(empty_fields, dtype, states)
    state = extractor.module_state(node)
    logger.debug(
        f"Serial state of {type(node).__name__}: {len(extractor.states)} objects, "
        f"{len(extractor.cast_map)} storages"
    )
    return state


# ============================================================================
# RECONSTRUCTION
# ============================================================================


def _resolve_class(typename: str, registry=ModuleRegistry):
    if registry.has(typename):
        return registry.get(typename)
    module_path, _, qualname = typename.rpartition('.')
    if module_path:
        try:
            target = importlib.import_module(module_path)
        except ImportError:
            target = None
        for part in qualname.split('.'):
            target = getattr(target, part, None)
        if isinstance(target, type) and issubclass(target, ModuleBase):
            return target
    # raises with the list of known kinds
    return registry.get(typename)


class StateRebuilder:
    """Turns serial states back into modules, one module per state object."""

    def __init__(self, registry=ModuleRegistry):
        self.registry = registry
        self.built = IdentityMap()
        self.guard = RecursionGuard()

    def rebuild(self, value: Any) -> Any:
        if classify_field(value) is not FieldKind.RECORD:
            return value
        if value in self.built:
            return self.built[value]
        if isinstance(value, dict) and TYPENAME_FIELD in value:
            return self.rebuild_module(value)
        with self.guard.enter(value):
            values = {key: self.rebuild(item) for key, item in record_items(value)}
        rebuilt = rebuild_record(value, values)
        self.built[value] = rebuilt
        return rebuilt

    def rebuild_module(self, state: Dict[str, Any]) -> ModuleBase:
        cls = _resolve_class(state[TYPENAME_FIELD], self.registry)
        module = cls.__new__(cls)
        self.built[state] = module
        with self.guard.enter(state):
            fields = module_fields(module)
            for name, value in state.items():
                if name != TYPENAME_FIELD:
                    fields[name] = self.rebuild(value)
        return module


def from_serial_state(state: Dict[str, Any], registry=ModuleRegistry) -> ModuleBase:
    """
    Rebuild a live module tree from a serial state.

    State objects shared by several paths become one shared module. Tensors
    are taken over as they are, so the rebuilt tree and ``state`` share
    storage; copy the state first if it must stay independent.

    Raises:
        ValueError: If a ``'_typename'`` names no known module kind
    """
    if TYPENAME_FIELD not in state:
        raise ValueError(f"Not a module state: missing '{TYPENAME_FIELD}' field")
    return StateRebuilder(registry).rebuild(state)
