"""
Aliasing-preserving structural clone.

``shared_clone`` duplicates a module tree's topology while keeping parameter
and gradient tensors (and anything aliasing them) on the *same* storage as
the original. Every other field is deep-copied. This is how weight sharing
across recurrent time-steps is built: each step is a shared clone of a
prototype step.

The original tree is never mutated, not even temporarily: fields are
partitioned by value (see ``extract_shared_fields``) and the clone is built
from the partition.
"""

from typing import Any, Dict, Set
import copy
import logging

from ..core.errors import InvariantViolation
from ..core.identity import IdentityMap, RecursionGuard, StorageKey, storage_key, view_over
from ..core.interface import (
    CHILDREN_FIELD,
    FieldKind,
    ModuleBase,
    classify_field,
    module_fields,
    record_items,
)
from .extract import collect_protected_keys, extract_shared_fields

logger = logging.getLogger(__name__)


class SharedCloner:
    """
    One ``shared_clone`` call.

    Holds the call-scoped state: the protected storage identities of the
    whole tree, the node -> clone memo, and a single ``copy.deepcopy`` memo
    so aliasing among non-shared fields is reproduced across the whole
    cloned tree rather than per node.
    """

    def __init__(self, protected: Set[StorageKey], share_params: bool = True, share_grads: bool = True):
        self.protected = protected
        self.share_params = share_params
        self.share_grads = share_grads
        self.clones = IdentityMap()
        self.memo: Dict[int, Any] = {}
        self.guard = RecursionGuard()
        self._seeded: Set[int] = set()
        self.num_shared = 0

    def clone(self, node: ModuleBase) -> ModuleBase:
        with self.guard.enter(node):
            if node in self.clones:
                return self.clones[node]

            fields = module_fields(node)

            # Children first, depth-first, in order
            cloned_children: Dict[str, Any] = {}
            for name, value in fields.items():
                if name == CHILDREN_FIELD and isinstance(value, list):
                    cloned_children[name] = [self._clone_child(child) for child in value]
                elif classify_field(value) is FieldKind.MODULE:
                    cloned_children[name] = self._clone_child(value)

            result = extract_shared_fields(
                node,
                want_params=self.share_params,
                want_grads=self.share_grads,
                protected=self.protected,
            )

            # Shared fields get a new view over the same storage
            views = {}
            for name, tensor in result.extracted.items():
                view = self.memo.get(id(tensor))
                if view is None:
                    view = view_over(tensor.untyped_storage(), tensor)
                    self.memo[id(tensor)] = view
                views[name] = view
            self.num_shared += len(views)

            structural = {
                name: value for name, value in result.remaining.items()
                if name not in cloned_children
            }
            for value in structural.values():
                self._seed_nested(value)
            copied = copy.deepcopy(structural, self.memo)

            clone = node.__class__.__new__(node.__class__)
            clone_fields = module_fields(clone)
            for name in fields:
                if name in views:
                    clone_fields[name] = views[name]
                elif name in cloned_children:
                    clone_fields[name] = cloned_children[name]
                else:
                    clone_fields[name] = copied[name]

            if clone_fields.keys() != fields.keys():
                raise InvariantViolation(
                    f"Clone of {type(node).__name__} has fields {sorted(clone_fields)}, "
                    f"expected {sorted(fields)}"
                )

            self.clones[node] = clone
            return clone

    def _seed_nested(self, value):
        """Map protected tensors and modules inside plain records.

        Tensors aliasing a protected storage become shared views. Modules are
        cloned through :meth:`clone`, so a record entry and the same module
        reached as a child (earlier or later) resolve to one clone.
        """
        if classify_field(value) is not FieldKind.RECORD or id(value) in self._seeded:
            return
        self._seeded.add(id(value))
        for _, item in record_items(value):
            kind = classify_field(item)
            if kind is FieldKind.RECORD:
                self._seed_nested(item)
            elif kind is FieldKind.MODULE and id(item) not in self.memo:
                self._clone_child(item)
            elif kind is FieldKind.TENSOR and id(item) not in self.memo:
                key = storage_key(item)
                if key is not None and key in self.protected:
                    self.memo[id(item)] = view_over(item.untyped_storage(), item)
                    self.num_shared += 1

    def _clone_child(self, child):
        if classify_field(child) is not FieldKind.MODULE:
            # a non-module entry in the children list is copied like any field
            return copy.deepcopy(child, self.memo)
        cloned = self.clone(child)
        # nested records referring to this child resolve to the same clone
        self.memo[id(child)] = cloned
        return cloned


def shared_clone(
    node: ModuleBase,
    share_params: bool = True,
    share_grads: bool = True,
) -> ModuleBase:
    """
    Clone a module tree, sharing parameter/gradient storage with the original.

    Args:
        node: Root of the tree to clone
        share_params: Share declared parameter fields (default: True)
        share_grads: Share declared gradient fields (default: True)

    Returns:
        The cloned tree. Shared fields are new tensor views over the original
        storages; all other fields are independent copies.

    Raises:
        InvariantViolation: If a declared parameter field is not a tensor
        CycleDetected: If the tree contains a reference cycle

    Example:
        >>> step = Linear(4, 4)
        >>> step2 = shared_clone(step)
        >>> step2.weight.fill_(1.0)
        >>> bool((step.weight == 1.0).all())
        True
    """
    protected = collect_protected_keys(node, share_params, share_grads)
    cloner = SharedCloner(protected, share_params, share_grads)
    clone = cloner.clone(node)
    logger.debug(
        f"Shared clone of {type(node).__name__}: {len(cloner.clones)} modules, "
        f"{cloner.num_shared} shared fields"
    )
    return clone
