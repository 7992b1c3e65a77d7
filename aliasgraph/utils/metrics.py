"""
Inspection utilities: parameter counts and aliasing groups.

``aliasing_groups`` is the tool of choice when debugging weight tying: it
lists, for every storage in a tree, the field paths that view it.

Example:
    >>> from aliasgraph.utils import aliasing_groups, count_parameters
    >>>
    >>> rnn = Recurrence(Linear(6, 4), steps=3, hidden_size=4)
    >>> count_parameters(rnn)            # one step's worth, shared 3 times
    28
    >>> aliasing_groups(rnn, shared_only=True)
    [['modules.0.weight', 'modules.1.weight', 'modules.2.weight'], ...]
"""

from collections import defaultdict
from typing import Dict, List

from ..core.identity import IdentityMap, storage_key
from ..core.interface import FieldKind, classify_field, module_fields, record_items, walk_modules
from ..core.module import Module


def count_parameters(module: Module) -> int:
    """
    Count parameter elements, each shared view once.

    Example:
        >>> total = count_parameters(model)
        >>> print(f"Total: {total:,}")
    """
    return sum(param.numel() for param in module.parameters()[0])


def count_parameters_by_kind(module: Module) -> Dict[str, int]:
    """
    Count parameter elements by module kind.

    Example:
        >>> counts = count_parameters_by_kind(model)
        >>> for kind, count in counts.items():
        ...     print(f"{kind}: {count:,}")
    """
    counts = defaultdict(int)
    seen = set()
    for node in walk_modules(module):
        for param in node.own_parameters()[0]:
            key = (storage_key(param), param.storage_offset(), tuple(param.shape))
            if key in seen:
                continue
            seen.add(key)
            counts[type(node).__name__] += param.numel()
    return dict(counts)


def tensor_paths(module: Module) -> Dict[str, object]:
    """
    Every tensor reachable from ``module``, keyed by dotted field path.

    A module or record reachable along several paths is expanded under the
    first path found (depth-first, field order) only.
    """
    paths: Dict[str, object] = {}
    visited = IdentityMap()

    def visit(value, path):
        kind = classify_field(value)
        if kind is FieldKind.TENSOR:
            paths[path] = value
        elif kind in (FieldKind.MODULE, FieldKind.RECORD):
            if value in visited:
                return
            visited[value] = True
            items = module_fields(value).items() if kind is FieldKind.MODULE else record_items(value)
            for key, item in items:
                visit(item, f"{path}.{key}" if path else str(key))

    visit(module, '')
    return paths


def aliasing_groups(module: Module, shared_only: bool = False) -> List[List[str]]:
    """
    Partition of tensor field paths by storage.

    Args:
        module: Root of the tree
        shared_only: Only return groups with more than one member

    Returns:
        Sorted list of sorted path lists. Two trees with equal results have
        isomorphic aliasing structure.
    """
    groups = defaultdict(list)
    for path, tensor in tensor_paths(module).items():
        key = storage_key(tensor)
        groups[key if key is not None else ('unkeyed', path)].append(path)
    result = [sorted(paths) for paths in groups.values()]
    if shared_only:
        result = [paths for paths in result if len(paths) > 1]
    return sorted(result)


def storage_bytes(module: Module) -> int:
    """Total size of the distinct storages reachable from ``module``."""
    total = 0
    seen = set()
    for tensor in tensor_paths(module).values():
        key = storage_key(tensor)
        if key is None or key in seen:
            continue
        seen.add(key)
        total += tensor.untyped_storage().nbytes()
    return total

