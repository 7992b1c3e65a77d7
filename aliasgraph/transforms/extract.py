"""
Field extraction: split a module's fields into shared and structural sets.

A field is *shared* if it is a declared parameter/gradient field, or if it
is any other tensor that aliases one. Everything else is *structural* and
gets copied by value when a module is cloned.

The second pass (absorbing undeclared tensors that alias a declared one) is
what keeps weight sharing intact for fields nobody listed explicitly, e.g. a
cached transposed view of ``weight``.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Sequence, Set
import logging

from torch import Tensor

from ..core.errors import InvariantViolation
from ..core.identity import StorageKey, storage_key
from ..core.interface import FieldKind, ModuleBase, classify_field, module_fields, walk_modules

logger = logging.getLogger(__name__)


@dataclass
class ExtractionResult:
    """
    Outcome of ``extract_shared_fields``.

    Attributes:
        extracted: Shared fields, keyed by field name
        remaining: Every other field of the node, keyed by field name
        protected: Storage identities of the declared shared fields
    """
    extracted: Dict[str, Tensor] = field(default_factory=dict)
    remaining: Dict[str, Any] = field(default_factory=dict)
    protected: Set[StorageKey] = field(default_factory=set)

    def check(self) -> None:
        """Raise ``InvariantViolation`` if a name ended up on both sides."""
        overlap = set(self.extracted) & set(self.remaining)
        if overlap:
            raise InvariantViolation(
                f"Fields {sorted(overlap)} were both extracted and left in place"
            )


def declared_names(
    node: ModuleBase,
    want_params: bool = True,
    want_grads: bool = True,
) -> list:
    """Declared parameter and/or gradient field names of ``node``'s kind."""
    names = []
    if want_params:
        names.extend(node.parameter_names)
    if want_grads:
        names.extend(node.grad_parameter_names)
    return names


def extract_shared_fields(
    node: ModuleBase,
    param_names: Optional[Sequence[str]] = None,
    grad_names: Optional[Sequence[str]] = None,
    want_params: bool = True,
    want_grads: bool = True,
    protected: Optional[Iterable[StorageKey]] = None,
) -> ExtractionResult:
    """
    Partition ``node``'s fields into shared and structural fields.

    ``node`` is not modified; the partition is returned as two new dicts.

    Args:
        node: Module whose fields are partitioned
        param_names: Parameter field names (default: the node kind's
            ``parameter_names``)
        grad_names: Gradient field names (default: the node kind's
            ``grad_parameter_names``)
        want_params: Extract parameter fields
        want_grads: Extract gradient fields
        protected: Storage identities gathered elsewhere in the tree; any
            tensor field aliasing one of them is extracted as well

    Returns:
        ExtractionResult with ``extracted``, ``remaining`` and ``protected``

    Raises:
        InvariantViolation: If a declared field holds something other than a
            tensor

    Example:
        >>> base = torch.zeros(8)
        >>> layer.weight, layer.weight_t = base[:4], base[:4].view(2, 2).t()
        >>> result = extract_shared_fields(layer)
        >>> sorted(result.extracted)
        ['weight', 'weight_t']
    """
    fields = module_fields(node)
    param_names = node.parameter_names if param_names is None else param_names
    grad_names = node.grad_parameter_names if grad_names is None else grad_names

    names = []
    if want_params:
        names.extend(param_names)
    if want_grads:
        names.extend(grad_names)

    result = ExtractionResult(protected=set(protected or ()))

    # Declared fields
    for name in names:
        value = fields.get(name)
        if value is None:
            continue
        if classify_field(value) is not FieldKind.TENSOR:
            raise InvariantViolation(
                f"{type(node).__name__}.{name} is declared as a parameter field "
                f"but holds {type(value).__name__}, not a tensor"
            )
        result.extracted[name] = value
        key = storage_key(value)
        if key is not None:
            result.protected.add(key)

    # Undeclared tensors aliasing a declared one travel with it
    for name, value in fields.items():
        if name in result.extracted:
            continue
        if classify_field(value) is FieldKind.TENSOR:
            key = storage_key(value)
            if key is not None and key in result.protected:
                result.extracted[name] = value
                continue
        result.remaining[name] = value

    result.check()
    return result


def collect_protected_keys(
    root: ModuleBase,
    want_params: bool = True,
    want_grads: bool = True,
) -> Set[StorageKey]:
    """
    Storage identities of every declared shared field in the whole tree.

    Seeding ``extract_shared_fields`` with this set makes a field aliasing a
    parameter that lives in an unrelated node travel with that parameter.
    """
    protected: Set[StorageKey] = set()
    for node in walk_modules(root):
        fields = module_fields(node)
        for name in declared_names(node, want_params, want_grads):
            value = fields.get(name)
            if isinstance(value, Tensor):
                key = storage_key(value)
                if key is not None:
                    protected.add(key)
    logger.debug(f"Collected {len(protected)} protected storages")
    return protected
