"""
Module nodes: the tree the shared-storage transforms operate on.

A module is a plain object whose instance attributes are its fields. Each
module kind declares which fields are parameters and which are their
gradients; container kinds keep their children, in order, in ``modules``.

Design:
- Fields are ordinary attributes, so any tensor, record, scalar or nested
  module can be stored on a module without registration
- Parameter/gradient names are class attributes, overridable per kind
- All structural transforms (``shared_clone``, ``shared_type``,
  ``get_serial_state``) are thin wrappers over ``aliasgraph.transforms``

Example:
    >>> from aliasgraph.nn import Linear, Sequential
    >>> net = Sequential(Linear(4, 8), Linear(8, 2))
    >>> twin = net.shared_clone()      # same weights, own buffers
    >>> net.double()                   # twin is NOT converted...
    >>> net.light_serial()
    >>> state = net.get_serial_state() # ...and gradients are not persisted
"""

from typing import Any, Dict, Iterable, List, Optional, Tuple
import copy
import logging

import torch
from torch import Tensor

from .identity import CastMap, IdentityMap, RecursionGuard, storage_key
from .interface import (
    CHILDREN_FIELD,
    DTypeLike,
    FieldKind,
    ModuleBase,
    classify_field,
    module_fields,
    record_items,
    walk_modules,
)
from ..transforms.cast import shared_type
from ..transforms.clone import shared_clone
from ..transforms.serial import get_serial_state

logger = logging.getLogger(__name__)


def view_signature(tensor: Tensor) -> Tuple:
    """Identifies a view: same storage, offset, size, stride and dtype."""
    key = storage_key(tensor)
    return (
        key if key is not None else id(tensor),
        tensor.storage_offset(),
        tuple(tensor.size()),
        tuple(tensor.stride()),
        tensor.dtype,
    )


class Module(ModuleBase):
    """
    Base class of all module kinds.

    Class attributes:
        parameter_names: Declared parameter fields (default: weight, bias)
        grad_parameter_names: Declared gradient fields, positionally matching
            ``parameter_names`` (default: grad_weight, grad_bias)
        medium_empty: Fields emptied by ``medium_serial``/``light_serial``

    Instance fields set here:
        output: Last forward result
        grad_input: Last backward result
        training: Train/eval flag
        backward_disabled: Set by ``dont_backward``
    """

    parameter_names = ('weight', 'bias')
    grad_parameter_names = ('grad_weight', 'grad_bias')
    medium_empty = ('output', 'grad_input', 'mom_grad_params', 'cinput')

    def __init__(self):
        self.output = torch.empty(0)
        self.grad_input = torch.empty(0)
        self.training = True
        self.backward_disabled = False

    # ------------------------------------------------------------------
    # Computation (concrete kinds override)
    # ------------------------------------------------------------------

    def forward(self, input):
        raise NotImplementedError(f"{type(self).__name__} does not implement forward")

    def backward(self, input, grad_output):
        raise NotImplementedError(f"{type(self).__name__} does not implement backward")

    def __call__(self, input):
        return self.forward(input)

    def train(self, mode: bool = True) -> 'Module':
        for node in walk_modules(self):
            node.training = mode
        return self

    def eval(self) -> 'Module':
        return self.train(False)

    def dont_backward(self) -> 'Module':
        """Make ``backward`` a no-op: no gradients accumulate, ``grad_input`` is left as is."""
        self.backward_disabled = True
        return self

    def outside(self, insize) -> torch.Size:
        """
        Output size for an input of size ``insize``.

        Runs ``forward`` on a random input of the most common parameter dtype.
        """
        if isinstance(insize, int):
            insize = (insize,)
        dtype = self.extrapolate_type() or torch.get_default_dtype()
        output = self.forward(torch.randn(*insize, dtype=dtype))
        return output.size()

    # ------------------------------------------------------------------
    # Input helpers
    # ------------------------------------------------------------------

    def contiguous_input(self, input: Tensor, backward: bool = False) -> Tensor:
        """
        Contiguous version of ``input``.

        A non-contiguous input is copied into the reused ``cinput`` buffer.
        With ``backward=True`` the buffer filled by an earlier forward call is
        returned, or ``input`` if there is none.
        """
        cinput = getattr(self, 'cinput', None)
        if backward:
            return cinput if isinstance(cinput, Tensor) and cinput.numel() > 0 else input
        if input.is_contiguous():
            return input
        if not isinstance(cinput, Tensor):
            cinput = input.new_empty(0)
            self.cinput = cinput
        cinput.resize_as_(input).copy_(input)
        return cinput

    def to_batch(self, tensor: Tensor, n_dim: int, batch_dim: int = 0) -> Tensor:
        """Add a size-1 batch dimension to an unbatched ``n_dim`` tensor, remembering that it did."""
        self.online = tensor.dim() == n_dim
        if self.online:
            return tensor.unsqueeze(batch_dim)
        return tensor

    def from_batch(self, tensor: Tensor, batch_dim: int = 0) -> Tensor:
        """Undo :meth:`to_batch` on a result computed from the batched tensor."""
        if not getattr(self, 'online', False):
            return tensor
        if tensor.size(batch_dim) != 1:
            raise ValueError(
                f"Expecting size 1 along batch dimension {batch_dim}, got shape {tuple(tensor.size())}"
            )
        return tensor.squeeze(batch_dim)

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------

    def children(self) -> List['Module']:
        """Direct child modules (``modules`` entries, then module fields)."""
        fields = module_fields(self)
        children = []
        modules = fields.get(CHILDREN_FIELD)
        if isinstance(modules, list):
            children.extend(m for m in modules if isinstance(m, ModuleBase))
        children.extend(
            value for name, value in fields.items()
            if name != CHILDREN_FIELD and isinstance(value, ModuleBase)
        )
        return children

    def own_parameters(self) -> Tuple[List[Tensor], List[Optional[Tensor]]]:
        """Declared parameters of this node only, with matching gradients."""
        fields = module_fields(self)
        params, grads = [], []
        for i, name in enumerate(self.parameter_names):
            param = fields.get(name)
            if not isinstance(param, Tensor):
                continue
            grad_name = self.grad_parameter_names[i] if i < len(self.grad_parameter_names) else None
            grad = fields.get(grad_name) if grad_name else None
            params.append(param)
            grads.append(grad if isinstance(grad, Tensor) else None)
        return params, grads

    def parameters(self) -> Tuple[List[Tensor], List[Optional[Tensor]]]:
        """
        All parameters of the tree and their gradients.

        A view reachable several times (e.g. the same weight in every step of
        a weight-tied recurrence) is listed once.

        Returns:
            (params, grad_params) lists of equal length; a gradient is None
            where the module holds no gradient tensor
        """
        params, grads = [], []
        seen = set()
        for node in walk_modules(self):
            for param, grad in zip(*node.own_parameters()):
                signature = view_signature(param)
                if signature in seen:
                    continue
                seen.add(signature)
                params.append(param)
                grads.append(grad)
        return params, grads

    def extrapolate_type(self) -> Optional[torch.dtype]:
        """Most common parameter dtype of the tree, or None without parameters."""
        counts: Dict[torch.dtype, int] = {}
        for param in self.parameters()[0]:
            counts[param.dtype] = counts.get(param.dtype, 0) + 1
        if not counts:
            return None
        return max(counts, key=counts.get)

    # ------------------------------------------------------------------
    # Clone and type
    # ------------------------------------------------------------------

    def clone(self) -> 'Module':
        """Independent deep copy (no storage shared with ``self``)."""
        return copy.deepcopy(self)

    def shared_clone(self, share_params: bool = True, share_grads: bool = True) -> 'Module':
        """Clone sharing parameter and/or gradient storage with ``self``."""
        return shared_clone(self, share_params, share_grads)

    def shared_type(self, dtype: DTypeLike, cast_map: Optional[CastMap] = None) -> 'Module':
        """Convert all tensors to ``dtype`` in place, preserving aliasing."""
        return shared_type(self, dtype, cast_map)

    # ------------------------------------------------------------------
    # Serialization policy
    # ------------------------------------------------------------------

    def serial_mode(self, empty: Iterable[str], dtype: Optional[DTypeLike] = None) -> 'Module':
        """
        Set the serialization policy of every module reachable from ``self``.

        Args:
            empty: Field names replaced by empty placeholders in serial states
            dtype: Element type applied to the state's tensors, or None

        Raises:
            TypeError: If ``empty`` is a string rather than a collection
        """
        if isinstance(empty, str) or not isinstance(empty, Iterable):
            raise TypeError(f"Expecting a collection of field names, got {empty!r}")
        empty = tuple(empty)
        for node in _reachable_modules(self):
            node.serial_empty = empty
            node.serial_type = dtype
        return self

    def heavy_serial(self, dtype: Optional[DTypeLike] = None) -> 'Module':
        """Serialize everything."""
        return self.serial_mode((), dtype)

    def medium_serial(self, dtype: Optional[DTypeLike] = 'float') -> 'Module':
        """Serialize everything except ``medium_empty`` fields."""
        return self.serial_mode(self.medium_empty, dtype)

    def light_serial(self, dtype: Optional[DTypeLike] = 'float') -> 'Module':
        """Serialize everything except ``medium_empty`` fields and gradients."""
        empty = list(self.medium_empty)
        for name in self.grad_parameter_names:
            if name not in empty:
                empty.append(name)
        return self.serial_mode(empty, dtype)

    def get_serial_state(self, states: Optional[IdentityMap] = None) -> Dict[str, Any]:
        """Plain-data snapshot of the tree, following the serial policy."""
        return get_serial_state(self, states=states)

    # ------------------------------------------------------------------
    # Misc
    # ------------------------------------------------------------------

    def accept(self, visitor) -> None:
        """Visitor hook: calls ``visitor.visit(self)``."""
        visitor.visit(self)

    def extra_repr(self) -> str:
        return ''

    def __repr__(self) -> str:
        lines = [f"{type(self).__name__}({self.extra_repr()})"]
        for i, child in enumerate(self.children()):
            child_repr = repr(child).replace('\n', '\n  ')
            lines.append(f"  ({i}): {child_repr}")
        return '\n'.join(lines)

    # Type conversion shortcuts. Defined last: they shadow builtins in the
    # class body.

    def type(self, dtype: DTypeLike, cast_map: Optional[CastMap] = None) -> 'Module':
        return self.shared_type(dtype, cast_map)

    def float(self) -> 'Module':
        return self.shared_type(torch.float32)

    def double(self) -> 'Module':
        return self.shared_type(torch.float64)

    def half(self) -> 'Module':
        return self.shared_type(torch.float16)

    def int(self) -> 'Module':
        return self.shared_type(torch.int32)

    def long(self) -> 'Module':
        return self.shared_type(torch.int64)


class Container(Module):
    """
    Module holding an ordered list of children in ``modules``.

    Args:
        *modules: Initial children
    """

    def __init__(self, *modules: Module):
        super().__init__()
        self.modules: List[Module] = []
        for module in modules:
            self.add(module)

    def add(self, module: Module) -> 'Container':
        if not isinstance(module, ModuleBase):
            raise TypeError(f"Expecting a module, got {type(module).__name__}")
        self.modules.append(module)
        return self

    def get(self, index: int) -> Module:
        return self.modules[index]

    def __getitem__(self, index: int) -> Module:
        return self.modules[index]

    def __len__(self) -> int:
        return len(self.modules)

    def __iter__(self):
        return iter(self.modules)


def _reachable_modules(root: Module):
    """Every module reachable from ``root``, including inside plain records."""
    found = IdentityMap()
    guard = RecursionGuard()

    def visit(value):
        kind = classify_field(value)
        if kind is FieldKind.MODULE:
            with guard.enter(value):
                if value in found:
                    return
                found[value] = True
                for item in module_fields(value).values():
                    visit(item)
        elif kind is FieldKind.RECORD:
            if value in found:
                return
            found[value] = True
            for _, item in record_items(value):
                visit(item)

    visit(root)
    return [node for node in found if isinstance(node, ModuleBase)]
