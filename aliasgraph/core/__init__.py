"""
Core: module nodes, storage identity and the module-kind registry.

Example:
    >>> from aliasgraph.core import Module, register_module, storage_key
    >>>
    >>> @register_module('scale')
    >>> class Scale(Module):
    ...     parameter_names = ('factor',)
    ...     grad_parameter_names = ('grad_factor',)
"""

from .errors import (
    AliasGraphError,
    InvariantViolation,
    UnsupportedConversion,
    CycleDetected,
)

from .identity import (
    CastMap,
    IdentityMap,
    RecursionGuard,
    storage_key,
    shares_storage,
    view_over,
)

from .interface import (
    FieldKind,
    ModuleBase,
    classify_field,
    resolve_dtype,
    walk_modules,
)

from .registry import (
    ModuleRegistry,
    register_module,
    get_module_class,
)

from .module import (
    Module,
    Container,
    view_signature,
)

__all__ = [
    # Errors
    'AliasGraphError',
    'InvariantViolation',
    'UnsupportedConversion',
    'CycleDetected',

    # Identity
    'CastMap',
    'IdentityMap',
    'RecursionGuard',
    'storage_key',
    'shares_storage',
    'view_over',

    # Interface
    'FieldKind',
    'ModuleBase',
    'classify_field',
    'resolve_dtype',
    'walk_modules',

    # Registry
    'ModuleRegistry',
    'register_module',
    'get_module_class',

    # Modules
    'Module',
    'Container',
    'view_signature',
]
