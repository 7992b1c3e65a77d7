"""
aliasgraph: weight-sharing-aware transforms for module trees.

Tensor fields of a module tree may alias the same storage (that is how
weights are tied across recurrent steps). The transforms in this package
preserve that aliasing:

- ``Module.shared_clone``: clone a tree, parameters stay on shared storage
- ``Module.shared_type``: convert element types, aliasing groups survive
- ``Module.get_serial_state``: deduplicated, selectively emptied snapshot
"""

__version__ = "0.1.0"

# ============================================================================
# CORE IMPORTS
# ============================================================================

from .core import (
    Module,
    Container,
    ModuleRegistry,
    register_module,
    CastMap,
    IdentityMap,
    storage_key,
    shares_storage,
    AliasGraphError,
    InvariantViolation,
    UnsupportedConversion,
    CycleDetected,
)

from .transforms import (
    shared_clone,
    shared_type,
    get_serial_state,
    from_serial_state,
)

from .nn import (
    Linear,
    LookupTable,
    Sequential,
    Concat,
    Recurrence,
)

# ============================================================================
# EXPORTS
# ============================================================================

__all__ = [
    # Core
    'Module',
    'Container',
    'ModuleRegistry',
    'register_module',
    'CastMap',
    'IdentityMap',
    'storage_key',
    'shares_storage',

    # Errors
    'AliasGraphError',
    'InvariantViolation',
    'UnsupportedConversion',
    'CycleDetected',

    # Transforms
    'shared_clone',
    'shared_type',
    'get_serial_state',
    'from_serial_state',

    # Modules
    'Linear',
    'LookupTable',
    'Sequential',
    'Concat',
    'Recurrence',
]
