"""
Shared-storage graph transforms.

- ``shared_clone``: clone a tree, keeping parameters on the same storage
- ``shared_type``: convert element types, keeping aliasing groups intact
- ``get_serial_state`` / ``from_serial_state``: plain-data snapshots
"""

from .extract import (
    ExtractionResult,
    extract_shared_fields,
    collect_protected_keys,
)

from .clone import shared_clone

from .cast import (
    cast_tensor,
    shared_type,
)

from .serial import (
    TYPENAME_FIELD,
    get_serial_state,
    from_serial_state,
)

__all__ = [
    'ExtractionResult',
    'extract_shared_fields',
    'collect_protected_keys',
    'shared_clone',
    'cast_tensor',
    'shared_type',
    'TYPENAME_FIELD',
    'get_serial_state',
    'from_serial_state',
]
