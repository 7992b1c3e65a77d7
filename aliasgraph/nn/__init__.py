"""
Concrete module kinds.

All kinds are registered in ``ModuleRegistry`` on import so their serial
states can be rebuilt by name.
"""

from .layers import Linear, LookupTable
from .containers import Sequential, Concat, Recurrence

__all__ = [
    'Linear',
    'LookupTable',
    'Sequential',
    'Concat',
    'Recurrence',
]
