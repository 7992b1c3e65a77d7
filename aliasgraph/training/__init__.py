"""
Training helpers: in-place parameter and gradient updates over a module tree.
"""

from .parameters import (
    update_parameters,
    zero_grad_parameters,
    weight_decay,
    momentum_grad_parameters,
    update_grad_parameters,
    grad_param_clip,
    max_param_norm,
    check_parameters,
)

__all__ = [
    'update_parameters',
    'zero_grad_parameters',
    'weight_decay',
    'momentum_grad_parameters',
    'update_grad_parameters',
    'grad_param_clip',
    'max_param_norm',
    'check_parameters',
]
