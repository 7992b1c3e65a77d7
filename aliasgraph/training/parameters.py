"""
Parameter update helpers over a module tree.

These work on the parameter/gradient pairs a tree exposes. Weight-tied
clones expose the same views several times; every helper visits each view
exactly once, so a shared weight is updated once per step, not once per
clone.

Hyper-parameters can be overridden per module by setting an attribute of
the same name (``wd_factor``, ``mom_factor``, ``cutoff_norm``, ...); the
nearest module on the path from the root wins over the function argument.

Example:
    >>> net.zero_grad_parameters()
    >>> net.forward(x); net.backward(x, grad)
    >>> weight_decay(net, 1e-4)
    >>> update_grad_parameters(net, mom_factor=0.9)
    >>> grad_param_clip(net, cutoff_norm=5.0)
    >>> update_parameters(net, learning_rate=0.1)
"""

from typing import Any, Dict, Iterator, List, Optional, Tuple
import logging
import math

import torch
from torch import Tensor

from ..core.identity import IdentityMap, RecursionGuard
from ..core.module import Module, view_signature

logger = logging.getLogger(__name__)


ParamPairs = List[Tuple[Tensor, Optional[Tensor]]]


def _module_entries(module: Module, **defaults: Any) -> Iterator[Tuple[Module, ParamPairs, Dict[str, Any]]]:
    """
    Yield ``(node, pairs, hparams)`` for every module owning parameters.

    ``pairs`` holds the node's (param, grad) pairs not already yielded for
    another node; ``hparams`` resolves each keyword of ``defaults`` against
    per-module overrides along the path from ``module``.
    """
    seen = set()
    visited = IdentityMap()
    guard = RecursionGuard()

    def visit(node, inherited):
        with guard.enter(node):
            if node in visited:
                return
            visited[node] = True

            resolved = {}
            for name, value in inherited.items():
                override = getattr(node, name, None)
                resolved[name] = value if override is None else override

            pairs = []
            for param, grad in zip(*node.own_parameters()):
                signature = view_signature(param)
                if signature in seen:
                    continue
                seen.add(signature)
                pairs.append((param, grad))
            if pairs:
                yield node, pairs, resolved

            for child in node.children():
                yield from visit(child, resolved)

    yield from visit(module, defaults)


@torch.no_grad()
def update_parameters(module: Module, learning_rate: float) -> None:
    """Plain gradient step: ``param -= learning_rate * grad``."""
    for param, grad in zip(*module.parameters()):
        if grad is not None:
            param.add_(grad, alpha=-learning_rate)


@torch.no_grad()
def zero_grad_parameters(module: Module) -> None:
    """Zero every gradient tensor of the tree."""
    for grad in module.parameters()[1]:
        if grad is not None:
            grad.zero_()


@torch.no_grad()
def weight_decay(module: Module, wd_factor: float, wd_min_dim: int = 2) -> None:
    """
    Add ``wd_factor * param`` to the gradient of every parameter with at
    least ``wd_min_dim`` dimensions (biases are skipped by default).
    """
    for node, pairs, hp in _module_entries(module, wd_factor=wd_factor, wd_min_dim=wd_min_dim):
        if hp['wd_factor'] <= 0:
            continue
        for param, grad in pairs:
            if grad is not None and param.dim() >= hp['wd_min_dim']:
                grad.add_(param, alpha=hp['wd_factor'])


def momentum_grad_parameters(node: Module, grads: List[Tensor], factor: float, damp: float) -> List[Tensor]:
    """
    Advance the momentum buffers of ``node`` by one step.

    On first use the buffers are initialised to a copy of ``grads``; after
    that each buffer becomes ``factor * buffer + (1 - damp) * grad``.
    """
    buffers = getattr(node, 'mom_grad_params', None)
    if not buffers or len(buffers) != len(grads):
        buffers = [grad.detach().clone() for grad in grads]
        node.mom_grad_params = buffers
        return buffers
    for buffer, grad in zip(buffers, grads):
        buffer.mul_(factor).add_(grad, alpha=1 - damp)
    return buffers


@torch.no_grad()
def update_grad_parameters(
    module: Module,
    mom_factor: float,
    mom_damp: Optional[float] = None,
    mom_nesterov: bool = False,
) -> None:
    """
    Replace gradients by their momentum-smoothed version.

    Args:
        module: Root of the tree
        mom_factor: Momentum factor; <= 0 disables the update
        mom_damp: Dampening (default: ``mom_factor``)
        mom_nesterov: Use Nesterov momentum
    """
    for node, pairs, hp in _module_entries(
        module, mom_factor=mom_factor, mom_damp=mom_damp, mom_nesterov=mom_nesterov
    ):
        factor = hp['mom_factor']
        if factor <= 0:
            continue
        damp = factor if hp['mom_damp'] is None else hp['mom_damp']

        grads = [grad for _, grad in pairs if grad is not None]
        if not grads:
            continue
        buffers = momentum_grad_parameters(node, grads, factor, damp)
        for buffer, grad in zip(buffers, grads):
            if hp['mom_nesterov']:
                grad.add_(buffer, alpha=factor)
            else:
                grad.copy_(buffer)


def _clip(grads: List[Tensor], cutoff_norm: float) -> float:
    norm = math.sqrt(sum(float(grad.norm()) ** 2 for grad in grads))
    if norm > cutoff_norm:
        for grad in grads:
            grad.mul_(cutoff_norm / norm)
    return norm


@torch.no_grad()
def grad_param_clip(module: Module, cutoff_norm: float, module_local: bool = False) -> float:
    """
    Rescale gradients so their L2 norm does not exceed ``cutoff_norm``.

    Args:
        module: Root of the tree
        cutoff_norm: Maximum norm; <= 0 disables clipping
        module_local: Clip each module's gradients separately instead of
            using one norm over the whole tree

    Returns:
        The norm of all gradients before clipping (0.0 when disabled)
    """
    cutoff_norm = getattr(module, 'cutoff_norm', None) or cutoff_norm
    if cutoff_norm <= 0:
        return 0.0

    if not module_local:
        grads = [grad for grad in module.parameters()[1] if grad is not None]
        norm = _clip(grads, cutoff_norm)
        logger.debug(f"Gradient norm {norm:.4f} (cutoff {cutoff_norm})")
        return norm

    total = 0.0
    for node, pairs, hp in _module_entries(module, cutoff_norm=cutoff_norm):
        grads = [grad for _, grad in pairs if grad is not None]
        if grads and hp['cutoff_norm'] > 0:
            total += _clip(grads, hp['cutoff_norm']) ** 2
    return math.sqrt(total)


@torch.no_grad()
def max_param_norm(
    module: Module,
    max_out_norm: Optional[float] = None,
    max_in_norm: Optional[float] = None,
) -> None:
    """
    Constrain row and/or column norms of every parameter with dim > 1.

    Parameters are assumed to be laid out ``(output dim, ..., input dim)``.
    """
    for node, pairs, hp in _module_entries(module, max_out_norm=max_out_norm, max_in_norm=max_in_norm):
        for param, _ in pairs:
            if param.dim() <= 1:
                continue
            if hp['max_out_norm']:
                # rows feed into output units
                param.renorm_(2, 0, hp['max_out_norm'])
            if hp['max_in_norm']:
                param.renorm_(2, param.dim() - 1, hp['max_in_norm'])


def check_parameters(module: Module) -> None:
    """
    Raise ``ValueError`` if any parameter contains NaN.

    Raises:
        ValueError: Naming the index of the first offending parameter
    """
    for i, param in enumerate(module.parameters()[0]):
        if torch.isnan(param).any():
            raise ValueError(f"NaN Error for param at index {i} (shape {tuple(param.shape)})")
