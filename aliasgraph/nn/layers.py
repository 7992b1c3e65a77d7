"""
Leaf module kinds with hand-written forward and backward passes.

Gradients are accumulated into ``grad_*`` fields (no autograd), which is
what makes weight-tied clones work: clones share the gradient storage too,
so every step's contribution lands in one buffer.
"""

import math
from typing import Optional

import torch
from torch import Tensor

from ..core.module import Module
from ..core.registry import register_module


@register_module('linear')
class Linear(Module):
    """
    Affine layer ``y = x W^T + b``.

    Args:
        in_features: Input dimension
        out_features: Output dimension
        bias: Learn an additive bias (default: True)
        dtype: Parameter dtype (default: float32)
    """

    def __init__(self, in_features: int, out_features: int, bias: bool = True,
                 dtype: torch.dtype = torch.float32):
        super().__init__()
        self.in_features = in_features
        self.out_features = out_features

        self.weight = torch.empty(out_features, in_features, dtype=dtype)
        self.grad_weight = torch.zeros(out_features, in_features, dtype=dtype)
        if bias:
            self.bias = torch.empty(out_features, dtype=dtype)
            self.grad_bias = torch.zeros(out_features, dtype=dtype)
        else:
            self.bias = None
            self.grad_bias = None

        self.reset_parameters()

    def reset_parameters(self, stdv: Optional[float] = None) -> None:
        if stdv is None:
            stdv = 1.0 / math.sqrt(self.in_features)
        with torch.no_grad():
            self.weight.uniform_(-stdv, stdv)
            if self.bias is not None:
                self.bias.uniform_(-stdv, stdv)

    def forward(self, input: Tensor) -> Tensor:
        output = input @ self.weight.t()
        if self.bias is not None:
            output = output + self.bias
        self.output = output
        return output

    def backward(self, input: Tensor, grad_output: Tensor, scale: float = 1.0) -> Tensor:
        """Accumulate parameter gradients and return the input gradient."""
        if self.backward_disabled:
            return self.grad_input
        self.grad_input = grad_output @ self.weight
        grad_output_2d = grad_output.reshape(-1, self.out_features)
        input_2d = input.reshape(-1, self.in_features)
        self.grad_weight.add_(grad_output_2d.t() @ input_2d, alpha=scale)
        if self.bias is not None:
            self.grad_bias.add_(grad_output_2d.sum(0), alpha=scale)
        return self.grad_input

    def extra_repr(self) -> str:
        return f"{self.in_features} -> {self.out_features}" + ("" if self.bias is not None else ", no bias")


@register_module('lookup_table')
class LookupTable(Module):
    """
    Embedding lookup: row ``i`` of ``weight`` for every index ``i``.

    Args:
        num_embeddings: Number of rows
        embedding_dim: Row size
    """

    parameter_names = ('weight',)
    grad_parameter_names = ('grad_weight',)

    def __init__(self, num_embeddings: int, embedding_dim: int, dtype: torch.dtype = torch.float32):
        super().__init__()
        self.num_embeddings = num_embeddings
        self.embedding_dim = embedding_dim
        self.weight = torch.randn(num_embeddings, embedding_dim, dtype=dtype)
        self.grad_weight = torch.zeros(num_embeddings, embedding_dim, dtype=dtype)

    def forward(self, input: Tensor) -> Tensor:
        flat = self.contiguous_input(input).view(-1).long()
        self.output = self.weight.index_select(0, flat).view(*input.shape, self.embedding_dim)
        return self.output

    def backward(self, input: Tensor, grad_output: Tensor, scale: float = 1.0) -> Tensor:
        if self.backward_disabled:
            return self.grad_input
        flat = input.reshape(-1).long()
        self.grad_weight.index_add_(0, flat, grad_output.reshape(-1, self.embedding_dim), alpha=scale)
        # indices have no gradient
        self.grad_input = torch.zeros_like(input, dtype=self.weight.dtype)
        return self.grad_input

    def extra_repr(self) -> str:
        return f"{self.num_embeddings}, {self.embedding_dim}"
