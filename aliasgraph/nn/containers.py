"""Container module kinds."""

from typing import List, Optional, Sequence

import torch
from torch import Tensor

from ..core.module import Container, Module
from ..core.registry import register_module


@register_module('sequential')
class Sequential(Container):
    """Feeds each child's output into the next child."""

    def forward(self, input):
        output = input
        for module in self.modules:
            output = module.forward(output)
        self.output = output
        return output

    def backward(self, input, grad_output):
        if self.backward_disabled:
            return self.grad_input
        # inputs of child i are the outputs of child i - 1
        inputs = [input] + [module.output for module in self.modules[:-1]]
        grad = grad_output
        for module, module_input in zip(reversed(self.modules), reversed(inputs)):
            grad = module.backward(module_input, grad)
        self.grad_input = grad
        return grad


@register_module('concat')
class Concat(Container):
    """
    Applies every child to the same input and concatenates the outputs.

    Args:
        dim: Concatenation dimension
        *modules: Children
    """

    def __init__(self, dim: int, *modules: Module):
        super().__init__(*modules)
        self.dim = dim

    def forward(self, input):
        outputs = [module.forward(input) for module in self.modules]
        self.output = torch.cat(outputs, self.dim)
        return self.output

    def backward(self, input, grad_output):
        if self.backward_disabled:
            return self.grad_input
        sizes = [module.output.size(self.dim) for module in self.modules]
        grads = torch.split(grad_output, sizes, self.dim)
        grad_input = None
        for module, grad in zip(self.modules, grads):
            module_grad = module.backward(input, grad)
            grad_input = module_grad if grad_input is None else grad_input + module_grad
        self.grad_input = grad_input
        return grad_input

    def extra_repr(self) -> str:
        return f"dim={self.dim}"


@register_module('recurrence')
class Recurrence(Container):
    """
    Elman-style recurrence unrolled over a fixed number of steps.

    ``h_t = tanh(step_t([x_t, h_{t-1}]))`` where every ``step_t`` is a shared
    clone of ``step``: all steps read the same weights and accumulate into
    the same gradient buffers, while each keeps its own outputs.

    Args:
        step: Step module mapping ``input_size + hidden_size`` features to
            ``hidden_size``
        steps: Number of unrolled steps
        hidden_size: Size of the hidden state
    """

    medium_empty = Module.medium_empty + ('step_inputs', 'hidden')

    def __init__(self, step: Module, steps: int, hidden_size: int):
        if steps < 1:
            raise ValueError(f"steps must be >= 1, got {steps}")
        super().__init__(step)
        for _ in range(steps - 1):
            self.add(step.shared_clone())
        self.hidden_size = hidden_size
        self.step_inputs: List[Tensor] = []
        self.hidden: List[Tensor] = []

    @property
    def steps(self) -> int:
        return len(self.modules)

    def forward(self, inputs: Sequence[Tensor], h0: Optional[Tensor] = None) -> List[Tensor]:
        """Unbatched inputs (1-D per step) give unbatched hidden states."""
        if len(inputs) > self.steps:
            raise ValueError(f"Got {len(inputs)} inputs for {self.steps} unrolled steps")
        if h0 is not None:
            h0 = self.to_batch(h0, 1)
        inputs = [self.to_batch(x, 1) for x in inputs]
        batch = inputs[0].size(0)
        h = h0 if h0 is not None else inputs[0].new_zeros(batch, self.hidden_size)

        self.step_inputs, self.hidden = [], []
        for module, x in zip(self.modules, inputs):
            step_input = torch.cat([x, h], 1)
            h = torch.tanh(module.forward(step_input))
            self.step_inputs.append(step_input)
            self.hidden.append(h)
        self.output = [self.from_batch(h) for h in self.hidden]
        return self.output

    def backward(self, inputs: Sequence[Tensor], grad_outputs: Sequence[Tensor]) -> List[Tensor]:
        """Backpropagation through time; returns gradients w.r.t. each input."""
        if self.backward_disabled:
            return self.grad_input
        grad_outputs = [self.to_batch(grad, 1) for grad in grad_outputs]
        inputs = [self.to_batch(x, 1) for x in inputs]
        input_size = inputs[0].size(1)
        grad_inputs: List[Optional[Tensor]] = [None] * len(inputs)
        grad_h = torch.zeros_like(self.hidden[-1])
        for t in reversed(range(len(inputs))):
            grad_h = grad_h + grad_outputs[t]
            h = self.hidden[t]
            grad_pre = grad_h * (1 - h * h)
            grad_step_input = self.modules[t].backward(self.step_inputs[t], grad_pre)
            grad_inputs[t] = self.from_batch(grad_step_input[:, :input_size])
            grad_h = grad_step_input[:, input_size:]
        self.grad_input = grad_inputs
        return grad_inputs

    def extra_repr(self) -> str:
        return f"steps={self.steps}, hidden_size={self.hidden_size}"
