"""Shared fixtures for aliasgraph tests."""

import pytest
import torch

from aliasgraph.core import Module, Container
from aliasgraph.nn import Linear, Sequential, Recurrence


class Node(Module):
    """Bare module with a weight/grad pair and free-form fields."""

    def __init__(self, weight=None, grad_weight=None, **fields):
        super().__init__()
        self.weight = weight
        self.grad_weight = grad_weight
        for name, value in fields.items():
            setattr(self, name, value)


class Chain(Container):
    """Container with no behaviour of its own."""


@pytest.fixture(autouse=True)
def seed():
    """Make parameter initialisation deterministic."""
    torch.manual_seed(0)


@pytest.fixture
def node_cls():
    return Node


@pytest.fixture
def chain_cls():
    return Chain


@pytest.fixture
def shared_chain():
    """
    Two nodes whose weights are 4-element views of one 8-element storage,
    at offsets 0 and 4.
    """
    base = torch.arange(8, dtype=torch.float32)
    a = Node(weight=base[:4], grad_weight=torch.zeros(4))
    b = Node(weight=base[4:], grad_weight=torch.zeros(4))
    return Chain(a, b)


@pytest.fixture
def linear():
    return Linear(3, 2)


@pytest.fixture
def mlp():
    return Sequential(Linear(4, 8), Linear(8, 2))


@pytest.fixture
def rnn():
    """Three-step recurrence over a weight-tied Linear step."""
    return Recurrence(Linear(3 + 4, 4), steps=3, hidden_size=4)
