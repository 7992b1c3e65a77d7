"""
Tests for inspection utilities.

Tests:
- Parameter counts with shared weights
- Tensor paths
- Aliasing groups
- Storage bytes
"""

import torch

from aliasgraph.nn import Linear, LookupTable, Sequential
from aliasgraph.utils.metrics import (
    aliasing_groups,
    count_parameters,
    count_parameters_by_kind,
    storage_bytes,
    tensor_paths,
)


class TestCounts:
    """Test parameter counting."""

    def test_count(self, mlp):
        assert count_parameters(mlp) == 4 * 8 + 8 + 8 * 2 + 2

    def test_shared_counted_once(self, rnn):
        assert count_parameters(rnn) == 7 * 4 + 4

    def test_by_kind(self):
        net = Sequential(LookupTable(10, 4), Linear(4, 2))

        counts = count_parameters_by_kind(net)

        assert counts == {'LookupTable': 40, 'Linear': 10}


class TestTensorPaths:
    """Test dotted field paths."""

    def test_paths(self, linear):
        paths = tensor_paths(linear)

        assert paths['weight'] is linear.weight
        assert 'grad_bias' in paths
        assert 'in_features' not in paths

    def test_nested_paths(self, node_cls, chain_cls):
        node = node_cls(history=[torch.zeros(1)], table={'x': torch.ones(1)})
        chain = chain_cls(node)

        paths = tensor_paths(chain)

        assert 'modules.0.history.0' in paths
        assert 'modules.0.table.x' in paths

    def test_shared_module_expanded_once(self, linear, chain_cls):
        paths = tensor_paths(chain_cls(linear, linear))

        assert 'modules.0.weight' in paths
        assert 'modules.1.weight' not in paths


class TestAliasingGroups:
    """Test the storage partition."""

    def test_shared_only(self, shared_chain):
        groups = aliasing_groups(shared_chain, shared_only=True)

        assert groups == [['modules.0.weight', 'modules.1.weight']]

    def test_recurrence_groups(self, rnn):
        groups = aliasing_groups(rnn, shared_only=True)

        assert ['modules.0.weight', 'modules.1.weight', 'modules.2.weight'] in groups
        assert len(groups) == 4

    def test_unkeyed_tensors_not_grouped(self, node_cls):
        node = node_cls(a=torch.empty(0), b=torch.empty(0))

        assert aliasing_groups(node, shared_only=True) == []


class TestStorageBytes:
    """Test memory accounting."""

    def test_shared_storage_counted_once(self, shared_chain):
        # 8 float32 weights + two 4-element float32 gradients
        assert storage_bytes(shared_chain) == 8 * 4 + 2 * 4 * 4

    def test_recurrence(self, rnn):
        one_step = (7 * 4 + 4) * 4 * 2
        assert storage_bytes(rnn) == one_step
