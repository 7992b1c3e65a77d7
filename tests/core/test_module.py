"""
Tests for the Module base classes.

Tests:
- Children and parameter collection
- Train/eval flags
- Serial policy presets
- Type conversion shortcuts
- Container behaviour
- Input helpers (contiguous buffer, batch dimension, output size)
"""

import pytest
import torch

from aliasgraph.core.module import Module, view_signature
from aliasgraph.nn import Linear, LookupTable, Sequential


# ============================================================================
# PARAMETER TESTS
# ============================================================================


class TestParameters:
    """Test parameter collection."""

    def test_own_parameters(self, linear):
        params, grads = linear.own_parameters()

        assert params[0] is linear.weight and params[1] is linear.bias
        assert grads[0] is linear.grad_weight and grads[1] is linear.grad_bias

    def test_missing_fields_skipped(self, node_cls):
        """Test that None parameters are absent."""
        node = node_cls(weight=torch.zeros(2))

        params, grads = node.own_parameters()

        assert len(params) == 1
        assert grads == [None]

    def test_parameters_recursive(self, mlp):
        params, grads = mlp.parameters()

        assert len(params) == 4
        assert len(grads) == 4
        assert params[0] is mlp[0].weight

    def test_shared_views_listed_once(self, rnn):
        """Test that weight-tied steps contribute one set of parameters."""
        params, _ = rnn.parameters()

        assert len(params) == 2

    def test_view_signature(self):
        base = torch.zeros(8)

        assert view_signature(base[:4]) == view_signature(base[:4])
        assert view_signature(base[:4]) != view_signature(base[4:])


class TestChildren:
    """Test child enumeration."""

    def test_container_children(self, mlp):
        assert mlp.children() == list(mlp.modules)

    def test_module_field_child(self, node_cls):
        inner = node_cls()
        outer = node_cls(inner=inner)

        assert outer.children() == [inner]

    def test_train_eval(self, mlp):
        mlp.eval()
        assert not any(m.training for m in [mlp, *mlp])

        mlp.train()
        assert all(m.training for m in [mlp, *mlp])

    def test_container_add_rejects_non_module(self, chain_cls):
        with pytest.raises(TypeError, match="Expecting a module"):
            chain_cls().add(torch.zeros(2))

    def test_container_access(self, mlp):
        assert len(mlp) == 2
        assert mlp.get(1) is mlp[1]
        assert list(mlp) == mlp.modules

    def test_base_forward_not_implemented(self):
        with pytest.raises(NotImplementedError):
            Module().forward(torch.zeros(1))


# ============================================================================
# SERIAL POLICY TESTS
# ============================================================================


class TestSerialPolicy:
    """Test serial mode presets."""

    def test_heavy(self, mlp):
        mlp.heavy_serial()

        assert mlp.serial_empty == ()
        assert mlp.serial_type is None

    def test_medium_applies_to_children(self, mlp):
        mlp.medium_serial()

        for module in [mlp, *mlp]:
            assert module.serial_empty == Module.medium_empty
            assert module.serial_type == 'float'

    def test_light_adds_gradients(self, mlp):
        mlp.light_serial(dtype=None)

        assert 'grad_weight' in mlp[0].serial_empty
        assert 'grad_bias' in mlp[0].serial_empty
        assert 'output' in mlp[0].serial_empty

    def test_modules_in_records_configured(self, node_cls):
        """Test that modules nested in plain containers are reached."""
        nested = node_cls()
        root = node_cls(extras={'helper': [nested]})

        root.serial_mode(['output'])

        assert nested.serial_empty == ('output',)

    def test_string_rejected(self, mlp):
        with pytest.raises(TypeError, match="collection of field names"):
            mlp.serial_mode('output')


# ============================================================================
# TYPE SHORTCUT TESTS
# ============================================================================


class TestTypeShortcuts:
    """Test dtype conversion shortcuts."""

    @pytest.mark.parametrize('method, dtype', [
        ('double', torch.float64),
        ('half', torch.float16),
        ('float', torch.float32),
    ])
    def test_shortcuts(self, mlp, method, dtype):
        result = getattr(mlp, method)()

        assert result is mlp
        assert mlp[0].weight.dtype == dtype
        assert mlp[1].grad_bias.dtype == dtype

    def test_type_by_name(self, linear):
        linear.type('torch.DoubleTensor')

        assert linear.weight.dtype == torch.float64

    def test_clone_is_independent(self, linear):
        """Test that the generic clone shares nothing."""
        copy = linear.clone()
        copy.weight.fill_(3.0)

        assert not torch.equal(linear.weight, copy.weight)

    def test_repr(self, mlp):
        text = repr(mlp)

        assert text.startswith('Sequential()')
        assert '(1): Linear(8 -> 2)' in text


class TestVisitor:
    """Test the visitor hook."""

    def test_accept(self, linear):
        visited = []

        class Visitor:
            def visit(self, module):
                visited.append(module)

        linear.accept(Visitor())

        assert visited == [linear]


# ============================================================================
# INPUT HELPER TESTS
# ============================================================================


class TestInputHelpers:
    """Test contiguous buffers, batch dimensions and output sizes."""

    def test_contiguous_input_passthrough(self, linear):
        x = torch.randn(2, 3)

        assert linear.contiguous_input(x) is x
        assert not hasattr(linear, 'cinput')

    def test_contiguous_input_reuses_buffer(self, linear):
        x = torch.randn(3, 2).t()

        first = linear.contiguous_input(x)
        second = linear.contiguous_input(torch.randn(4, 2).t())

        assert first.is_contiguous()
        assert second is first is linear.cinput
        assert second.size() == (2, 4)

    def test_contiguous_input_backward(self, linear):
        x = torch.randn(3, 2).t()
        assert linear.contiguous_input(x, backward=True) is x

        buffer = linear.contiguous_input(x)

        assert linear.contiguous_input(x, backward=True) is buffer
        assert torch.equal(buffer, x)

    def test_cinput_emptied_by_medium_serial(self, linear):
        linear.contiguous_input(torch.randn(3, 2).t())
        linear.medium_serial()

        state = linear.get_serial_state()

        assert state['cinput'].numel() == 0

    def test_to_batch_unbatched(self, linear):
        x = torch.randn(3)

        batched = linear.to_batch(x, 1)

        assert linear.online
        assert batched.size() == (1, 3)
        assert linear.from_batch(batched).size() == (3,)

    def test_to_batch_already_batched(self, linear):
        x = torch.randn(2, 3)

        assert linear.to_batch(x, 1) is x
        assert not linear.online
        assert linear.from_batch(x) is x

    def test_from_batch_wrong_size(self, linear):
        linear.to_batch(torch.randn(3), 1)

        with pytest.raises(ValueError, match="size 1 along batch dimension"):
            linear.from_batch(torch.randn(2, 3))

    def test_outside(self, mlp):
        assert mlp.outside((5, 4)) == torch.Size([5, 2])
        assert mlp.outside(4) == torch.Size([2])

    def test_outside_follows_parameter_dtype(self, mlp):
        mlp.double()

        assert mlp.outside((1, 4)) == torch.Size([1, 2])
        assert mlp.output.dtype == torch.float64

    def test_extrapolate_type(self, node_cls, chain_cls):
        chain = chain_cls(
            node_cls(weight=torch.zeros(2, dtype=torch.float64)),
            node_cls(weight=torch.zeros(2, dtype=torch.float64)),
            node_cls(weight=torch.zeros(2, dtype=torch.float16)),
        )

        assert chain.extrapolate_type() == torch.float64
        assert node_cls().extrapolate_type() is None


class TestDontBackward:
    """Test disabling the backward pass."""

    def test_no_gradients_accumulate(self, linear):
        x, grad = torch.randn(2, 3), torch.ones(2, 2)
        linear.forward(x)

        assert linear.dont_backward() is linear
        result = linear.backward(x, grad)

        assert result is linear.grad_input
        assert result.numel() == 0
        assert torch.count_nonzero(linear.grad_weight) == 0

    def test_frozen_first_layer(self):
        embedding = LookupTable(10, 4).dont_backward()
        net = Sequential(embedding, Linear(4, 2))
        indices = torch.tensor([1, 2, 3])

        net.forward(indices)
        net.backward(indices, torch.ones(3, 2))

        assert torch.count_nonzero(embedding.grad_weight) == 0
        assert torch.count_nonzero(net[1].grad_weight) > 0

    def test_flag_survives_clone(self, linear):
        linear.dont_backward()

        assert linear.shared_clone().backward_disabled
