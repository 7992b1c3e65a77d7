"""
Tests for concrete module kinds.

Tests:
- Linear and LookupTable forward/backward against autograd
- Sequential and Concat composition
- Recurrence weight tying and backpropagation through time
"""

import pytest
import torch

from aliasgraph.core.identity import shares_storage
from aliasgraph.nn import Concat, Linear, LookupTable, Recurrence, Sequential


def autograd_reference(weight, bias, fn):
    """Run ``fn`` on leaf copies of weight/bias and return their gradients."""
    w = weight.detach().clone().requires_grad_(True)
    b = bias.detach().clone().requires_grad_(True)
    fn(w, b).backward()
    return w.grad, b.grad


# ============================================================================
# LEAF MODULE TESTS
# ============================================================================


class TestLinear:
    """Test the affine layer."""

    def test_forward(self, linear):
        x = torch.randn(5, 3)

        y = linear.forward(x)

        assert y.shape == (5, 2)
        assert torch.allclose(y, x @ linear.weight.t() + linear.bias)
        assert linear.output is y

    def test_backward_matches_autograd(self, linear):
        x = torch.randn(5, 3)
        grad_out = torch.randn(5, 2)

        linear.forward(x)
        grad_in = linear.backward(x, grad_out)

        grad_w, grad_b = autograd_reference(
            linear.weight, linear.bias, lambda w, b: ((x @ w.t() + b) * grad_out).sum()
        )
        assert torch.allclose(linear.grad_weight, grad_w, atol=1e-6)
        assert torch.allclose(linear.grad_bias, grad_b, atol=1e-6)
        assert torch.allclose(grad_in, grad_out @ linear.weight)

    def test_backward_accumulates(self, linear):
        x = torch.randn(4, 3)
        grad_out = torch.randn(4, 2)

        linear.backward(x, grad_out)
        once = linear.grad_weight.clone()
        linear.backward(x, grad_out, scale=0.5)

        assert torch.allclose(linear.grad_weight, once * 1.5)

    def test_no_bias(self):
        layer = Linear(3, 2, bias=False)

        assert layer.bias is None
        assert len(layer.parameters()[0]) == 1
        assert layer.forward(torch.ones(1, 3)).shape == (1, 2)


class TestLookupTable:
    """Test the embedding lookup."""

    def test_forward(self):
        table = LookupTable(10, 4)
        indices = torch.tensor([[1, 3], [3, 9]])

        out = table.forward(indices)

        assert out.shape == (2, 2, 4)
        assert torch.equal(out[0, 1], table.weight[3])

    def test_backward_accumulates_repeated_rows(self):
        table = LookupTable(10, 4)
        indices = torch.tensor([3, 3, 5])
        grad_out = torch.ones(3, 4)

        table.backward(indices, grad_out)

        assert torch.all(table.grad_weight[3] == 2.0)
        assert torch.all(table.grad_weight[5] == 1.0)
        assert torch.all(table.grad_weight[0] == 0.0)

    def test_declared_fields(self):
        table = LookupTable(4, 2)

        params, grads = table.own_parameters()

        assert params == [table.weight]
        assert grads == [table.grad_weight]

    def test_noncontiguous_indices(self):
        table = LookupTable(10, 2)
        indices = torch.tensor([[1, 2], [3, 4]]).t()

        output = table.forward(indices)

        assert torch.equal(output[0, 1], table.weight[3])
        assert table.cinput.is_contiguous()


# ============================================================================
# CONTAINER TESTS
# ============================================================================


class TestSequential:
    """Test chained modules."""

    def test_forward_chains(self, mlp):
        x = torch.randn(3, 4)

        y = mlp.forward(x)

        assert torch.allclose(y, mlp[1].forward(mlp[0].forward(x)))

    def test_backward_reaches_first_layer(self, mlp):
        x = torch.randn(3, 4)
        mlp.forward(x)

        grad_in = mlp.backward(x, torch.ones(3, 2))

        assert grad_in.shape == (3, 4)
        assert mlp[0].grad_weight.abs().sum() > 0


class TestConcat:
    """Test parallel branches."""

    def test_forward_concatenates(self):
        concat = Concat(1, Linear(4, 2), Linear(4, 3))

        out = concat.forward(torch.randn(5, 4))

        assert out.shape == (5, 5)

    def test_backward_sums_branches(self):
        first, second = Linear(4, 2), Linear(4, 3)
        concat = Concat(1, first, second)
        x = torch.randn(5, 4)
        grad_out = torch.randn(5, 5)

        concat.forward(x)
        grad_in = concat.backward(x, grad_out)

        expected = grad_out[:, :2] @ first.weight + grad_out[:, 2:] @ second.weight
        assert torch.allclose(grad_in, expected, atol=1e-6)


class TestRecurrence:
    """Test weight-tied unrolled recurrence."""

    def test_steps_share_parameters(self, rnn):
        assert rnn.steps == 3
        assert rnn[0] is not rnn[1]
        assert shares_storage(rnn[0].weight, rnn[2].weight)
        assert shares_storage(rnn[1].grad_bias, rnn[2].grad_bias)

    def test_steps_keep_own_outputs(self, rnn):
        rnn.forward([torch.randn(2, 3) for _ in range(3)])

        assert not shares_storage(rnn[0].output, rnn[1].output)

    def test_invalid_steps(self):
        with pytest.raises(ValueError, match="steps must be >= 1"):
            Recurrence(Linear(5, 2), steps=0, hidden_size=2)

    def test_too_many_inputs(self, rnn):
        with pytest.raises(ValueError, match="unrolled steps"):
            rnn.forward([torch.randn(2, 3) for _ in range(4)])

    def test_bptt_matches_autograd(self, rnn):
        inputs = [torch.randn(2, 3) for _ in range(3)]
        grad_outputs = [torch.randn(2, 4) for _ in range(3)]
        step = rnn[0]

        rnn.forward(inputs)
        rnn.backward(inputs, grad_outputs)

        def unrolled(w, b):
            h = torch.zeros(2, 4)
            loss = 0.0
            for x, g in zip(inputs, grad_outputs):
                h = torch.tanh(torch.cat([x, h], 1) @ w.t() + b)
                loss = loss + (h * g).sum()
            return loss

        grad_w, grad_b = autograd_reference(step.weight, step.bias, unrolled)
        # every step accumulated into the one shared buffer
        assert torch.allclose(rnn[2].grad_weight, grad_w, atol=1e-5)
        assert torch.allclose(rnn[0].grad_bias, grad_b, atol=1e-5)

    def test_bptt_input_gradients(self, rnn):
        inputs = [torch.randn(2, 3, requires_grad=True) for _ in range(3)]
        grad_outputs = [torch.randn(2, 4) for _ in range(3)]
        detached = [x.detach() for x in inputs]

        rnn.forward(detached)
        grad_inputs = rnn.backward(detached, grad_outputs)

        w, b = rnn[0].weight, rnn[0].bias
        h = torch.zeros(2, 4)
        loss = 0.0
        for x, g in zip(inputs, grad_outputs):
            h = torch.tanh(torch.cat([x, h], 1) @ w.t() + b)
            loss = loss + (h * g).sum()
        loss.backward()

        for grad, x in zip(grad_inputs, inputs):
            assert torch.allclose(grad, x.grad, atol=1e-5)

    def test_unbatched_inputs(self, rnn):
        batched = [torch.randn(1, 3) for _ in range(3)]
        grad_outputs = [torch.randn(1, 4) for _ in range(3)]

        expected = [h.clone() for h in rnn.forward(batched)]
        expected_grads = [g.clone() for g in rnn.backward(batched, grad_outputs)]
        outputs = rnn.forward([x[0] for x in batched])
        grads = rnn.backward([x[0] for x in batched], [g[0] for g in grad_outputs])

        for h, ref in zip(outputs, expected):
            assert h.size() == (4,)
            assert torch.allclose(h, ref[0])
        for grad, ref in zip(grads, expected_grads):
            assert grad.size() == (3,)
            assert torch.allclose(grad, ref[0], atol=1e-6)
