from __future__ import annotations

import importlib.util
import threading
import unittest


JAX_AVAILABLE = importlib.util.find_spec("jax") is not None


def _context(chunk_size: int = 1 << 16):
    from symgrad.arena import Arena
    from symgrad.autograd import AutogradContext

    return AutogradContext(arena=Arena(chunk_size=chunk_size))


def _var(values, ctx, requires_grad: bool = True):
    import jax.numpy as jnp

    from symgrad.autograd import Variable

    return Variable.temporary(jnp.asarray(values, dtype=jnp.float64), requires_grad=requires_grad, ctx=ctx)


def _cotangent(shape, seed: int = 0):
    import jax
    import jax.numpy as jnp

    return jax.random.normal(jax.random.PRNGKey(seed), shape, dtype=jnp.float64)


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for autograd tests")
class ElementaryGradientTests(unittest.TestCase):
    def test_add_sends_ones_to_both_inputs(self) -> None:
        from symgrad import ops

        ctx = _context()
        a = _var([1.0, 2.0, 3.0], ctx)
        b = _var([4.0, 5.0, 6.0], ctx)
        out = ops.add(a, b, ctx)
        ctx.tape.backward(ops.scale(out, 1.0, ctx))
        self.assertEqual(a.grad.tolist(), [1.0, 1.0, 1.0])
        self.assertEqual(b.grad.tolist(), [1.0, 1.0, 1.0])

    def test_bias_broadcast_sums_rows(self) -> None:
        from symgrad import ops

        ctx = _context()
        x = _var([[1.0, 2.0], [3.0, 4.0], [5.0, 6.0]], ctx)
        bias = _var([10.0, 20.0], ctx)
        out = ops.add(x, bias, ctx)
        self.assertEqual(out.data.tolist(), [[11.0, 22.0], [13.0, 24.0], [15.0, 26.0]])
        out.grad.assign([[1.0, 2.0], [3.0, 4.0], [5.0, 6.0]])
        ctx.tape.backward()
        self.assertEqual(bias.grad.tolist(), [9.0, 12.0])
        self.assertEqual(x.grad.tolist(), [[1.0, 2.0], [3.0, 4.0], [5.0, 6.0]])

    def test_add_rejects_unbroadcastable_shapes(self) -> None:
        from symgrad import ops
        from symgrad.errors import ShapeError

        ctx = _context()
        with self.assertRaises(ShapeError):
            ops.add(_var([[1.0, 2.0]], ctx), _var([1.0, 2.0, 3.0], ctx), ctx)

    def test_multiply_swaps_operands(self) -> None:
        from symgrad import ops

        ctx = _context()
        a = _var([2.0, -3.0], ctx)
        b = _var([5.0, 7.0], ctx)
        out = ops.multiply(a, b, ctx)
        out.grad.assign([1.0, 1.0])
        ctx.tape.backward()
        self.assertEqual(a.grad.tolist(), [5.0, 7.0])
        self.assertEqual(b.grad.tolist(), [2.0, -3.0])

    def test_relu_gradient_is_positive_indicator(self) -> None:
        from symgrad import ops

        ctx = _context()
        x = _var([-2.0, 0.0, 0.5, 3.0], ctx)
        out = ops.relu(x, ctx)
        out.grad.assign([1.0, 1.0, 1.0, 1.0])
        ctx.tape.backward()
        self.assertEqual(x.grad.tolist(), [0.0, 0.0, 1.0, 1.0])

    def test_scale_transpose_and_reshape(self) -> None:
        from symgrad import ops
        from symgrad.errors import ShapeError

        ctx = _context()
        x = _var([[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]], ctx)
        y = ops.reshape(ops.transpose(ops.scale(x, 3.0, ctx), ctx), (6,), ctx)
        self.assertEqual(y.data.tolist(), [3.0, 12.0, 6.0, 15.0, 9.0, 18.0])
        y.grad.assign([1.0, 2.0, 3.0, 4.0, 5.0, 6.0])
        ctx.tape.backward()
        self.assertEqual(x.grad.tolist(), [[3.0, 9.0, 15.0], [6.0, 12.0, 18.0]])
        with self.assertRaises(ShapeError):
            ops.reshape(x, (4,), ctx)

    def test_embedding_scatter_adds_repeated_rows(self) -> None:
        from symgrad import ops
        from symgrad.errors import ShapeError

        ctx = _context()
        table = _var([[0.0, 1.0], [2.0, 3.0], [4.0, 5.0], [6.0, 7.0]], ctx)
        out = ops.embedding(table, [1, 3, 1], ctx)
        self.assertEqual(out.data.tolist(), [[2.0, 3.0], [6.0, 7.0], [2.0, 3.0]])
        out.grad.assign([[1.0, 1.0], [1.0, 1.0], [1.0, 1.0]])
        ctx.tape.backward()
        self.assertEqual(table.grad.tolist(), [[0.0, 0.0], [2.0, 2.0], [0.0, 0.0], [1.0, 1.0]])
        with self.assertRaises(ShapeError):
            ops.embedding(table, [4], ctx)

    def test_constant_inputs_are_not_recorded(self) -> None:
        from symgrad import ops

        ctx = _context()
        out = ops.multiply(_var([1.0], ctx, requires_grad=False), _var([2.0], ctx, requires_grad=False), ctx)
        self.assertFalse(out.requires_grad)
        self.assertIsNone(out.grad)
        self.assertEqual(ctx.tape.count, 0)
        with self.assertRaises(ValueError):
            ctx.tape.backward(out)


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for autograd tests")
class ReferenceGradientTests(unittest.TestCase):
    def test_matmul_matches_finite_differences(self) -> None:
        import jax.numpy as jnp

        from symgrad import ops

        a0 = jnp.asarray([[0.5, -1.0, 2.0], [1.5, 0.25, -0.75]], dtype=jnp.float64)
        b0 = jnp.asarray([[1.0, -2.0], [0.5, 0.3], [-1.2, 0.8]], dtype=jnp.float64)
        target = jnp.asarray([[0.1, 0.2], [0.3, 0.4]], dtype=jnp.float64)

        def loss_fn(a, b):
            return float(jnp.mean((a @ b - target) ** 2))

        ctx = _context()
        a = _var(a0, ctx)
        b = _var(b0, ctx)
        loss = ops.mse_loss(ops.matmul(a, b, ctx), target, ctx)
        self.assertAlmostEqual(loss.data.item(), loss_fn(a0, b0), places=12)
        ctx.tape.backward(loss)

        h = 1e-6
        for name, base, grad in (("a", a0, a.grad.data), ("b", b0, b.grad.data)):
            for index in [(i, j) for i in range(base.shape[0]) for j in range(base.shape[1])]:
                plus = base.at[index].add(h)
                minus = base.at[index].add(-h)
                if name == "a":
                    numeric = (loss_fn(plus, b0) - loss_fn(minus, b0)) / (2 * h)
                else:
                    numeric = (loss_fn(a0, plus) - loss_fn(a0, minus)) / (2 * h)
                with self.subTest(param=name, index=index):
                    self.assertLess(abs(float(grad[index]) - numeric), 1e-5)

    def test_softmax_vector_jacobian_product(self) -> None:
        import jax
        import jax.numpy as jnp

        from symgrad import ops

        x0 = jnp.asarray([[0.3, -1.2, 2.0], [5.0, 5.0, -5.0]], dtype=jnp.float64)
        w = _cotangent(x0.shape)
        ctx = _context()
        x = _var(x0, ctx)
        y = ops.softmax(x, ctx)
        y.grad.assign(w)
        ctx.tape.backward()

        _, vjp = jax.vjp(lambda v: jax.nn.softmax(v, axis=-1), x0)
        (expected,) = vjp(w)
        self.assertTrue(jnp.allclose(x.grad.data, expected, atol=1e-12))

    def test_layer_norm_matches_jax(self) -> None:
        import jax
        import jax.numpy as jnp

        from symgrad import ops

        x0 = jnp.asarray([[1.0, 2.0, 4.0, -1.0], [0.5, 0.5, 3.0, 2.0], [-2.0, 1.0, 0.0, 7.0]], dtype=jnp.float64)
        g0 = jnp.asarray([1.0, 0.5, -1.5, 2.0], dtype=jnp.float64)
        b0 = jnp.asarray([0.1, 0.2, 0.3, 0.4], dtype=jnp.float64)
        eps = 1e-5

        def reference(x, g, b):
            mean = jnp.mean(x, axis=-1, keepdims=True)
            var = jnp.mean((x - mean) ** 2, axis=-1, keepdims=True)
            return g * (x - mean) / jnp.sqrt(var + eps) + b

        ctx = _context()
        x, gamma, beta = _var(x0, ctx), _var(g0, ctx), _var(b0, ctx)
        out = ops.layer_norm(x, gamma, beta, eps, ctx)
        self.assertTrue(jnp.allclose(out.data.data, reference(x0, g0, b0), atol=1e-12))

        cot = _cotangent(x0.shape, seed=1)
        out.grad.assign(cot)
        ctx.tape.backward()
        _, vjp = jax.vjp(reference, x0, g0, b0)
        dx, dg, db = vjp(cot)
        self.assertTrue(jnp.allclose(x.grad.data, dx, atol=1e-10))
        self.assertTrue(jnp.allclose(gamma.grad.data, dg, atol=1e-10))
        self.assertTrue(jnp.allclose(beta.grad.data, db, atol=1e-10))

    def test_cross_entropy_matches_jax(self) -> None:
        import jax
        import jax.numpy as jnp

        from symgrad import ops
        from symgrad.errors import ShapeError

        logits0 = jnp.asarray([[2.0, 0.5, -1.0], [0.1, 0.2, 0.3], [-3.0, 4.0, 1.0], [0.0, 0.0, 0.0]])
        targets = [0, 2, 1, 1]

        def reference(logits):
            log_probs = jax.nn.log_softmax(logits, axis=-1)
            return -jnp.mean(log_probs[jnp.arange(4), jnp.asarray(targets)])

        ctx = _context()
        logits = _var(logits0, ctx)
        loss = ops.cross_entropy(logits, targets, ctx)
        self.assertEqual(loss.shape, (1,))
        self.assertAlmostEqual(loss.data.item(), float(reference(logits0)), places=12)
        ctx.tape.backward(loss)
        self.assertTrue(jnp.allclose(logits.grad.data, jax.grad(reference)(logits0), atol=1e-12))

        with self.assertRaises(ShapeError):
            ops.cross_entropy(logits, [0, 1, 2, 3], ctx)
        with self.assertRaises(ShapeError):
            ops.cross_entropy(logits, [0, 1], ctx)

    def test_attention_matches_jax(self) -> None:
        import jax
        import jax.numpy as jnp

        from symgrad import ops

        seq, heads, dim = 3, 2, 2
        scale = 1.0 / jnp.sqrt(float(dim))
        q0 = _cotangent((seq, heads, dim), seed=2)
        k0 = _cotangent((seq, heads, dim), seed=3)
        v0 = _cotangent((seq, heads, dim), seed=4)
        cot = _cotangent((seq, heads, dim), seed=5)

        for causal in (False, True):
            with self.subTest(causal=causal):

                def reference(q, k, v):
                    scores = jnp.einsum("qhd,khd->hqk", q, k) * scale
                    if causal:
                        scores = jnp.where(jnp.tril(jnp.ones((seq, seq), dtype=bool)), scores, -jnp.inf)
                    return jnp.einsum("hqk,khd->qhd", jax.nn.softmax(scores, axis=-1), v)

                ctx = _context()
                q, k, v = _var(q0, ctx), _var(k0, ctx), _var(v0, ctx)
                weights = ops.softmax(ops.attention_scores(q, k, float(scale), causal, ctx), ctx)
                out = ops.attention_apply(weights, v, ctx)
                self.assertTrue(jnp.allclose(out.data.data, reference(q0, k0, v0), atol=1e-12))
                if causal:
                    self.assertEqual(float(weights.data.data[0, 0, 2]), 0.0)

                out.grad.assign(cot)
                ctx.tape.backward()
                _, vjp = jax.vjp(reference, q0, k0, v0)
                dq, dk, dv = vjp(cot)
                self.assertTrue(jnp.allclose(q.grad.data, dq, atol=1e-10))
                self.assertTrue(jnp.allclose(k.grad.data, dk, atol=1e-10))
                self.assertTrue(jnp.allclose(v.grad.data, dv, atol=1e-10))


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for autograd tests")
class TrainingLoopTests(unittest.TestCase):
    def test_linear_regression_converges(self) -> None:
        import jax.numpy as jnp

        from symgrad import ops
        from symgrad.autograd import Variable
        from symgrad.nn import Linear
        from symgrad.optim import SGD
        from symgrad.rng import seed

        seed(7)
        xs = jnp.asarray([[-2.0], [-1.0], [0.0], [1.0], [2.0]])
        ys = 2.0 * xs + 3.0

        ctx = _context()
        model = Linear(1, 1)
        optimizer = SGD(model.parameters(), lr=0.1)
        losses = []
        for _ in range(100):
            optimizer.zero_grad()
            x = Variable.temporary(xs, ctx=ctx)
            loss = ops.mse_loss(model(x, ctx), ys, ctx)
            losses.append(loss.data.item())
            ctx.tape.backward(loss)
            optimizer.step()
            ctx.reset_iteration()

        for before, after in zip(losses, losses[1:]):
            self.assertLessEqual(after, before + 1e-12)
        self.assertLess(abs(model.weight.data.item() - 2.0), 0.1)
        self.assertLess(abs(model.bias.data.item() - 3.0), 0.1)

    def test_adam_step_moves_against_gradient(self) -> None:
        from symgrad.autograd import Variable
        from symgrad.optim import Adam
        from symgrad.tensor import from_data

        p = Variable.parameter(from_data([1.0, -1.0]), name="p")
        p.grad.assign([0.5, -2.0])
        optimizer = Adam([p], lr=0.1)
        optimizer.step()
        self.assertEqual(optimizer.t, 1)
        # First bias-corrected Adam step has magnitude lr regardless of gradient scale.
        values = p.data.tolist()
        self.assertAlmostEqual(values[0], 0.9, places=6)
        self.assertAlmostEqual(values[1], -0.9, places=6)
        optimizer.zero_grad()
        self.assertEqual(p.grad.tolist(), [0.0, 0.0])


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for autograd tests")
class ContextLifetimeTests(unittest.TestCase):
    def test_reset_iteration_clears_tape_and_arena(self) -> None:
        from symgrad import ops
        from symgrad.errors import LifetimeError

        ctx = _context(chunk_size=1024)
        ctx.aggressive_reset_every = 2
        x = _var([[1.0] * 16] * 16, ctx)
        y = ops.relu(ops.scale(x, 2.0, ctx), ctx)
        self.assertEqual(ctx.tape.count, 2)
        self.assertGreater(ctx.arena.chunk_count, 1)
        allocated = ctx.arena.allocated

        ctx.reset_iteration()
        self.assertEqual(ctx.tape.count, 0)
        self.assertEqual(ctx.arena.used, 0)
        self.assertGreaterEqual(ctx.arena.allocated, allocated)
        with self.assertRaises(LifetimeError):
            y.data.data
        with self.assertRaises(LifetimeError):
            x.grad.data

        ctx.reset_iteration()
        self.assertEqual(ctx.arena.allocated, 1024)
        stats = ctx.stats()
        self.assertEqual(stats["iterations"], 2)
        self.assertEqual(stats["arena_chunks"], 1)

    def test_parameters_survive_reset(self) -> None:
        from symgrad import ops
        from symgrad.autograd import Variable
        from symgrad.tensor import from_data

        ctx = _context()
        w = Variable.parameter(from_data([1.0, 2.0]), name="w")
        loss = ops.mse_loss(ops.multiply(w, _var([3.0, 4.0], ctx, requires_grad=False), ctx), [0.0, 0.0], ctx)
        ctx.tape.backward(loss)
        ctx.reset_iteration()
        self.assertEqual(w.data.tolist(), [1.0, 2.0])
        self.assertEqual(w.grad.tolist(), [9.0, 32.0])

    def test_default_context_is_per_thread(self) -> None:
        from symgrad.autograd import get_context, use_context

        main = get_context()
        self.assertIs(get_context(), main)
        seen = []
        worker = threading.Thread(target=lambda: seen.append(get_context()))
        worker.start()
        worker.join()
        self.assertIsNot(seen[0], main)

        custom = _context()
        with use_context(custom):
            self.assertIs(get_context(), custom)
        self.assertIs(get_context(), main)

    def test_tape_grows_and_shrinks(self) -> None:
        from symgrad import ops
        from symgrad.autograd import INITIAL_TAPE_CAPACITY

        ctx = _context()
        x = _var([1.0], ctx)
        for _ in range(INITIAL_TAPE_CAPACITY + 1):
            x = ops.scale(x, 1.0, ctx)
        self.assertEqual(ctx.tape.capacity, 2 * INITIAL_TAPE_CAPACITY)
        self.assertEqual(len(ctx.tape), INITIAL_TAPE_CAPACITY + 1)
        ctx.reset_iteration()
        self.assertEqual(len(ctx.tape), 0)


if __name__ == "__main__":
    unittest.main()
