import numpy as np
import pytest

from tapegrad.algebras import Check, Eval, Graph1, GraphN
from tapegrad.errors import ReducedDimensionError, check_reduced_dimensions

from tests.utils import assert_close, backward


class SumAxisCheck:
    def sum_to(self, v, rdims):
        return check_reduced_dimensions("Check.sum_to", v, rdims)

    def broadcast_to(self, v, dims):
        check_reduced_dimensions("Check.broadcast_to", dims, v)
        return tuple(dims)


class SumAxisEval:
    def sum_to(self, v, rdims):
        self.check().sum_to(v.shape, rdims)
        axes = tuple(i for i, (d, r) in enumerate(zip(v.shape, rdims)) if d != r)
        return v.sum(axis=axes, keepdims=True)

    def broadcast_to(self, v, dims):
        self.check().broadcast_to(v.shape, dims)
        return np.broadcast_to(v, dims).copy()


class SumAxisGraph:
    def sum_to(self, v, rdims):
        result = self.eval().sum_to(v.data, rdims)
        dims = v.dims()

        def backward(graph, store, gradient):
            if v.id is not None:
                store.add_gradient(graph, v.id, graph.broadcast_to(gradient, dims))

        return self.make_node(result, [v.input()], backward)

    def broadcast_to(self, v, dims):
        result = self.eval().broadcast_to(v.data, dims)
        rdims = v.dims()

        def backward(graph, store, gradient):
            if v.id is not None:
                store.add_gradient(graph, v.id, graph.sum_to(gradient, rdims))

        return self.make_node(result, [v.input()], backward)


class MyCheck(SumAxisCheck, Check):
    pass


class MyEval(SumAxisEval, Eval):
    check_algebra = MyCheck


class MyGraph1(SumAxisGraph, Graph1):
    eval_algebra = MyEval


class MyGraphN(SumAxisGraph, GraphN):
    eval_algebra = MyEval


def test_extension_in_check_and_eval():
    c = MyCheck()
    assert c.sum_to((2, 3), (1, 3)) == (1, 3)
    with pytest.raises(ReducedDimensionError):
        c.sum_to((2, 3), (2, 2))

    e = MyEval()
    x = np.arange(6.0).reshape(2, 3)
    assert_close(e.sum_to(x, (1, 3)), [[3.0, 5.0, 7.0]])
    assert_close(e.broadcast_to(np.ones((1, 3)), (2, 3)), np.ones((2, 3)))


@pytest.mark.parametrize("graph_type", [MyGraph1, MyGraphN])
def test_extension_gradients(graph_type, rng):
    g = graph_type()
    x_np = rng.normal(size=(2, 3))
    w_np = rng.normal(size=(1, 3))
    x = g.variable(x_np)
    w = g.variable(w_np)
    # z = x * broadcast(w), reduced over the first axis
    z = g.sum_to(g.mul(x, g.broadcast_to(w, (2, 3))), (1, 3))
    assert z.dims() == (1, 3)

    store = backward(g, z)
    assert_close(store.read(x.gid()), np.broadcast_to(w_np, (2, 3)))
    assert_close(store.read(w.gid()), x_np.sum(axis=0, keepdims=True))


def test_extension_second_order(rng):
    g = MyGraphN()
    w_np = rng.normal(size=(1, 3))
    w = g.variable(w_np)
    b = g.broadcast_to(w, (4, 3))
    # z = sum_rows(b * b), so dz/dw = 8 w and d2z/dw2 = 8
    z = g.sum_to(g.mul(b, b), (1, 3))
    ones = g.constant(np.ones((1, 3)))
    dz = g.compute_gradients(z.gid(), ones).get(w.gid())
    assert_close(dz, 8 * w_np)
    ddz = g.compute_gradients(dz.gid(), ones).read(w.gid())
    assert_close(ddz, np.full((1, 3), 8.0))
