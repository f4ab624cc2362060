from typing import Any

from tapegrad.core import Dims, array_module, dims_of
from tapegrad.errors import check_equal_dimensions
from tapegrad.graph import Value


class AnalyticCheck:
    """Element-wise analytic functions on dimensions."""

    def exp(self, v: Dims) -> Dims:
        return v

    def log(self, v: Dims) -> Dims:
        return v

    def log1p(self, v: Dims) -> Dims:
        return v

    def sin(self, v: Dims) -> Dims:
        return v

    def cos(self, v: Dims) -> Dims:
        return v

    def tanh(self, v: Dims) -> Dims:
        return v

    def sigmoid(self, v: Dims) -> Dims:
        return v

    def reciprocal(self, v: Dims) -> Dims:
        return v

    def sqrt(self, v: Dims) -> Dims:
        return v

    def div(self, v0: Dims, v1: Dims) -> Dims:
        return check_equal_dimensions("Check.div", [v0, v1])

    def pow(self, v: Dims, p: Dims) -> Dims:
        return check_equal_dimensions("Check.pow", [v, p])


class AnalyticEval:
    """
    Element-wise analytic functions on raw data.

    Computed with the array module of the operand (NumPy, or CuPy for CuPy
    arrays). Python scalars come back as NumPy scalars.
    """

    def exp(self, v: Any) -> Any:
        return array_module(v).exp(v)

    def log(self, v: Any) -> Any:
        return array_module(v).log(v)

    def log1p(self, v: Any) -> Any:
        return array_module(v).log1p(v)

    def sin(self, v: Any) -> Any:
        return array_module(v).sin(v)

    def cos(self, v: Any) -> Any:
        return array_module(v).cos(v)

    def tanh(self, v: Any) -> Any:
        return array_module(v).tanh(v)

    def sigmoid(self, v: Any) -> Any:
        """Logistic function ``1 / (1 + exp(-v))``."""
        xp = array_module(v)
        return 1 / (1 + xp.exp(-v))

    def reciprocal(self, v: Any) -> Any:
        return 1 / v

    def sqrt(self, v: Any) -> Any:
        return array_module(v).sqrt(v)

    def div(self, v0: Any, v1: Any) -> Any:
        self.check().div(dims_of(v0), dims_of(v1))
        return v0 / v1

    def pow(self, v: Any, p: Any) -> Any:
        """Element-wise power ``v ** p``."""
        self.check().pow(dims_of(v), dims_of(p))
        return array_module(v).power(v, p)


class AnalyticGraph:
    """
    Differentiable element-wise analytic functions on tracked values.

    Every backward rule is itself written with algebra operations on
    ``graph.link(v)``, hence derivatives of any order are available on
    higher-order tapes.

    Notes
    -----
    Requires the arithmetic operations (``ArithGraph``) on the same class.
    """

    def _unary(self, name: str, v: Value, derivative) -> Value:
        # derivative(graph, c) returns d(name)/dv evaluated at the linked operand c.
        result = getattr(self.eval(), name)(v.data)
        id = v.id

        def backward(graph, store, gradient):
            if id is not None:
                k = derivative(graph, graph.link(v))
                store.add_gradient(graph, id, graph.mul(gradient, k))

        return self.make_node(result, [v.input()], backward)

    def exp(self, v: Value) -> Value:
        return self._unary("exp", v, lambda graph, c: graph.exp(c))

    def log(self, v: Value) -> Value:
        return self._unary("log", v, lambda graph, c: graph.reciprocal(c))

    def log1p(self, v: Value) -> Value:
        return self._unary(
            "log1p", v, lambda graph, c: graph.reciprocal(graph.add(graph.ones(c), c))
        )

    def sin(self, v: Value) -> Value:
        return self._unary("sin", v, lambda graph, c: graph.cos(c))

    def cos(self, v: Value) -> Value:
        return self._unary("cos", v, lambda graph, c: graph.neg(graph.sin(c)))

    def tanh(self, v: Value) -> Value:
        def derivative(graph, c):
            t = graph.tanh(c)
            return graph.sub(graph.ones(t), graph.mul(t, t))
        return self._unary("tanh", v, derivative)

    def sigmoid(self, v: Value) -> Value:
        def derivative(graph, c):
            s = graph.sigmoid(c)
            return graph.mul(s, graph.sub(graph.ones(s), s))
        return self._unary("sigmoid", v, derivative)

    def reciprocal(self, v: Value) -> Value:
        def derivative(graph, c):
            return graph.neg(graph.reciprocal(graph.mul(c, c)))
        return self._unary("reciprocal", v, derivative)

    def sqrt(self, v: Value) -> Value:
        def derivative(graph, c):
            s = graph.sqrt(c)
            return graph.reciprocal(graph.add(s, s))
        return self._unary("sqrt", v, derivative)

    def div(self, v0: Value, v1: Value) -> Value:
        result = self.eval().div(v0.data, v1.data)

        def backward(graph, store, gradient):
            r1 = graph.reciprocal(graph.link(v1))
            g0 = graph.mul(gradient, r1)
            if v0.id is not None:
                store.add_gradient(graph, v0.id, g0)
            if v1.id is not None:
                c = graph.mul(graph.mul(g0, r1), graph.link(v0))
                store.add_gradient(graph, v1.id, graph.neg(c))

        return self.make_node(result, [v0.input(), v1.input()], backward)

    def pow(self, v: Value, p: Value) -> Value:
        """Element-wise power, computed as ``exp(p * log(v))`` (requires ``v > 0``)."""
        return self.exp(self.mul(p, self.log(v)))
