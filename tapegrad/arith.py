from typing import Any

from tapegrad.core import Dims, dims_of, full_like
from tapegrad.errors import check_equal_dimensions
from tapegrad.graph import Value


class ArithCheck:
    """Element-wise arithmetic on dimensions."""

    def zeros(self, v: Dims) -> Dims:
        return v

    def ones(self, v: Dims) -> Dims:
        return v

    def neg(self, v: Dims) -> Dims:
        return v

    def sub(self, v0: Dims, v1: Dims) -> Dims:
        return check_equal_dimensions("Check.sub", [v0, v1])

    def mul(self, v0: Dims, v1: Dims) -> Dims:
        return check_equal_dimensions("Check.mul", [v0, v1])


class ArithEval:
    """
    Element-wise arithmetic on raw data.

    Operands must have equal dimensions (checked through ``self.check()``);
    there is no implicit broadcasting.
    """

    def zeros(self, v: Any) -> Any:
        """Zeros with the dimensions of ``v``."""
        return full_like(v, 0)

    def ones(self, v: Any) -> Any:
        """Ones with the dimensions of ``v``."""
        return full_like(v, 1)

    def neg(self, v: Any) -> Any:
        return -v

    def sub(self, v0: Any, v1: Any) -> Any:
        self.check().sub(dims_of(v0), dims_of(v1))
        return v0 - v1

    def mul(self, v0: Any, v1: Any) -> Any:
        self.check().mul(dims_of(v0), dims_of(v1))
        return v0 * v1


class ArithGraph:
    """
    Differentiable element-wise arithmetic on tracked values.

    Backward rules only use ``graph.link``, ``graph.neg`` and ``graph.mul``,
    so the same rules serve first-order tapes (where ``graph`` is the forward
    algebra) and higher-order tapes (where ``graph`` is the tape itself).
    """

    def zeros(self, v: Value) -> Value:
        """Constant zeros with the dimensions of ``v``."""
        return self.constant(self.eval().zeros(v.data))

    def ones(self, v: Value) -> Value:
        """Constant ones with the dimensions of ``v``."""
        return self.constant(self.eval().ones(v.data))

    def neg(self, v: Value) -> Value:
        result = self.eval().neg(v.data)
        id = v.id

        def backward(graph, store, gradient):
            if id is not None:
                store.add_gradient(graph, id, graph.neg(gradient))

        return self.make_node(result, [v.input()], backward)

    def sub(self, v0: Value, v1: Value) -> Value:
        result = self.eval().sub(v0.data, v1.data)
        id0, id1 = v0.id, v1.id

        def backward(graph, store, gradient):
            if id0 is not None:
                store.add_gradient(graph, id0, gradient)
            if id1 is not None:
                store.add_gradient(graph, id1, graph.neg(gradient))

        return self.make_node(result, [v0.input(), v1.input()], backward)

    def mul(self, v0: Value, v1: Value) -> Value:
        result = self.eval().mul(v0.data, v1.data)

        def backward(graph, store, gradient):
            if v0.id is not None:
                c1 = graph.link(v1)
                store.add_gradient(graph, v0.id, graph.mul(gradient, c1))
            if v1.id is not None:
                c0 = graph.link(v0)
                store.add_gradient(graph, v1.id, graph.mul(c0, gradient))

        return self.make_node(result, [v0.input(), v1.input()], backward)
