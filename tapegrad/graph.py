import heapq
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Optional, Sequence, TypeVar

from tapegrad.core import CoreAlgebra, Dims, EvalCore, dims_of
from tapegrad.errors import (
    DimensionError,
    MissingGradientError,
    MissingIdError,
    MissingNodeError,
)
from tapegrad.store import GradientId, GradientMap1, GradientMapN, GradientStore, Id

logger = logging.getLogger(__name__)

D = TypeVar("D")

UpdateFunc = Callable[[Any, GradientStore, Any], None]
"""Backward rule of a node: ``update_func(algebra, store, gradient)``.

``algebra`` is the algebra used to compute gradients, ``store`` the gradient
store of the current pass and ``gradient`` the complete gradient of the node's
output. The rule must call ``store.add_gradient(algebra, id, ...)`` once for
every non-constant operand.
"""

_arena_ids = itertools.count()


@dataclass(frozen=True, eq=False)
class Value(Generic[D]):
    """
    A forward value tracked by a tape.

    Attributes
    ----------
    data : Any
        The forward result.
    id : GradientId or None
        Handle on the node that produced ``data``. ``None`` for constants, which
        are never recorded in a tape.

    Notes
    -----
    Values are immutable and cheap to share. A constant value is valid in any
    tape.
    """
    data: D
    id: Optional[GradientId] = None

    @classmethod
    def constant(cls, data: D) -> "Value[D]":
        """Create a constant (untracked) value."""
        return cls(data, None)

    def gid(self) -> GradientId:
        """
        Return the gradient id of this value.

        Raises
        ------
        MissingIdError
            If the value is a constant.
        """
        if self.id is None:
            raise MissingIdError("Value.gid")
        return self.id

    def input(self) -> Optional[Id]:
        """The untyped id used to declare dependencies, or None for constants."""
        return None if self.id is None else self.id.inner

    def dims(self):
        """Dimensions of the forward data."""
        return dims_of(self.data)

    def __repr__(self) -> str:
        return f"Value({self.data!r}, id={self.id!r})"


@dataclass
class Node:
    """
    One record of the tape.

    Attributes
    ----------
    inputs : list of Id or None
        Dependencies of the node (``None`` for constant operands). Always
        refer to nodes allocated earlier.
    update_func : callable or None
        Backward rule ``update_func(algebra, store)``. ``None`` for variables.
    dims : tuple[int, ...] or None
        Dimensions of the forward data, checked against seed gradients.
    """
    inputs: List[Optional[Id]] = field(default_factory=list)
    update_func: Optional[Callable[[Any, GradientStore], None]] = None
    dims: Optional[Dims] = None

    def clear(self) -> None:
        """Release dependencies and rule (used by consuming backward passes)."""
        self.inputs = []
        self.update_func = None

    def copy(self) -> "Node":
        return Node(list(self.inputs), self.update_func, self.dims)


class Graph(CoreAlgebra):
    """
    A tape recording differentiable computations.

    Operations called on a graph compute their forward result with the
    forward algebra (:meth:``eval``) and append one node per differentiable
    result. The tape is append-only: a node only depends on nodes allocated
    before it, so allocation order is a valid dependency order. Backward
    passes exploit this to visit every node once, from the last to the first.

    Parameters
    ----------
    eval_algebra : CoreAlgebra, optional
        Forward algebra instance. Defaults to ``self.eval_algebra()``.

    Attributes
    ----------
    eval_algebra : type
        Class of the forward algebra.
    MAX_NODES : int
        Size of the index space of a tape. Allocating beyond it raises
        ``OverflowError``; this is not a recoverable condition.

    Notes
    -----
    - Use :class:``FirstOrderGraph`` / :class:``HigherOrderGraph`` (or the
      default ``Graph1`` / ``GraphN``) rather than this base class.
    - New operators are defined with :meth:``make_node``.
    """
    eval_algebra = EvalCore
    MAX_NODES = 2**32 - 1

    def __init__(self, eval_algebra: Optional[CoreAlgebra] = None) -> None:
        self._nodes: List[Node] = []
        self._eval = eval_algebra if eval_algebra is not None else self.eval_algebra()
        self._arena = next(_arena_ids)
        # arena of each ancestor tape -> number of its nodes inherited by copy()
        self._forks: Dict[int, int] = {}
        self._consumed = False

    def eval(self) -> CoreAlgebra:
        """The forward algebra of this tape."""
        return self._eval

    def __len__(self) -> int:
        """Number of nodes in the tape."""
        return len(self._nodes)

    def nodes(self) -> Sequence[Node]:
        """Read-only view of the node records, in allocation order."""
        return tuple(self._nodes)

    def copy(self) -> "Graph":
        """
        Return a copy of the tape.

        The copy shares the backward rules but owns its node records, so a
        consuming pass on one does not affect the other. Ids allocated before
        the copy stay valid in both tapes; nodes allocated afterwards get a
        fresh arena identity, so an id created in one tape after the fork is
        rejected by the other.
        """
        other = type(self).__new__(type(self))
        other.__dict__.update(self.__dict__)
        other._nodes = [node.copy() for node in self._nodes]
        other._eval = self._eval.clone()
        other._arena = next(_arena_ids)
        other._forks = dict(self._forks)
        other._forks[self._arena] = len(self._nodes)
        return other

    def clone(self) -> "Graph":
        return self.copy()

    def _alloc(self, node: Node) -> Id:
        index = len(self._nodes)
        if index >= self.MAX_NODES:
            raise OverflowError("Too many nodes")
        self._nodes.append(node)
        return Id(self._arena, index)

    def _contains(self, id: Id) -> bool:
        if id.arena == self._arena:
            size = len(self._nodes)
        else:
            size = self._forks.get(id.arena, 0)
        return 0 <= id.index < size

    def _check_inputs(self, inputs: Sequence[Optional[Id]]) -> None:
        for input in inputs:
            if input is not None and not self._contains(input):
                raise MissingNodeError("Graph.make_node", input)

    def variable(self, data: D) -> Value[D]:
        """
        Create a differentiable input.

        Always allocates a node (with no dependencies and no backward rule),
        so the returned value always has a gradient id.
        """
        id = self._alloc(Node(dims=dims_of(data)))
        return Value(data, GradientId(id, type(data)))

    def constant(self, data: D) -> Value[D]:
        """Create a non-differentiable input. Nothing is recorded."""
        return Value.constant(data)

    def make_node(
        self,
        data: D,
        inputs: Sequence[Optional[Id]],
        update_func: UpdateFunc,
    ) -> Value[D]:
        """
        Record a computation node (used to define operators).

        Parameters
        ----------
        data : Any
            Forward result, already computed with :meth:``eval``.
        inputs : sequence of Id or None
            Operand ids, typically ``[v.input() for v in operands]``.
        update_func : callable
            Backward rule ``update_func(algebra, store, gradient)``. It must call
            ``store.add_gradient(algebra, id, grad)`` for each non-constant
            operand, and should build its formulas with ``algebra.link(v)`` so
            that it works for both first- and higher-order tapes.

        Returns
        -------
        Value
            The tracked result. If every input is ``None`` the result is a
            constant and no node is allocated.

        Raises
        ------
        MissingNodeError
            If an input does not refer to an existing node of this tape.

        Notes
        -----
        At backward time, the incoming gradient is read from the store and its
        dimensions are compared with those of ``data``; a mismatch raises
        ``DimensionError`` before ``update_func`` runs.

        Examples
        --------
        >>> def square(g, v):
        ...     result = g.eval().mul(v.data, v.data)
        ...     def backward(graph, store, gradient):
        ...         c = graph.link(v)
        ...         grad = graph.add(graph.mul(gradient, c), graph.mul(c, gradient))
        ...         store.add_gradient(graph, v.id, grad)
        ...     return g.make_node(result, [v.input()], backward)
        """
        inputs = list(inputs)
        if all(input is None for input in inputs):
            return Value.constant(data)
        self._check_inputs(inputs)

        dims = dims_of(data)
        node = Node(inputs, dims=dims)
        gid = GradientId(self._alloc(node), type(data))

        def update(algebra, store):
            gradient = store.get(gid)
            if gradient is None:
                raise MissingGradientError("Graph.make_node")
            gradient_dims = dims_of(gradient)
            if gradient_dims != dims:
                raise DimensionError("Graph.make_node", [gradient_dims, dims])
            update_func(algebra, store, gradient)

        node.update_func = update
        return Value(data, gid)

    def link(self, value: Value) -> Value:
        """
        Resolve a tracked value for use in a backward rule.

        When a tape computes its own gradients, operands must stay tracked so
        that gradients can be differentiated again.
        """
        return value

    def add(self, v1: Value, v2: Value) -> Value:
        result = self.eval().add(v1.data, v2.data)
        id1, id2 = v1.id, v2.id

        def backward(graph, store, gradient):
            if id1 is not None:
                store.add_gradient(graph, id1, gradient)
            if id2 is not None:
                store.add_gradient(graph, id2, gradient)

        return self.make_node(result, [v1.input(), v2.input()], backward)

    def add_all(self, values: Sequence[Value]) -> Value:
        result = self.eval().add_all([v.data for v in values])
        ids = [v.id for v in values]

        def backward(graph, store, gradient):
            for id in ids:
                if id is not None:
                    store.add_gradient(graph, id, gradient)

        return self.make_node(result, [v.input() for v in values], backward)

    def _propagate(
        self,
        algebra: Any,
        gid: GradientId,
        gradient: Any,
        consume: bool = False,
        boundary: Optional[int] = None,
    ) -> GradientStore:
        """
        Run a backward pass from ``gid``.

        Nodes are finalized in decreasing index order using a max-heap and a
        low-water mark: when an index is popped below the mark, every consumer
        of that node (all with larger indices) has already contributed, so its
        gradient is complete. Indices popped at or above the mark are stale
        duplicates and are skipped.

        Parameters
        ----------
        algebra : CoreAlgebra
            Algebra passed to backward rules.
        gid : GradientId
            Starting node.
        gradient : Any
            Seed gradient of the starting node.
        consume : bool, default False
            If True, clear each node after running its rule.
        boundary : int, optional
            Nodes at or after this index are never visited. Defaults to the
            current size of the tape.

        Raises
        ------
        RuntimeError
            If the tape was consumed by a previous pass.
        MissingNodeError
            If ``gid`` does not refer to a node of this tape.
        DimensionError
            If the seed and the starting node have different dimensions.
        """
        if self._consumed:
            raise RuntimeError("Graph was consumed by a previous backward pass")
        if boundary is None:
            boundary = len(self._nodes)
        start = gid.inner
        if not self._contains(start) or start.index >= boundary:
            raise MissingNodeError("Graph.backward", start)
        dims = self._nodes[start.index].dims
        if dims is not None and dims_of(gradient) != dims:
            raise DimensionError("Graph.backward", [dims_of(gradient), dims])
        if consume:
            self._consumed = True

        logger.debug(
            "Backward pass from node %r over %d nodes (consume=%s)", start, boundary, consume
        )
        store = self.GradientStore()
        store.insert(gid, gradient)

        heap = [-start.index]
        guard = start.index + 1
        visited = 0
        while heap:
            index = -heapq.heappop(heap)
            if index >= guard:
                continue
            guard = index
            if not 0 <= index < boundary:
                raise MissingNodeError("Graph.backward", Id(self._arena, index))
            node = self._nodes[index]
            if node.update_func is not None:
                node.update_func(algebra, store)
            for input in node.inputs:
                if input is not None:
                    heapq.heappush(heap, -input.index)
            if consume:
                node.clear()
            visited += 1

        logger.debug("Backward pass from node %r finalized %d nodes", start, visited)
        return store

    def __repr__(self) -> str:
        nodes = "; ".join(
            f"{index} <- {[None if i is None else i.index for i in node.inputs]}"
            for index, node in enumerate(self._nodes)
        )
        return f"{type(self).__name__}({nodes})"


class FirstOrderGraph(Graph):
    """
    Tape supporting first-order differentials (gradients).

    Backward rules run against a clone of the forward algebra and gradients
    are stored as plain data in a ``GradientMap1``.
    """
    GradientStore = GradientMap1

    def evaluate_gradients(self, gid: GradientId, gradient: Any) -> GradientMap1:
        """
        Propagate gradients backward, starting with the node ``gid``.

        Parameters
        ----------
        gid : GradientId
            Node to differentiate (e.g. ``z.gid()``).
        gradient : Any
            Seed gradient, with the same dimensions as the node's data.

        Returns
        -------
        GradientMap1
            Gradients of every node reached, keyed by gradient id. Nodes with
            no path from ``gid`` have no entry.

        Notes
        -----
        The tape is left untouched, so this may be called repeatedly (e.g.
        with different seeds) or from several threads at once.

        Examples
        --------
        >>> g = Graph1()
        >>> a = g.variable(1.0)
        >>> b = g.variable(2.0)
        >>> c = g.mul(a, b)
        >>> g.evaluate_gradients(c.gid(), 1.0).get(a.gid())
        2.0
        """
        algebra = self._eval.clone()
        return self._propagate(algebra, gid, gradient)

    def evaluate_gradients_once(self, gid: GradientId, gradient: Any) -> GradientMap1:
        """
        Propagate gradients backward and release the tape on the way.

        Same result as :meth:``evaluate_gradients``, but every visited node is
        cleared right after its rule runs, so captured operands are freed as
        early as possible.

        Notes
        -----
        The tape is consumed: after this call the visited nodes no longer
        carry their dependencies or backward rules, and any further backward
        pass on this tape raises ``RuntimeError``. Use :meth:``copy`` first to
        keep a reusable tape.
        """
        algebra = self._eval.clone()
        return self._propagate(algebra, gid, gradient, consume=True)


class HigherOrderGraph(Graph):
    """
    Tape supporting differentials of any order.

    The tape is its own gradient algebra: backward rules record the gradient
    computations into the same tape, and gradients are tracked values that
    can be differentiated again.
    """
    GradientStore = GradientMapN

    def compute_gradients(self, gid: GradientId, gradient: Value) -> GradientMapN:
        """
        Propagate gradients backward, starting with the node ``gid``.

        Parameters
        ----------
        gid : GradientId
            Node to differentiate.
        gradient : Value
            Seed gradient as a value of this tape (usually a constant).

        Returns
        -------
        GradientMapN
            Gradients as tracked values. ``store.get(x.gid())`` is a ``Value``
            whose ``gid()`` can be the start of another pass.

        Notes
        -----
        The size of the tape is captured before the pass starts. Only nodes
        below that boundary are scheduled, while backward rules append new
        nodes after it; the traversal never revisits them.

        Examples
        --------
        >>> g = GraphN()
        >>> x = g.variable(3.0)
        >>> y = g.mul(x, x)
        >>> dy = g.compute_gradients(y.gid(), g.constant(1.0)).get(x.gid())
        >>> dy.data
        6.0
        >>> g.compute_gradients(dy.gid(), g.constant(1.0)).read(x.gid())
        2.0
        """
        return self._propagate(self, gid, gradient, boundary=len(self._nodes))
