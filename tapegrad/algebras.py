"""
Default algebras.

Each algebra combines a core class with the operator families shipped in
``tapegrad.arith`` and ``tapegrad.analytic``. The same formula written
against an algebra ``g``::

    def f(g, x, y):
        return g.add(g.mul(x, y), g.exp(x))

evaluates it (``Eval``), checks its dimensions (``Check``) or records it for
differentiation (``Graph1``, ``GraphN``).

Custom algebras follow the same recipe: add a mixin for the new operators to
each mode, then point a graph class at the new forward algebra through
``eval_algebra``.
"""
from tapegrad.analytic import AnalyticCheck, AnalyticEval, AnalyticGraph
from tapegrad.arith import ArithCheck, ArithEval, ArithGraph
from tapegrad.core import CheckCore, EvalCore
from tapegrad.graph import FirstOrderGraph, HigherOrderGraph


class Check(AnalyticCheck, ArithCheck, CheckCore):
    """Dimension-checking algebra. Values are tuples of ints."""


class Eval(AnalyticEval, ArithEval, EvalCore):
    """Forward-evaluation algebra. Values are raw data."""
    check_algebra = Check


class Graph1(AnalyticGraph, ArithGraph, FirstOrderGraph):
    """
    First-order tape over :class:``Eval``.

    Examples
    --------
    >>> g = Graph1()
    >>> a = g.variable(3.0)
    >>> c = g.add(a, g.mul(a, a))
    >>> g.evaluate_gradients(c.gid(), 1.0).get(a.gid())
    7.0
    """
    eval_algebra = Eval


class GraphN(AnalyticGraph, ArithGraph, HigherOrderGraph):
    """Higher-order tape over :class:``Eval``."""
    eval_algebra = Eval
