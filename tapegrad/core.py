import copy
import numbers
from typing import Any, Sequence, Tuple

import numpy as np
try:
    import cupy as cp
    _HAS_CUPY = True
except Exception:
    cp = None
    _HAS_CUPY = False

from tapegrad.errors import EmptyInputError, check_equal_dimensions
from tapegrad.store import EmptyGradientMap

Dims = Tuple[int, ...]

def _is_cupy_array(x: Any) -> bool:
    """Return whether ``x`` is a CuPy ndarray (False when CuPy is not installed)."""
    return _HAS_CUPY and hasattr(cp, "ndarray") and isinstance(x, cp.ndarray)

def array_module(x: Any) -> Any:
    """
    Return the array module that should compute on ``x``.

    Parameters
    ----------
    x : Any
        A number, a ``numpy.ndarray`` or a ``cupy.ndarray``.

    Returns
    -------
    module
        ``cupy`` for CuPy arrays, ``numpy`` otherwise.
    """
    return cp if _is_cupy_array(x) else np

def full_like(x: Any, fill_value: Any) -> Any:
    """
    Return a value with the dimensions and type of ``x`` filled with ``fill_value``.

    Arrays go through their array module (``full_like``); scalars are
    converted with their own type, e.g. ``full_like(2.5, 1) == 1.0``.
    """
    if isinstance(x, np.ndarray) or _is_cupy_array(x):
        return array_module(x).full_like(x, fill_value)
    return type(x)(fill_value)

def dims_of(x: Any) -> Dims:
    """
    Return the dimensions of a value.

    Parameters
    ----------
    x : Any
        Forward data, a tracked value, or any object exposing ``dims()`` or
        ``shape``.

    Returns
    -------
    tuple[int, ...]
        ``()`` for scalars.

    Notes
    -----
    Lookup order: ``x.dims()`` if available (this covers tracked values and
    user-defined data types), then ``x.shape``, then ``numpy.shape(x)``.
    """
    dims = getattr(x, "dims", None)
    if callable(dims):
        return dims()
    if isinstance(x, numbers.Number):
        return ()
    shape = getattr(x, "shape", None)
    if shape is not None:
        return tuple(shape)
    return np.shape(x)


class CoreAlgebra:
    """
    Base class of all algebras.

    An algebra is the object every operation is called on. Swapping the
    algebra changes how the same formula is interpreted: forward evaluation
    (``Eval``), dimension checking (``Check``), first-order (``Graph1``) or
    higher-order (``GraphN``) differentiation.

    Subclasses implement :meth:``variable``, :meth:``constant`` and
    :meth:``add``. Operator families (arithmetic, analytic functions, user
    extensions) are added as mixins.

    Attributes
    ----------
    GradientStore : type
        Gradient store produced by backward passes of this algebra.
        Algebras without backward propagation use ``EmptyGradientMap``.
    """
    GradientStore = EmptyGradientMap

    def variable(self, data: Any) -> Any:
        """A differentiable input of the computation."""
        raise NotImplementedError

    def constant(self, data: Any) -> Any:
        """A non-differentiable input of the computation."""
        raise NotImplementedError

    def add(self, v1: Any, v2: Any) -> Any:
        """Element-wise sum ``v1 + v2``."""
        raise NotImplementedError

    def add_all(self, values: Sequence[Any]) -> Any:
        """
        Sum of several values.

        Raises
        ------
        EmptyInputError
            If ``values`` is empty.
        """
        if len(values) == 0:
            raise EmptyInputError(f"{type(self).__name__}.add_all")
        result = values[0]
        for value in values[1:]:
            result = self.add(result, value)
        return result

    def clone(self) -> "CoreAlgebra":
        """Return an independent copy of this algebra."""
        return copy.deepcopy(self)


class CheckCore(CoreAlgebra):
    """Algebra computing only dimensions. Values are tuples of ints."""

    def variable(self, data: Any) -> Dims:
        return dims_of(data)

    def constant(self, data: Any) -> Dims:
        return dims_of(data)

    def add(self, v1: Dims, v2: Dims) -> Dims:
        return check_equal_dimensions("Check.add", [v1, v2])

    def add_all(self, values: Sequence[Dims]) -> Dims:
        return check_equal_dimensions("Check.add_all", list(values))


class EvalCore(CoreAlgebra):
    """
    Algebra computing forward values only.

    Values are the raw data (numbers, NumPy or CuPy arrays). Every operation
    first validates dimensions with the companion ``Check`` algebra, so no
    implicit broadcasting takes place.

    Attributes
    ----------
    check_algebra : type
        Class of the dimension-checking algebra used by :meth:``check``.
    """
    check_algebra = CheckCore

    def __init__(self) -> None:
        self._check = self.check_algebra()

    def check(self) -> CheckCore:
        """Access the underlying dimension-checking algebra."""
        return self._check

    def variable(self, data: Any) -> Any:
        return data

    def constant(self, data: Any) -> Any:
        return data

    def add(self, v1: Any, v2: Any) -> Any:
        self.check().add(dims_of(v1), dims_of(v2))
        return v1 + v2

    def link(self, value: Any) -> Any:
        """
        Resolve a tracked value for use in a backward rule.

        Backward rules of first-order tapes run against the forward algebra,
        so operands are unwrapped to their raw data.
        """
        return value.data

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"
