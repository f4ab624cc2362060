import os
import traceback
from typing import Any, Sequence, Tuple

_capture_traces = os.environ.get("TAPEGRAD_BACKTRACE") is not None
"""bool: Global flag indicating whether errors record the current stack.

Initialised from the ``TAPEGRAD_BACKTRACE`` environment variable (any value
enables it) and toggled by the :class:``capture_traces`` context manager.
"""

def is_capturing_traces() -> bool:
    """Return whether new errors record a formatted stack trace."""
    return _capture_traces

class capture_traces:
    """
    Context manager that temporarily enables (or disables) stack capture in errors.

    Parameters
    ----------
    enabled : bool, default True
        Value of the flag inside the context.

    Examples
    --------
    >>> with capture_traces():
    ...     g.evaluate_gradients(z.gid(), bad_seed)   # error.trace is populated

    Notes
    -----
    Nesting is safe; the previous state is restored on exit.
    """
    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled

    def __enter__(self):
        global _capture_traces
        self.prev = _capture_traces
        _capture_traces = self.enabled
        return self

    def __exit__(self, *args):
        global _capture_traces
        _capture_traces = self.prev

def _trace() -> str:
    if not _capture_traces:
        return ""
    # Drop the frames of the error constructors themselves.
    return "".join(traceback.format_stack()[:-3])


class AutodiffError(Exception):
    """
    Base class of all recoverable errors raised by tapegrad.

    Attributes
    ----------
    name : str
        Name of the operation that failed (e.g. ``"Eval.mul"``).
    trace : str
        Formatted stack at construction time, or ``""`` unless trace capture
        is enabled (see :class:``capture_traces``).
    """
    def __init__(self, name: str, message: str) -> None:
        self.name = name
        self.trace = _trace()
        if self.trace:
            message = f"{message}\n{self.trace}"
        super().__init__(message)


class DimensionError(AutodiffError, ValueError):
    """Incompatible dimensions."""
    def __init__(self, name: str, dimensions: Any) -> None:
        self.dimensions = dimensions
        super().__init__(name, f"Incompatible dimensions for {name}: {dimensions!r}")


class ReducedDimensionError(AutodiffError, ValueError):
    """Dimensions cannot be reduced to the requested shape."""
    def __init__(self, name: str, dimensions: Any, reduced_dimensions: Any) -> None:
        self.dimensions = dimensions
        self.reduced_dimensions = reduced_dimensions
        super().__init__(
            name,
            f"Incorrect reduction of dimensions for {name}: {dimensions!r} {reduced_dimensions!r}",
        )


class LengthError(AutodiffError, ValueError):
    """Incompatible lengths (e.g. for batched operands)."""
    def __init__(self, name: str, lengths: Any) -> None:
        self.lengths = lengths
        super().__init__(name, f"Incompatible lengths for {name}: {lengths!r}")


class EmptyInputError(AutodiffError, ValueError):
    """An operation received zero operands."""
    def __init__(self, name: str) -> None:
        super().__init__(name, f"Unexpected empty input for {name}")


class MissingIdError(AutodiffError, LookupError):
    """A gradient id was requested from a constant value."""
    def __init__(self, name: str) -> None:
        super().__init__(name, f"Trying to obtain `id` of a constant value in {name}.")


class MissingGradientError(AutodiffError, LookupError):
    """The gradient store has no entry for a handle that should be populated."""
    def __init__(self, name: str) -> None:
        super().__init__(
            name, f"No gradient of the expected type could be found in gradient store ({name})."
        )


class MissingNodeError(AutodiffError, LookupError):
    """The tape has no node for the given id."""
    def __init__(self, name: str, id: Any = None) -> None:
        self.id = id
        super().__init__(name, f"Trying to obtain a node from an incorrect `id` {id!r} in {name}.")


def check_equal_dimensions(name: str, dims: Sequence[Tuple[int, ...]]) -> Tuple[int, ...]:
    """
    Check that all the given dimensions are equal.

    Parameters
    ----------
    name : str
        Operation name reported in errors.
    dims : sequence of tuple[int, ...]
        Dimensions to compare.

    Returns
    -------
    tuple[int, ...]
        The common dimensions.

    Raises
    ------
    EmptyInputError
        If ``dims`` is empty.
    DimensionError
        If any two dimensions differ.
    """
    if len(dims) == 0:
        raise EmptyInputError(name)
    first = dims[0]
    if any(d != first for d in dims[1:]):
        raise DimensionError(name, list(dims))
    return first

def check_equal_lengths(name: str, lengths: Sequence[int]) -> int:
    """Check that all the given lengths are equal and return the common length."""
    if len(lengths) == 0:
        raise EmptyInputError(name)
    first = lengths[0]
    if any(n != first for n in lengths[1:]):
        raise LengthError(name, list(lengths))
    return first

def check_reduced_dimensions(
    name: str,
    dims: Tuple[int, ...],
    rdims: Tuple[int, ...],
) -> Tuple[int, ...]:
    """
    Check that ``dims`` can be reduced to ``rdims`` by summing along some axes.

    Every axis of ``rdims`` must either match the corresponding axis of
    ``dims`` or be 1. Ranks must agree.

    Raises
    ------
    ReducedDimensionError
        If the reduction is not valid.
    """
    dims = tuple(dims)
    rdims = tuple(rdims)
    if len(dims) != len(rdims):
        raise ReducedDimensionError(name, dims, rdims)
    for d, r in zip(dims, rdims):
        if r != d and r != 1:
            raise ReducedDimensionError(name, dims, rdims)
    return rdims
