import copy
from dataclasses import dataclass
from typing import Any, Dict, Generic, Iterator, Optional, Tuple, TypeVar

T = TypeVar("T")


@dataclass(frozen=True, order=True)
class Id:
    """
    Untyped index of a node in a tape.

    Attributes
    ----------
    arena : int
        Identity of the tape that allocated the node.
    index : int
        Position of the node in the tape (allocation order).
    """
    arena: int
    index: int

    def next_id(self) -> "Id":
        """Return the id of the following slot in the same tape."""
        return Id(self.arena, self.index + 1)

    def __repr__(self) -> str:
        return f"{self.index}@{self.arena}"


class GradientId(Generic[T]):
    """
    Node id associated with a gradient of type ``T``.

    The type parameter is only a static marker. At runtime, the handle also
    carries ``kind``, the Python type of the forward data at creation, which
    gradient stores use to enforce that one node id is only ever read as one
    type of gradient.

    Equality and hashing only depend on the underlying :class:``Id``.
    """
    __slots__ = ("inner", "kind")

    def __init__(self, inner: Id, kind: type = object) -> None:
        self.inner = inner
        self.kind = kind

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, GradientId):
            return NotImplemented
        return self.inner == other.inner

    def __hash__(self) -> int:
        return hash(self.inner)

    def __repr__(self) -> str:
        return f"GradientId({self.inner!r}, {self.kind.__name__})"


class GradientStore:
    """
    Mapping from gradient ids to the gradients accumulated so far.

    A store is created empty at the start of each backward pass and seeded
    with the starting gradient. Backward rules update it with
    :meth:``add_gradient``.

    Notes
    -----
    - Entries are kept as ``(kind, gradient)`` pairs keyed by the untyped id.
      Reading an entry through a handle of another ``kind`` raises
      ``TypeError``: this would mean that a node id was associated with two
      gradient types.
    - Subclasses decide what a gradient is (raw data or tracked values) through
      :meth:``read``.
    """
    def __init__(self) -> None:
        self._values: Dict[Id, Tuple[type, Any]] = {}

    def insert(self, id: GradientId, gradient: Any) -> None:
        """Set the gradient of ``id``, replacing any previous entry."""
        self._values[id.inner] = (id.kind, gradient)

    def get(self, id: GradientId, default: Any = None) -> Any:
        """Return the gradient stored for ``id``, or ``default``."""
        entry = self._values.get(id.inner)
        if entry is None:
            return default
        kind, gradient = entry
        if kind is not id.kind:
            raise TypeError(
                f"indices should have a unique type: {id!r} was stored as {kind.__name__}"
            )
        return gradient

    def read(self, id: GradientId) -> Optional[Any]:
        """Return the gradient of ``id`` as plain data, or None."""
        return self.get(id)

    def add_gradient(self, algebra: Any, id: GradientId, value: Any) -> None:
        """
        Accumulate ``value`` into the gradient of ``id``.

        Parameters
        ----------
        algebra : CoreAlgebra
            Algebra used to combine gradients. For first-order passes this is
            the forward algebra; for higher-order passes it is the tape itself,
            so the accumulation is recorded too.
        id : GradientId
            Handle of the (non-constant) operand.
        value : Any
            Gradient contribution.

        Notes
        -----
        The first contribution is stored as a shallow copy; later ones replace the entry
        with ``algebra.add(existing, value)``. Backward rules call this once
        per non-constant operand.
        """
        current = self.get(id, _MISSING)
        if current is _MISSING:
            self.insert(id, copy.copy(value))
        else:
            self.insert(id, algebra.add(current, value))

    def ids(self) -> Iterator[Id]:
        """Iterate over the untyped ids that have a gradient, in index order."""
        return iter(sorted(self._values))

    def __contains__(self, id: GradientId) -> bool:
        return id.inner in self._values

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        items = ", ".join(f"{k!r}: {v[1]!r}" for k, v in sorted(self._values.items()))
        return f"{type(self).__name__}({{{items}}})"


_MISSING = object()


class GradientMap1(GradientStore):
    """Gradient store of first-order passes: gradients are raw data."""


class GradientMapN(GradientStore):
    """
    Gradient store of higher-order passes: gradients are tracked values.

    :meth:``get`` returns the tracked ``Value`` (use its ``gid()`` to
    differentiate again); :meth:``read`` returns its data.
    """
    def read(self, id: GradientId) -> Optional[Any]:
        value = self.get(id)
        return None if value is None else value.data


class EmptyGradientMap(GradientStore):
    """
    A gradient store that never contains anything.

    Used as the store type of algebras without backward propagation (``Eval``,
    ``Check``) so that generic code can be written against every algebra.
    """
    def insert(self, id: GradientId, gradient: Any) -> None:
        raise TypeError("EmptyGradientMap does not accept gradients")

    def get(self, id: GradientId, default: Any = None) -> Any:
        return default

    def add_gradient(self, algebra: Any, id: GradientId, value: Any) -> None:
        raise TypeError("EmptyGradientMap does not accept gradients")
