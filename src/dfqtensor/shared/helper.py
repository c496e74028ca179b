import logging
from collections.abc import Callable
from functools import wraps
from time import time
from typing import Any, Final, TypeVar, overload

import numba as nb
import numpy as np
from attrs import define, field

from dfqtensor.shared.typing import Integral, Matrix, Vector

_Function = TypeVar("_Function", bound=Callable)
_T_Integral = TypeVar("_T_Integral", bound=Integral)

logger = logging.getLogger(__name__)


# Note that we have once Callable and once Function.
# This is **intentional**.
# The inner function `update_doc` takes a function
# and returns a function **with** the exact same signature.
def add_docstring(doc: str | None) -> Callable[[_Function], _Function]:
    """Add a docstring to a function as decorator.

    Is useful for programmatically generating docstrings.

    Parameters
    ----------
    doc: str
        A docstring.

    Example
    ----------
    >>> @add_docstring("Returns 'asdf'")
    >>> def f():
    >>>     return 'asdf'
    is equivalent to
    >>> def f():
    >>>     "Returns 'asdf'"
    >>>     return 'asdf'
    """

    def update_doc(f: _Function) -> _Function:
        f.__doc__ = doc
        return f

    return update_doc


def ensure(condition: bool, message: str = "") -> None:
    """This function can be used instead of :python:`assert`,
    if the test should be always executed.
    """
    if not condition:
        message = message if message else "Invariant condition was violated."
        raise ValueError(message)


@define(frozen=True)
class Timer:
    """Simple class to time code execution"""

    message: str = "Elapsed time"
    start: float = field(init=False, factory=time)

    def __attrs_post_init__(self) -> None:
        logger.debug(f"Timer with message '{self.message}' started.")

    def elapsed(self) -> float:
        return time() - self.start

    def str_elapsed(self, message: str | None = None) -> str:
        return f"{self.message if message is None else message}: {self.elapsed():.5f}"


@define
class CumulativeTime:
    """Accumulate the wall time and the number of calls of a repeated operation."""

    total: float = 0.0
    n_calls: int = 0

    def add(self, timer: Timer) -> None:
        self.total += timer.elapsed()
        self.n_calls += 1

    def __str__(self) -> str:
        return f"{self.total:17.5f} ({self.n_calls:7d})"


@define
class _FunctionTimer:
    """Registry of wall times of functions decorated with :meth:`timeit`."""

    timings: dict[str, CumulativeTime] = field(factory=dict)

    def timeit(self, f: _Function) -> _Function:
        """Log the wall time of every call of :python:`f` at INFO level.

        Example
        -------
        >>> @timer.timeit
        >>> def expensive(): ...
        """

        @wraps(f)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            t = Timer(f"Time for {f.__qualname__}")
            result = f(*args, **kwargs)
            self.timings.setdefault(f.__qualname__, CumulativeTime()).add(t)
            logger.info(t.str_elapsed())
            return result

        return wrapper  # type: ignore[return-value]


timer: Final = _FunctionTimer()


@overload
def njit(f: _Function, *, nogil: bool) -> _Function: ...
@overload
def njit(*, nogil: bool, **kwargs: Any) -> Callable[[_Function], _Function]: ...


def njit(
    f: _Function | None = None, *, nogil: bool, **kwargs: Any
) -> _Function | Callable[[_Function], _Function]:
    """Type-safe jit wrapper that caches the compiled function

    With this jit wrapper, you can actually use static typing together with numba.
    The crucial declaration is that the decorated function's interface is preserved,
    i.e. mapping :class:`Function` to :class:`Function`.

    In addition to type safety, this wrapper also sets :code:`cache=True` by default.
    """
    if f is None:
        return nb.njit(cache=True, nogil=nogil, **kwargs)
    else:
        return nb.njit(f, cache=True, nogil=nogil, **kwargs)


@njit(nogil=True)
def gauss_sum(n: _T_Integral) -> _T_Integral:
    r"""Return the sum :math:`\sum_{i=1}^n i`

    Parameters
    ----------
    n :
    """
    return (n * (n + 1)) // 2  # type: ignore[return-value]


@njit(nogil=True)
def ravel_symmetric(a: _T_Integral, b: _T_Integral) -> _T_Integral:
    """Flatten the index a, b assuming symmetry.

    The resulting indexation for a matrix looks like this::

        0
        1   2
        3   4   5
        6   7   8   9

    Parameters
    ----------
    a :
    b :
    """
    return gauss_sum(a) + b if a > b else gauss_sum(b) + a  # type: ignore[return-value,operator]


@njit(nogil=True)
def unravel_symmetric(i: Integral) -> tuple[int, int]:
    a = int((np.sqrt(8 * i + 1) - 1) // 2)
    # guard against rounding of the square root for large indices
    while gauss_sum(a + 1) <= i:
        a += 1
    while gauss_sum(a) > i:
        a -= 1
    offset = gauss_sum(a)
    b = i - offset
    if b > a:
        a, b = b, a
    return a, b


@njit(nogil=True)
def ravel_C(a: _T_Integral, b: _T_Integral, n_cols: _T_Integral) -> _T_Integral:
    """Flatten the index a, b assuming row-mayor/C indexing

    The resulting indexation for a 3 by 4 matrix looks like this::

        0   1   2   3
        4   5   6   7
        8   9  10  11


    Parameters
    ----------
    a :
    b :
    n_cols :
    """
    assert b < n_cols  # type: ignore[operator]
    return (a * n_cols) + b  # type: ignore[return-value,operator]


@njit(nogil=True)
def pack_symmetric(M: Matrix[np.float64]) -> Vector[np.float64]:
    """Return the lower triangle (including the diagonal) of the square matrix
    :python:`M` in the order of :func:`ravel_symmetric`."""
    n = M.shape[0]
    packed = np.empty(gauss_sum(n), dtype=np.float64)
    for i in range(n):
        offset = gauss_sum(i)
        for j in range(i + 1):
            packed[offset + j] = M[i, j]
    return packed


@njit(nogil=True)
def unpack_symmetric(packed: Vector[np.float64], n: int) -> Matrix[np.float64]:
    """Invert :func:`pack_symmetric`, i.e. expand to the full symmetric matrix."""
    M = np.empty((n, n), dtype=np.float64)
    for i in range(n):
        offset = gauss_sum(i)
        for j in range(i + 1):
            M[i, j] = packed[offset + j]
            M[j, i] = packed[offset + j]
    return M
