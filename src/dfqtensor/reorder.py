"""Reorder basis functions between the conventions of different programs.

Internally the functions of a shell are in the order of pyscf.
An ordering convention stores, per angular momentum, the table :python:`order`
where function :python:`k` of a shell in the foreign convention is
function :python:`order[k]` of the same shell in pyscf order.
Shells without a table are identical in both conventions.

The permutations are applied in place as sequences of pairwise swaps of rows.
How two rows are swapped is decided by a :class:`MemorySwapper`,
which bounds the amount of extra memory.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping, MutableSequence, Sequence
from typing import Final, Literal, TypeAlias, get_args

import numpy as np
from attrs import define, field

from dfqtensor.basis import BasisSet
from dfqtensor.shared.config import settings
from dfqtensor.shared.errors import ConfigurationError, InternalConsistencyError
from dfqtensor.shared.typing import Matrix, Vector

logger: Final = logging.getLogger(__name__)

OrderingConvention: TypeAlias = Literal["pyscf", "psi4", "gamess"]


def _psi4_pure_order(am: int) -> list[int]:
    """Pure shells in psi4 are ordered as :math:`m = 0, +1, -1, +2, -2, \\ldots`,
    while pyscf uses :math:`m = -l, \\ldots, +l` (and x, y, z for p shells)."""
    if am == 1:
        return [2, 0, 1]
    order = [am]
    for m in range(1, am + 1):
        order += [am + m, am - m]
    return order


@define(frozen=True)
class Ordering:
    """Per-shell permutation tables of an ordering convention.

    The keys of the tables are :python:`(is_pure, am)`.
    """

    name: str
    tables: Mapping[tuple[bool, int], tuple[int, ...]] = field(factory=dict)

    def order(self, is_pure: bool, am: int) -> tuple[int, ...] | None:
        """Return the table for a shell or :class:`None`, if the shell
        does not need reordering."""
        table = self.tables.get((is_pure, am))
        if table is None or table == tuple(range(len(table))):
            return None
        return table

    @property
    def is_identity(self) -> bool:
        return all(
            self.order(is_pure, am) is None for (is_pure, am) in self.tables.keys()
        )


GAMESS_CARTESIAN: Final[Mapping[int, tuple[int, ...]]] = {
    2: (0, 3, 5, 1, 2, 4),
    3: (0, 6, 9, 1, 2, 3, 7, 5, 8, 4),
    4: (0, 10, 14, 1, 2, 6, 11, 9, 13, 3, 5, 12, 4, 7, 8),
}

_MAX_AM: Final = 8

ORDERINGS: Final[Mapping[OrderingConvention, Ordering]] = {
    "pyscf": Ordering("pyscf"),
    "psi4": Ordering(
        "psi4",
        {(True, am): tuple(_psi4_pure_order(am)) for am in range(_MAX_AM + 1)},
    ),
    "gamess": Ordering(
        "gamess", {(False, am): table for am, table in GAMESS_CARTESIAN.items()}
    ),
}


def get_ordering(convention: str) -> Ordering:
    """Return the :class:`Ordering` of a convention.

    Raises
    ------
    ConfigurationError
        For an unknown convention.
    """
    if convention not in ORDERINGS:
        raise ConfigurationError(
            f"Unknown basis function ordering {convention!r}, "
            f"expected one of {get_args(OrderingConvention)}."
        )
    return ORDERINGS[convention]  # type: ignore[index]


def inverse_order(order: Sequence[int]) -> list[int]:
    inverse = [0] * len(order)
    for k, position in enumerate(order):
        inverse[position] = k
    return inverse


class MemorySwapper(ABC):
    """Swap the contents of two rows in place."""

    @abstractmethod
    def swap(self, a: Vector[np.float64], b: Vector[np.float64]) -> None: ...


class TotalMemorySwapper(MemorySwapper):
    """Swap complete rows through one temporary row."""

    def swap(self, a: Vector[np.float64], b: Vector[np.float64]) -> None:
        tmp = a.copy()
        a[:] = b
        b[:] = tmp


@define
class LimitedMemorySwapper(MemorySwapper):
    """Swap rows in stripes that occupy at most :python:`max_bytes` each."""

    max_bytes: float = field(factory=lambda: settings.REORDER_MAX_MEMORY)

    def swap(self, a: Vector[np.float64], b: Vector[np.float64]) -> None:
        stripe = max(1, int(self.max_bytes) // a.itemsize)
        for start in range(0, len(a), stripe):
            tmp = a[start : start + stripe].copy()
            a[start : start + stripe] = b[start : start + stripe]
            b[start : start + stripe] = tmp


def reorder(
    order: Sequence[int],
    rows: MutableSequence[Vector[np.float64]],
    swapper: MemorySwapper,
) -> None:
    """Permute :python:`rows` in place such that afterwards row :python:`i`
    holds the content that was in row :python:`order[i]` before.

    The rows are swapped pairwise, row :python:`i` is final after step :python:`i`.

    Raises
    ------
    InternalConsistencyError
        If :python:`order` references a row that does not exist,
        references an already placed row, or is not a permutation.
    """
    current = list(range(len(rows)))
    for i, wanted in enumerate(order):
        try:
            cindex = current.index(wanted)
        except ValueError as e:
            raise InternalConsistencyError(
                f"Reordering: index {wanted} not found."
            ) from e
        if cindex < i:
            raise InternalConsistencyError(
                f"Reordering: row {cindex} is already placed and must not be swapped."
            )
        if cindex != i:
            swapper.swap(rows[i], rows[cindex])
            current[i], current[cindex] = current[cindex], current[i]
    if current[: len(order)] != list(order) or len(order) != len(rows):
        raise InternalConsistencyError("Reordering failed!")


def _reorder_blocks(
    M: Matrix[np.float64],
    basis: BasisSet,
    ordering: Ordering,
    to_internal: bool,
    swapper: MemorySwapper,
) -> None:
    for shell in basis:
        order = ordering.order(shell.is_pure, shell.am)
        if order is None:
            continue
        if len(order) != shell.n_per_contraction:
            raise InternalConsistencyError(
                f"Ordering {ordering.name} has {len(order)} functions for "
                f"am={shell.am}, but the shell has {shell.n_per_contraction}."
            )
        order = inverse_order(order) if to_internal else list(order)
        for block in range(shell.n_contracted):
            start = shell.start + block * shell.n_per_contraction
            rows = [M[start + k] for k in range(shell.n_per_contraction)]
            reorder(order, rows, swapper)


def reorder_rows(
    M: Matrix[np.float64],
    basis: BasisSet,
    convention: str,
    *,
    to_internal: bool = True,
    swapper: MemorySwapper | None = None,
) -> None:
    """Reorder the rows of :python:`M`, which are indexed by basis functions,
    in place.

    Parameters
    ----------
    M :
        Matrix with :python:`basis.nbf` rows.
    basis :
        The basis that indexes the rows.
    convention :
        The foreign ordering convention.
    to_internal :
        Convert from the foreign convention to pyscf order, or the other way around.
    swapper :
        How rows are swapped, by default :class:`LimitedMemorySwapper`.
    """
    if M.shape[0] != basis.nbf:
        raise ConfigurationError(
            f"Matrix has {M.shape[0]} rows, but the basis {basis.nbf} functions."
        )
    swapper = LimitedMemorySwapper() if swapper is None else swapper
    _reorder_blocks(M, basis, get_ordering(convention), to_internal, swapper)


def reorder_cols(
    M: Matrix[np.float64],
    basis: BasisSet,
    convention: str,
    *,
    to_internal: bool = True,
    swapper: MemorySwapper | None = None,
) -> None:
    """Like :func:`reorder_rows` for the columns of :python:`M`."""
    reorder_rows(M.T, basis, convention, to_internal=to_internal, swapper=swapper)


def permutation_matrix(basis: BasisSet, convention: str) -> Matrix[np.float64]:
    """Return :math:`T` with :math:`T X` being :math:`X` with its rows converted
    from the foreign convention to pyscf order.

    For a matrix :math:`A` in pyscf order, :math:`T^T A T` is the same matrix
    in the foreign convention.
    """
    T = np.eye(basis.nbf)
    reorder_rows(T, basis, convention, to_internal=True, swapper=TotalMemorySwapper())
    return T
