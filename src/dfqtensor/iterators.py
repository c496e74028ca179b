"""Cursors over the two axes of a three-index tensor and generators
that stream a tensor batch by batch through a fixed buffer.

Examples
--------
>>> dftensor.gen_qtensors(QGen.QSO)
>>> buffer = np.empty(10 * dftensor.tensor_dimensions(QGen.QSO)[1] ** 2)
>>> for cursor, batch in dftensor.iterate_by_q(QGen.QSO, buffer):
>>>     ...  # batch[k] is the packed slice q = cursor.q + k
"""

from __future__ import annotations

from collections.abc import Callable, Iterator

import numpy as np
from attrs import define, evolve

from dfqtensor.shared.errors import ConfigurationError
from dfqtensor.shared.helper import gauss_sum, ravel_C, ravel_symmetric, unravel_symmetric
from dfqtensor.shared.typing import Matrix, PairIdx

#: Fill the buffer with a batch starting at the index and return the batch size.
BatchGetter = Callable[[np.ndarray, int], int]


@define(frozen=True)
class QIterator:
    """Position on the auxiliary axis.

    Cursors are immutable, stepping returns a new cursor.
    A cursor is falsy when it points outside of :python:`[0, naux)`.
    """

    naux: int
    index: int = 0

    @property
    def q(self) -> int:
        return self.index

    def __bool__(self) -> bool:
        return 0 <= self.index < self.naux

    def __add__(self, n: int) -> QIterator:
        return evolve(self, index=self.index + n)

    def __sub__(self, n: int) -> QIterator:
        return evolve(self, index=self.index - n)


@define(frozen=True)
class PairIterator:
    """Position on the pair axis of a tensor with extents :python:`ndim1, ndim2`.

    For packed tensors the pairs are enumerated as :math:`i \\geq j`,
    i.e. in the order of :func:`dfqtensor.shared.helper.ravel_symmetric`.
    """

    ndim1: int
    ndim2: int
    packed: bool
    index: int = 0

    def __attrs_post_init__(self) -> None:
        if self.packed and self.ndim1 != self.ndim2:
            raise ConfigurationError("Packed pair iteration requires ndim1 == ndim2.")

    @classmethod
    def from_ij(
        cls, ndim1: int, ndim2: int, packed: bool, i: int, j: int
    ) -> PairIterator:
        index = ravel_symmetric(i, j) if packed else ravel_C(i, j, ndim2)
        return cls(ndim1, ndim2, packed, int(index))

    @property
    def extent(self) -> int:
        return gauss_sum(self.ndim1) if self.packed else self.ndim1 * self.ndim2

    @property
    def ij(self) -> tuple[int, int]:
        if self.packed:
            i, j = unravel_symmetric(self.index)
            return int(i), int(j)
        i, j = divmod(self.index, self.ndim2)
        return i, j

    @property
    def i(self) -> int:
        return self.ij[0]

    @property
    def j(self) -> int:
        return self.ij[1]

    @property
    def pair_index(self) -> PairIdx:
        return PairIdx(self.index)

    def __bool__(self) -> bool:
        return 0 <= self.index < self.extent

    def __add__(self, n: int) -> PairIterator:
        return evolve(self, index=self.index + n)

    def __sub__(self, n: int) -> PairIterator:
        return evolve(self, index=self.index - n)


def stream_by_q(
    get_qbatch: BatchGetter, naux: int, ndim12: int, buffer: np.ndarray
) -> Iterator[tuple[QIterator, Matrix[np.float64]]]:
    """Yield :python:`(cursor, batch)` until :python:`get_qbatch` returns 0.

    :python:`batch` has shape :python:`(n_q, ndim12)` and is a view into
    :python:`buffer`, i.e. it is overwritten in the next iteration.
    """
    cursor = QIterator(naux)
    while n_q := get_qbatch(buffer, cursor.index):
        yield cursor, buffer.reshape(-1)[: n_q * ndim12].reshape(n_q, ndim12)
        cursor += n_q


def stream_by_pair(
    get_batch: BatchGetter,
    naux: int,
    ndim1: int,
    ndim2: int,
    packed: bool,
    buffer: np.ndarray,
) -> Iterator[tuple[PairIterator, Matrix[np.float64]]]:
    """Yield :python:`(cursor, batch)` until :python:`get_batch` returns 0.

    :python:`batch` has shape :python:`(n_pairs, naux)` and is a view into
    :python:`buffer`, i.e. it is overwritten in the next iteration.
    """
    cursor = PairIterator(ndim1, ndim2, packed)
    while n_pairs := get_batch(buffer, cursor.index):
        yield cursor, buffer.reshape(-1)[: n_pairs * naux].reshape(n_pairs, naux)
        cursor += n_pairs
