"""The interface that all storage backends of three-index tensors implement.

A tensor :math:`Q_{q,ij}` is stored with one of two physical layouts:

- *by-q*: the auxiliary index :math:`q` runs slowest,
  every :math:`q` owns a contiguous row of :python:`ndim12` elements.
- *by-pair*: the pair index :math:`ij` runs slowest,
  every pair owns a contiguous row of :python:`naux` elements.

Independent of the layout, every tensor can be read and written along
both axes. Access along the non-native axis is correct but strided.

Buffers are numpy arrays of :python:`np.float64`.
Data along the pair axis is laid out as :python:`(n_pairs, naux)`
and data along the auxiliary axis as :python:`(n_q, ndim12)`.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import AbstractContextManager, nullcontext
from typing import TYPE_CHECKING, Final

import numpy as np

from dfqtensor.shared.errors import (
    ConfigurationError,
    InternalConsistencyError,
    ResourceError,
)
from dfqtensor.shared.helper import CumulativeTime, gauss_sum, ravel_C, ravel_symmetric
from dfqtensor.shared.typing import Matrix, PairIdx, Vector

if TYPE_CHECKING:
    from dfqtensor.basis import BasisSet
    from dfqtensor.metric import FittingMetric

logger: Final = logging.getLogger(__name__)


def as_rows(
    buffer: np.ndarray, n_rows: int, row_size: int, *, what: str = "buffer"
) -> Matrix[np.float64]:
    """Return a :python:`(n_rows, row_size)` view into the start of :python:`buffer`.

    Raises
    ------
    ResourceError
        If :python:`buffer` is too small.
    """
    if buffer.dtype != np.float64:
        raise ConfigurationError(f"The {what} has dtype {buffer.dtype}, not float64.")
    if not buffer.flags.c_contiguous:
        raise ConfigurationError(f"The {what} has to be C-contiguous.")
    if buffer.size < n_rows * row_size:
        raise ResourceError(
            f"The {what} holds {buffer.size} elements, "
            f"but {n_rows * row_size} are required."
        )
    return buffer.reshape(-1)[: n_rows * row_size].reshape(n_rows, row_size)


class StoredQTensor(ABC):
    """A three-index tensor :math:`Q_{q,ij}` behind a storage backend.

    Parameters
    ----------
    name :
        Name of the tensor, e.g. :python:`"qso"`.
    naux :
        Extent of the auxiliary index.
    ndim1 :
        Extent of the first orbital index.
    ndim2 :
        Extent of the second orbital index.
    packed :
        Store only the lower triangle of every :math:`(i, j)` slice.
        Requires :python:`ndim1 == ndim2`.
    byq :
        Use the by-q layout, otherwise the by-pair layout.

    Raises
    ------
    ConfigurationError
        If :python:`packed` is requested for :python:`ndim1 != ndim2`.
    """

    #: Reads involve all processes and have to be issued
    #: in the same order on every process.
    collective_reads: bool = False

    def __init__(
        self,
        name: str,
        naux: int,
        ndim1: int,
        ndim2: int,
        *,
        packed: bool,
        byq: bool,
    ) -> None:
        if packed and ndim1 != ndim2:
            raise ConfigurationError(
                f"Tensor {name}: packed storage requires a square tensor, "
                f"got {ndim1} x {ndim2}."
            )
        if min(naux, ndim1, ndim2) < 0:
            raise ConfigurationError(f"Tensor {name}: negative dimension.")
        self.name: Final = name
        self.naux: Final = naux
        self.ndim1: Final = ndim1
        self.ndim2: Final = ndim2
        self.packed: Final = packed
        self.byq: Final = byq
        self.ndim12: Final[int] = gauss_sum(ndim1) if packed else ndim1 * ndim2
        self._filled = False

        self.gen_timer = CumulativeTime()
        self.getbatch_timer = CumulativeTime()
        self.getqbatch_timer = CumulativeTime()

    def __repr__(self) -> str:
        layout = "byq" if self.byq else "bypair"
        return (
            f"{type(self).__name__}({self.name!r}, naux={self.naux}, "
            f"ndim1={self.ndim1}, ndim2={self.ndim2}, packed={self.packed}, {layout})"
        )

    @property
    def size(self) -> int:
        return self.naux * self.ndim12

    @property
    def dimensions(self) -> tuple[int, int, int]:
        return self.naux, self.ndim1, self.ndim2

    @property
    def filled(self) -> bool:
        """True, if the tensor was completely generated."""
        return self._filled

    def mark_filled(self) -> None:
        self._filled = True

    def calc_index(self, i: int, j: int) -> PairIdx:
        """Return the combined pair index of :python:`(i, j)`.

        For packed tensors the indices are canonicalized,
        i.e. :python:`calc_index(i, j) == calc_index(j, i)`.
        """
        if not (0 <= i < self.ndim1 and 0 <= j < self.ndim2):
            raise InternalConsistencyError(
                f"Index ({i}, {j}) out of range for tensor {self.name}."
            )
        if self.packed:
            return PairIdx(int(ravel_symmetric(i, j)))
        return PairIdx(int(ravel_C(i, j, self.ndim2)))

    def _check_range(self, start: int, count: int, extent: int, axis: str) -> None:
        if start < 0 or count < 0 or start + count > extent:
            raise InternalConsistencyError(
                f"Tensor {self.name}: {axis} range [{start}, {start + count}) "
                f"is outside of [0, {extent})."
            )

    def _clamp(self, start: int, count: int, extent: int, axis: str) -> int:
        if start < 0 or count < 0:
            raise InternalConsistencyError(
                f"Tensor {self.name}: negative {axis} start or count "
                f"({start}, {count})."
            )
        return max(0, min(count, extent - start))

    def write(self, data: np.ndarray, ijstart: int, nij: int) -> None:
        """Write :python:`nij` pair rows of :python:`naux` elements each,
        starting at the pair index :python:`ijstart`."""
        self._check_range(ijstart, nij, self.ndim12, "pair")
        if nij:
            with self.write_guard():
                self._write_by_pair(as_rows(data, nij, self.naux), ijstart)

    def write_by_q(self, data: np.ndarray, qstart: int, nq: int) -> None:
        """Write :python:`nq` rows of :python:`ndim12` elements each,
        starting at the auxiliary index :python:`qstart`."""
        self._check_range(qstart, nq, self.naux, "q")
        if nq:
            with self.write_guard():
                self._write_by_q(as_rows(data, nq, self.ndim12), qstart)

    def read(self, out: np.ndarray, ijstart: int, nij: int) -> int:
        """Read up to :python:`nij` pair rows starting at :python:`ijstart`
        into :python:`out`.

        Returns
        -------
        int
            The number of pair rows actually delivered.
            Zero signals that :python:`ijstart` is past the end.
        """
        nij = self._clamp(ijstart, nij, self.ndim12, "pair")
        if nij:
            self._read_by_pair(as_rows(out, nij, self.naux), ijstart)
        return nij

    def read_by_q(self, out: np.ndarray, qstart: int, nq: int) -> int:
        """Read up to :python:`nq` rows starting at :python:`qstart`
        into :python:`out`.

        Returns
        -------
        int
            The number of rows actually delivered.
            Zero signals that :python:`qstart` is past the end.
        """
        nq = self._clamp(qstart, nq, self.naux, "q")
        if nq:
            self._read_by_q(as_rows(out, nq, self.ndim12), qstart)
        return nq

    def write_pair_block(
        self,
        A: np.ndarray,
        m_start: int,
        n_start: int,
        diagonal: bool,
    ) -> None:
        """Scatter the block :python:`A[q, m, n]` of a shell pair into the tensor.

        :python:`m_start, n_start` are the first orbital indices of the block.
        If :python:`diagonal` is true, both shells are the same and only
        the lower triangle :math:`n \\leq m` is written.
        Row segments are written one after the other while holding
        the write guard of the backend once for the whole block.
        """
        naux, nm, nn = A.shape
        with self.write_guard():
            for mi in range(nm):
                m = m_start + mi
                count = mi + 1 if diagonal else nn
                segment = np.ascontiguousarray(A[:, mi, :count].T)
                if self.packed:
                    ijstart = self.calc_index(m, n_start)
                    self._check_range(ijstart, count, self.ndim12, "pair")
                    self._write_by_pair(segment, ijstart)
                else:
                    for ni in range(count):
                        self._write_by_pair(
                            segment[ni : ni + 1], self.calc_index(m, n_start + ni)
                        )
                        if m != n_start + ni:
                            self._write_by_pair(
                                segment[ni : ni + 1],
                                self.calc_index(n_start + ni, m),
                            )

    def write_guard(self) -> AbstractContextManager:
        """Context manager that serializes writes, if the backend requires it."""
        return nullcontext()

    def contract_multi(
        self,
        rhs: StoredQTensor,
        ij: int,
        kl: int,
        nij: int,
        nkl: int,
        out: np.ndarray,
        scratch: Vector[np.float64] | None = None,
    ) -> tuple[int, int]:
        r"""Compute :math:`(ij | kl) = \sum_q Q_{q,ij} R_{q,kl}` for
        :python:`nij` pairs of this tensor and :python:`nkl` pairs of :python:`rhs`.

        The result is written as a :python:`(nij, nkl)` matrix into :python:`out`.
        The counts are clamped like in :meth:`read`.

        Returns
        -------
        tuple[int, int]
            The number of pairs of this tensor and of :python:`rhs`
            that were actually contracted.
        """
        if rhs.naux != self.naux:
            raise ConfigurationError(
                f"Cannot contract {self.name} and {rhs.name}: "
                f"naux differs ({self.naux} vs {rhs.naux})."
            )
        if scratch is None:
            scratch = np.empty((nij + nkl) * self.naux, dtype=np.float64)
        elif scratch.size < (nij + nkl) * self.naux:
            raise ResourceError("Scratch space not large enough for contraction!")
        got_ij = self.read(scratch, ij, nij)
        got_kl = rhs.read(scratch[got_ij * self.naux :], kl, nkl)
        left = scratch[: got_ij * self.naux].reshape(got_ij, self.naux)
        right = scratch[got_ij * self.naux : (got_ij + got_kl) * self.naux].reshape(
            got_kl, self.naux
        )
        np.matmul(left, right.T, out=as_rows(out, got_ij, got_kl, what="output"))
        return got_ij, got_kl

    def contract_single(self, rhs: StoredQTensor, i: int, j: int, k: int, l: int) -> float:
        """Return :math:`(ij | kl)`, see :meth:`contract_multi`."""
        out = np.empty(1, dtype=np.float64)
        self.contract_multi(rhs, self.calc_index(i, j), rhs.calc_index(k, l), 1, 1, out)
        return float(out[0])

    def generate_df_qso(
        self,
        primary: BasisSet,
        auxiliary: BasisSet,
        metric: FittingMetric,
        n_threads: int,
    ) -> None:
        """Fill this tensor with the fitted AO tensor, see
        :func:`dfqtensor.assembler.assemble_df_qso`."""
        from dfqtensor.assembler import assemble_df_qso  # noqa: PLC0415

        assemble_df_qso(self, primary, auxiliary, metric, n_threads)

    def generate_transformed(
        self,
        source: StoredQTensor,
        left: Matrix[np.float64],
        right: Matrix[np.float64],
        n_threads: int,
    ) -> None:
        """Fill this tensor with :math:`C_{left}^T Q_q C_{right}` for every slice
        :math:`Q_q` of :python:`source`."""
        from dfqtensor.transform import transform_qtensor  # noqa: PLC0415

        transform_qtensor(source, [(self, left, right)], n_threads)

    @abstractmethod
    def _write_by_pair(self, data: Matrix[np.float64], ijstart: int) -> None:
        """Write :python:`data` of shape :python:`(nij, naux)`; the range is valid."""

    @abstractmethod
    def _write_by_q(self, data: Matrix[np.float64], qstart: int) -> None:
        """Write :python:`data` of shape :python:`(nq, ndim12)`; the range is valid."""

    @abstractmethod
    def _read_by_pair(self, out: Matrix[np.float64], ijstart: int) -> None:
        """Fill :python:`out` of shape :python:`(nij, naux)`; the range is valid."""

    @abstractmethod
    def _read_by_q(self, out: Matrix[np.float64], qstart: int) -> None:
        """Fill :python:`out` of shape :python:`(nq, ndim12)`; the range is valid."""

    @abstractmethod
    def clear(self) -> None:
        """Release the backing storage. Calling it twice is harmless."""
