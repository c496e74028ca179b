"""Tensors distributed over the processes of a :class:`ParallelContext`.

The pair axis is split into contiguous blocks, one per process.
Every process stores its block in the requested layout.
Writes are collective in the sense that all processes pass the same data
and every process keeps the part it owns.
Reads are collective as well, every process receives the complete batch.

Generation and transformation do not loop over shells or auxiliary indices
but are formulated as one contraction over the locally owned pairs each.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Final

import numpy as np

from dfqtensor.eri import ThreeCenterEvaluator
from dfqtensor.parallel import ParallelContext
from dfqtensor.shared.errors import ConfigurationError, ResourceError
from dfqtensor.shared.helper import Timer
from dfqtensor.shared.typing import Matrix, Vector
from dfqtensor.storage.base import StoredQTensor

if TYPE_CHECKING:
    from dfqtensor.basis import BasisSet
    from dfqtensor.metric import FittingMetric

logger: Final = logging.getLogger(__name__)


class DistributedQTensor(StoredQTensor):
    collective_reads = True

    def __init__(
        self,
        name: str,
        naux: int,
        ndim1: int,
        ndim2: int,
        *,
        packed: bool,
        byq: bool,
        context: ParallelContext,
    ) -> None:
        super().__init__(name, naux, ndim1, ndim2, packed=packed, byq=byq)
        context.ensure_active()
        self.context: Final = context
        self.owned: Final = context.partition(self.ndim12)
        n_local = self.owned[1] - self.owned[0]
        shape = (naux, n_local) if byq else (n_local, naux)
        self._local: Matrix[np.float64] | None = np.zeros(shape, dtype=np.float64)

    @property
    def _local_by_q(self) -> Matrix[np.float64]:
        if self._local is None:
            raise ResourceError(f"Tensor {self.name} has been cleared.")
        return self._local if self.byq else self._local.T

    def _overlap(self, start: int, count: int) -> tuple[int, int]:
        """Intersection of :python:`[start, start + count)` with the owned pairs."""
        lo, hi = self.owned
        return max(start, lo), min(start + count, hi)

    def _write_by_pair(self, data: Matrix[np.float64], ijstart: int) -> None:
        lo, hi = self._overlap(ijstart, len(data))
        if lo < hi:
            self._local_by_q[:, lo - self.owned[0] : hi - self.owned[0]] = data[
                lo - ijstart : hi - ijstart
            ].T

    def _write_by_q(self, data: Matrix[np.float64], qstart: int) -> None:
        lo, hi = self.owned
        self._local_by_q[qstart : qstart + len(data)] = data[:, lo:hi]

    def _read_by_pair(self, out: Matrix[np.float64], ijstart: int) -> None:
        partial = np.zeros(out.shape, dtype=np.float64)
        lo, hi = self._overlap(ijstart, len(out))
        if lo < hi:
            partial[lo - ijstart : hi - ijstart] = self._local_by_q[
                :, lo - self.owned[0] : hi - self.owned[0]
            ].T
        out[:] = self.context.allreduce(partial)

    def _read_by_q(self, out: Matrix[np.float64], qstart: int) -> None:
        partial = np.zeros(out.shape, dtype=np.float64)
        lo, hi = self.owned
        partial[:, lo:hi] = self._local_by_q[qstart : qstart + len(out)]
        out[:] = self.context.allreduce(partial)

    def _owned_pairs(self) -> tuple[Vector[np.int64], Vector[np.int64]]:
        """Return the orbital indices :python:`i, j` of the owned pairs."""
        return self.unravel_pairs(np.arange(*self.owned, dtype=np.int64))

    def unravel_pairs(
        self, ij: Vector[np.int64]
    ) -> tuple[Vector[np.int64], Vector[np.int64]]:
        """Vectorized inverse of :meth:`calc_index` with :math:`i \\geq j`
        for packed tensors."""
        if not self.packed:
            return ij // self.ndim2, ij % self.ndim2
        i = ((np.sqrt(8 * ij + 1) - 1) // 2).astype(np.int64)
        # correct rounding of the square root
        i[i * (i + 1) // 2 > ij] -= 1
        i[(i + 1) * (i + 2) // 2 <= ij] += 1
        return i, ij - i * (i + 1) // 2

    def generate_df_qso(
        self,
        primary: BasisSet,
        auxiliary: BasisSet,
        metric: FittingMetric,
        n_threads: int,
    ) -> None:
        """Evaluate the raw integrals of the owned pairs and contract them
        with the metric in a single matrix product."""
        from dfqtensor.assembler import raw_shell_pair_block  # noqa: PLC0415

        if self.dimensions != (metric.naux, primary.nbf, primary.nbf):
            raise ConfigurationError(
                f"Tensor dimensions {self.dimensions} do not match the bases."
            )
        timer = Timer(f"Time to generate {self.name} on rank {self.context.rank}")
        lo, hi = self.owned
        B = np.zeros((self.naux, hi - lo), dtype=np.float64)
        evaluator = ThreeCenterEvaluator(primary, auxiliary)
        scratch = np.empty(auxiliary.nbf * primary.max_nfunction**2, dtype=np.float64)

        for M in primary:
            for N in primary.shells[: M.idx + 1]:
                mi, ni = np.nonzero(
                    np.arange(M.start, M.stop)[:, None]
                    >= np.arange(N.start, N.stop)[None, :]
                )
                rows, cols = M.start + mi, N.start + ni
                candidates = [(self._ravel(rows, cols), mi, ni)]
                if not self.packed:
                    off = rows != cols
                    candidates.append(
                        (self._ravel(cols[off], rows[off]), mi[off], ni[off])
                    )
                entries = []
                for ij, a, b in candidates:
                    mine = (ij >= lo) & (ij < hi)
                    if mine.any():
                        entries.append((ij[mine] - lo, a[mine], b[mine]))
                if not entries:
                    continue
                block = raw_shell_pair_block(evaluator, auxiliary, M, N, scratch)
                for local_ij, a, b in entries:
                    B[:, local_ij] = block[:, a, b]

        self._local_by_q[:] = metric.contract(B)
        self.context.barrier()
        logger.info(timer.str_elapsed())

    def _ravel(self, rows: Vector[np.int64], cols: Vector[np.int64]) -> Vector[np.int64]:
        if self.packed:
            high, low = np.maximum(rows, cols), np.minimum(rows, cols)
            return high * (high + 1) // 2 + low
        return rows * self.ndim2 + cols

    def generate_transformed(
        self,
        source: StoredQTensor,
        left: Matrix[np.float64],
        right: Matrix[np.float64],
        n_threads: int,
    ) -> None:
        r"""Compute :math:`\sum_{ij} C^{left}_{ia} Q_{q,ij} C^{right}_{jb}`
        over the pairs owned by this process and sum over all processes."""
        if not (
            isinstance(source, DistributedQTensor) and source.context is self.context
        ):
            super().generate_transformed(source, left, right, n_threads)
            return
        timer = Timer(f"Time to generate {self.name} on rank {self.context.rank}")
        i, j = source._owned_pairs()
        Q = source._local_by_q
        result = np.einsum("qp,pa,pb->qab", Q, left[i], right[j], optimize=True)
        if source.packed:
            off_diagonal = i != j
            result += np.einsum(
                "qp,pa,pb->qab",
                Q[:, off_diagonal],
                left[j[off_diagonal]],
                right[i[off_diagonal]],
                optimize=True,
            )
        result = self.context.allreduce(result)
        if self.packed:
            rows, cols = np.tril_indices(self.ndim1)
            flat = result[:, rows, cols]
        else:
            flat = result.reshape(self.naux, -1)
        self._write_by_q(np.ascontiguousarray(flat), 0)
        logger.info(timer.str_elapsed())

    def clear(self) -> None:
        self._local = None
        self._filled = False
