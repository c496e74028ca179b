r"""Transform the orbital indices of a three-index tensor.

For every auxiliary index :math:`q` the slice :math:`Q_q` of the source is
read once and :math:`C_{left}^T Q_q C_{right}` is written into each destination.
The auxiliary indices are processed in chunks by a thread pool.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import Final

import numpy as np
from scipy.linalg.blas import dsymm

from dfqtensor.shared.errors import ConfigurationError
from dfqtensor.shared.helper import Timer, pack_symmetric, unpack_symmetric
from dfqtensor.shared.typing import Matrix
from dfqtensor.storage.base import StoredQTensor

logger: Final = logging.getLogger(__name__)

Destination = tuple[StoredQTensor, Matrix[np.float64], Matrix[np.float64]]


def transform_slice(
    Q: Matrix[np.float64],
    left: Matrix[np.float64],
    right: Matrix[np.float64],
    symmetric: bool,
) -> Matrix[np.float64]:
    """Return :math:`C_{left}^T Q C_{right}`.

    If :python:`Q` is symmetric and both coefficient matrices are the same,
    the first product uses a symmetric matrix multiplication.
    """
    if symmetric and (left is right or np.array_equal(left, right)):
        work = dsymm(1.0, Q, left, side=0, lower=1)
        return left.T @ work
    return (left.T @ Q) @ right


def _expand(row: np.ndarray, tensor: StoredQTensor) -> Matrix[np.float64]:
    if tensor.packed:
        return unpack_symmetric(row, tensor.ndim1)
    return row.reshape(tensor.ndim1, tensor.ndim2)


def _flatten(M: Matrix[np.float64], tensor: StoredQTensor) -> np.ndarray:
    if tensor.packed:
        return pack_symmetric(M)
    return M.reshape(-1)


def _check_destination(
    source: StoredQTensor,
    dest: StoredQTensor,
    left: Matrix[np.float64],
    right: Matrix[np.float64],
) -> None:
    if dest.naux != source.naux:
        raise ConfigurationError(
            f"{dest.name} has naux={dest.naux}, but {source.name} {source.naux}."
        )
    if left.shape != (source.ndim1, dest.ndim1) or right.shape != (
        source.ndim2,
        dest.ndim2,
    ):
        raise ConfigurationError(
            f"Coefficient matrices of shapes {left.shape} and {right.shape} "
            f"do not transform {source.name} into {dest.name}."
        )


def transform_qtensor(
    source: StoredQTensor,
    destinations: Sequence[Destination],
    n_threads: int,
) -> None:
    r"""Write :math:`C_{left}^T Q_q C_{right}` into every destination.

    Parameters
    ----------
    source :
        The tensor to transform. It may also appear as destination,
        then it is transformed in place.
    destinations :
        Triples of destination tensor, :math:`C_{left}`, and :math:`C_{right}`.
    n_threads :
        Number of worker threads. Sources with collective reads,
        i.e. distributed tensors, are always read by a single thread.
    """
    for dest, left, right in destinations:
        _check_destination(source, dest, left, right)
    names = ", ".join(dest.name for dest, _, _ in destinations)
    timer = Timer(f"Time to transform {source.name} into {names}")

    # symmetry of the slices is only exploited for packed sources
    symmetric = source.packed
    if source.collective_reads and n_threads > 1:
        logger.debug(f"Reading {source.name} collectively, transforming serially.")
        n_threads = 1
    chunk = max(1, source.naux // (4 * max(n_threads, 1)))

    def f(qstart: int) -> None:
        nq = min(chunk, source.naux - qstart)
        rows = np.empty((nq, source.ndim12), dtype=np.float64)
        source.read_by_q(rows, qstart, nq)
        results = {
            id(dest): np.empty((nq, dest.ndim12), dtype=np.float64)
            for dest, _, _ in destinations
        }
        for k in range(nq):
            Q = _expand(rows[k], source)
            for dest, left, right in destinations:
                results[id(dest)][k] = _flatten(
                    transform_slice(Q, left, right, symmetric), dest
                )
        for dest, _, _ in destinations:
            dest.write_by_q(results[id(dest)], qstart, nq)

    qstarts = range(0, source.naux, chunk)
    if n_threads > 1:
        with ThreadPoolExecutor(max_workers=n_threads) as executor:
            futures = [executor.submit(f, qstart) for qstart in qstarts]
            # You must call future.result() if you want to catch exceptions
            # raised during execution. Otherwise, errors may silently fail.
            for future in futures:
                future.result()
    else:
        for qstart in qstarts:
            f(qstart)

    logger.info(timer.str_elapsed())
