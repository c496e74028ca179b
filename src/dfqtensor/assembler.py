"""Assemble the fitted AO tensor :math:`Q_{q \\mu \\nu}` shell pair by shell pair.

For every primary shell pair :math:`(M, N)` with :math:`N \\leq M`
the raw integrals :math:`(P | m n)` of all auxiliary shells :math:`P` are
collected in a block :python:`B[P, m, n]`, contracted with the fitting metric
and written into the storage backend.
The shell pairs are distributed over a thread pool by the outer shell :math:`M`;
every task owns its own integral evaluator and scratch buffer.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Final

import numpy as np

from dfqtensor.basis import BasisSet, Shell
from dfqtensor.eri import ThreeCenterEvaluator
from dfqtensor.metric import FittingMetric
from dfqtensor.shared.errors import ConfigurationError
from dfqtensor.shared.helper import Timer
from dfqtensor.shared.typing import Tensor3D
from dfqtensor.storage.base import StoredQTensor

logger: Final = logging.getLogger(__name__)


def raw_shell_pair_block(
    evaluator: ThreeCenterEvaluator,
    auxiliary: BasisSet,
    M: Shell,
    N: Shell,
    out: Tensor3D[np.float64] | None = None,
) -> Tensor3D[np.float64]:
    """Return :python:`B[p, m, n] = (p | m n)` for all auxiliary functions
    :python:`p` and the functions :python:`m, n` of the shells :python:`M, N`."""
    shape = (auxiliary.nbf, M.nfunction, N.nfunction)
    B = np.empty(shape, dtype=np.float64) if out is None else out[: np.prod(shape)]
    B = B.reshape(shape)
    for P in auxiliary:
        B[P.start : P.stop] = evaluator.compute_shell(P.idx, M.idx, N.idx)
    return B


def _assemble_outer_shell(
    qso: StoredQTensor,
    primary: BasisSet,
    auxiliary: BasisSet,
    metric: FittingMetric,
    M: Shell,
) -> None:
    evaluator = ThreeCenterEvaluator(primary, auxiliary)
    scratch = np.empty(auxiliary.nbf * M.nfunction * primary.max_nfunction)

    for N in primary.shells[: M.idx]:
        B = raw_shell_pair_block(evaluator, auxiliary, M, N, scratch)
        A = metric.contract(B.reshape(auxiliary.nbf, -1))
        qso.write_pair_block(
            A.reshape(B.shape), M.start, N.start, diagonal=False
        )

    B = raw_shell_pair_block(evaluator, auxiliary, M, M, scratch)
    A = metric.contract(B.reshape(auxiliary.nbf, -1))
    qso.write_pair_block(A.reshape(B.shape), M.start, M.start, diagonal=True)


def assemble_df_qso(
    qso: StoredQTensor,
    primary: BasisSet,
    auxiliary: BasisSet,
    metric: FittingMetric,
    n_threads: int,
) -> None:
    r"""Write :math:`Q_{q \mu \nu} = \sum_P X_{q P} (P | \mu \nu)` into :python:`qso`.

    Parameters
    ----------
    qso :
        Destination with dimensions :python:`(naux, nbf, nbf)`.
    primary :
        The primary basis.
    auxiliary :
        The auxiliary basis.
    metric :
        The fitting metric :math:`X`.
    n_threads :
        Number of worker threads.

    Raises
    ------
    EvaluatorError
        If an integral block could not be computed.
        Nothing is retried, the caller has to discard :python:`qso`.
    """
    if qso.dimensions != (metric.naux, primary.nbf, primary.nbf):
        raise ConfigurationError(
            f"Tensor dimensions {qso.dimensions} do not match the bases "
            f"({metric.naux}, {primary.nbf}, {primary.nbf})."
        )
    timer = Timer("Time to assemble Qso")
    logger.info(
        f"Assembling {qso.name} for {primary.nshell} primary and "
        f"{auxiliary.nshell} auxiliary shells on {n_threads} threads."
    )

    # Largest tasks first
    outer_shells = sorted(primary, key=lambda M: -(M.stop * M.nfunction))
    if n_threads > 1:
        with ThreadPoolExecutor(max_workers=n_threads) as executor:
            futures = [
                executor.submit(
                    _assemble_outer_shell, qso, primary, auxiliary, metric, M
                )
                for M in outer_shells
            ]
            # You must call future.result() if you want to catch exceptions
            # raised during execution. Otherwise, errors may silently fail.
            for future in futures:
                future.result()
    else:
        for M in outer_shells:
            _assemble_outer_shell(qso, primary, auxiliary, metric, M)

    logger.info(timer.str_elapsed())
