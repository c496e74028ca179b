r"""The Coulomb metric of the auxiliary basis and its (pseudo) inverses.

Given the metric :math:`J_{PQ} = (P | Q)`, the fitted three-index quantity is
:math:`Q_{q \mu \nu} = \sum_P X_{q P} (P | \mu \nu)` where :math:`X` is one of

- :python:`"eig_inverse_sqrt"`: :math:`X = J^{-1/2}`,
- :python:`"eig_inverse"`: :math:`X = J^{-1}`,
- :python:`"cholesky_inverse"`: :math:`X = L^{-1}` with :math:`J = L L^T`.

For the first and the last choice
:math:`\sum_q Q_{q \mu \nu} Q_{q \kappa \lambda}` is the
density-fitted approximation to :math:`(\mu \nu | \kappa \lambda)`.
"""

from __future__ import annotations

import logging
from typing import Final, Literal, TypeAlias

import numpy as np
from attrs import define, field
from pyscf.gto import Mole
from scipy.linalg import LinAlgError, cholesky, eigh, solve_triangular

from dfqtensor.shared.config import settings
from dfqtensor.shared.errors import ConfigurationError, MetricError
from dfqtensor.shared.helper import Timer
from dfqtensor.shared.typing import Matrix

MetricKind: TypeAlias = Literal["eig_inverse_sqrt", "eig_inverse", "cholesky_inverse"]

logger: Final = logging.getLogger(__name__)


def _filtered_eigen_power(
    J: Matrix[np.float64],
    power: float,
    threshold: float,
    negative_tolerance: float,
) -> tuple[Matrix[np.float64], int]:
    """Return :math:`J^{power}` where eigenvalues below
    :python:`threshold * max(eigenvalues)` are discarded,
    and the number of discarded eigenvalues."""
    eigvals, eigvecs = eigh(J)
    max_eigval = eigvals[-1]
    if max_eigval <= 0.0:
        raise MetricError("The fitting metric has no positive eigenvalue.")
    if eigvals[0] < -negative_tolerance * max_eigval:
        raise MetricError(
            f"The fitting metric is not positive definite; "
            f"its smallest eigenvalue is {eigvals[0]:.3e}."
        )
    keep = eigvals > threshold * max_eigval
    scaled = np.zeros_like(eigvals)
    scaled[keep] = eigvals[keep] ** power
    return (eigvecs * scaled) @ eigvecs.T, int((~keep).sum())


@define(frozen=True)
class FittingMetric:
    """The (pseudo) inverse of the auxiliary Coulomb metric.

    The matrix is computed once and is read-only afterwards,
    so it can be shared between threads without locking.
    """

    matrix: Matrix[np.float64] = field(eq=False)
    kind: MetricKind
    #: Number of eigenvalues that were discarded
    #: (always zero for :python:`"cholesky_inverse"`).
    n_discarded: int = 0

    def __attrs_post_init__(self) -> None:
        self.matrix.flags.writeable = False

    @property
    def naux(self) -> int:
        return self.matrix.shape[0]

    @classmethod
    def build(
        cls,
        auxmol: Mole,
        kind: MetricKind = "eig_inverse_sqrt",
        *,
        threshold: float | None = None,
        negative_tolerance: float | None = None,
    ) -> FittingMetric:
        """Compute :math:`J_{PQ} = (P | Q)` for :python:`auxmol`
        and form the requested inverse.

        Parameters
        ----------
        auxmol :
            The auxiliary basis.
        kind :
            Which inverse to form, see module docstring.
        threshold :
            Relative cut-off for the eigenvalues.
            Defaults to :python:`settings.METRIC_EIGEN_THRESHOLD`.
        negative_tolerance :
            Tolerated negative eigenvalue, relative to the largest one.
            Defaults to :python:`settings.METRIC_NEGATIVE_TOLERANCE`.

        Raises
        ------
        MetricError
            If the metric is not positive definite within the tolerance.
        """
        timer = Timer("Time to build the fitting metric")
        threshold = settings.METRIC_EIGEN_THRESHOLD if threshold is None else threshold
        negative_tolerance = (
            settings.METRIC_NEGATIVE_TOLERANCE
            if negative_tolerance is None
            else negative_tolerance
        )
        J = auxmol.intor("int2c2e")
        n_discarded = 0
        if kind == "eig_inverse_sqrt":
            matrix, n_discarded = _filtered_eigen_power(
                J, -0.5, threshold, negative_tolerance
            )
        elif kind == "eig_inverse":
            matrix, n_discarded = _filtered_eigen_power(
                J, -1.0, threshold, negative_tolerance
            )
        elif kind == "cholesky_inverse":
            try:
                L = cholesky(J, lower=True)
            except LinAlgError as e:
                raise MetricError("The fitting metric is not positive definite.") from e
            matrix = solve_triangular(L, np.eye(len(L)), lower=True)
        else:
            raise ConfigurationError(f"Unknown kind of fitting metric: {kind}")

        if n_discarded:
            logger.info(
                f"Discarded {n_discarded} of {len(J)} eigenvalues of the fitting metric."
            )
        logger.info(timer.str_elapsed())
        return cls(np.ascontiguousarray(matrix), kind, n_discarded)

    def contract(self, B: Matrix[np.float64]) -> Matrix[np.float64]:
        """Return :python:`matrix @ B`, contracting over the auxiliary index."""
        return self.matrix @ B
