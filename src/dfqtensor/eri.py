"""Adapters around the pyscf integral library.

Every evaluator owns an output buffer that is reused between calls.
The arrays returned by :python:`compute_shell` are views into this buffer
and stay valid only until the next call on the same evaluator.
Evaluators are cheap to create and are not meant to be shared between threads.
"""

from __future__ import annotations

import logging

import numpy as np
from pyscf import gto
from pyscf.gto.moleintor import getints, make_cintopt, make_loc

from dfqtensor.basis import BasisSet
from dfqtensor.shared.errors import EvaluatorError
from dfqtensor.shared.typing import Matrix, ShellIdx, Tensor3D, Tensor4D

logger = logging.getLogger(__name__)


class ThreeCenterEvaluator:
    r"""Evaluate :math:`(P | \mu \nu)` one shell triplet at a time."""

    def __init__(
        self, primary: BasisSet, auxiliary: BasisSet, intor: str = "int3c2e"
    ) -> None:
        mol, auxmol = primary.mol, auxiliary.mol
        self.primary = primary
        self.auxiliary = auxiliary
        self._intor = mol._add_suffix(intor)
        self._atm, self._bas, self._env = gto.mole.conc_env(
            mol._atm, mol._bas, mol._env, auxmol._atm, auxmol._bas, auxmol._env
        )
        self._ao_loc = make_loc(self._bas, self._intor)
        self._cintopt = make_cintopt(self._atm, self._bas, self._env, self._intor)
        self._n_primary_shells = mol.nbas
        self._buffer = np.empty(
            max(auxiliary.max_nfunction * primary.max_nfunction**2, 1),
            dtype=np.float64,
        )

    def compute_shell(self, P: ShellIdx, M: ShellIdx, N: ShellIdx) -> Tensor3D[np.float64]:
        """Return the block :python:`B[p, m, n]` for the auxiliary shell :python:`P`
        and the primary shells :python:`M, N`.

        Raises
        ------
        EvaluatorError
            If the block can not be computed or has an unexpected shape.
        """
        offset = self._n_primary_shells
        shls_slice = (M, M + 1, N, N + 1, offset + P, offset + P + 1)
        try:
            integrals = getints(
                self._intor,
                self._atm,
                self._bas,
                self._env,
                shls_slice,
                1,
                0,
                "s1",
                self._ao_loc,
                self._cintopt,
                self._buffer,
            )
        except (RuntimeError, ValueError) as e:
            raise EvaluatorError(
                f"Integral block (P={P}, M={M}, N={N}) is unavailable."
            ) from e

        expected = (
            self.primary[M].nfunction,
            self.primary[N].nfunction,
            self.auxiliary[P].nfunction,
        )
        if integrals.shape != expected:
            raise EvaluatorError(
                f"Integral block (P={P}, M={M}, N={N}) has shape {integrals.shape}, "
                f"expected {expected}."
            )
        return integrals.transpose(2, 0, 1)


class FourCenterEvaluator:
    r"""Evaluate columns :math:`(\mu \nu | \kappa \lambda)` of the
    four-center integrals for a fixed shell pair :math:`(K, L)`."""

    def __init__(self, primary: BasisSet) -> None:
        self.primary = primary
        self._mol = primary.mol

    def compute_columns(self, K: ShellIdx, L: ShellIdx) -> Tensor4D[np.float64]:
        """Return :python:`G[mu, nu, k, l]` for all primary functions
        :python:`mu, nu` and the functions :python:`k, l` of :python:`K, L`."""
        nbas = self._mol.nbas
        try:
            return self._mol.intor(
                "int2e", shls_slice=(0, nbas, 0, nbas, K, K + 1, L, L + 1)
            )
        except (RuntimeError, ValueError) as e:
            raise EvaluatorError(f"Integral columns (K={K}, L={L}) are unavailable.") from e

    def diagonal(self) -> Matrix[np.float64]:
        r"""Return :math:`(\mu \nu | \mu \nu)` as a matrix over :math:`\mu, \nu`."""
        nbf = self.primary.nbf
        diag = np.empty((nbf, nbf), dtype=np.float64)
        for M in self.primary:
            for N in self.primary:
                block = self._mol.intor(
                    "int2e",
                    shls_slice=(M.idx, M.idx + 1, N.idx, N.idx + 1) * 2,
                )
                diag[M.start : M.stop, N.start : N.stop] = np.einsum(
                    "ijij->ij", block
                )
        return diag
