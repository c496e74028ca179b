"""Generate three-index tensors and serve them in batches.

Examples
--------
>>> from pyscf import gto, scf
>>> from dfqtensor import DFTensor, QGen, QStorage
>>>
>>> mol = gto.M(atom="O 0 0 0; H 0 0.76 0.59; H 0 -0.76 0.59", basis="cc-pvdz")
>>> mf = scf.RHF(mol).run()
>>> dftensor = DFTensor(mol, "cc-pvdz-jkfit")
>>> dftensor.set_cmatrix(mf.mo_coeff)
>>> dftensor.set_nocc(mol.nelectron // 2, nfroz=1)
>>> dftensor.gen_qtensors(QGen.QOV, QStorage.ONDISK | QStorage.BYQ)
>>> buffer = np.empty(20 * dftensor.tensor_dimensions(QGen.QOV)[1] * ...)
>>> for cursor, batch in dftensor.iterate_by_q(QGen.QOV, buffer):
>>>     ...
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator
from typing import Final

import numpy as np
from pyscf.df.addons import make_auxmol
from pyscf.gto import Mole

from dfqtensor.basis import BasisSet
from dfqtensor.eri import FourCenterEvaluator
from dfqtensor.flags import (
    MO_TENSORS,
    TENSOR_NAMES,
    QGen,
    QStorage,
    resolve_backend,
    selected_tensors,
    single_tensor,
)
from dfqtensor.iterators import PairIterator, QIterator, stream_by_pair, stream_by_q
from dfqtensor.metric import FittingMetric, MetricKind
from dfqtensor.parallel import ParallelContext
from dfqtensor.reorder import get_ordering, permutation_matrix, reorder_rows
from dfqtensor.shared.config import n_threads_default, settings
from dfqtensor.shared.errors import (
    ConfigurationError,
    InternalConsistencyError,
    ResourceError,
)
from dfqtensor.shared.helper import (
    CumulativeTime,
    Timer,
    gauss_sum,
    pack_symmetric,
    timer,
    unravel_symmetric,
)
from dfqtensor.shared.manage_scratch import WorkDir
from dfqtensor.shared.typing import Matrix, PairIdx, PathLike
from dfqtensor.storage import StoredQTensor, make_stored_qtensor

logger: Final = logging.getLogger(__name__)


class ThreeIndexTensor(ABC):
    """Common machinery of three-index tensors :math:`Q_{q,ij}`.

    Subclasses decide how the AO tensor :math:`Q_{q \\mu \\nu}` is computed.
    Everything else, i.e. the transformation into MO subspaces,
    the storage, and the batched access, is shared.

    Parameters
    ----------
    primary :
        The molecule with the primary basis.
    storage_directory :
        Directory for on-disk tensors. If :class:`None`, a :class:`WorkDir`
        below :python:`settings.SCRATCH_ROOT` is created when it is needed,
        and deleted again by :meth:`cleanup`.
    n_threads :
        Number of worker threads, defaults to :python:`settings.N_THREADS`.
    basis_order :
        The ordering convention of basis functions used by the caller.
        Coefficient matrices are given and :math:`Q_{so}` is returned in it.
    parallel_context :
        Initialised context, required for distributed storage.
    """

    def __init__(
        self,
        primary: Mole,
        *,
        storage_directory: PathLike | WorkDir | None = None,
        n_threads: int | None = None,
        basis_order: str = "pyscf",
        parallel_context: ParallelContext | None = None,
    ) -> None:
        self.primary: Final = BasisSet(primary)
        self.nso: Final = self.primary.nbf
        self.n_threads = n_threads_default() if n_threads is None else n_threads
        self.ordering = get_ordering(basis_order)
        self.parallel_context = parallel_context

        if storage_directory is None or isinstance(storage_directory, WorkDir):
            self._workdir = storage_directory
        else:
            self._workdir = WorkDir(storage_directory, cleanup_at_end=False)
        self._owns_workdir = storage_directory is None

        self._tensors: dict[QGen, StoredQTensor] = {}
        # Qso is converted to the caller's ordering when it is requested
        self._qso_in_caller_order = False

        self.cmo: Matrix[np.float64] | None = None
        self.cmo_occ: Matrix[np.float64] | None = None
        self.cmo_vir: Matrix[np.float64] | None = None
        self.nmo = 0
        self.nocc = 0
        self.nfroz = 0
        self.nvir = 0

        self.gen_timer = CumulativeTime()

    @property
    @abstractmethod
    def naux(self) -> int:
        """Extent of the auxiliary index."""

    @property
    @abstractmethod
    def kind(self) -> str: ...

    @abstractmethod
    def _generate_qso(self, qso: StoredQTensor, n_threads: int) -> None:
        """Fill the empty, by-q, packed tensor :python:`qso`."""

    @property
    def storage_directory(self) -> WorkDir:
        if self._workdir is None:
            self._workdir = WorkDir.from_environment(prefix="dfqtensor_")
            logger.info(f"On-disk tensors are stored in {self._workdir}.")
        return self._workdir

    def set_cmatrix(
        self,
        cmo: Matrix[np.float64],
        nmo: int | None = None,
        is_transposed: bool = False,
        basis_order: str | None = None,
    ) -> None:
        """Set the MO coefficients.

        Parameters
        ----------
        cmo :
            The coefficients as :python:`(nso, nmo)` matrix,
            or as :python:`(nmo, nso)` if :python:`is_transposed`.
            Flat buffers are accepted as well.
        nmo :
            Number of MOs. Inferred from :python:`cmo`, if not given.
        is_transposed :
            :python:`cmo` is given with the MO index first.
        basis_order :
            Replace the ordering convention of the object.

        Raises
        ------
        ConfigurationError
            If the C matrix was already set or its size is inconsistent.
        """
        if self.cmo is not None:
            raise ConfigurationError("The C matrix is already set.")
        if basis_order is not None:
            ordering = get_ordering(basis_order)
            if QGen.QSO in self._tensors and ordering != self.ordering:
                raise ConfigurationError(
                    "The basis function ordering cannot change after Qso was generated."
                )
            self.ordering = ordering

        cmo = np.asarray(cmo, dtype=np.float64)
        if nmo is None:
            nmo = cmo.size // self.nso
        if nmo <= 0 or cmo.size != self.nso * nmo:
            raise ConfigurationError(
                f"C matrix with {cmo.size} elements does not match "
                f"nso={self.nso} and nmo={nmo}."
            )
        if is_transposed:
            cmo = cmo.reshape(nmo, self.nso).T
        else:
            cmo = cmo.reshape(self.nso, nmo)
        self.cmo = np.array(cmo, dtype=np.float64, order="C")
        reorder_rows(self.cmo, self.primary, self.ordering.name, to_internal=True)
        self.nmo = nmo

    def set_nocc(self, nocc: int, nfroz: int = 0) -> None:
        """Set the number of occupied and frozen orbitals and split the C matrix.

        The occupied block are the columns :python:`[nfroz, nfroz + nocc)`,
        the virtual block the columns :python:`[nfroz + nocc, nmo)`.
        """
        if nocc <= 0:
            raise ConfigurationError(f"Number of occupied orbitals is {nocc}.")
        if nfroz < 0:
            raise ConfigurationError(f"Number of frozen orbitals is {nfroz}.")
        if self.cmo is None:
            raise ConfigurationError("Set the C matrix before the occupations.")
        if nocc + nfroz > self.nmo:
            raise ConfigurationError(
                f"nocc={nocc} and nfroz={nfroz} exceed nmo={self.nmo}."
            )
        self.nocc = nocc
        self.nfroz = nfroz
        self.nvir = self.nmo - nocc - nfroz
        self.cmo_occ = self.cmo[:, nfroz : nfroz + nocc].copy()
        self.cmo_vir = self.cmo[:, nfroz + nocc :].copy()

    def _dimensions(self, tensor: QGen) -> tuple[int, int, int, bool]:
        """Return :python:`(naux, ndim1, ndim2, packed)` of a tensor."""
        if tensor == QGen.QSO:
            return self.naux, self.nso, self.nso, True
        if self.cmo is None or self.nocc == 0:
            raise ConfigurationError("Set the c-matrix and occupations first!")
        if tensor == QGen.QMO:
            return self.naux, self.nmo, self.nmo, True
        elif tensor == QGen.QOO:
            return self.naux, self.nocc, self.nocc, True
        elif tensor == QGen.QOV:
            return self.naux, self.nocc, self.nvir, False
        elif tensor == QGen.QVV:
            return self.naux, self.nvir, self.nvir, True
        raise ConfigurationError(f"Unknown tensor flag: {tensor}")

    def _coefficients(
        self, tensor: QGen
    ) -> tuple[Matrix[np.float64], Matrix[np.float64]]:
        """Return :math:`C_{left}, C_{right}` in the current ordering of Qso."""
        assert self.cmo is not None
        assert self.cmo_occ is not None and self.cmo_vir is not None
        left, right = {
            QGen.QMO: (self.cmo, self.cmo),
            QGen.QOO: (self.cmo_occ, self.cmo_occ),
            QGen.QOV: (self.cmo_occ, self.cmo_vir),
            QGen.QVV: (self.cmo_vir, self.cmo_vir),
        }[tensor]
        if self._qso_in_caller_order:
            T = permutation_matrix(self.primary, self.ordering.name)
            if left is right:
                left = right = T.T @ left
            else:
                left, right = T.T @ left, T.T @ right
        return left, right

    def _new_tensor(self, tensor: QGen, storeflags: int) -> StoredQTensor:
        naux, ndim1, ndim2, packed = self._dimensions(tensor)
        if packed:
            storeflags |= QStorage.PACKED
        return make_stored_qtensor(
            storeflags,
            TENSOR_NAMES[tensor],
            naux,
            ndim1,
            ndim2,
            directory=(
                self.storage_directory
                if resolve_backend(storeflags) == "disk"
                else None
            ),
            context=self.parallel_context,
        )

    def _ensure_qso(self, storeflags: int, n_threads: int) -> StoredQTensor:
        """Generate Qso, unless it already exists."""
        qso = self._tensors.get(QGen.QSO)
        if qso is not None and qso.filled:
            return qso
        t = Timer(f"Time to generate Qso ({self.kind})")
        qso = self._new_tensor(QGen.QSO, storeflags | QStorage.BYQ)
        logger.info(
            f"Qso has {qso.size} elements ({qso.size * 8 * 2**-30:.5f} Gb), "
            f"naux={qso.naux}, nso={self.nso}."
        )
        try:
            self._generate_qso(qso, n_threads)
        except Exception:
            qso.clear()
            raise
        qso.mark_filled()
        qso.gen_timer.add(t)
        self._tensors[QGen.QSO] = qso
        self._qso_in_caller_order = False
        logger.info(t.str_elapsed())
        return qso

    def gen_qtensors(
        self,
        qflags: int,
        storeflags: int = QStorage.INMEM,
        n_threads: int | None = None,
    ) -> None:
        """Generate the selected tensors, if they do not exist yet.

        Qso is always generated, since all other tensors are derived from it.
        It is stored by-q, independent of :python:`storeflags`.

        Parameters
        ----------
        qflags :
            Combination of :class:`QGen` flags.
        storeflags :
            Combination of :class:`QStorage` flags.
            :python:`QStorage.PACKED` is ignored, whether a tensor is packed
            is fixed per tensor.
        n_threads :
            Number of worker threads for this call,
            defaults to the value given at construction.

        Raises
        ------
        ConfigurationError
            If MO tensors are requested before the C matrix and
            the occupations are set, or for invalid flags.
        """
        t = Timer("Time to generate Q tensors")
        requested = selected_tensors(qflags)
        resolve_backend(storeflags)
        storeflags = int(storeflags) & ~int(QStorage.PACKED)
        if (qflags & MO_TENSORS) and (self.cmo is None or self.nocc == 0):
            raise ConfigurationError("Set the c-matrix and occupations first!")

        if n_threads is None:
            n_threads = self.n_threads
        qso = self._ensure_qso(storeflags, n_threads)

        pending = [
            tensor
            for tensor in requested
            if tensor != QGen.QSO
            and not (tensor in self._tensors and self._tensors[tensor].filled)
        ]
        if pending:
            transform_timer = Timer("Time to transform Qso")
            destinations = {
                tensor: self._new_tensor(tensor, storeflags) for tensor in pending
            }
            try:
                self._transform(qso, destinations, n_threads)
            except Exception:
                for dest in destinations.values():
                    dest.clear()
                raise
            for tensor, dest in destinations.items():
                dest.mark_filled()
                dest.gen_timer.add(transform_timer)
                self._tensors[tensor] = dest

        if (
            QGen.QSO in requested
            and not self._qso_in_caller_order
            and not self.ordering.is_identity
        ):
            self._reorder_qso(qso, n_threads)

        self.gen_timer.add(t)
        logger.info(t.str_elapsed())

    def _transform(
        self,
        qso: StoredQTensor,
        destinations: dict[QGen, StoredQTensor],
        n_threads: int,
    ) -> None:
        from dfqtensor.storage import DistributedQTensor  # noqa: PLC0415
        from dfqtensor.transform import transform_qtensor  # noqa: PLC0415

        if isinstance(qso, DistributedQTensor):
            for tensor, dest in destinations.items():
                dest.generate_transformed(qso, *self._coefficients(tensor), n_threads)
        else:
            transform_qtensor(
                qso,
                [
                    (dest, *self._coefficients(tensor))
                    for tensor, dest in destinations.items()
                ],
                n_threads,
            )

    def _reorder_qso(self, qso: StoredQTensor, n_threads: int) -> None:
        """Convert Qso in place to the ordering of the caller."""
        t = Timer("Time to reorder Qso")
        T = permutation_matrix(self.primary, self.ordering.name)
        qso.generate_transformed(qso, T, T, n_threads)
        self._qso_in_caller_order = True
        logger.info(t.str_elapsed())

    def _resolve(self, tensor_flag: int) -> StoredQTensor:
        tensor = single_tensor(tensor_flag)
        if tensor not in self._tensors:
            raise ResourceError(f"Tensor {TENSOR_NAMES[tensor]} was not generated.")
        return self._tensors[tensor]

    def get_qbatch(self, tensor_flag: int, out: np.ndarray, qstart: int) -> int:
        """Fill :python:`out` with as many complete slices :python:`Q_q`,
        starting at :python:`qstart`, as fit into it.

        Returns
        -------
        int
            The number of slices delivered. Zero signals exhaustion.

        Raises
        ------
        ResourceError
            If :python:`out` can not hold a single slice.
        """
        qt = self._resolve(tensor_flag)
        if qt.ndim12 == 0:
            return 0
        nq = out.size // qt.ndim12
        if nq == 0:
            raise ResourceError("Buffer is too small to hold even one batch!")
        t = Timer(f"Time for get_qbatch of {qt.name}")
        n_delivered = qt.read_by_q(out, qstart, nq)
        qt.getqbatch_timer.add(t)
        return n_delivered

    def get_batch(self, tensor_flag: int, out: np.ndarray, ijstart: int) -> int:
        """Fill :python:`out` with as many complete pair rows :python:`Q_{ij}`,
        starting at :python:`ijstart`, as fit into it.

        Returns
        -------
        int
            The number of pairs delivered. Zero signals exhaustion.

        Raises
        ------
        ResourceError
            If :python:`out` can not hold a single pair row.
        """
        qt = self._resolve(tensor_flag)
        if qt.naux == 0:
            return 0
        nij = out.size // qt.naux
        if nij == 0:
            raise ResourceError("Buffer is too small to hold even one batch!")
        t = Timer(f"Time for get_batch of {qt.name}")
        n_delivered = qt.read(out, ijstart, nij)
        qt.getbatch_timer.add(t)
        return n_delivered

    def iterate_by_q(
        self, tensor_flag: int, buffer: np.ndarray
    ) -> Iterator[tuple[QIterator, Matrix[np.float64]]]:
        """Stream a tensor through :python:`buffer` in batches of slices,
        see :func:`dfqtensor.iterators.stream_by_q`."""
        naux, _, _, _ = self._dimensions(single_tensor(tensor_flag))
        ndim12 = self._resolve(tensor_flag).ndim12
        return stream_by_q(
            lambda buf, qstart: self.get_qbatch(tensor_flag, buf, qstart),
            naux,
            ndim12,
            buffer,
        )

    def iterate_by_pair(
        self, tensor_flag: int, buffer: np.ndarray
    ) -> Iterator[tuple[PairIterator, Matrix[np.float64]]]:
        """Stream a tensor through :python:`buffer` in batches of pair rows,
        see :func:`dfqtensor.iterators.stream_by_pair`."""
        qt = self._resolve(tensor_flag)
        return stream_by_pair(
            lambda buf, ijstart: self.get_batch(tensor_flag, buf, ijstart),
            qt.naux,
            qt.ndim1,
            qt.ndim2,
            qt.packed,
            buffer,
        )

    def tensor_dimensions(self, tensor_flag: int) -> tuple[int, int, int]:
        """Return :python:`(naux, ndim1, ndim2)` of a tensor."""
        naux, ndim1, ndim2, _ = self._dimensions(single_tensor(tensor_flag))
        return naux, ndim1, ndim2

    def is_packed(self, tensor_flag: int) -> bool:
        return single_tensor(tensor_flag) != QGen.QOV

    def calc_index(self, tensor_flag: int, i: int, j: int) -> PairIdx:
        """Return the pair index of :python:`(i, j)` in a tensor."""
        _, ndim1, ndim2, packed = self._dimensions(single_tensor(tensor_flag))
        if not (0 <= i < ndim1 and 0 <= j < ndim2):
            raise InternalConsistencyError(
                f"Index ({i}, {j}) out of range for {ndim1} x {ndim2}."
            )
        return PairIterator.from_ij(ndim1, ndim2, packed, i, j).pair_index

    def contract(
        self,
        tensor_flag: int,
        ij: int,
        kl: int,
        nij: int,
        nkl: int,
        out: np.ndarray,
        rhs_flag: int | None = None,
    ) -> tuple[int, int]:
        """Approximate four-index integrals :math:`(ij | kl)` from a tensor,
        see :meth:`dfqtensor.storage.StoredQTensor.contract_multi`."""
        lhs = self._resolve(tensor_flag)
        rhs = lhs if rhs_flag is None else self._resolve(rhs_flag)
        return lhs.contract_multi(rhs, ij, kl, nij, nkl, out)

    def contract_single(self, tensor_flag: int, i: int, j: int, k: int, l: int) -> float:
        qt = self._resolve(tensor_flag)
        return qt.contract_single(qt, i, j, k, l)

    def delete(self, qflags: int) -> None:
        """Release the selected tensors."""
        for tensor in selected_tensors(qflags):
            qt = self._tensors.pop(tensor, None)
            if qt is not None:
                qt.clear()
            if tensor == QGen.QSO:
                self._qso_in_caller_order = False

    def cleanup(self) -> None:
        """Release all tensors and the storage directory, if it was created here."""
        self.delete(sum(QGen))
        if self._owns_workdir and self._workdir is not None:
            self._workdir.cleanup(ignore_error=True)
            self._workdir = None

    def print_timings(self) -> None:
        """Log the cumulative times of generation and batch access."""
        width = 27
        lines = [
            f"==> {self.kind} tensor timings <==",
            "Time (in seconds), followed by number of calls in parentheses",
            f"{'Tensor':<6}  {'Generation':^{width}}  {'GetBatch':^{width}}  "
            f"{'GetQBatch':^{width}}",
            f"{'-' * 6}  {'-' * width}  {'-' * width}  {'-' * width}",
        ]
        for tensor in QGen:
            name = TENSOR_NAMES[tensor].upper()
            qt = self._tensors.get(tensor)
            if qt is None:
                na = f"{'N/A':>17} ({'N/A':>7})"
                lines.append(f"{name:<6}  {na}  {na}  {na}")
            else:
                lines.append(
                    f"{name:<6}  {qt.gen_timer!s}  {qt.getbatch_timer!s}  "
                    f"{qt.getqbatch_timer!s}"
                )
        lines.append("-" * (6 + 3 * (width + 2)))
        logger.info("\n".join(lines))


class DFTensor(ThreeIndexTensor):
    """Density-fitted three-index tensors.

    Parameters
    ----------
    primary :
        The molecule with the primary basis.
    auxiliary :
        The auxiliary basis, either as molecule or as the name of a basis,
        e.g. :python:`"weigend"`.
    metric_kind :
        Which inverse of the fitting metric is used,
        see :class:`dfqtensor.metric.FittingMetric`.
    **kwargs :
        Passed on to :class:`ThreeIndexTensor`.
    """

    def __init__(
        self,
        primary: Mole,
        auxiliary: Mole | str,
        *,
        metric_kind: MetricKind = "eig_inverse_sqrt",
        storage_directory: PathLike | WorkDir | None = None,
        n_threads: int | None = None,
        basis_order: str = "pyscf",
        parallel_context: ParallelContext | None = None,
    ) -> None:
        super().__init__(
            primary,
            storage_directory=storage_directory,
            n_threads=n_threads,
            basis_order=basis_order,
            parallel_context=parallel_context,
        )
        if isinstance(auxiliary, Mole):
            auxmol = auxiliary
        else:
            auxmol = make_auxmol(primary, auxbasis=auxiliary)
        self.auxiliary: Final = BasisSet(auxmol)
        self.metric: Final = FittingMetric.build(auxmol, metric_kind)

    @property
    def naux(self) -> int:
        return self.auxiliary.nbf

    @property
    def kind(self) -> str:
        return "DF"

    def _generate_qso(self, qso: StoredQTensor, n_threads: int) -> None:
        qso.generate_df_qso(self.primary, self.auxiliary, self.metric, n_threads)


@timer.timeit
def pivoted_cholesky(primary: BasisSet, delta: float) -> Matrix[np.float64]:
    r"""Incomplete Cholesky decomposition of :math:`(\mu \nu | \kappa \lambda)`.

    Returns
    -------
    Matrix
        The Cholesky vectors :python:`L[q, ij]` over packed pairs with
        :math:`(ij | kl) \approx \sum_q L_{q,ij} L_{q,kl}` up to :python:`delta`.
    """
    evaluator = FourCenterEvaluator(primary)
    diagonal = pack_symmetric(evaluator.diagonal())
    n_pairs = len(diagonal)
    shell_of_function = np.repeat(
        np.arange(primary.nshell), [shell.nfunction for shell in primary]
    )
    vectors = np.empty((min(n_pairs, 64), n_pairs), dtype=np.float64)
    n_vectors = 0
    while n_vectors < n_pairs:
        pivot = int(np.argmax(diagonal))
        max_diagonal = diagonal[pivot]
        if max_diagonal < delta:
            break
        if n_vectors == len(vectors):
            vectors = np.concatenate([vectors, np.empty_like(vectors)])[:n_pairs]
        k, l = (int(x) for x in unravel_symmetric(pivot))
        K = primary[int(shell_of_function[k])]
        L = primary[int(shell_of_function[l])]
        columns = evaluator.compute_columns(K.idx, L.idx)
        column = pack_symmetric(columns[:, :, k - K.start, l - L.start])
        column -= vectors[:n_vectors].T @ vectors[:n_vectors, pivot]
        vectors[n_vectors] = column / np.sqrt(max_diagonal)
        diagonal -= vectors[n_vectors] ** 2
        diagonal[pivot] = 0.0
        n_vectors += 1
    logger.info(
        f"{n_vectors} Cholesky vectors for {n_pairs} pairs with delta={delta:.1e}."
    )
    return vectors[:n_vectors].copy()


class CHTensor(ThreeIndexTensor):
    """Three-index tensors from a Cholesky decomposition of the
    four-index integrals of the primary basis.

    The number of Cholesky vectors, i.e. :python:`naux`,
    is only known after the decomposition, which happens at construction.

    Parameters
    ----------
    primary :
        The molecule with the primary basis.
    delta :
        Stop when the largest remaining diagonal is below this value.
        Defaults to :python:`settings.CHOLESKY_DELTA`.
    **kwargs :
        Passed on to :class:`ThreeIndexTensor`.
    """

    def __init__(
        self,
        primary: Mole,
        delta: float | None = None,
        *,
        storage_directory: PathLike | WorkDir | None = None,
        n_threads: int | None = None,
        basis_order: str = "pyscf",
        parallel_context: ParallelContext | None = None,
    ) -> None:
        super().__init__(
            primary,
            storage_directory=storage_directory,
            n_threads=n_threads,
            basis_order=basis_order,
            parallel_context=parallel_context,
        )
        self.delta: Final = settings.CHOLESKY_DELTA if delta is None else delta
        self._vectors = pivoted_cholesky(self.primary, self.delta)
        assert self._vectors.shape[1] == gauss_sum(self.nso)

    @property
    def naux(self) -> int:
        return len(self._vectors)

    @property
    def kind(self) -> str:
        return "Cholesky"

    def _generate_qso(self, qso: StoredQTensor, n_threads: int) -> None:
        qso.write_by_q(self._vectors, 0, self.naux)
