import logging
from itertools import count

import numpy as np
import pytest
from pyscf import df, gto
from pyscf.df import make_auxmol
from pytest import raises

from dfqtensor import CHTensor, DFTensor, ParallelContext, QGen, QStorage
from dfqtensor.basis import BasisSet
from dfqtensor.eri import ThreeCenterEvaluator
from dfqtensor.reorder import permutation_matrix
from dfqtensor.shared.errors import (
    ConfigurationError,
    EvaluatorError,
    InternalConsistencyError,
    ResourceError,
)
from dfqtensor.shared.helper import pack_symmetric, unpack_symmetric
from dfqtensor.storage import DistributedQTensor, MemoryQTensor

WATER = "O 0 0 0.1173; H 0 0.7572 -0.4692; H 0 -0.7572 -0.4692"

SMALL_AUXBASIS = {
    "O": [
        [0, [8.0, 1.0]],
        [0, [2.0, 1.0]],
        [0, [0.5, 1.0]],
        [1, [1.0, 1.0]],
    ],
    "H": [
        [0, [2.0, 1.0]],
        [0, [0.4, 1.0]],
    ],
}


@pytest.fixture(scope="module")
def water() -> gto.Mole:
    return gto.M(atom=WATER, basis="sto-3g")


@pytest.fixture(scope="module")
def auxmol(water) -> gto.Mole:
    return make_auxmol(water, SMALL_AUXBASIS)


@pytest.fixture(scope="module")
def reference_qso(water, auxmol) -> np.ndarray:
    r"""Return :math:`Q_{q \mu \nu} = \sum_P J^{-1/2}_{qP} (P | \mu \nu)`."""
    j3c = df.incore.aux_e2(water, auxmol, intor="int3c2e", aosym="s1")
    J = auxmol.intor("int2c2e")
    eigvals, eigvecs = np.linalg.eigh(J)
    J_inv_sqrt = (eigvecs / np.sqrt(eigvals)) @ eigvecs.T
    return np.einsum("qp,mnp->qmn", J_inv_sqrt, j3c)


@pytest.fixture
def cmo(water) -> np.ndarray:
    rng = np.random.default_rng(7)
    return rng.random((water.nao, water.nao)) - 0.5


def read_all_by_q(tensor: DFTensor, flag: QGen) -> np.ndarray:
    naux, ndim1, ndim2 = tensor.tensor_dimensions(flag)
    ndim12 = (ndim1 * (ndim1 + 1)) // 2 if tensor.is_packed(flag) else ndim1 * ndim2
    out = np.empty((naux, ndim12))
    assert tensor.get_qbatch(flag, out, 0) == naux
    return out


def expand(rows: np.ndarray, tensor: DFTensor, flag: QGen) -> np.ndarray:
    naux, ndim1, ndim2 = tensor.tensor_dimensions(flag)
    if tensor.is_packed(flag):
        return np.array([unpack_symmetric(row, ndim1) for row in rows])
    return rows.reshape(naux, ndim1, ndim2)


def test_qso(water, auxmol, reference_qso) -> None:
    tensor = DFTensor(water, auxmol, n_threads=2)
    tensor.gen_qtensors(QGen.QSO)

    assert water.nao == 7
    assert tensor.tensor_dimensions(QGen.QSO) == (10, 7, 7)
    assert tensor.is_packed(QGen.QSO)

    qso = expand(read_all_by_q(tensor, QGen.QSO), tensor, QGen.QSO)
    assert np.allclose(qso, reference_qso, atol=1e-10)
    assert np.allclose(qso, qso.transpose(0, 2, 1))
    tensor.cleanup()


def test_qbatch_sizes(water, auxmol, reference_qso) -> None:
    tensor = DFTensor(water, auxmol, n_threads=1)
    tensor.gen_qtensors(QGen.QSO)
    ndim12 = 28
    buffer = np.empty(3 * ndim12)

    sizes = []
    qstart = 0
    while n_q := tensor.get_qbatch(QGen.QSO, buffer, qstart):
        batch = buffer[: n_q * ndim12].reshape(n_q, ndim12)
        expected = [pack_symmetric(Q) for Q in reference_qso[qstart : qstart + n_q]]
        assert np.allclose(batch, expected, atol=1e-10)
        sizes.append(n_q)
        qstart += n_q
    assert sizes == [3, 3, 3, 1]
    assert tensor.get_qbatch(QGen.QSO, buffer, 10) == 0

    with raises(ResourceError):
        tensor.get_qbatch(QGen.QSO, np.empty(ndim12 - 1), 0)
    with raises(InternalConsistencyError):
        tensor.get_qbatch(QGen.QSO, buffer, -1)
    tensor.cleanup()


def test_get_batch(water, auxmol, reference_qso) -> None:
    tensor = DFTensor(water, auxmol, n_threads=1)
    tensor.gen_qtensors(QGen.QSO)
    buffer = np.empty(5 * 10)

    ij = tensor.calc_index(QGen.QSO, 3, 5)
    assert ij == tensor.calc_index(QGen.QSO, 5, 3) == 18
    assert tensor.get_batch(QGen.QSO, buffer, ij) == 5
    assert np.allclose(buffer[:10], reference_qso[:, 5, 3], atol=1e-10)
    assert tensor.get_batch(QGen.QSO, buffer, 26) == 2
    assert tensor.get_batch(QGen.QSO, buffer, 28) == 0

    with raises(ResourceError):
        tensor.get_batch(QGen.QSO, np.empty(9), 0)
    tensor.cleanup()


def test_generation_is_idempotent(water, auxmol) -> None:
    tensor = DFTensor(water, auxmol, n_threads=1)
    tensor.gen_qtensors(QGen.QSO)
    first = read_all_by_q(tensor, QGen.QSO)
    tensor.gen_qtensors(QGen.QSO)
    assert np.array_equal(read_all_by_q(tensor, QGen.QSO), first)
    assert tensor._tensors[QGen.QSO].gen_timer.n_calls == 1
    tensor.cleanup()


def test_cmatrix_split(water, auxmol, cmo) -> None:
    tensor = DFTensor(water, auxmol)
    with raises(ConfigurationError):
        tensor.set_nocc(3)

    tensor.set_cmatrix(cmo)
    with raises(ConfigurationError):
        tensor.set_cmatrix(cmo)
    with raises(ConfigurationError):
        tensor.set_nocc(0)
    with raises(ConfigurationError):
        tensor.set_nocc(7, nfroz=1)

    tensor.set_nocc(3, nfroz=1)
    assert (tensor.nmo, tensor.nocc, tensor.nfroz, tensor.nvir) == (7, 3, 1, 3)
    assert np.array_equal(tensor.cmo_occ, cmo[:, 1:4])
    assert np.array_equal(tensor.cmo_vir, cmo[:, 4:])


def test_transposed_cmatrix(water, auxmol, cmo) -> None:
    tensor = DFTensor(water, auxmol)
    tensor.set_cmatrix(np.ascontiguousarray(cmo.T).reshape(-1), 7, is_transposed=True)
    assert np.array_equal(tensor.cmo, cmo)


def test_mo_tensors(water, auxmol, reference_qso, cmo) -> None:
    tensor = DFTensor(water, auxmol, n_threads=3)
    with raises(ConfigurationError, match="c-matrix and occupations"):
        tensor.gen_qtensors(QGen.QOV)

    tensor.set_cmatrix(cmo)
    tensor.set_nocc(3, nfroz=1)
    tensor.gen_qtensors(QGen.QMO | QGen.QOO | QGen.QOV | QGen.QVV, QStorage.BYQ)

    occ, vir = cmo[:, 1:4], cmo[:, 4:]
    expected = {
        QGen.QMO: np.einsum("qmn,mi,nj->qij", reference_qso, cmo, cmo),
        QGen.QOO: np.einsum("qmn,mi,nj->qij", reference_qso, occ, occ),
        QGen.QOV: np.einsum("qmn,mi,nj->qij", reference_qso, occ, vir),
        QGen.QVV: np.einsum("qmn,mi,nj->qij", reference_qso, vir, vir),
    }
    assert tensor.tensor_dimensions(QGen.QOV) == (10, 3, 3)
    assert not tensor.is_packed(QGen.QOV)
    assert tensor.is_packed(QGen.QVV)
    for flag, reference in expected.items():
        result = expand(read_all_by_q(tensor, flag), tensor, flag)
        assert np.allclose(result, reference, atol=1e-10), flag

    # Qso was needed, so it is kept
    assert QGen.QSO in tensor._tensors
    tensor.cleanup()


def test_by_pair_layout(water, auxmol, reference_qso, cmo) -> None:
    tensor = DFTensor(water, auxmol, n_threads=2)
    tensor.set_cmatrix(cmo)
    tensor.set_nocc(3, nfroz=1)
    tensor.gen_qtensors(QGen.QOV, QStorage.INMEM | QStorage.PACKED)

    qov = tensor._tensors[QGen.QOV]
    assert not qov.byq and not qov.packed
    assert tensor._tensors[QGen.QSO].byq

    reference = np.einsum(
        "qmn,mi,nj->ijq", reference_qso, cmo[:, 1:4], cmo[:, 4:]
    ).reshape(9, 10)
    buffer = np.empty(4 * 10)
    for cursor, batch in tensor.iterate_by_pair(QGen.QOV, buffer):
        i, j = cursor.ij
        assert tensor.calc_index(QGen.QOV, i, j) == cursor.pair_index
        assert np.allclose(
            batch, reference[cursor.pair_index : cursor.pair_index + len(batch)]
        )
    tensor.cleanup()


def test_on_disk(water, auxmol, cmo, tmp_path) -> None:
    in_memory = DFTensor(water, auxmol, n_threads=2)
    in_memory.set_cmatrix(cmo)
    in_memory.set_nocc(3)
    in_memory.gen_qtensors(QGen.QSO | QGen.QOV)

    on_disk = DFTensor(water, auxmol, n_threads=2, storage_directory=tmp_path)
    on_disk.set_cmatrix(cmo)
    on_disk.set_nocc(3)
    on_disk.gen_qtensors(QGen.QSO | QGen.QOV, QStorage.ONDISK)
    assert (tmp_path / "qso.bin").exists()
    assert (tmp_path / "qov.bin").exists()

    for flag in (QGen.QSO, QGen.QOV):
        assert np.allclose(
            read_all_by_q(on_disk, flag), read_all_by_q(in_memory, flag), atol=1e-12
        )

    on_disk.delete(QGen.QOV)
    assert not (tmp_path / "qov.bin").exists()
    with raises(ResourceError):
        on_disk.get_qbatch(QGen.QOV, np.empty(100), 0)

    on_disk.cleanup()
    assert not (tmp_path / "qso.bin").exists()
    # a directory given by the caller is kept
    assert tmp_path.exists()
    in_memory.cleanup()


def test_distributed(water, auxmol, reference_qso, cmo) -> None:
    with ParallelContext() as context:
        tensor = DFTensor(water, auxmol, parallel_context=context)
        tensor.set_cmatrix(cmo)
        tensor.set_nocc(3, nfroz=1)
        tensor.gen_qtensors(QGen.QSO | QGen.QOV | QGen.QVV, QStorage.DISTRIBUTED)

        qso = expand(read_all_by_q(tensor, QGen.QSO), tensor, QGen.QSO)
        assert np.allclose(qso, reference_qso, atol=1e-10)

        occ, vir = cmo[:, 1:4], cmo[:, 4:]
        qov = expand(read_all_by_q(tensor, QGen.QOV), tensor, QGen.QOV)
        assert np.allclose(
            qov, np.einsum("qmn,mi,nj->qij", reference_qso, occ, vir), atol=1e-10
        )
        qvv = expand(read_all_by_q(tensor, QGen.QVV), tensor, QGen.QVV)
        assert np.allclose(
            qvv, np.einsum("qmn,mi,nj->qij", reference_qso, vir, vir), atol=1e-10
        )
        tensor.cleanup()


def test_inconsistent_storage_flags(water, auxmol) -> None:
    tensor = DFTensor(water, auxmol)
    with raises(ConfigurationError):
        tensor.gen_qtensors(QGen.QSO, QStorage.ONDISK | QStorage.DISTRIBUTED)
    with raises(ConfigurationError):
        tensor.gen_qtensors(QGen.QSO, QStorage.DISTRIBUTED)
    with raises(ConfigurationError):
        tensor.get_qbatch(QGen.QSO | QGen.QOV, np.empty(10), 0)
    with raises(ResourceError):
        tensor.get_qbatch(QGen.QSO, np.empty(100), 0)


def test_psi4_ordering() -> None:
    mol = gto.M(atom=WATER, basis="cc-pvdz")
    aux = make_auxmol(mol, SMALL_AUXBASIS)
    assert mol.nao == 24
    T = permutation_matrix(BasisSet(mol), "psi4")

    pyscf_tensor = DFTensor(mol, aux)
    pyscf_tensor.gen_qtensors(QGen.QSO)
    qso = expand(read_all_by_q(pyscf_tensor, QGen.QSO), pyscf_tensor, QGen.QSO)

    psi4_tensor = DFTensor(mol, aux, basis_order="psi4")
    psi4_tensor.gen_qtensors(QGen.QSO)
    qso_psi4 = expand(read_all_by_q(psi4_tensor, QGen.QSO), psi4_tensor, QGen.QSO)
    assert np.allclose(qso_psi4, T.T @ qso @ T, atol=1e-12)

    # coefficients in psi4 order give the same MO tensors
    rng = np.random.default_rng(3)
    cmo = rng.random((mol.nao, 8))
    pyscf_tensor.set_cmatrix(cmo)
    pyscf_tensor.set_nocc(4)
    psi4_tensor.set_cmatrix(T.T @ cmo)
    psi4_tensor.set_nocc(4)
    for tensor in (pyscf_tensor, psi4_tensor):
        tensor.gen_qtensors(QGen.QOV)
    assert np.allclose(
        read_all_by_q(psi4_tensor, QGen.QOV),
        read_all_by_q(pyscf_tensor, QGen.QOV),
        atol=1e-10,
    )
    pyscf_tensor.cleanup()
    psi4_tensor.cleanup()


def test_contract_against_pyscf(water) -> None:
    tensor = DFTensor(water, "weigend", n_threads=2)
    tensor.gen_qtensors(QGen.QSO)
    npair = 28
    out = np.empty((npair, npair))
    assert tensor.contract(QGen.QSO, 0, 0, npair, npair, out) == (npair, npair)

    cderi = df.incore.cholesky_eri(water, auxbasis="weigend")
    assert np.allclose(out, cderi.T @ cderi, atol=1e-8)

    # density fitting is a decent approximation of the exact integrals
    exact = water.intor("int2e", aosym="s4")
    assert np.allclose(out, exact, atol=5e-2)
    assert np.isclose(
        tensor.contract_single(QGen.QSO, 1, 0, 1, 0), out[1, 1], atol=1e-12
    )
    tensor.cleanup()


def test_cholesky(water) -> None:
    tensor = CHTensor(water, delta=1e-9)
    assert tensor.naux <= 28
    tensor.gen_qtensors(QGen.QSO)
    npair = 28
    out = np.empty((npair, npair))
    tensor.contract(QGen.QSO, 0, 0, npair, npair, out)
    exact = water.intor("int2e", aosym="s4")
    assert np.allclose(out, exact, atol=1e-6)
    tensor.cleanup()


def test_metric_kinds(water, auxmol, reference_qso) -> None:
    tensor = DFTensor(water, auxmol, metric_kind="cholesky_inverse")
    tensor.gen_qtensors(QGen.QSO)
    rows = read_all_by_q(tensor, QGen.QSO)
    reference = np.array([pack_symmetric(Q) for Q in reference_qso])
    # both factorizations reproduce the same four-index integrals
    assert np.allclose(rows.T @ rows, reference.T @ reference, atol=1e-10)
    tensor.cleanup()


def test_print_timings(water, auxmol, caplog) -> None:
    tensor = DFTensor(water, auxmol, n_threads=1)
    tensor.gen_qtensors(QGen.QSO)
    tensor.get_qbatch(QGen.QSO, np.empty(28 * 2), 0)
    with caplog.at_level(logging.INFO, logger="dfqtensor"):
        tensor.print_timings()
    assert "QSO" in caplog.text
    assert "N/A" in caplog.text
    assert "(      1)" in caplog.text
    tensor.cleanup()


def test_failed_generation_is_discarded(
    water, auxmol, reference_qso, monkeypatch
) -> None:
    compute_shell = ThreeCenterEvaluator.compute_shell
    calls = count()

    def failing_compute_shell(self, P, M, N):
        if next(calls) == 20:
            raise EvaluatorError(f"Integral block (P={P}, M={M}, N={N}) failed.")
        return compute_shell(self, P, M, N)

    tensor = DFTensor(water, auxmol, n_threads=3)
    monkeypatch.setattr(ThreeCenterEvaluator, "compute_shell", failing_compute_shell)
    with raises(EvaluatorError):
        tensor.gen_qtensors(QGen.QSO)
    assert QGen.QSO not in tensor._tensors
    with raises(ResourceError):
        tensor.get_qbatch(QGen.QSO, np.empty(100), 0)

    monkeypatch.undo()
    tensor.gen_qtensors(QGen.QSO)
    qso = expand(read_all_by_q(tensor, QGen.QSO), tensor, QGen.QSO)
    assert np.allclose(qso, reference_qso, atol=1e-10)
    tensor.cleanup()


def test_gamess_ordering() -> None:
    mol = gto.M(atom=WATER, basis="6-31g*", cart=True)
    aux = make_auxmol(mol, SMALL_AUXBASIS)
    T = permutation_matrix(BasisSet(mol), "gamess")
    assert not np.array_equal(T, np.eye(mol.nao))

    pyscf_tensor = DFTensor(mol, aux)
    pyscf_tensor.gen_qtensors(QGen.QSO)
    qso = expand(read_all_by_q(pyscf_tensor, QGen.QSO), pyscf_tensor, QGen.QSO)

    gamess_tensor = DFTensor(mol, aux, basis_order="gamess")
    gamess_tensor.gen_qtensors(QGen.QSO)
    qso_gamess = expand(
        read_all_by_q(gamess_tensor, QGen.QSO), gamess_tensor, QGen.QSO
    )
    assert np.allclose(qso_gamess, T.T @ qso @ T, atol=1e-12)

    rng = np.random.default_rng(5)
    cmo = rng.random((mol.nao, 9))
    pyscf_tensor.set_cmatrix(cmo)
    pyscf_tensor.set_nocc(5)
    gamess_tensor.set_cmatrix(T.T @ cmo)
    gamess_tensor.set_nocc(5)
    for tensor in (pyscf_tensor, gamess_tensor):
        tensor.gen_qtensors(QGen.QOV | QGen.QVV)
    for flag in (QGen.QOV, QGen.QVV):
        assert np.allclose(
            read_all_by_q(gamess_tensor, flag),
            read_all_by_q(pyscf_tensor, flag),
            atol=1e-10,
        )
    pyscf_tensor.cleanup()
    gamess_tensor.cleanup()


def test_distributed_source_local_destination(
    water, auxmol, reference_qso, cmo, monkeypatch
) -> None:
    def no_thread_pool(*args, **kwargs):
        raise AssertionError("collective reads were issued from worker threads")

    with ParallelContext() as context:
        tensor = DFTensor(water, auxmol, n_threads=4, parallel_context=context)
        tensor.set_cmatrix(cmo)
        tensor.set_nocc(3, nfroz=1)
        tensor.gen_qtensors(QGen.QSO, QStorage.DISTRIBUTED)

        monkeypatch.setattr("dfqtensor.transform.ThreadPoolExecutor", no_thread_pool)
        tensor.gen_qtensors(QGen.QOV, QStorage.INMEM)
        assert isinstance(tensor._tensors[QGen.QSO], DistributedQTensor)
        assert isinstance(tensor._tensors[QGen.QOV], MemoryQTensor)

        occ, vir = cmo[:, 1:4], cmo[:, 4:]
        qov = expand(read_all_by_q(tensor, QGen.QOV), tensor, QGen.QOV)
        assert np.allclose(
            qov, np.einsum("qmn,mi,nj->qij", reference_qso, occ, vir), atol=1e-10
        )
        tensor.cleanup()


def test_threads_per_call(water, auxmol, reference_qso, caplog) -> None:
    tensor = DFTensor(water, auxmol, n_threads=1)
    with caplog.at_level(logging.INFO, logger="dfqtensor"):
        tensor.gen_qtensors(QGen.QSO, n_threads=3)
    assert "on 3 threads" in caplog.text
    assert tensor.n_threads == 1

    qso = expand(read_all_by_q(tensor, QGen.QSO), tensor, QGen.QSO)
    assert np.allclose(qso, reference_qso, atol=1e-10)
    tensor.cleanup()
