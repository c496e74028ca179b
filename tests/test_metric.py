import numpy as np
import pytest
from pyscf import gto
from pyscf.df import make_auxmol
from pytest import raises

from dfqtensor.metric import FittingMetric, _filtered_eigen_power
from dfqtensor.shared.errors import ConfigurationError, MetricError


@pytest.fixture(scope="module")
def auxmol() -> gto.Mole:
    mol = gto.M(atom="O 0 0 0; H 0 0.76 0.59; H 0 -0.76 0.59", basis="sto-3g")
    return make_auxmol(mol, "weigend")


def test_inverse_sqrt(auxmol) -> None:
    metric = FittingMetric.build(auxmol, "eig_inverse_sqrt")
    J = auxmol.intor("int2c2e")
    assert metric.naux == auxmol.nao
    assert np.allclose(metric.matrix @ J @ metric.matrix, np.eye(metric.naux), atol=1e-6)


def test_inverse(auxmol) -> None:
    metric = FittingMetric.build(auxmol, "eig_inverse")
    J = auxmol.intor("int2c2e")
    assert np.allclose(metric.matrix @ J, np.eye(metric.naux), atol=1e-6)


def test_cholesky_inverse(auxmol) -> None:
    metric = FittingMetric.build(auxmol, "cholesky_inverse")
    J = auxmol.intor("int2c2e")
    assert np.allclose(metric.matrix @ J @ metric.matrix.T, np.eye(metric.naux), atol=1e-6)
    # lower triangular
    assert np.allclose(np.triu(metric.matrix, k=1), 0.0)


def test_read_only(auxmol) -> None:
    metric = FittingMetric.build(auxmol)
    with raises(ValueError):
        metric.matrix[0, 0] = 1.0


def test_unknown_kind(auxmol) -> None:
    with raises(ConfigurationError):
        FittingMetric.build(auxmol, "svd")  # type: ignore[arg-type]


def test_not_positive_definite() -> None:
    J = np.diag([2.0, 1.0, -0.5])
    with raises(MetricError):
        _filtered_eigen_power(J, -0.5, threshold=1e-10, negative_tolerance=1e-8)
    with raises(MetricError):
        _filtered_eigen_power(-np.eye(2), -0.5, threshold=1e-10, negative_tolerance=1e-8)


def test_discard_small_eigenvalues() -> None:
    J = np.diag([4.0, 1.0, 1e-14])
    M, n_discarded = _filtered_eigen_power(
        J, -0.5, threshold=1e-10, negative_tolerance=1e-8
    )
    assert n_discarded == 1
    assert np.allclose(M, np.diag([0.5, 1.0, 0.0]))
