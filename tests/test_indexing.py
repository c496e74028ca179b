import numpy as np

from dfqtensor.shared.helper import (
    gauss_sum,
    pack_symmetric,
    ravel_C,
    ravel_symmetric,
    unpack_symmetric,
    unravel_symmetric,
)


def test_invert_symmetric_idx() -> None:
    n_orbitals = 30

    for a in range(n_orbitals):
        for b in range(a + 1):
            assert ravel_symmetric(a, b) == ravel_symmetric(b, a)
            assert (a, b) == unravel_symmetric(ravel_symmetric(a, b))


def test_symmetric_idx_is_dense() -> None:
    n = 12
    indices = sorted(ravel_symmetric(a, b) for a in range(n) for b in range(a + 1))
    assert indices == list(range(gauss_sum(n)))


def test_large_symmetric_idx() -> None:
    for a in (100_000, 1_234_567, 9_999_999):
        for b in (0, a // 2, a):
            assert unravel_symmetric(ravel_symmetric(a, b)) == (a, b)


def test_ravel_C() -> None:
    assert ravel_C(0, 0, 4) == 0
    assert ravel_C(1, 2, 4) == 6
    assert ravel_C(2, 3, 4) == 11


def test_pack_symmetric() -> None:
    rng = np.random.default_rng(12)
    A = rng.random((7, 7))
    A = A + A.T

    packed = pack_symmetric(A)
    assert packed.shape == (gauss_sum(7),)
    assert packed[ravel_symmetric(4, 2)] == A[4, 2]
    assert np.array_equal(unpack_symmetric(packed, 7), A)
