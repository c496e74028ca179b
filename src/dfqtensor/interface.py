"""Handle based access to three-index tensors.

Host programs that can not hold Python objects keep an integer handle instead.
Every function takes the handle as first argument and forwards to the
corresponding method of :class:`dfqtensor.tensor.ThreeIndexTensor`.

Examples
--------
>>> from dfqtensor import interface
>>> from dfqtensor.flags import QGen, QStorage
>>>
>>> handle = interface.init(mol, "weigend")
>>> interface.set_cmatrix(handle, mo_coeff)
>>> interface.set_nocc(handle, nocc)
>>> interface.gen_qtensors(handle, QGen.QOV, QStorage.INMEM | QStorage.BYQ)
>>> n_q = interface.get_qbatch(handle, QGen.QOV, buffer, len(buffer), 0)
>>> interface.cleanup(handle)
"""

from __future__ import annotations

import logging
from itertools import count
from threading import Lock
from typing import Final

import numpy as np
from pyscf.gto import Mole

from dfqtensor.flags import QStorage
from dfqtensor.metric import MetricKind
from dfqtensor.parallel import ParallelContext
from dfqtensor.shared.errors import ConfigurationError
from dfqtensor.shared.typing import Matrix, PairIdx, PathLike
from dfqtensor.tensor import CHTensor, DFTensor, ThreeIndexTensor

logger: Final = logging.getLogger(__name__)

_registry: Final[dict[int, ThreeIndexTensor]] = {}
_registry_lock: Final = Lock()
_handles: Final = count(1)


def _register(tensor: ThreeIndexTensor) -> int:
    with _registry_lock:
        handle = next(_handles)
        _registry[handle] = tensor
    logger.debug(f"Registered {tensor.kind} tensor as handle {handle}.")
    return handle


def get(handle: int) -> ThreeIndexTensor:
    """Return the object behind :python:`handle`.

    Raises
    ------
    ConfigurationError
        If the handle is unknown, e.g. because it was already cleaned up.
    """
    with _registry_lock:
        try:
            return _registry[handle]
        except KeyError as e:
            raise ConfigurationError(f"Unknown handle {handle}.") from e


def _limit(out: np.ndarray, capacity: int | None) -> np.ndarray:
    """Return the first :python:`capacity` elements of :python:`out`
    as a flat view, so the results land in the caller's buffer."""
    if out.dtype != np.float64 or not out.flags.c_contiguous:
        raise ConfigurationError(
            "The output buffer has to be a C-contiguous float64 array, "
            f"got dtype {out.dtype} with C-contiguous={out.flags.c_contiguous}."
        )
    flat = out.reshape(-1)
    if capacity is None:
        return flat
    if capacity < 0:
        raise ConfigurationError(f"Negative buffer capacity {capacity}.")
    return flat[:capacity]


def init(
    primary: Mole,
    auxiliary: Mole | str,
    storage_directory: PathLike | None = None,
    n_threads: int | None = None,
    *,
    basis_order: str = "pyscf",
    metric_kind: MetricKind = "eig_inverse_sqrt",
    parallel_context: ParallelContext | None = None,
) -> int:
    """Create a :class:`DFTensor` and return its handle."""
    return _register(
        DFTensor(
            primary,
            auxiliary,
            metric_kind=metric_kind,
            storage_directory=storage_directory,
            n_threads=n_threads,
            basis_order=basis_order,
            parallel_context=parallel_context,
        )
    )


def init_cholesky(
    primary: Mole,
    delta: float | None = None,
    storage_directory: PathLike | None = None,
    n_threads: int | None = None,
    *,
    basis_order: str = "pyscf",
    parallel_context: ParallelContext | None = None,
) -> int:
    """Create a :class:`CHTensor` and return its handle."""
    return _register(
        CHTensor(
            primary,
            delta,
            storage_directory=storage_directory,
            n_threads=n_threads,
            basis_order=basis_order,
            parallel_context=parallel_context,
        )
    )


def set_cmatrix(
    handle: int,
    cmo: Matrix[np.float64],
    nmo: int | None = None,
    is_transposed: bool = False,
    basis_order: str | None = None,
) -> None:
    get(handle).set_cmatrix(cmo, nmo, is_transposed, basis_order)


def set_nocc(handle: int, nocc: int, nfroz: int = 0) -> None:
    get(handle).set_nocc(nocc, nfroz)


def gen_qtensors(
    handle: int,
    qflags: int,
    storeflags: int = QStorage.INMEM,
    n_threads: int | None = None,
) -> None:
    get(handle).gen_qtensors(qflags, storeflags, n_threads)


def get_qbatch(
    handle: int,
    tensor_flag: int,
    out: np.ndarray,
    capacity: int | None,
    qstart: int,
) -> int:
    """Fill the first :python:`capacity` elements of :python:`out`
    (all of them for :class:`None`) with slices starting at :python:`qstart`.

    Returns
    -------
    int
        The number of slices delivered.
    """
    return get(handle).get_qbatch(tensor_flag, _limit(out, capacity), qstart)


def get_batch(
    handle: int,
    tensor_flag: int,
    out: np.ndarray,
    capacity: int | None,
    ijstart: int,
) -> int:
    """Like :func:`get_qbatch` for pair rows starting at :python:`ijstart`.

    Returns
    -------
    int
        The number of pair rows delivered.
    """
    return get(handle).get_batch(tensor_flag, _limit(out, capacity), ijstart)


def tensor_dimensions(handle: int, tensor_flag: int) -> tuple[int, int, int]:
    return get(handle).tensor_dimensions(tensor_flag)


def is_packed(handle: int, tensor_flag: int) -> bool:
    return get(handle).is_packed(tensor_flag)


def calc_index(handle: int, tensor_flag: int, i: int, j: int) -> PairIdx:
    return get(handle).calc_index(tensor_flag, i, j)


def delete(handle: int, qflags: int) -> None:
    get(handle).delete(qflags)


def cleanup(handle: int) -> None:
    """Release everything behind :python:`handle` and invalidate it."""
    with _registry_lock:
        tensor = _registry.pop(handle, None)
    if tensor is None:
        raise ConfigurationError(f"Unknown handle {handle}.")
    tensor.cleanup()


def cleanup_all() -> None:
    with _registry_lock:
        tensors = list(_registry.values())
        _registry.clear()
    for tensor in tensors:
        tensor.cleanup()
