from __future__ import annotations

from typing_extensions import assert_never

from dfqtensor.flags import QStorage, resolve_backend
from dfqtensor.parallel import ParallelContext
from dfqtensor.shared.errors import ConfigurationError
from dfqtensor.shared.helper import gauss_sum
from dfqtensor.shared.manage_scratch import WorkDir
from dfqtensor.storage.base import StoredQTensor
from dfqtensor.storage.disk import DiskQTensor
from dfqtensor.storage.distributed import DistributedQTensor
from dfqtensor.storage.memory import MemoryQTensor


def make_stored_qtensor(
    storeflags: int,
    name: str,
    naux: int,
    ndim1: int,
    ndim2: int,
    *,
    directory: WorkDir | None = None,
    context: ParallelContext | None = None,
) -> StoredQTensor:
    """Create an empty tensor with the backend and layout selected by
    :python:`storeflags`, see :class:`dfqtensor.flags.QStorage`.

    Parameters
    ----------
    storeflags :
        Combination of :class:`QStorage` flags.
    name :
        Name of the tensor, also used for the file name of on-disk tensors.
    naux, ndim1, ndim2 :
        Dimensions of the tensor.
    directory :
        Where on-disk tensors are written. Required for :python:`QStorage.ONDISK`.
    context :
        Initialised parallel context. Required for :python:`QStorage.DISTRIBUTED`.
    """
    packed = bool(storeflags & QStorage.PACKED)
    byq = bool(storeflags & QStorage.BYQ)
    backend = resolve_backend(storeflags)
    if backend == "memory":
        return MemoryQTensor(name, naux, ndim1, ndim2, packed=packed, byq=byq)
    elif backend == "disk":
        if directory is None:
            raise ConfigurationError(f"On-disk tensor {name} needs a directory.")
        ndim12 = gauss_sum(ndim1) if packed else ndim1 * ndim2
        directory.ensure_space(8 * naux * ndim12, name)
        return DiskQTensor(
            name,
            naux,
            ndim1,
            ndim2,
            packed=packed,
            byq=byq,
            path=directory.tensor_file(name),
        )
    elif backend == "distributed":
        if context is None:
            raise ConfigurationError(
                f"Distributed tensor {name} needs a parallel context."
            )
        return DistributedQTensor(
            name, naux, ndim1, ndim2, packed=packed, byq=byq, context=context
        )
    else:
        assert_never(backend)
