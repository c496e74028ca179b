"""Process-wide state for distributed tensors.

The communication goes through :mod:`pyscf.agf2.mpi_helper`,
which uses :python:`mpi4py` if it is installed and otherwise
behaves like a single process.
Start the program with e.g. :bash:`mpirun -n 4 python script.py`
to distribute the tensors over four processes.
"""

from __future__ import annotations

import logging
from types import TracebackType
from typing import Final, Literal

import numpy as np
from attrs import define, field
from pyscf.agf2 import mpi_helper

from dfqtensor.shared.errors import ConfigurationError
from dfqtensor.shared.helper import ensure

logger: Final = logging.getLogger(__name__)


@define
class ParallelContext:
    """Explicit handle on the communicator.

    It has to be initialised before distributed tensors are created
    and finalised after they are cleared.
    It can be used as a ContextManager.

    Examples
    --------
    >>> with ParallelContext() as context:
    >>>     tensor = DFTensor(mol, "weigend", parallel_context=context)
    >>>     tensor.gen_qtensors(QGen.QSO, QStorage.DISTRIBUTED)
    """

    rank: int = field(init=False, default=0)
    size: int = field(init=False, default=1)
    active: bool = field(init=False, default=False)

    def init(self) -> ParallelContext:
        if self.active:
            raise ConfigurationError("The parallel context is already initialised.")
        self.rank = mpi_helper.rank
        self.size = mpi_helper.size
        self.active = True
        mpi_helper.barrier()
        logger.info(f"Parallel context initialised on rank {self.rank} of {self.size}.")
        return self

    def finalize(self) -> None:
        if self.active:
            mpi_helper.barrier()
            self.active = False

    def __enter__(self) -> ParallelContext:
        return self.init()

    def __exit__(
        self,
        type_: type[BaseException] | None,
        value: BaseException | None,
        traceback: TracebackType | None,
    ) -> Literal[False]:
        self.finalize()
        return False

    def ensure_active(self) -> None:
        if not self.active:
            raise ConfigurationError("The parallel context is not initialised.")

    def partition(self, n: int, rank: int | None = None) -> tuple[int, int]:
        """Return the half-open range of :python:`range(n)` owned by :python:`rank`
        (default: this process) in a static block partition."""
        rank = self.rank if rank is None else rank
        ensure(
            0 <= rank < self.size,
            f"Rank {rank} outside of a context of size {self.size}.",
        )
        return rank * n // self.size, (rank + 1) * n // self.size

    def allreduce(self, array: np.ndarray) -> np.ndarray:
        """Sum :python:`array` over all processes."""
        self.ensure_active()
        return np.asarray(mpi_helper.allreduce(array))

    def barrier(self) -> None:
        self.ensure_active()
        mpi_helper.barrier()
