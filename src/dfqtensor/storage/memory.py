from __future__ import annotations

import logging
from typing import Final

import numpy as np

from dfqtensor.shared.errors import ResourceError
from dfqtensor.shared.typing import Matrix
from dfqtensor.storage.base import StoredQTensor

logger: Final = logging.getLogger(__name__)


class MemoryQTensor(StoredQTensor):
    """A tensor in a single contiguous numpy array.

    Writes from several threads to disjoint ranges need no synchronization.
    """

    def __init__(
        self,
        name: str,
        naux: int,
        ndim1: int,
        ndim2: int,
        *,
        packed: bool,
        byq: bool,
    ) -> None:
        super().__init__(name, naux, ndim1, ndim2, packed=packed, byq=byq)
        shape = (naux, self.ndim12) if byq else (self.ndim12, naux)
        self._data: Matrix[np.float64] | None = np.zeros(shape, dtype=np.float64)
        logger.debug(f"Allocated {self.size * 8 * 2**-30:.5f} Gb for tensor {name}.")

    @property
    def _by_q_view(self) -> Matrix[np.float64]:
        """The data as :python:`(naux, ndim12)`, independent of the layout."""
        if self._data is None:
            raise ResourceError(f"Tensor {self.name} has been cleared.")
        return self._data if self.byq else self._data.T

    def _write_by_pair(self, data: Matrix[np.float64], ijstart: int) -> None:
        self._by_q_view[:, ijstart : ijstart + len(data)] = data.T

    def _write_by_q(self, data: Matrix[np.float64], qstart: int) -> None:
        self._by_q_view[qstart : qstart + len(data)] = data

    def _read_by_pair(self, out: Matrix[np.float64], ijstart: int) -> None:
        out[:] = self._by_q_view[:, ijstart : ijstart + len(out)].T

    def _read_by_q(self, out: Matrix[np.float64], qstart: int) -> None:
        out[:] = self._by_q_view[qstart : qstart + len(out)]

    def clear(self) -> None:
        self._data = None
        self._filled = False
