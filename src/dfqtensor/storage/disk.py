"""Tensors in raw binary files.

The file contains the IEEE-754 doubles of the tensor in its native layout,
without header, i.e. element :python:`k` of the flattened tensor
is at byte offset :python:`8 * k`.
The file is truncated when the tensor is created.
"""

from __future__ import annotations

import logging
from contextlib import AbstractContextManager
from pathlib import Path
from threading import RLock
from typing import IO, Final

import numpy as np

from dfqtensor.shared.errors import ResourceError
from dfqtensor.shared.typing import Matrix
from dfqtensor.storage.base import StoredQTensor

logger: Final = logging.getLogger(__name__)

_ITEMSIZE: Final = np.dtype(np.float64).itemsize


class DiskQTensor(StoredQTensor):
    """A tensor backed by one file.

    All seeks and writes happen while holding a lock, so several threads
    may write disjoint ranges concurrently. Access along the non-native axis
    needs one seek per native row.
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
        path: Path,
    ) -> None:
        super().__init__(name, naux, ndim1, ndim2, packed=packed, byq=byq)
        self.path: Final = path
        self._lock = RLock()
        try:
            self._file: IO[bytes] | None = open(path, "w+b")
        except OSError as e:
            raise ResourceError(f"Cannot open {path} for tensor {name}.") from e
        logger.debug(
            f"Tensor {name} will occupy {self.size * _ITEMSIZE * 2**-30:.5f} Gb "
            f"in {path}."
        )

    def write_guard(self) -> AbstractContextManager:
        return self._lock

    @property
    def _row_size(self) -> int:
        """Number of elements in a row of the native layout."""
        return self.ndim12 if self.byq else self.naux

    @property
    def _fh(self) -> IO[bytes]:
        if self._file is None:
            raise ResourceError(f"Tensor {self.name} has been cleared.")
        return self._file

    def _write_at(self, offset: int, data: np.ndarray) -> None:
        fh = self._fh
        fh.seek(offset * _ITEMSIZE)
        fh.write(np.ascontiguousarray(data).tobytes())

    def _read_at(self, offset: int, out: np.ndarray) -> None:
        fh = self._fh
        fh.seek(offset * _ITEMSIZE)
        n_bytes = fh.readinto(memoryview(out).cast("B"))
        if n_bytes != out.nbytes:
            raise ResourceError(
                f"Tensor {self.name}: short read from {self.path}, "
                f"was the tensor generated?"
            )

    def _write_native(self, data: Matrix[np.float64], start: int) -> None:
        with self._lock:
            self._write_at(start * self._row_size, data)

    def _write_strided(self, data: Matrix[np.float64], start: int) -> None:
        """Write :python:`data` of shape :python:`(count, n_native_rows)`
        as one segment per native row."""
        with self._lock:
            for row, segment in enumerate(data.T):
                self._write_at(row * self._row_size + start, segment)

    def _read_native(self, out: Matrix[np.float64], start: int) -> None:
        with self._lock:
            self._read_at(start * self._row_size, out)

    def _read_strided(self, out: Matrix[np.float64], start: int) -> None:
        segment = np.empty(len(out), dtype=np.float64)
        with self._lock:
            for row in range(out.shape[1]):
                self._read_at(row * self._row_size + start, segment)
                out[:, row] = segment

    def _write_by_pair(self, data: Matrix[np.float64], ijstart: int) -> None:
        if self.byq:
            self._write_strided(data, ijstart)
        else:
            self._write_native(data, ijstart)

    def _write_by_q(self, data: Matrix[np.float64], qstart: int) -> None:
        if self.byq:
            self._write_native(data, qstart)
        else:
            self._write_strided(data, qstart)

    def _read_by_pair(self, out: Matrix[np.float64], ijstart: int) -> None:
        if self.byq:
            self._read_strided(out, ijstart)
        else:
            self._read_native(out, ijstart)

    def _read_by_q(self, out: Matrix[np.float64], qstart: int) -> None:
        if self.byq:
            self._read_native(out, qstart)
        else:
            self._read_strided(out, qstart)

    def clear(self) -> None:
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None
                self.path.unlink(missing_ok=True)
            self._filled = False
