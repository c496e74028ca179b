"""Bit flags that select tensors and their storage.

The flags can be combined with :python:`|`, e.g.
:python:`QGen.QSO | QGen.QOV` selects the AO tensor and the
occupied-virtual tensor, and :python:`QStorage.ONDISK | QStorage.BYQ`
stores them on disk with the auxiliary index running slowest.
"""

from enum import IntFlag
from typing import Final, Literal, TypeAlias

from dfqtensor.shared.errors import ConfigurationError


class QGen(IntFlag):
    QSO = 1
    QMO = 2
    QOO = 4
    QOV = 8
    QVV = 16


#: All tensors that are derived from Qso by a transformation with the C matrix.
MO_TENSORS: Final = QGen.QMO | QGen.QOO | QGen.QOV | QGen.QVV


class QStorage(IntFlag):
    INMEM = 0
    ONDISK = 1
    DISTRIBUTED = 2
    BYQ = 4
    #: Only the lower triangle of each :math:`(i, j)` slice is stored.
    #: Whether a tensor is packed is decided per tensor,
    #: it is removed from the flags that callers pass in.
    PACKED = 8


Backend: TypeAlias = Literal["memory", "disk", "distributed"]

#: Human readable names, also used as file names of on-disk tensors.
TENSOR_NAMES: Final[dict[QGen, str]] = {
    QGen.QSO: "qso",
    QGen.QMO: "qmo",
    QGen.QOO: "qoo",
    QGen.QOV: "qov",
    QGen.QVV: "qvv",
}


def single_tensor(flag: int) -> QGen:
    """Return the :class:`QGen` member for a flag that selects exactly one tensor.

    Raises
    ------
    ConfigurationError
        If :python:`flag` selects no tensor, several tensors, or unknown bits.
    """
    for member in QGen:
        if flag == member:
            return member
    raise ConfigurationError(f"Unknown tensor flag: {flag}")


def selected_tensors(qflags: int) -> list[QGen]:
    """Return the tensors selected by :python:`qflags` in the canonical order."""
    if qflags & ~sum(QGen):
        raise ConfigurationError(f"Unknown bits in tensor flags: {qflags}")
    return [member for member in QGen if qflags & member]


def resolve_backend(storeflags: int) -> Backend:
    if storeflags & ~sum(QStorage):
        raise ConfigurationError(f"Unknown bits in storage flags: {storeflags}")
    on_disk = bool(storeflags & QStorage.ONDISK)
    distributed = bool(storeflags & QStorage.DISTRIBUTED)
    if on_disk and distributed:
        raise ConfigurationError(
            "Storage flags select both on-disk and distributed storage."
        )
    if on_disk:
        return "disk"
    elif distributed:
        return "distributed"
    return "memory"
