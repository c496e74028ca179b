"""Read-only shell descriptors of a :class:`pyscf.gto.Mole`."""

from __future__ import annotations

from collections.abc import Iterator
from typing import cast

from attrs import define, field
from pyscf.gto import Mole

from dfqtensor.shared.typing import AOIdx, ShellIdx


@define(frozen=True)
class Shell:
    """A group of basis functions with common center and angular momentum.

    For generally contracted shells, :python:`nfunction` counts all
    contracted functions, i.e. :python:`n_contracted` blocks of
    :python:`n_per_contraction` functions each.
    """

    idx: ShellIdx
    am: int
    nfunction: int
    start: AOIdx
    is_pure: bool
    n_contracted: int = 1

    @property
    def stop(self) -> AOIdx:
        return cast(AOIdx, self.start + self.nfunction)

    @property
    def n_per_contraction(self) -> int:
        return self.nfunction // self.n_contracted


def _get_shells(mol: Mole) -> tuple[Shell, ...]:
    ao_loc = mol.ao_loc_nr()
    return tuple(
        Shell(
            idx=cast(ShellIdx, i),
            am=int(mol.bas_angular(i)),
            nfunction=int(ao_loc[i + 1] - ao_loc[i]),
            start=cast(AOIdx, int(ao_loc[i])),
            is_pure=not mol.cart,
            n_contracted=int(mol.bas_nctr(i)),
        )
        for i in range(mol.nbas)
    )


@define(frozen=True)
class BasisSet:
    """The shells of a molecule in the order of the integral evaluator."""

    mol: Mole
    shells: tuple[Shell, ...] = field(init=False)

    def __attrs_post_init__(self) -> None:
        # frozen attrs classes need object.__setattr__ for derived fields
        object.__setattr__(self, "shells", _get_shells(self.mol))

    @property
    def nshell(self) -> int:
        return len(self.shells)

    @property
    def nbf(self) -> int:
        return self.shells[-1].stop if self.shells else 0

    @property
    def max_nfunction(self) -> int:
        return max((shell.nfunction for shell in self.shells), default=0)

    def __iter__(self) -> Iterator[Shell]:
        return iter(self.shells)

    def __getitem__(self, idx: int) -> Shell:
        return self.shells[idx]

    def __len__(self) -> int:
        return len(self.shells)

