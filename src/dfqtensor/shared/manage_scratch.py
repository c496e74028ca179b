from __future__ import annotations

import atexit
import os
from functools import partial
from pathlib import Path
from shutil import disk_usage, rmtree
from types import TracebackType
from typing import Annotated, Final, Literal

from attrs import define, field

from dfqtensor.shared.config import settings
from dfqtensor.shared.errors import ResourceError
from dfqtensor.shared.typing import PathLike


def _determine_path(
    root: PathLike | None = None,
    subdir_prefix: str | None = None,
) -> Path:
    """Find a good path name for the directory of the on-disk tensors.

    The naming scheme is :python:`f"{root}/{subdir_prefix}{SLURM_JOB_ID}"`
    on systems with :python:`SLURM`.
    If :python:`SLURM` is not available, then the process ID is used instead.
    """
    scratch_root = Path(root) if root else Path(settings.SCRATCH_ROOT)
    subdir_prefix = "dfqtensor_" if subdir_prefix is None else subdir_prefix
    if "SLURM_JOB_ID" in os.environ:
        # we can safely assume that the SLURM_JOB_ID is unique
        subdir = Path(f"{subdir_prefix}{os.environ['SLURM_JOB_ID']}/")
    else:
        # PIDs are recycled, so count up until the name is unused
        id = os.getpid()
        subdir = Path(f"{subdir_prefix}{id}/")
        while (scratch_root / subdir).exists():
            id = id + 1
            subdir = Path(f"{subdir_prefix}{id}/")
    return scratch_root / subdir


def _get_abs_path(pathlike: PathLike | None) -> Path:
    if pathlike is None:
        return _determine_path().resolve()
    else:
        return Path(pathlike).resolve()


@define(order=False)
class WorkDir:
    """Manage the directory that holds the files of on-disk tensors.

    Upon initialisation the directory :python:`path` is created,
    if it does not exist yet. Tensor files inside an existing directory
    are truncated when the tensor is generated again.
    If :python:`path` is :class:`None`, it is determined by the environment,
    see :func:`from_environment`.

    The :python:`/` operator is overloaded, so the object can be used
    like a :python:`pathlib.Path`.

    If :python:`cleanup_at_end` is true, the directory is deleted
    when the program terminates or when the ContextManager is left.

    Examples
    --------
    >>> with WorkDir('./tensors', cleanup_at_end=True) as storage:
    >>>     qso_path = storage.tensor_file("qso")
    './tensors' does not exist anymore after leaving the contextmanager.
    """

    path: Final[Annotated[Path, "An absolute path"]] = field(converter=_get_abs_path)
    cleanup_at_end: Final[bool] = True

    def __attrs_post_init__(self) -> None:
        self.path.mkdir(parents=True, exist_ok=True)
        if self.cleanup_at_end:
            atexit.register(partial(self.cleanup, ignore_error=True))

    def __enter__(self) -> WorkDir:
        return self

    def __exit__(
        self,
        type_: type[BaseException] | None,
        value: BaseException | None,
        traceback: TracebackType | None,
    ) -> Literal[False]:
        if self.cleanup_at_end:
            self.cleanup()
        return False

    @classmethod
    def from_environment(
        cls,
        *,
        user_defined_root: PathLike | None = None,
        prefix: str | None = None,
        cleanup_at_end: bool = True,
    ) -> WorkDir:
        """Create a WorkDir based on the environment.

        Parameters
        ----------
        user_defined_root:
            The root directory where to create temporary directories
            e.g. :bash:`/tmp` or :bash:`/scratch`.
            If :class:`None`, then the :python:`SCRATCH_ROOT`
            value from :class:`dfqtensor.shared.config.Settings` is taken.
        prefix:
            The prefix for the subdirectory.
        cleanup_at_end:
            Delete the directory at the end of the program.
        """
        return cls(_determine_path(user_defined_root, prefix), cleanup_at_end)

    def tensor_file(self, name: str) -> Path:
        """Path of the raw file that backs the tensor :python:`name`."""
        return self.path / f"{name}.bin"

    def tensor_files(self) -> list[Path]:
        """The tensor files that currently exist in the directory."""
        return sorted(self.path.glob("*.bin"))

    def ensure_space(self, n_bytes: int, name: str) -> None:
        """Raise if the file system can not hold :python:`n_bytes` more bytes
        for the tensor :python:`name`.

        An existing file of the same tensor is truncated on creation,
        so its size counts as free space.
        """
        free = disk_usage(self.path).free
        old = self.tensor_file(name)
        if old.exists():
            free += old.stat().st_size
        if n_bytes > free:
            raise ResourceError(
                f"Tensor {name} needs {n_bytes * 2**-30:.5f} Gb, "
                f"but only {free * 2**-30:.5f} Gb are free in {self.path}."
            )

    def cleanup(self, ignore_error: bool = False) -> None:
        """Delete the directory together with all tensor files in it.

        Parameters
        ----------
        ignore_error :
            Ignore :class:`FileNotFoundError`, and only that exception, when deleting.
        """
        try:
            rmtree(self.path)
        except FileNotFoundError as e:
            if not ignore_error:
                raise e

    def __fspath__(self) -> str:
        return self.path.__fspath__()

    def __str__(self) -> str:
        return self.path.__str__()

    def __truediv__(self, other_path: PathLike) -> Path:
        return self.path / other_path
