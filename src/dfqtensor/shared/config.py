"""Configure :python:`dfqtensor`

One can modify settings in one session or create an RC-file.
See examples below.

Examples
--------
>>> from dfqtensor.shared.config import settings
>>>
>>> settings.SCRATCH_ROOT = "/scratch"
Changes the default root for the scratch directory
for this python session.

>>> from dfqtensor.shared.config import dump_settings
>>>
>>> dump_settings()
Creates ~/.dfqtensorrc.yml file that allows changes to persist.
"""

import os
from pathlib import Path
from tempfile import gettempdir
from typing import Final

import yaml
from attrs import define
from cattrs import Converter

from dfqtensor.shared.helper import add_docstring

DEFAULT_RC_PATH: Final = Path("~/.dfqtensorrc.yml")

_converter: Final = Converter()
_converter.register_unstructure_hook(Path, str)
_converter.register_structure_hook(Path, lambda value, _: Path(value))


@define
class Settings:
    SCRATCH_ROOT: Path = Path(gettempdir())
    #: Number of worker threads, 0 means one per available core.
    N_THREADS: int = 0
    #: Eigenvalues of the fitting metric below this threshold
    #: (relative to the largest one) are discarded.
    METRIC_EIGEN_THRESHOLD: float = 1e-10
    #: Largest tolerated negative eigenvalue of the fitting metric,
    #: relative to the largest one.
    METRIC_NEGATIVE_TOLERANCE: float = 1e-8
    REORDER_MAX_MEMORY: float = 8e7  # in bytes
    CHOLESKY_DELTA: float = 1e-4


def n_threads_default() -> int:
    """Resolve the :python:`N_THREADS` setting to an actual thread count."""
    if settings.N_THREADS > 0:
        return settings.N_THREADS
    return os.cpu_count() or 1


def _write_settings(settings: Settings, path: Path) -> None:
    with open(path, "w+") as f:
        f.write("# Settings files for `dfqtensor`.\n")
        f.write("# You can delete keys; in this case the default is taken.\n")
        yaml.dump(_converter.unstructure(settings), stream=f, default_flow_style=False)


def _read_settings(path: Path) -> Settings:
    with open(path) as f:
        return _converter.structure(yaml.safe_load(stream=f) or {}, Settings)


@add_docstring(f"Writes settings to :code:`{DEFAULT_RC_PATH}`")
def dump_settings() -> None:
    _write_settings(settings, DEFAULT_RC_PATH.expanduser())


if DEFAULT_RC_PATH.expanduser().exists():
    settings = _read_settings(DEFAULT_RC_PATH.expanduser())
else:
    settings = Settings()
