from dfqtensor.flags import QGen, QStorage
from dfqtensor.parallel import ParallelContext
from dfqtensor.tensor import CHTensor, DFTensor, ThreeIndexTensor

__all__ = [
    "CHTensor",
    "DFTensor",
    "ParallelContext",
    "QGen",
    "QStorage",
    "ThreeIndexTensor",
]
