from dfqtensor.storage.base import StoredQTensor
from dfqtensor.storage.disk import DiskQTensor
from dfqtensor.storage.distributed import DistributedQTensor
from dfqtensor.storage.factory import make_stored_qtensor
from dfqtensor.storage.memory import MemoryQTensor

__all__ = [
    "DiskQTensor",
    "DistributedQTensor",
    "MemoryQTensor",
    "StoredQTensor",
    "make_stored_qtensor",
]
