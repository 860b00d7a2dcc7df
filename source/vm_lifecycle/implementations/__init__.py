from .store import DocumentStore, StoreError, RedisDocumentStore, JsonFileDocumentStore
from .locks import KeyedLocks
from .disks import DiskStore, Listing
from .vms import VMStore
from .isos import IsoCatalog
from .metrics import collect_metrics
from .supervisor import ProcessSupervisor
from .manager import LifecycleManager

__all__ = [
    "DocumentStore",
    "StoreError",
    "RedisDocumentStore",
    "JsonFileDocumentStore",
    "KeyedLocks",
    "DiskStore",
    "Listing",
    "VMStore",
    "IsoCatalog",
    "collect_metrics",
    "ProcessSupervisor",
    "LifecycleManager",
]
