from .disks import (
    GIB,
    DiskFormat,
    DiskRecord,
    DiskOut,
    disk_key,
)

from .vms import (
    VMState,
    DiskRef,
    VMRecord,
    VMCreate,
    VMUpdate,
    LaunchSpec,
    VMOut,
)

from .results import (
    ErrorCategory,
    ErrorKind,
    OperationError,
    OperationResponse,
    ReconciliationDrift,
    Result,
)

from .isos import IsoImage
from .metrics import MachineMetrics


__all__ = [
    "GIB",
    "DiskFormat",
    "DiskRecord",
    "DiskOut",
    "disk_key",
    "VMState",
    "DiskRef",
    "VMRecord",
    "VMCreate",
    "VMUpdate",
    "LaunchSpec",
    "VMOut",
    "ErrorCategory",
    "ErrorKind",
    "OperationError",
    "OperationResponse",
    "ReconciliationDrift",
    "Result",
    "IsoImage",
    "MachineMetrics",
]
