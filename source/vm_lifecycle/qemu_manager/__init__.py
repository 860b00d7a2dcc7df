"""Public API re-exports."""

from .models import VMProc, ImageResult, LaunchResult, KillResult
from .units import parse_size, normalize_gib, gib_arg, ceil_gib, gib_to_bytes
from .image_tool import ImageTool, QemuImageTool
from .qemu_args import vm_launch_args
from .launcher import ProcessLauncher, QemuProcessLauncher

__all__ = [
    "VMProc",
    "ImageResult",
    "LaunchResult",
    "KillResult",
    "parse_size",
    "normalize_gib",
    "gib_arg",
    "ceil_gib",
    "gib_to_bytes",
    "ImageTool",
    "QemuImageTool",
    "vm_launch_args",
    "ProcessLauncher",
    "QemuProcessLauncher",
]
