import os
import shutil

from .. import settings
from ..models.vms import LaunchSpec


def _resolve_qemu_bin() -> str:
    """Resolve the qemu-system binary: explicit setting, then PATH lookup."""
    configured = settings.VM_QEMU_BIN or "qemu-system-x86_64"
    if os.path.isabs(configured):
        return configured
    return shutil.which(configured) or configured


def _accel_args() -> list[str]:
    if os.path.exists("/dev/kvm"):
        return ["-enable-kvm", "-cpu", "host"]
    return ["-accel", "tcg,thread=multi", "-cpu", "max"]


def vm_launch_args(spec: LaunchSpec) -> list[str]:
    """
    Build the qemu-system command line for an install-media boot:
    the disk as first drive, the ISO as cdrom and the boot menu enabled.
    """
    args: list[str] = [_resolve_qemu_bin()]
    args += _accel_args()
    args += [
        "-smp",
        str(spec.cpu_cores),
        "-m",
        str(spec.memory_mb),
        "-drive",
        f"file={spec.disk_path},format={spec.disk_format.value},media=disk",
        "-cdrom",
        spec.iso_path,
        "-boot",
        "menu=on",
        "-display",
        spec.display_mode,
        "-no-reboot",
        "-no-shutdown",
    ]
    return args
