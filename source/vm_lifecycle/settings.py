import os
from pathlib import Path
from dotenv import load_dotenv

_ = load_dotenv()

BASE_DIR = Path(__file__).resolve().parent
VM_BASE_DIR = os.environ.get("VM_BASE_DIR", os.path.join(BASE_DIR, "vm_data"))

VM_DISKS_DIR = os.environ.get("VM_DISKS_DIR", os.path.join(VM_BASE_DIR, "disks"))
VM_ISOS_DIR = os.environ.get("VM_ISOS_DIR", os.path.join(VM_BASE_DIR, "isos"))
VM_STATE_DIR = os.environ.get("VM_STATE_DIR", os.path.join(VM_BASE_DIR, "state"))
VM_LOG_DIR = os.environ.get("VM_LOG_DIR", os.path.join(VM_BASE_DIR, "logs"))

VM_QEMU_BIN = os.environ.get("VM_QEMU_BIN", "qemu-system-x86_64")
VM_QEMU_IMG_BIN = os.environ.get("VM_QEMU_IMG_BIN", "qemu-img")
VM_DISPLAY_MODE = os.environ.get("VM_DISPLAY_MODE", "sdl")

# Every process whose name matches is considered a VM engine process.
VM_PROCESS_PATTERN = os.environ.get("VM_PROCESS_PATTERN", "qemu-system*")

VM_SPAWN_GRACE_S = float(os.environ.get("VM_SPAWN_GRACE_S", "1.0"))
VM_STOP_TIMEOUT_S = float(os.environ.get("VM_STOP_TIMEOUT_S", "10"))
VM_KILL_WAIT_S = float(os.environ.get("VM_KILL_WAIT_S", "3"))
VM_TOOL_TIMEOUT_S = float(os.environ.get("VM_TOOL_TIMEOUT_S", "120"))
VM_WATCH_INTERVAL_S = float(os.environ.get("VM_WATCH_INTERVAL_S", "15"))

VM_DISK_DEFAULT_GIB = int(os.environ.get("VM_DISK_DEFAULT_GIB", "10"))

REDIS_URL: str = os.environ.get("REDIS_URL", "")
REDIS_PREFIX: str = os.environ.get("REDIS_PREFIX", "vmlifecycle:")

LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")
