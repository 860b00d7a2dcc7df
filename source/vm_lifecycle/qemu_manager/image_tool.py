import json
import logging
import subprocess
from typing import Protocol

from .. import settings
from ..models.disks import GIB
from .models import ImageResult
from .proc import _describe_failure, _run_checked

logger = logging.getLogger(__name__)


class ImageTool(Protocol):
    """Creates and grows disk image files. Sizes are always ``"<N>G"`` strings."""

    def create_image(self, path: str, fmt: str, size_gib: str) -> ImageResult: ...

    def resize_image(self, path: str, size_gib: str) -> ImageResult: ...


class QemuImageTool:
    def __init__(self, qemu_img: str | None = None, timeout: float | None = None):
        self._qemu_img = qemu_img
        self._timeout = timeout

    @property
    def qemu_img(self) -> str:
        return self._qemu_img or settings.VM_QEMU_IMG_BIN or "qemu-img"

    @property
    def timeout(self) -> float:
        return self._timeout or settings.VM_TOOL_TIMEOUT_S

    def create_image(self, path: str, fmt: str, size_gib: str) -> ImageResult:
        args = [self.qemu_img, "create", "-f", fmt, path, size_gib]
        try:
            _run_checked(args, timeout=self.timeout)
        except (subprocess.SubprocessError, OSError) as e:
            logger.error("qemu-img create failed for %s: %s", path, e)
            return ImageResult(ok=False, error=_describe_failure(e))

        size = self.virtual_size_gib(path)
        if size is None:
            # The image exists; fall back to the requested size.
            size = float(size_gib.rstrip("G"))
        logger.info("Disk created successfully: %s (%sG)", path, size)
        return ImageResult(ok=True, size_gib=size)

    def resize_image(self, path: str, size_gib: str) -> ImageResult:
        args = [self.qemu_img, "resize", path, size_gib]
        try:
            _run_checked(args, timeout=self.timeout)
        except (subprocess.SubprocessError, OSError) as e:
            logger.error("qemu-img resize failed for %s: %s", path, e)
            return ImageResult(ok=False, error=_describe_failure(e))
        logger.info("Disk resized successfully: %s -> %s", path, size_gib)
        return ImageResult(ok=True, size_gib=float(size_gib.rstrip("G")))

    def virtual_size_gib(self, path: str) -> float | None:
        try:
            out = _run_checked(
                [self.qemu_img, "info", "--output=json", path], timeout=self.timeout
            ).stdout
            return int(json.loads(out)["virtual-size"]) / GIB
        except (subprocess.SubprocessError, OSError, ValueError, KeyError) as e:
            logger.warning("Could not read virtual size of %s: %s", path, e)
            return None
